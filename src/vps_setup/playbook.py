from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union
import logging
import os
import re
import tempfile
import time

import yaml

from .secrets import SecretResolver
from .ssh import ssh_tunnel_options
from .types import Profile, ProfileComponents, RunOptions, Server

logger = logging.getLogger(__name__)

PLAYBOOK_RELATIVE = Path("playbooks") / "provision.yml"
RUN_CONFIG_DIR = Path(tempfile.gettempdir()) / f"vps-setup-{os.getpid()}"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def tags_for_components(components: ProfileComponents) -> list[str]:
    return components.enabled()


class CommandBuilder:
    """Turns a server, a profile and run options into an ``ansible-playbook`` call."""

    def __init__(
        self,
        ansible_path: Union[str, Path],
        *,
        run_config_dir: Optional[Path] = None,
        secret_resolver: Optional[SecretResolver] = None,
    ):
        self.ansible_path = Path(ansible_path).expanduser().resolve()
        self.run_config_dir = run_config_dir or RUN_CONFIG_DIR
        self.secret_resolver = secret_resolver or SecretResolver()

    @property
    def entry_point(self) -> Path:
        return self.ansible_path / PLAYBOOK_RELATIVE

    def has_entry_point(self) -> bool:
        return self.entry_point.is_file()

    def build_command(
        self,
        server: Server,
        options: RunOptions,
        vars_file: Optional[Path] = None,
    ) -> list[str]:
        args: list[str] = [str(options.playbook or self.entry_point)]
        args.extend(["-i", f"{server.host},"])
        args.extend(["-u", server.user])

        tunnel = ssh_tunnel_options(server)
        if tunnel:
            args.extend(["--ssh-common-args", " ".join(tunnel)])
        if options.tags:
            args.extend(["--tags", ",".join(options.tags)])
        if options.skip_tags:
            args.extend(["--skip-tags", ",".join(options.skip_tags)])
        if options.dry_run:
            args.extend(["--check", "--diff"])
        if options.verbose:
            args.append("-v")
        if vars_file is not None:
            args.extend(["-e", f"@{vars_file}"])
        return args

    def run_variables(self, profile: Profile) -> dict[str, Any]:
        variables: dict[str, Any] = dict(profile.components.as_dict())
        variables["runtime_user"] = profile.runtime_user
        variables.update(self.secret_resolver.resolve(dict(profile.overrides or {})))
        return variables

    def generate_run_config(self, profile: Profile) -> str:
        return yaml.safe_dump(self.run_variables(profile), default_flow_style=False, sort_keys=False)

    def write_run_config(self, server: Server, profile: Profile) -> Path:
        content = self.generate_run_config(profile)
        self.run_config_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        safe_name = _UNSAFE_CHARS.sub("_", server.name)
        path = self.run_config_dir / f"provision_{safe_name}_{stamp}.yml"
        # 0600 from creation; overrides may hold resolved secrets.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        logger.debug("Generated run config %s", path)
        return path

    @staticmethod
    def cleanup(path: Optional[Path]) -> None:
        if path is None:
            return
        path.unlink(missing_ok=True)
