from __future__ import annotations

import dataclasses
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from .config import config_from_mapping, config_to_mapping, default_config_dir
from .errors import AlreadyExistsError, NotFoundError, ValidationError
from .types import COMPONENT_NAMES, Config, HistoryEntry, Profile, ProfileComponents, Server
from .validation import parse_timestamp, validate_config, validate_name, validate_profile, validate_server

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yml"
SERVERS_DIR = "servers"
PROFILES_DIR = "profiles"
HISTORY_DIR = "history"

SEED_PROFILES = (
    Profile(
        name="full-stack",
        description="Full stack development server with Docker, PHP, Caddy, Node.js, Bun, and security hardening",
        components=ProfileComponents(
            docker=True, php_fpm=True, caddy=True, nodejs=True, nvm=False, bun=True, security=True
        ),
        runtime_user="root",
    ),
    Profile(
        name="minimal",
        description="Minimal setup with Docker and security hardening only",
        components=ProfileComponents(docker=True, security=True),
        runtime_user="root",
    ),
    Profile(
        name="security-only",
        description="Security hardening only - no additional software",
        components=ProfileComponents(security=True),
        runtime_user="root",
    ),
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConfigStore:
    """File-backed repository for servers, profiles, settings and run history.

    Layout under ``base_dir``::

        config.yml
        servers/<name>.yml
        profiles/<name>.yml
        history/<server>.log   (JSON lines, append-only)
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else default_config_dir()

    @property
    def config_path(self) -> Path:
        return self.base_dir / CONFIG_FILE

    def server_path(self, name: str) -> Path:
        return self._entity_path(SERVERS_DIR, name, ".yml", "server")

    def profile_path(self, name: str) -> Path:
        return self._entity_path(PROFILES_DIR, name, ".yml", "profile")

    def history_path(self, server: str) -> Path:
        return self._entity_path(HISTORY_DIR, server, ".log", "server")

    def _entity_path(self, sub: str, name: str, suffix: str, kind: str) -> Path:
        # Names are file names; reject anything that could leave the directory.
        errors = validate_name(name, kind)
        if errors:
            raise ValidationError(kind, errors)
        return self.base_dir / sub / f"{name}{suffix}"

    def initialize(self) -> None:
        for sub in (SERVERS_DIR, PROFILES_DIR, HISTORY_DIR):
            (self.base_dir / sub).mkdir(parents=True, exist_ok=True)
        if not self.config_path.exists():
            self.save_config(Config())
        for profile in SEED_PROFILES:
            if not self.profile_path(profile.name).exists():
                self.save_profile(dataclasses.replace(profile, components=dataclasses.replace(profile.components)))
                logger.debug("Seeded profile %s", profile.name)

    # Config ---------------------------------------------------------------
    def get_config(self) -> Config:
        data = self._read_yaml(self.config_path)
        if data is None:
            return Config()
        config = config_from_mapping(data)
        errors = validate_config(config)
        if errors:
            logger.debug("Config file %s is invalid (%s); using defaults", self.config_path, "; ".join(errors))
            return Config()
        return config

    def save_config(self, config: Config) -> Config:
        errors = validate_config(config)
        if errors:
            raise ValidationError("config", errors)
        self._write_yaml(self.config_path, config_to_mapping(config))
        return config

    def update_config(self, **changes: Any) -> Config:
        updated = dataclasses.replace(self.get_config(), **changes)
        return self.save_config(updated)

    # Servers --------------------------------------------------------------
    def save_server(self, server: Server) -> Server:
        errors = validate_server(server)
        if errors:
            raise ValidationError("server", errors)
        existing = self.get_server(server.name)
        if existing is not None and existing.created_at:
            server = dataclasses.replace(server, created_at=existing.created_at)
        elif not server.created_at:
            server = dataclasses.replace(server, created_at=utc_now())
        self._write_yaml(self.server_path(server.name), _server_to_mapping(server))
        logger.debug("Saved server %s", server.name)
        return server

    def add_server(self, server: Server) -> Server:
        if self.server_exists(server.name):
            raise AlreadyExistsError("server", server.name)
        return self.save_server(server)

    def update_server(self, name: str, **changes: Any) -> Server:
        current = self.get_server(name)
        if current is None:
            raise NotFoundError("server", name)
        for key in ("name", "created_at"):
            if key in changes:
                raise ValueError(f"{key} cannot be changed")
        return self.save_server(dataclasses.replace(current, **changes))

    def get_server(self, name: str) -> Optional[Server]:
        if validate_name(name, "server"):
            return None
        data = self._read_yaml(self.server_path(name))
        if data is None:
            return None
        try:
            server = _server_from_mapping(data)
        except (KeyError, TypeError) as exc:
            logger.debug("Server file %s is missing fields: %s", name, exc)
            return None
        errors = validate_server(server)
        if errors:
            logger.debug("Invalid server file %s: %s", name, "; ".join(errors))
            return None
        return server

    def list_servers(self) -> list[str]:
        return self._list_names(SERVERS_DIR)

    def all_servers(self) -> list[Server]:
        return [s for s in (self.get_server(n) for n in self.list_servers()) if s is not None]

    def server_exists(self, name: str) -> bool:
        return not validate_name(name, "server") and self.server_path(name).exists()

    def delete_server(self, name: str) -> None:
        path = self.server_path(name)
        if not path.exists():
            raise NotFoundError("server", name)
        path.unlink()
        self.history_path(name).unlink(missing_ok=True)
        logger.debug("Deleted server %s", name)

    # Profiles -------------------------------------------------------------
    def save_profile(self, profile: Profile) -> Profile:
        errors = validate_profile(profile)
        if errors:
            raise ValidationError("profile", errors)
        self._write_yaml(self.profile_path(profile.name), _profile_to_mapping(profile))
        logger.debug("Saved profile %s", profile.name)
        return profile

    def add_profile(self, profile: Profile) -> Profile:
        if self.profile_exists(profile.name):
            raise AlreadyExistsError("profile", profile.name)
        return self.save_profile(profile)

    def update_profile(self, name: str, **changes: Any) -> Profile:
        current = self.get_profile(name)
        if current is None:
            raise NotFoundError("profile", name)
        if "name" in changes:
            raise ValueError("name cannot be changed")
        component_changes = changes.pop("components", None)
        if isinstance(component_changes, dict):
            changes["components"] = dataclasses.replace(current.components, **component_changes)
        elif component_changes is not None:
            changes["components"] = component_changes
        return self.save_profile(dataclasses.replace(current, **changes))

    def get_profile(self, name: str) -> Optional[Profile]:
        if validate_name(name, "profile"):
            return None
        data = self._read_yaml(self.profile_path(name))
        if data is None:
            return None
        try:
            profile = _profile_from_mapping(data)
        except (KeyError, TypeError, AttributeError) as exc:
            logger.debug("Profile file %s is missing fields: %s", name, exc)
            return None
        errors = validate_profile(profile)
        if errors:
            logger.debug("Invalid profile file %s: %s", name, "; ".join(errors))
            return None
        return profile

    def list_profiles(self) -> list[str]:
        return self._list_names(PROFILES_DIR)

    def all_profiles(self) -> list[Profile]:
        return [p for p in (self.get_profile(n) for n in self.list_profiles()) if p is not None]

    def profile_exists(self, name: str) -> bool:
        return not validate_name(name, "profile") and self.profile_path(name).exists()

    def delete_profile(self, name: str) -> None:
        path = self.profile_path(name)
        if not path.exists():
            raise NotFoundError("profile", name)
        path.unlink()
        logger.debug("Deleted profile %s", name)

    def duplicate_profile(self, source: str, target: str) -> Profile:
        original = self.get_profile(source)
        if original is None:
            raise NotFoundError("profile", source)
        if self.profile_exists(target):
            raise AlreadyExistsError("profile", target)
        copy = dataclasses.replace(
            original,
            name=target,
            description=f"Copy of {source}",
            components=dataclasses.replace(original.components),
            overrides=dict(original.overrides),
        )
        return self.save_profile(copy)

    # History --------------------------------------------------------------
    def append_history(self, server: str, entry: HistoryEntry) -> None:
        path = self.history_path(server)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {k: v for k, v in dataclasses.asdict(entry).items() if v is not None}
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload) + "\n")
        logger.debug("Appended history for %s", server)

    def get_history(self, server: str, limit: Optional[int] = None) -> list[HistoryEntry]:
        if validate_name(server, "server"):
            return []
        path = self.history_path(server)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        keyed: list[tuple[datetime, HistoryEntry]] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            parsed = _history_from_line(line)
            if parsed is not None:
                keyed.append(parsed)
        keyed.sort(key=lambda item: item[0], reverse=True)
        entries = [entry for _, entry in keyed]
        if limit is not None and limit > 0:
            entries = entries[:limit]
        return entries

    def clear_history(self, server: str) -> bool:
        path = self.history_path(server)
        if not path.exists():
            return False
        path.unlink()
        return True

    # File primitives ------------------------------------------------------
    def _list_names(self, sub: str) -> list[str]:
        directory = self.base_dir / sub
        if not directory.is_dir():
            return []
        return sorted(p.stem for p in directory.iterdir() if p.suffix == ".yml" and p.is_file())

    def _read_yaml(self, path: Path) -> Optional[dict[str, Any]]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError:
            logger.debug("Unable to read %s", path, exc_info=True)
            return None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError:
            logger.debug("File %s is not valid YAML; treating as absent", path)
            return None
        if not isinstance(data, dict):
            logger.debug("File %s does not hold a mapping; treating as absent", path)
            return None
        return data

    def _write_yaml(self, path: Path, data: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, allow_unicode=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            try:
                os.chmod(tmp_name, 0o600)
            except OSError:
                logger.debug("Unable to chmod %s", tmp_name, exc_info=True)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _server_to_mapping(server: Server) -> dict[str, Any]:
    return {k: v for k, v in dataclasses.asdict(server).items() if v is not None}


def _server_from_mapping(data: dict[str, Any]) -> Server:
    return Server(
        name=data["name"],
        host=data["host"],
        user=data["user"],
        port=data.get("port", 22),
        os=data.get("os", "auto"),
        tags=data.get("tags") or [],
        ssh_key=data.get("ssh_key"),
        notes=data.get("notes"),
        created_at=data.get("created_at"),
        last_provisioned=data.get("last_provisioned"),
    )


def _profile_to_mapping(profile: Profile) -> dict[str, Any]:
    data: dict[str, Any] = {"name": profile.name}
    if profile.description is not None:
        data["description"] = profile.description
    data["components"] = profile.components.as_dict()
    data["runtime_user"] = profile.runtime_user
    if profile.overrides:
        data["overrides"] = dict(profile.overrides)
    return data


def _profile_from_mapping(data: dict[str, Any]) -> Profile:
    raw_components = data["components"]
    unknown = set(raw_components) - set(COMPONENT_NAMES)
    if unknown:
        raise KeyError(f"unknown components: {', '.join(sorted(unknown))}")
    return Profile(
        name=data["name"],
        description=data.get("description"),
        components=ProfileComponents(**{name: raw_components.get(name, False) for name in COMPONENT_NAMES}),
        runtime_user=data.get("runtime_user", "root"),
        overrides=data.get("overrides") or {},
    )


def _history_from_line(line: str) -> Optional[tuple[datetime, HistoryEntry]]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    stamp = parse_timestamp(data.get("timestamp"))
    if stamp is None:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    try:
        entry = HistoryEntry(
            timestamp=data["timestamp"],
            server=data["server"],
            profile=data["profile"],
            status=data["status"],
            duration=data.get("duration", 0),
            changes=data.get("changes", 0),
            output=data.get("output"),
            error=data.get("error"),
        )
    except KeyError:
        return None
    if not _well_typed(entry):
        return None
    return stamp, entry


def _well_typed(entry: HistoryEntry) -> bool:
    if not all(isinstance(v, str) for v in (entry.server, entry.profile, entry.status)):
        return False
    if isinstance(entry.duration, bool) or not isinstance(entry.duration, (int, float)):
        return False
    if isinstance(entry.changes, bool) or not isinstance(entry.changes, int):
        return False
    return all(v is None or isinstance(v, str) for v in (entry.output, entry.error))
