from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import yaml

from .config import SETTABLE_KEYS, coerce_setting
from .errors import NotFoundError, ProvisioningError, ValidationError, VpsSetupError
from .runner import ProvisionRunner
from .ssh import ConnectivityProbe
from .store import ConfigStore
from .types import (
    COMPONENT_NAMES,
    OS_CHOICES,
    BatchSummary,
    HistoryEntry,
    Profile,
    ProfileComponents,
    RunOptions,
    RunResult,
    Server,
)
from .validation import parse_timestamp

VERSION = "1.0.0"


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    GRAY = "\033[90m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="vps-setup", description="VPS provisioning with Ansible")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "-c",
        "--config-dir",
        type=Path,
        help="Configuration directory (default: $VPS_SETUP_CONFIG_DIR or ~/.config/vps-setup)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the configuration directory and default profiles")

    server = commands.add_parser("server", help="Manage servers").add_subparsers(dest="action", required=True)
    add = server.add_parser("add", help="Add a server")
    add.add_argument("name")
    _server_fields(add, required=True)
    add.add_argument(
        "--no-test", dest="test", action="store_false", help="Skip the SSH connection test after saving"
    )
    server.add_parser("list", aliases=["ls"], help="List servers").add_argument("--json", action="store_true")
    show = server.add_parser("show", help="Show a server")
    show.add_argument("name")
    show.add_argument("--json", action="store_true")
    edit = server.add_parser("edit", help="Edit a server")
    edit.add_argument("name")
    _server_fields(edit, required=False)
    remove = server.add_parser("remove", aliases=["rm"], help="Remove a server and its history")
    remove.add_argument("name")

    profile = commands.add_parser("profile", help="Manage profiles").add_subparsers(dest="action", required=True)
    create = profile.add_parser("create", help="Create a profile")
    create.add_argument("name")
    create.add_argument("--description")
    for component in COMPONENT_NAMES:
        create.add_argument(f"--{component.replace('_', '-')}", dest=component, action="store_true")
    create.add_argument("--runtime-user", default="root")
    create.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE")
    profile.add_parser("list", aliases=["ls"], help="List profiles").add_argument("--json", action="store_true")
    pshow = profile.add_parser("show", help="Show a profile")
    pshow.add_argument("name")
    pshow.add_argument("--json", action="store_true")
    pedit = profile.add_parser("edit", help="Edit a profile")
    pedit.add_argument("name")
    pedit.add_argument("--description")
    pedit.add_argument("--enable", action="append", default=[], choices=COMPONENT_NAMES)
    pedit.add_argument("--disable", action="append", default=[], choices=COMPONENT_NAMES)
    pedit.add_argument("--runtime-user")
    pedit.add_argument("--set", dest="overrides", action="append", default=[], metavar="KEY=VALUE")
    pedit.add_argument("--unset", action="append", default=[], metavar="KEY")
    dup = profile.add_parser("duplicate", help="Copy a profile under a new name")
    dup.add_argument("source")
    dup.add_argument("target")
    pdel = profile.add_parser("delete", aliases=["rm"], help="Delete a profile")
    pdel.add_argument("name")

    setup = commands.add_parser("setup", help="Provision a server with Ansible")
    setup.add_argument("server", nargs="?")
    setup.add_argument("-p", "--profile", help="Profile to use (default from config)")
    setup.add_argument("-t", "--tags", help="Comma-separated tags to run")
    setup.add_argument("--skip-tags", help="Comma-separated tags to skip")
    setup.add_argument("--dry-run", action="store_true", help="Run in check mode (no changes)")
    setup.add_argument("-v", "--verbose", action="store_true", help="Verbose playbook output")
    setup.add_argument("--all", action="store_true", help="Provision every configured server")

    history = commands.add_parser("history", help="Show provisioning history")
    history.add_argument("server")
    history.add_argument("-l", "--last", type=int, default=10, help="Number of entries (default: 10)")
    history.add_argument("-j", "--json", action="store_true")
    history.add_argument("--clear", action="store_true", help="Delete the history for the server")

    config = commands.add_parser("config", help="Show or change global settings").add_subparsers(
        dest="action", required=True
    )
    config.add_parser("show", help="Show settings").add_argument("--json", action="store_true")
    cset = config.add_parser("set", help="Change a setting")
    cset.add_argument("key", choices=SETTABLE_KEYS)
    cset.add_argument("value")

    status = commands.add_parser("status", help="Check SSH reachability of a server")
    status.add_argument("server")
    return parser.parse_args(argv)


def _server_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("-H", "--host", required=required, help="IP address or hostname")
    parser.add_argument("-u", "--user", required=required, help="SSH user")
    parser.add_argument("-p", "--port", type=int, help="SSH port (default: 22)")
    parser.add_argument("-k", "--ssh-key", help="Path to the SSH private key")
    parser.add_argument("-t", "--tags", help="Comma-separated tags")
    parser.add_argument("--os", choices=OS_CHOICES)
    parser.add_argument("--notes")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    store = ConfigStore(args.config_dir)
    configure_logging("debug" if args.debug else store.get_config().log_level)

    handler = _HANDLERS[(args.command, _canonical_action(getattr(args, "action", None)))]
    try:
        return handler(store, args)
    except ValidationError as exc:
        print(colorize(f"Invalid {exc.kind}:", Ansi.RED), file=sys.stderr)
        for problem in exc.errors:
            print(colorize(f"  - {problem}", Ansi.RED), file=sys.stderr)
        return 1
    except (VpsSetupError, ValueError) as exc:
        print(colorize(str(exc), Ansi.RED), file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1


def _canonical_action(action: Optional[str]) -> Optional[str]:
    return {"ls": "list", "rm": "remove", "delete": "remove"}.get(action, action) if action else None


# init -----------------------------------------------------------------------
def cmd_init(store: ConfigStore, args: argparse.Namespace) -> int:
    store.initialize()
    print(colorize(f"Initialized {store.base_dir}", Ansi.GREEN))
    print(f"Profiles: {', '.join(store.list_profiles())}")
    return 0


# server ---------------------------------------------------------------------
def cmd_server_add(store: ConfigStore, args: argparse.Namespace) -> int:
    server = Server(
        name=args.name,
        host=args.host,
        user=args.user,
        port=args.port or 22,
        os=args.os or "auto",
        tags=_split(args.tags) or [],
        ssh_key=args.ssh_key,
        notes=args.notes,
    )
    saved = store.add_server(server)
    print(colorize(f'Server "{saved.name}" saved', Ansi.GREEN))
    if args.test:
        result = ConnectivityProbe().test_connection(saved)
        if result.success:
            print(colorize(f"SSH OK ({result.os} {result.version}) in {result.latency * 1000:.0f}ms", Ansi.GREEN))
        else:
            print(colorize(f"SSH connection failed: {result.error}", Ansi.YELLOW))
    return 0


def cmd_server_list(store: ConfigStore, args: argparse.Namespace) -> int:
    servers = store.all_servers()
    if args.json:
        print(json.dumps([dataclasses.asdict(s) for s in servers], indent=2))
        return 0
    if not servers:
        print("No servers configured")
        return 0
    for server in servers:
        print(format_server_line(server))
    return 0


def cmd_server_show(store: ConfigStore, args: argparse.Namespace) -> int:
    server = _require(store.get_server(args.name), "server", args.name)
    if args.json:
        print(json.dumps(dataclasses.asdict(server), indent=2))
        return 0
    rows = [
        ("Host", server.host),
        ("User", server.user),
        ("Port", server.port),
        ("OS", server.os),
        ("SSH Key", server.ssh_key),
        ("Tags", ", ".join(server.tags) if server.tags else None),
        ("Notes", server.notes),
        ("Created", server.created_at),
        ("Last Run", server.last_provisioned or "never"),
    ]
    print(f"Server: {server.name}")
    for label, value in rows:
        if value is not None:
            print(f"  {label + ':':<10} {value}")
    return 0


def cmd_server_edit(store: ConfigStore, args: argparse.Namespace) -> int:
    changes: dict[str, Any] = {}
    for key in ("host", "user", "port", "ssh_key", "os", "notes"):
        value = getattr(args, key)
        if value is not None:
            changes[key] = value
    if args.tags is not None:
        changes["tags"] = _split(args.tags) or []
    if not changes:
        print("Nothing to change")
        return 0
    store.update_server(args.name, **changes)
    print(colorize(f'Server "{args.name}" updated', Ansi.GREEN))
    return 0


def cmd_server_remove(store: ConfigStore, args: argparse.Namespace) -> int:
    store.delete_server(args.name)
    print(colorize(f'Server "{args.name}" removed', Ansi.GREEN))
    return 0


# profile --------------------------------------------------------------------
def cmd_profile_create(store: ConfigStore, args: argparse.Namespace) -> int:
    profile = Profile(
        name=args.name,
        description=args.description,
        components=ProfileComponents(**{name: bool(getattr(args, name)) for name in COMPONENT_NAMES}),
        runtime_user=args.runtime_user,
        overrides=parse_overrides(args.overrides),
    )
    store.add_profile(profile)
    print(colorize(f'Profile "{profile.name}" created', Ansi.GREEN))
    return 0


def cmd_profile_list(store: ConfigStore, args: argparse.Namespace) -> int:
    profiles = store.all_profiles()
    if args.json:
        print(json.dumps([dataclasses.asdict(p) for p in profiles], indent=2))
        return 0
    if not profiles:
        print("No profiles configured")
        return 0
    default = store.get_config().default_profile
    for profile in profiles:
        marker = " (default)" if profile.name == default else ""
        components = ", ".join(profile.components.enabled())
        print(f"{profile.name}{marker} - {components}")
        if profile.description:
            print(colorize(f"  {profile.description}", Ansi.GRAY))
    return 0


def cmd_profile_show(store: ConfigStore, args: argparse.Namespace) -> int:
    profile = _require(store.get_profile(args.name), "profile", args.name)
    if args.json:
        print(json.dumps(dataclasses.asdict(profile), indent=2))
        return 0
    print(f"Profile: {profile.name}")
    if profile.description:
        print(f"  {profile.description}")
    print(f"  Runtime user: {profile.runtime_user}")
    for name, enabled in profile.components.as_dict().items():
        mark = colorize("+", Ansi.GREEN) if enabled else colorize("-", Ansi.GRAY)
        print(f"  {mark} {name}")
    if profile.overrides:
        print("  Overrides:")
        for key in profile.overrides:
            print(f"    {key}")
    return 0


def cmd_profile_edit(store: ConfigStore, args: argparse.Namespace) -> int:
    current = _require(store.get_profile(args.name), "profile", args.name)
    changes: dict[str, Any] = {}
    toggles = {name: True for name in args.enable}
    toggles.update({name: False for name in args.disable})
    if toggles:
        changes["components"] = toggles
    if args.description is not None:
        changes["description"] = args.description
    if args.runtime_user is not None:
        changes["runtime_user"] = args.runtime_user
    if args.overrides or args.unset:
        overrides = dict(current.overrides)
        overrides.update(parse_overrides(args.overrides))
        for key in args.unset:
            overrides.pop(key, None)
        changes["overrides"] = overrides
    if not changes:
        print("Nothing to change")
        return 0
    store.update_profile(args.name, **changes)
    print(colorize(f'Profile "{args.name}" updated', Ansi.GREEN))
    return 0


def cmd_profile_duplicate(store: ConfigStore, args: argparse.Namespace) -> int:
    store.duplicate_profile(args.source, args.target)
    print(colorize(f'Profile "{args.source}" copied to "{args.target}"', Ansi.GREEN))
    return 0


def cmd_profile_remove(store: ConfigStore, args: argparse.Namespace) -> int:
    store.delete_profile(args.name)
    print(colorize(f'Profile "{args.name}" deleted', Ansi.GREEN))
    return 0


# setup ----------------------------------------------------------------------
def cmd_setup(store: ConfigStore, args: argparse.Namespace) -> int:
    profile_name = args.profile or store.get_config().default_profile
    if not profile_name:
        raise ValueError("--profile is required (no default_profile configured)")
    options = RunOptions(
        tags=_split(args.tags),
        skip_tags=_split(args.skip_tags),
        dry_run=args.dry_run,
        verbose=args.verbose,
    )
    runner = ProvisionRunner(
        store,
        output_callback=print if args.verbose else None,
        progress_callback=print_progress,
    )
    if args.dry_run:
        print(colorize("Running in DRY-RUN mode (no changes will be made)", Ansi.YELLOW))

    if args.all:
        if not store.list_servers():
            print(colorize("No servers configured", Ansi.RED), file=sys.stderr)
            return 1
        summary = runner.run_all(profile_name, options)
        print(render_batch_summary(summary))
        return 0 if not summary.failed else 1

    if not args.server:
        raise ValueError("A server name is required unless --all is given")
    try:
        result = runner.run(args.server, profile_name, options)
    except ProvisioningError as exc:
        if exc.result is not None:
            print(format_run_result(exc.result))
        raise
    print(format_run_result(result))
    return 0


def print_progress(index: int, total: int, server: str) -> None:
    print(colorize(f"[{index}/{total}] Provisioning {server}...", Ansi.YELLOW))


# history --------------------------------------------------------------------
def cmd_history(store: ConfigStore, args: argparse.Namespace) -> int:
    if args.clear:
        if store.clear_history(args.server):
            print(colorize(f'History cleared for "{args.server}"', Ansi.GREEN))
        else:
            print("No history to clear")
        return 0
    entries = store.get_history(args.server, args.last)
    if args.json:
        print(json.dumps([dataclasses.asdict(e) for e in entries], indent=2))
        return 0
    if not entries:
        print(f'No history for "{args.server}"')
        return 0
    for entry in entries:
        print(format_history_entry(entry))
    return 0


# config ---------------------------------------------------------------------
def cmd_config_show(store: ConfigStore, args: argparse.Namespace) -> int:
    config = store.get_config()
    if args.json:
        print(json.dumps(dataclasses.asdict(config), indent=2))
        return 0
    print(f"  {'Config Dir:':<20} {store.base_dir}")
    for key, value in dataclasses.asdict(config).items():
        if value is not None:
            print(f"  {key + ':':<20} {value}")
    return 0


def cmd_config_set(store: ConfigStore, args: argparse.Namespace) -> int:
    value = coerce_setting(args.key, args.value)
    store.update_config(**{args.key: value})
    print(colorize(f"Set {args.key} = {json.dumps(value)}", Ansi.GREEN))
    return 0


# status ---------------------------------------------------------------------
def cmd_status(store: ConfigStore, args: argparse.Namespace) -> int:
    server = _require(store.get_server(args.server), "server", args.server)
    print(f"Server: {server.name} ({server.user}@{server.host}:{server.port})")
    result = ConnectivityProbe().test_connection(server)
    if result.success:
        print(colorize("  SSH: connected", Ansi.GREEN))
        print(f"    OS: {result.os} {result.version}")
        print(f"    Latency: {result.latency * 1000:.0f}ms")
    else:
        print(colorize("  SSH: failed", Ansi.RED))
        print(f"    Error: {result.error}")
    print(f"  Last provisioned: {server.last_provisioned or 'never'}")
    return 0 if result.success else 1


# formatting -----------------------------------------------------------------
def format_duration(seconds: float) -> str:
    whole = int(round(seconds))
    if whole < 60:
        return f"{whole}s"
    return f"{whole // 60}m {whole % 60}s"


def format_server_line(server: Server) -> str:
    icon = colorize("*", Ansi.GREEN) if server.last_provisioned else colorize("o", Ansi.GRAY)
    tags = f" [{', '.join(server.tags)}]" if server.tags else ""
    last = ""
    if server.last_provisioned:
        stamp = parse_timestamp(server.last_provisioned)
        last = f" (last: {stamp.date().isoformat() if stamp else server.last_provisioned})"
    return f"{icon} {server.name} - {server.user}@{server.host}:{server.port}{tags}{last}"


def format_run_result(result: RunResult) -> str:
    if result.success:
        line = (
            f"{result.server}::{result.profile} {result.status} - "
            f"changed={result.recap.changed} duration={format_duration(result.duration)}"
        )
        return colorize(line, Ansi.GREEN)
    line = (
        f"{result.server}::{result.profile} failed - "
        f"failed={result.recap.failed} unreachable={result.recap.unreachable} "
        f"duration={format_duration(result.duration)}"
    )
    return colorize(line, Ansi.RED)


def format_history_entry(entry: HistoryEntry, now: Optional[datetime] = None) -> str:
    color = {"success": Ansi.GREEN, "failed": Ansi.RED, "dry-run": Ansi.YELLOW}.get(entry.status)
    when = _time_ago(entry.timestamp, now)
    line = (
        f"{entry.timestamp} {entry.profile} {entry.status} - changes={entry.changes} "
        f"duration={format_duration(entry.duration)}"
    )
    if when:
        line = f"{line} ({when})"
    if entry.error:
        line = f"{line}\n    {entry.error}"
    return colorize(line, color)


def _time_ago(timestamp: str, now: Optional[datetime]) -> Optional[str]:
    stamp = parse_timestamp(timestamp)
    if stamp is None:
        return None
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    delta = (now or datetime.now(timezone.utc)) - stamp
    seconds = int(delta.total_seconds())
    if seconds < 0:
        return None
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds >= size:
            return f"{seconds // size}{unit} ago"
    return "just now"


class Summary:
    def __init__(self) -> None:
        self.successes = 0
        self.failures = 0
        self.lines: list[str] = []

    def add(self, server: str, success: bool, duration: float, error: Optional[str] = None) -> None:
        if success:
            self.successes += 1
            self.lines.append(colorize(f"  ok     {server} ({format_duration(duration)})", Ansi.GREEN))
        else:
            self.failures += 1
            detail = f" - {error}" if error else ""
            self.lines.append(colorize(f"  failed {server} ({format_duration(duration)}){detail}", Ansi.RED))

    def render(self) -> str:
        total = self.successes + self.failures
        text = f"Total: {self.successes}/{total} succeeded | Failures: {self.failures}"
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return "\n".join([*self.lines, colorize(text, color)])


def render_batch_summary(summary: BatchSummary) -> str:
    report = Summary()
    for item in summary.items:
        report.add(item.server, item.success, item.duration, item.error)
    return report.render()


def parse_overrides(pairs: Sequence[str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Override '{pair}' must be KEY=VALUE")
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        overrides[key.strip()] = value
    return overrides


def _split(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    parts = [part.strip() for part in value.split(",") if part.strip()]
    return parts or None


def _require(value, kind: str, name: str):
    if value is None:
        raise NotFoundError(kind, name)
    return value


_HANDLERS: dict[tuple[str, Optional[str]], Callable[[ConfigStore, argparse.Namespace], int]] = {
    ("init", None): cmd_init,
    ("server", "add"): cmd_server_add,
    ("server", "list"): cmd_server_list,
    ("server", "show"): cmd_server_show,
    ("server", "edit"): cmd_server_edit,
    ("server", "remove"): cmd_server_remove,
    ("profile", "create"): cmd_profile_create,
    ("profile", "list"): cmd_profile_list,
    ("profile", "show"): cmd_profile_show,
    ("profile", "edit"): cmd_profile_edit,
    ("profile", "duplicate"): cmd_profile_duplicate,
    ("profile", "remove"): cmd_profile_remove,
    ("setup", None): cmd_setup,
    ("history", None): cmd_history,
    ("config", "show"): cmd_config_show,
    ("config", "set"): cmd_config_set,
    ("status", None): cmd_status,
}


if __name__ == "__main__":
    raise SystemExit(main())
