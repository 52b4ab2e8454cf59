"""Schema rules for the records kept in the config store.

Each ``validate_*`` function is pure and returns every violated rule so callers
can report them all at once; an empty list means the record is valid.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
import re

from .types import COMPONENT_NAMES, LOG_LEVELS, OS_CHOICES, Config, Profile, Server

NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
IPV4_RE = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)
HOSTNAME_RE = re.compile(
    r"^(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)"
    r"(?:\.(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?))*$"
)

MAX_NAME = 64
MAX_HOST = 253
MAX_TAGS = 100
MAX_TAG = 50
MAX_NOTES = 1000
MAX_DESCRIPTION = 500


def validate_host(host: str) -> bool:
    if IPV4_RE.match(host):
        return True
    return len(host) <= MAX_HOST and HOSTNAME_RE.match(host) is not None


def validate_name(name: Any, kind: str) -> list[str]:
    label = kind.capitalize()
    if not isinstance(name, str) or not name:
        return [f"{label} name is required"]
    errors: list[str] = []
    if len(name) > MAX_NAME:
        errors.append(f"{label} name must be {MAX_NAME} characters or less")
    if not NAME_RE.match(name):
        errors.append(f"{label} name can only contain letters, numbers, underscores, and hyphens")
    return errors


def validate_server(server: Server) -> list[str]:
    errors = validate_name(server.name, "server")

    if not isinstance(server.host, str) or not server.host:
        errors.append("Host is required")
    elif not validate_host(server.host):
        errors.append("Invalid host (must be IP address or valid hostname)")

    if not isinstance(server.user, str) or not server.user:
        errors.append("User is required")

    if not _is_int(server.port) or not 1 <= server.port <= 65535:
        errors.append("Port must be an integer between 1 and 65535")

    if server.os not in OS_CHOICES:
        errors.append(f"OS must be one of: {', '.join(OS_CHOICES)}")

    if not isinstance(server.tags, list):
        errors.append("Tags must be a list")
    else:
        if len(server.tags) > MAX_TAGS:
            errors.append(f"No more than {MAX_TAGS} tags are allowed")
        if any(not isinstance(tag, str) or len(tag) > MAX_TAG for tag in server.tags):
            errors.append(f"Tags must be strings of {MAX_TAG} characters or less")

    if server.ssh_key is not None and not isinstance(server.ssh_key, str):
        errors.append("SSH key must be a path")

    if server.notes is not None:
        if not isinstance(server.notes, str):
            errors.append("Notes must be text")
        elif len(server.notes) > MAX_NOTES:
            errors.append(f"Notes must be {MAX_NOTES} characters or less")

    for label, value in (("createdAt", server.created_at), ("lastProvisioned", server.last_provisioned)):
        if value is not None and parse_timestamp(value) is None:
            errors.append(f"{label} must be an ISO-8601 timestamp")
    return errors


def validate_profile(profile: Profile) -> list[str]:
    errors = validate_name(profile.name, "profile")

    if profile.description is not None:
        if not isinstance(profile.description, str):
            errors.append("Description must be text")
        elif len(profile.description) > MAX_DESCRIPTION:
            errors.append(f"Description must be {MAX_DESCRIPTION} characters or less")

    toggles = profile.components.as_dict()
    for name in COMPONENT_NAMES:
        if not isinstance(toggles[name], bool):
            errors.append(f"Component '{name}' must be true or false")
    if not any(value is True for value in toggles.values()):
        errors.append("At least one component must be enabled")

    if not isinstance(profile.runtime_user, str) or not profile.runtime_user:
        errors.append("Runtime user is required")

    if not isinstance(profile.overrides, dict):
        errors.append("Overrides must be a mapping")
    return errors


def validate_config(config: Config) -> list[str]:
    errors: list[str] = []
    if not isinstance(config.version, str) or not config.version:
        errors.append("version must be a string")
    if not isinstance(config.ansible_path, str) or not config.ansible_path:
        errors.append("ansible_path must be a path")
    if config.default_profile is not None and not isinstance(config.default_profile, str):
        errors.append("default_profile must be a profile name")
    if config.log_level not in LOG_LEVELS:
        errors.append(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
    days = config.history_retention_days
    if not _is_int(days) or not 1 <= days <= 365:
        errors.append("history_retention_days must be an integer between 1 and 365")
    return errors


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
