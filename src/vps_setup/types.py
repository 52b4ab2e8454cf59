from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Optional

OS_CHOICES = ("debian", "ubuntu", "auto")
LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass
class Server:
    name: str
    host: str
    user: str
    port: int = 22
    os: str = "auto"
    tags: list[str] = field(default_factory=list)
    ssh_key: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None
    last_provisioned: Optional[str] = None


@dataclass
class ProfileComponents:
    """Installable capabilities, in the order the playbook tags run."""

    docker: bool = False
    php_fpm: bool = False
    caddy: bool = False
    nodejs: bool = False
    nvm: bool = False
    bun: bool = False
    security: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in COMPONENT_NAMES}

    def enabled(self) -> list[str]:
        return [name for name in COMPONENT_NAMES if getattr(self, name) is True]


COMPONENT_NAMES: tuple[str, ...] = tuple(f.name for f in fields(ProfileComponents))


@dataclass
class Profile:
    name: str
    components: ProfileComponents
    runtime_user: str = "root"
    description: Optional[str] = None
    overrides: dict[str, Any] = field(default_factory=dict)


@dataclass
class Config:
    version: str = "1.0.0"
    ansible_path: str = "../ansible-vps-setup"
    default_profile: Optional[str] = "full-stack"
    log_level: str = "info"
    history_retention_days: int = 30


@dataclass
class HistoryEntry:
    timestamp: str
    server: str
    profile: str
    status: str
    duration: float
    changes: int
    output: Optional[str] = None
    error: Optional[str] = None


@dataclass
class OSInfo:
    os: str = "linux"
    version: str = "unknown"


@dataclass
class ProbeResult:
    success: bool
    latency: float
    os: Optional[str] = None
    version: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RecapResult:
    success: bool = False
    ok: int = 0
    changed: int = 0
    unreachable: int = 0
    failed: int = 0


@dataclass
class RunOptions:
    tags: Optional[list[str]] = None
    skip_tags: Optional[list[str]] = None
    dry_run: bool = False
    verbose: bool = False
    playbook: Optional[str] = None


@dataclass
class RunResult:
    server: str
    profile: str
    status: str
    success: bool
    duration: float
    recap: RecapResult = field(default_factory=RecapResult)
    output: str = ""
    returncode: Optional[int] = None
    error: Optional[str] = None
    probe: Optional[ProbeResult] = None


@dataclass
class BatchItem:
    server: str
    success: bool
    duration: float
    status: str
    error: Optional[str] = None


@dataclass
class BatchSummary:
    profile: str
    items: list[BatchItem] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BatchItem]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> list[BatchItem]:
        return [item for item in self.items if not item.success]
