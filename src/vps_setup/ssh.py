from __future__ import annotations

from typing import Optional
import logging
import re
import subprocess
import time

from .executors import Executor
from .types import OSInfo, ProbeResult, Server

logger = logging.getLogger(__name__)

SENTINEL = "SSH_OK"
DEFAULT_CONNECT_TIMEOUT = 10
# Extra wall-clock allowance on top of ssh's own ConnectTimeout.
COMMAND_GRACE = 5

OS_RELEASE_CMD = "cat /etc/os-release 2>/dev/null || cat /etc/lsb-release 2>/dev/null"
KNOWN_DISTROS = ("debian", "ubuntu")

_ID_RE = re.compile(r"^(?:ID|DISTRIB_ID)=\"?([^\"\n]+)\"?\s*$", re.MULTILINE)
_VERSION_RE = re.compile(r"^(?:VERSION_ID|DISTRIB_RELEASE)=\"?([^\"\n]+)\"?\s*$", re.MULTILINE)


def build_ssh_args(server: Server, command: str, *, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT) -> list[str]:
    """Arguments for a non-interactive, key-only ``ssh`` invocation."""

    args = [
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", f"ConnectTimeout={connect_timeout}",
        "-o", "BatchMode=yes",
        "-o", "PasswordAuthentication=no",
        "-p", str(server.port or 22),
    ]
    if server.ssh_key:
        args.extend(["-i", server.ssh_key])
    args.append(f"{server.user}@{server.host}")
    args.append(command)
    return args


def ssh_tunnel_options(server: Server) -> list[str]:
    """``ssh`` options the playbook run needs beyond user and host."""

    options: list[str] = []
    if server.port and server.port != 22:
        options.append(f"-o Port={server.port}")
    if server.ssh_key:
        options.append(f"-o IdentityFile={server.ssh_key}")
    return options


class ConnectivityProbe:
    def __init__(
        self,
        executor: Optional[Executor] = None,
        *,
        ssh_binary: str = "ssh",
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.executor = executor or Executor()
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout

    def test_connection(self, server: Server) -> ProbeResult:
        started = time.monotonic()
        logger.debug("Testing SSH connection to %s", server.host)
        try:
            result = self._ssh(server, f"echo '{SENTINEL}'")
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            logger.error("SSH connection to %s failed: %s", server.host, exc)
            return ProbeResult(success=False, latency=time.monotonic() - started, error=str(exc))

        latency = time.monotonic() - started
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip() or f"ssh exited with {result.returncode}"
            logger.error("SSH connection to %s failed: %s", server.host, detail)
            return ProbeResult(success=False, latency=latency, error=detail)
        if SENTINEL not in result.stdout:
            return ProbeResult(success=False, latency=latency, error="Unexpected response from server")

        info = self.detect_os(server)
        return ProbeResult(success=True, latency=latency, os=info.os, version=info.version)

    def detect_os(self, server: Server) -> OSInfo:
        try:
            release = self._ssh(server, OS_RELEASE_CMD)
            info = parse_os_release(release.stdout)
            if info is not None:
                return info
            uname = self._ssh(server, "uname -a").stdout.lower()
        except (OSError, subprocess.SubprocessError, ValueError) as exc:
            logger.debug("OS detection on %s failed: %s", server.host, exc)
            return OSInfo()
        for distro in KNOWN_DISTROS:
            if distro in uname:
                return OSInfo(os=distro)
        return OSInfo()

    def _ssh(self, server: Server, command: str):
        args = build_ssh_args(server, command, connect_timeout=self.connect_timeout)
        return self.executor.run(
            [self.ssh_binary, *args],
            check=False,
            timeout=self.connect_timeout + COMMAND_GRACE,
        )


def parse_os_release(text: str) -> Optional[OSInfo]:
    match = _ID_RE.search(text or "")
    if not match:
        return None
    version = _VERSION_RE.search(text)
    return OSInfo(
        os=match.group(1).strip().lower(),
        version=version.group(1).strip() if version else "unknown",
    )
