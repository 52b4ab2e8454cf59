from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence, Union
import logging
import os
import subprocess
import threading

logger = logging.getLogger(__name__)

# Enough to keep the whole recap and the failing task output of a long run.
DEFAULT_TAIL_LINES = 5000


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed-out"
    SPAWN_FAILED = "spawn-failed"


@dataclass
class ExecutionResult:
    command: list[str]
    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    returncode: Optional[int] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED


class Executor:
    """Runs local processes on behalf of the probe and the orchestrator."""

    def __init__(self, *, tail_lines: int = DEFAULT_TAIL_LINES):
        self.tail_lines = tail_lines

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a short command to completion and capture its output."""

        cmd_list = list(command)
        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            env=self._merge_env(env),
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                proc.stdout,
                proc.stderr,
            )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def stream(
        self,
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> ExecutionResult:
        """Run a long command, forwarding stdout lines as they arrive.

        Only the last ``tail_lines`` lines of each stream are retained. The
        process is killed when ``timeout`` elapses and whatever output was read
        so far is returned with a ``TIMED_OUT`` status.
        """

        cmd_list = list(command)
        try:
            proc = subprocess.Popen(
                cmd_list,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=self._merge_env(env),
                cwd=str(cwd) if cwd is not None else None,
            )
        except OSError as exc:
            logger.error("Unable to start %s: %s", cmd_list[0] if cmd_list else "?", exc)
            return ExecutionResult(cmd_list, ExecutionStatus.SPAWN_FAILED, error=str(exc))

        stdout_tail: deque[str] = deque(maxlen=self.tail_lines)
        stderr_tail: deque[str] = deque(maxlen=self.tail_lines)
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, stdout_tail, on_line), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, stderr_tail, None), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error("Command timed out after %ss; killing pid %s", timeout, proc.pid)
            proc.kill()
            returncode = proc.wait()
            _join(readers, grace=5.0)
            return ExecutionResult(
                cmd_list,
                ExecutionStatus.TIMED_OUT,
                stdout="".join(stdout_tail),
                stderr="".join(stderr_tail),
                returncode=returncode,
                error=f"timed out after {timeout:g}s",
            )

        _join(readers, grace=None)
        return ExecutionResult(
            cmd_list,
            ExecutionStatus.COMPLETED,
            stdout="".join(stdout_tail),
            stderr="".join(stderr_tail),
            returncode=returncode,
        )

    @staticmethod
    def _merge_env(env: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
        if not env:
            return None
        exec_env = os.environ.copy()
        exec_env.update(env)
        return exec_env


def _pump(stream, tail: deque, on_line: Optional[Callable[[str], None]]) -> None:
    try:
        for line in stream:
            tail.append(line)
            if on_line is not None:
                try:
                    on_line(line.rstrip("\n"))
                except Exception:  # noqa: BLE001
                    logger.debug("Output callback failed", exc_info=True)
    finally:
        stream.close()


def _join(threads: Iterable[threading.Thread], grace: Optional[float]) -> None:
    for thread in threads:
        thread.join(grace)
        if thread.is_alive():
            logger.debug("Output reader still attached after kill; abandoning it")
