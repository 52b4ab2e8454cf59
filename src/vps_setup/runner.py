from __future__ import annotations

import dataclasses
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from .errors import (
    ConnectivityError,
    ExecutionError,
    NotFoundError,
    ProvisioningError,
    ToolNotFoundError,
    ToolPathError,
)
from .executors import ExecutionResult, ExecutionStatus, Executor
from .playbook import CommandBuilder, tags_for_components
from .recap import parse_recap
from .ssh import ConnectivityProbe
from .store import ConfigStore, utc_now
from .types import (
    BatchItem,
    BatchSummary,
    HistoryEntry,
    Profile,
    ProbeResult,
    RecapResult,
    RunOptions,
    RunResult,
    Server,
)

logger = logging.getLogger(__name__)

DEFAULT_TOOL = "ansible-playbook"
DEFAULT_TIMEOUT = 600.0
MAX_HISTORY_OUTPUT = 10_000
ANSIBLE_ENV = {"ANSIBLE_NOCOLOR": "1", "ANSIBLE_FORCE_COLOR": "0"}


class ProvisionRunner:
    """Runs the playbook against one server or the whole fleet and records the outcome.

    A run moves through probing, configuring, executing and recording. Every
    attempt that gets past the tool checks leaves a history entry, whether it
    succeeds, fails to connect, times out or reports failed tasks.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        probe: Optional[ConnectivityProbe] = None,
        executor: Optional[Executor] = None,
        tool: str = DEFAULT_TOOL,
        timeout: float = DEFAULT_TIMEOUT,
        output_callback: Optional[Callable[[str], None]] = None,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
    ):
        self.store = store
        self.executor = executor or Executor()
        self.probe = probe or ConnectivityProbe(self.executor)
        self.tool = tool
        self.timeout = timeout
        self.output_callback = output_callback
        self.progress_callback = progress_callback

    def preflight(self) -> tuple[str, CommandBuilder]:
        tool_path = shutil.which(self.tool)
        if not tool_path:
            raise ToolNotFoundError(f"{self.tool} not found in PATH")
        builder = CommandBuilder(self.store.get_config().ansible_path)
        if not builder.has_entry_point():
            raise ToolPathError(builder.entry_point)
        return tool_path, builder

    def run(self, server_name: str, profile_name: str, options: Optional[RunOptions] = None) -> RunResult:
        server = self._require_server(server_name)
        profile = self._require_profile(profile_name)
        tool_path, builder = self.preflight()
        return self._provision(server, profile, options or RunOptions(), tool_path, builder)

    def run_all(
        self,
        profile_name: str,
        options: Optional[RunOptions] = None,
        servers: Optional[Iterable[str]] = None,
    ) -> BatchSummary:
        profile = self._require_profile(profile_name)
        names = list(servers) if servers is not None else self.store.list_servers()
        tool_path, builder = self.preflight()
        options = options or RunOptions()

        summary = BatchSummary(profile=profile.name)
        for index, name in enumerate(names, start=1):
            if self.progress_callback:
                self.progress_callback(index, len(names), name)
            started = time.monotonic()
            try:
                server = self._require_server(name)
                result = self._provision(server, profile, options, tool_path, builder)
            except ProvisioningError as exc:
                failed = exc.result
                item = BatchItem(
                    server=name,
                    success=False,
                    duration=failed.duration if failed else time.monotonic() - started,
                    status=failed.status if failed else "failed",
                    error=str(exc),
                )
            except NotFoundError as exc:
                logger.error("Skipping %s: %s", name, exc)
                item = BatchItem(server=name, success=False, duration=0.0, status="failed", error=str(exc))
            else:
                item = BatchItem(server=name, success=True, duration=result.duration, status=result.status)
            summary.items.append(item)
        return summary

    def _provision(
        self,
        server: Server,
        profile: Profile,
        options: RunOptions,
        tool_path: str,
        builder: CommandBuilder,
    ) -> RunResult:
        started = time.monotonic()
        logger.info("Provisioning %s with profile %s", server.name, profile.name)

        probe = self.probe.test_connection(server)
        if not probe.success:
            message = f"SSH connection to {server.name} failed: {probe.error or 'unknown error'}"
            result = self._failure(server, profile, started, message, probe=probe)
            self._record(result)
            raise ConnectivityError(message, result=result)
        logger.info("SSH OK on %s (%s %s)", server.name, probe.os, probe.version)

        vars_file: Optional[Path] = None
        try:
            try:
                vars_file = builder.write_run_config(server, profile)
                effective = dataclasses.replace(
                    options, tags=options.tags or tags_for_components(profile.components)
                )
                command = [tool_path, *builder.build_command(server, effective, vars_file)]
            except Exception as exc:  # noqa: BLE001
                message = f"Unable to prepare playbook run for {server.name}: {exc}"
                logger.error(message)
                result = self._failure(server, profile, started, message, probe=probe)
                self._record(result)
                raise ExecutionError(message, result=result) from exc

            logger.debug("Running: %s", " ".join(command))
            execution = self.executor.stream(
                command,
                timeout=self.timeout,
                env=ANSIBLE_ENV,
                on_line=self.output_callback,
            )
        finally:
            builder.cleanup(vars_file)

        result = self._result_from_execution(server, profile, options, execution, started, probe)
        self._record(result)
        if not result.success:
            raise ExecutionError(result.error or "provisioning failed", result=result)
        return result

    def _result_from_execution(
        self,
        server: Server,
        profile: Profile,
        options: RunOptions,
        execution: ExecutionResult,
        started: float,
        probe: ProbeResult,
    ) -> RunResult:
        recap = parse_recap(execution.stdout)
        duration = time.monotonic() - started
        error: Optional[str] = None

        if execution.status is ExecutionStatus.SPAWN_FAILED:
            error = f"Unable to start {self.tool}: {execution.error}"
            success = False
        elif execution.status is ExecutionStatus.TIMED_OUT:
            error = f"{self.tool} on {server.name} {execution.error}"
            success = False
        else:
            success = recap.success
            if not success:
                error = _recap_error(recap, execution)
            elif execution.returncode:
                logger.warning(
                    "%s exited with %s but the recap reports no failures; recording success",
                    self.tool,
                    execution.returncode,
                )

        if success:
            status = "dry-run" if options.dry_run else "success"
        else:
            status = "failed"
            logger.error("Provisioning %s failed: %s", server.name, error)

        output = execution.stdout
        if execution.stderr:
            output = f"{output}\n{execution.stderr}" if output else execution.stderr
        return RunResult(
            server=server.name,
            profile=profile.name,
            status=status,
            success=success,
            duration=duration,
            recap=recap,
            output=output,
            returncode=execution.returncode,
            error=error,
            probe=probe,
        )

    @staticmethod
    def _failure(
        server: Server,
        profile: Profile,
        started: float,
        message: str,
        *,
        probe: Optional[ProbeResult] = None,
    ) -> RunResult:
        return RunResult(
            server=server.name,
            profile=profile.name,
            status="failed",
            success=False,
            duration=time.monotonic() - started,
            error=message,
            probe=probe,
        )

    def _record(self, result: RunResult) -> None:
        timestamp = utc_now()
        entry = HistoryEntry(
            timestamp=timestamp,
            server=result.server,
            profile=result.profile,
            status=result.status,
            duration=round(result.duration, 2),
            changes=result.recap.changed,
            output=None if result.success else (result.output[-MAX_HISTORY_OUTPUT:] or None),
            error=result.error,
        )
        self.store.append_history(result.server, entry)
        if not result.success:
            return
        server = self.store.get_server(result.server)
        if server is None:
            logger.warning("Server %s vanished before its timestamp could be updated", result.server)
            return
        self.store.save_server(dataclasses.replace(server, last_provisioned=timestamp))

    def _require_server(self, name: str) -> Server:
        server = self.store.get_server(name)
        if server is None:
            raise NotFoundError("server", name)
        return server

    def _require_profile(self, name: str) -> Profile:
        profile = self.store.get_profile(name)
        if profile is None:
            raise NotFoundError("profile", name)
        return profile


def _recap_error(recap: RecapResult, execution: ExecutionResult) -> str:
    code = f"exit code {execution.returncode}"
    if recap == RecapResult():
        return f"no PLAY RECAP in output ({code})"
    return f"failed={recap.failed} unreachable={recap.unreachable} ({code})"
