"""Turn ``{command, repositoryId}`` into an :class:`ExecutionResult`.

The command is classified once and dispatched to exactly one handler:

* ``cd`` only updates the repository's stored working directory.
* Dependency installs run synchronously; their (often huge) output is cut
  down to a head and a tail window.
* Server launches are handed to the process supervisor and confirmed by
  scanning for the listening port.
* Everything else runs synchronously, followed by a port scan because a
  command may have started a server we did not recognise.

Every failure, expected or not, comes back as a result with
``success=False``; nothing raised here reaches the HTTP layer.
"""

import asyncio
import time
from typing import Optional

import aiofiles.os
import structlog
from pydantic import BaseModel, ConfigDict, Field

from workspace_host.classifier import (
    ChangeDirectory,
    DependencyInstall,
    Plain,
    ServerLaunch,
    classify,
    is_repository_reset,
)
from workspace_host.env import COMMAND_TIMEOUT, STARTUP_POLL_INTERVAL, STARTUP_WINDOW
from workspace_host.errors import GuardRejection, PathError, ValidationError, WorkspaceHostError
from workspace_host.ports import PortScanner
from workspace_host.runner import run_command
from workspace_host.supervisor import STATIC_SERVER, ManagedProcess, ProcessSupervisor, read_log
from workspace_host.workdirs import DEFAULT_REPOSITORY, DirectoryRegistry, validate_repository_id

logger = structlog.get_logger(__name__)

OUTPUT_WINDOW = 2000


class ExecutionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    output: str = ""
    error: str = ""
    exit_code: int = Field(0, alias="exitCode")
    working_directory: str = Field("", alias="workingDir")
    repository_id: str = Field(..., alias="repository")
    exposed_ports: dict[int, str] = Field(default_factory=dict, alias="exposedPorts")
    web_url: Optional[str] = Field(None, alias="webUrl")
    execution_time_ms: int = Field(0, alias="executionTime")


def truncate_output(text: str, window: int = OUTPUT_WINDOW) -> str:
    """Keep the first and last *window* characters of *text*."""
    if len(text) <= 2 * window:
        return text
    omitted = len(text) - 2 * window
    return f"{text[:window]}\n\n... [{omitted} characters truncated] ...\n\n{text[-window:]}"


class CommandOrchestrator:
    def __init__(
        self,
        directories: DirectoryRegistry,
        supervisor: ProcessSupervisor,
        scanner: PortScanner,
        command_timeout: float = COMMAND_TIMEOUT,
        startup_window: float = STARTUP_WINDOW,
        poll_interval: float = STARTUP_POLL_INTERVAL,
    ):
        self.directories = directories
        self.supervisor = supervisor
        self.scanner = scanner
        self.command_timeout = command_timeout
        self.startup_window = startup_window
        self.poll_interval = poll_interval

    async def execute(
        self,
        command: str,
        repository_id: Optional[str] = None,
        working_dir: Optional[str] = None,
    ) -> ExecutionResult:
        started = time.monotonic()
        repository_id = repository_id or DEFAULT_REPOSITORY
        try:
            result = await self._execute(command, repository_id, working_dir)
        except WorkspaceHostError as e:
            logger.info(
                "Command failed",
                repository_id=repository_id,
                error=type(e).__name__,
                message=e.message,
            )
            result = self._failure(repository_id, e.message, e.exit_code)
        except Exception:
            logger.exception("Unexpected error executing command", repository_id=repository_id)
            result = self._failure(repository_id, "Internal error while executing command")

        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _execute(
        self, command: str, repository_id: str, working_dir: Optional[str]
    ) -> ExecutionResult:
        if not command or not command.strip():
            raise ValidationError("Command is required")
        validate_repository_id(repository_id)

        if is_repository_reset(command):
            self.directories.evict(repository_id)
        if working_dir:
            self.directories.set(repository_id, working_dir)
        cwd = self.directories.resolve(repository_id)

        kind = classify(command)
        logger.info(
            "Executing command",
            repository_id=repository_id,
            kind=type(kind).__name__,
            command=command,
            cwd=cwd,
        )

        if isinstance(kind, ChangeDirectory):
            return self._change_directory(kind, repository_id, cwd)
        if isinstance(kind, DependencyInstall):
            return await self._install(command, repository_id, cwd)
        if isinstance(kind, ServerLaunch):
            return await self._launch(kind, repository_id, cwd)
        if isinstance(kind, Plain):
            return await self._plain(command, repository_id, cwd)
        raise TypeError(f"Unhandled command kind: {kind!r}")

    def _current_directory(self, repository_id: str) -> str:
        context = self.directories.get(repository_id)
        return context.working_directory if context else ""

    def _failure(self, repository_id: str, message: str, exit_code: int = 1) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=message,
            exit_code=exit_code,
            working_directory=self._current_directory(repository_id),
            repository_id=repository_id,
        )

    def _change_directory(
        self, kind: ChangeDirectory, repository_id: str, cwd: str
    ) -> ExecutionResult:
        try:
            path = self.directories.change_directory(repository_id, kind.target)
        except PathError as e:
            return ExecutionResult(
                success=False,
                error=e.message,
                exit_code=e.exit_code,
                working_directory=cwd,
                repository_id=repository_id,
            )
        return ExecutionResult(success=True, working_directory=path, repository_id=repository_id)

    async def _plain(self, command: str, repository_id: str, cwd: str) -> ExecutionResult:
        completed = await run_command(command, cwd, self.command_timeout)
        exposed_ports = await self.scanner.scan()
        return ExecutionResult(
            success=completed.exit_code == 0,
            output=completed.stdout,
            error=completed.stderr,
            exit_code=completed.exit_code,
            working_directory=cwd,
            repository_id=repository_id,
            exposed_ports=exposed_ports,
            web_url=next(iter(exposed_ports.values()), None),
        )

    async def _install(self, command: str, repository_id: str, cwd: str) -> ExecutionResult:
        result = await self._plain(command, repository_id, cwd)
        result.output = truncate_output(result.output)
        result.error = truncate_output(result.error)
        return result

    async def _launch(self, kind: ServerLaunch, repository_id: str, cwd: str) -> ExecutionResult:
        if repository_id == DEFAULT_REPOSITORY:
            raise GuardRejection("No repository selected; open a project before starting a server")
        if not await aiofiles.os.path.isdir(cwd) or not await aiofiles.os.listdir(cwd):
            raise GuardRejection(
                f"Working directory {cwd} is empty; clone the repository before starting a server"
            )

        existing = self.supervisor.get(repository_id, STATIC_SERVER)
        if existing is not None:
            if existing.working_directory == cwd:
                url = self.scanner.proxy_url(existing.port)
                return ExecutionResult(
                    success=True,
                    output=f"Server already running on port {existing.port}\nPreview URL: {url}",
                    working_directory=cwd,
                    repository_id=repository_id,
                    exposed_ports=await self.scanner.scan(),
                    web_url=url,
                )
            await self.supervisor.stop(repository_id, STATIC_SERVER)

        process = await self.supervisor.start(
            repository_id, STATIC_SERVER, kind.command, cwd, kind.port
        )
        exposed_ports = await self._await_startup(process)

        if not process.running:
            await self.supervisor.wait_exited(process, 1.0)
            entries, _, _ = await read_log(process.log_path, tail=40)
            return ExecutionResult(
                success=False,
                output="".join(entry["data"] for entry in entries),
                error=f"Server exited during startup (exit code {process.exit_code})",
                exit_code=process.exit_code or 1,
                working_directory=cwd,
                repository_id=repository_id,
                exposed_ports=exposed_ports,
            )

        url = self.scanner.proxy_url(kind.port)
        return ExecutionResult(
            success=True,
            output=f"Server started on port {kind.port}\nPreview URL: {url}",
            working_directory=cwd,
            repository_id=repository_id,
            exposed_ports=exposed_ports,
            web_url=url,
        )

    async def _await_startup(self, process: ManagedProcess) -> dict[int, str]:
        """Scan until the expected port listens, the process dies, or the window ends."""
        deadline = time.monotonic() + self.startup_window
        while True:
            exposed_ports = await self.scanner.scan()
            if process.port in exposed_ports or not process.running:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.info(
                    "Server not listening yet after startup window",
                    repository_id=process.repository_id,
                    port=process.port,
                )
                break
            await asyncio.sleep(min(self.poll_interval, remaining))
        return exposed_ports
