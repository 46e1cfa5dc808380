import asyncio
import json
import os
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

from workspace_host.errors import ExecutionTimeout, SpawnError

logger = structlog.get_logger(__name__)


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


def _signal_group(pid: int, sig: int) -> None:
    """Signal the whole process group; shell commands fork their real work."""
    try:
        os.killpg(os.getpgid(pid), sig)
    except (ProcessLookupError, PermissionError):
        pass


async def run_command(
    command: str,
    cwd: str,
    timeout: float,
    env: dict | None = None,
) -> CommandResult:
    """Run *command* to completion under ``/bin/sh`` in *cwd*.

    Raises :class:`SpawnError` if the process cannot be created and
    :class:`ExecutionTimeout` after force-killing it once *timeout* seconds
    have elapsed.
    """
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
            start_new_session=True,
        )
    except OSError as e:
        raise SpawnError(f"Failed to start command: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _signal_group(process.pid, signal.SIGKILL)
        await process.wait()
        logger.warning("Command timed out", command=command, timeout=timeout)
        raise ExecutionTimeout(f"Command timed out after {timeout:g} seconds and was killed")

    return CommandResult(
        exit_code=process.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


class ProcessRunner(ABC):
    """Interface for a long-running child process."""

    @abstractmethod
    async def read_output(self, log_file) -> None:
        """Read output from the process and write entries to *log_file*."""

    @abstractmethod
    def kill(self, force: bool = False) -> None:
        """Terminate (SIGTERM) or kill (SIGKILL) the process."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return the exit code."""

    @abstractmethod
    def close(self) -> None:
        """Release file descriptors and other resources."""

    @property
    @abstractmethod
    def pid(self) -> int:
        """PID of the child process."""

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        """Exit code, or None while the process is running."""


class PipeRunner(ProcessRunner):
    """Spawn a command in its own session with stdout/stderr pipes."""

    def __init__(self, command: str, cwd: str | None, env: dict | None):
        self._process: asyncio.subprocess.Process = None  # type: ignore[assignment]
        self._command = command
        self._cwd = cwd
        self._env = env

    async def start(self) -> None:
        self._process = await asyncio.create_subprocess_shell(
            self._command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=self._env,
            start_new_session=True,
        )

    async def read_output(self, log_file) -> None:
        async def read_stream(stream, label):
            async for line in stream:
                if log_file:
                    await log_file.write(
                        json.dumps(
                            {
                                "type": label,
                                "data": line.decode(errors="replace"),
                                "ts": time.time(),
                            }
                        )
                        + "\n"
                    )
                    await log_file.flush()

        await asyncio.gather(
            read_stream(self._process.stdout, "stdout"),
            read_stream(self._process.stderr, "stderr"),
        )

    def kill(self, force: bool = False) -> None:
        if self._process.returncode is not None:
            return
        _signal_group(self._process.pid, signal.SIGKILL if force else signal.SIGTERM)

    async def wait(self) -> int:
        await self._process.wait()
        return self._process.returncode

    def close(self) -> None:
        pass  # pipes are cleaned up automatically

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode


async def create_runner(command: str, cwd: str | None, env: dict | None) -> ProcessRunner:
    runner = PipeRunner(command, cwd, env)
    try:
        await runner.start()
    except OSError as e:
        raise SpawnError(f"Failed to start process: {e}") from e
    return runner
