"""Supervision of long-running child processes (dev servers).

At most one process is registered per ``(repository_id, role)``. Starting on
an occupied key stops the previous process first. Every process gets a
watcher task that pumps its output into a JSONL log and, on exit, posts the
process onto an exit queue; a single consumer task removes the registry entry.
Routing exits through the queue keeps all registry mutation in one place, and
the identity check there means a late exit event can never remove the
replacement that took over the key.
"""

import asyncio
import json
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import aiofiles
import aiofiles.os
import structlog

from workspace_host.env import LOG_DIR, STOP_GRACE
from workspace_host.runner import ProcessRunner, create_runner

logger = structlog.get_logger(__name__)

STATIC_SERVER = "static-server"


@dataclass
class ManagedProcess:
    id: str
    repository_id: str
    role: str
    command: str
    working_directory: str
    port: int
    runner: ProcessRunner
    started_at: float = field(default_factory=time.time)
    exit_code: Optional[int] = None
    finished_at: Optional[float] = field(default=None, repr=False)
    log_path: Optional[str] = field(default=None, repr=False)
    log_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.repository_id, self.role)

    @property
    def running(self) -> bool:
        return self.exit_code is None and self.runner.returncode is None

    @property
    def uptime(self) -> float:
        return (self.finished_at or time.time()) - self.started_at


async def read_log(
    log_path: Optional[str],
    offset: int = 0,
    tail: Optional[int] = None,
) -> tuple[list[dict], int, bool]:
    """Read output entries from a JSONL log file.

    Returns (entries, next_offset, truncated).
    """
    entries: list[dict] = []
    if not log_path or not await aiofiles.os.path.isfile(log_path):
        return entries, 0, False

    async with aiofiles.open(log_path) as f:
        lines = await f.readlines()

    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if record.get("type") in ("stdout", "stderr"):
            entries.append({"type": record["type"], "data": record["data"]})

    total = len(entries)
    entries = entries[offset:]

    truncated = False
    if tail is not None and len(entries) > tail:
        entries = entries[-tail:]
        truncated = True

    return entries, total, truncated


class ProcessSupervisor:
    def __init__(self, log_dir: str = LOG_DIR, stop_grace: float = STOP_GRACE):
        self.log_dir = log_dir
        self.stop_grace = stop_grace
        self._processes: dict[tuple[str, str], ManagedProcess] = {}
        self._exits: asyncio.Queue[ManagedProcess] = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None

    async def open(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume_exits())

    async def close(self) -> None:
        for process in list(self._processes.values()):
            await self._terminate(process)
        self._processes.clear()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    async def __aenter__(self) -> "ProcessSupervisor":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def get(self, repository_id: str, role: str = STATIC_SERVER) -> Optional[ManagedProcess]:
        process = self._processes.get((repository_id, role))
        if process is None or not process.running:
            return None
        return process

    def running_processes(self) -> list[ManagedProcess]:
        return [process for process in self._processes.values() if process.running]

    async def start(
        self,
        repository_id: str,
        role: str,
        command: str,
        working_directory: str,
        port: int,
        env: Optional[dict] = None,
    ) -> ManagedProcess:
        key = (repository_id, role)
        while (previous := self._processes.pop(key, None)) is not None:
            logger.info(
                "Replacing managed process",
                repository_id=repository_id,
                role=role,
                pid=previous.runner.pid,
            )
            await self._terminate(previous)

        subprocess_env = {**os.environ, "PORT": str(port), **(env or {})}
        runner = await create_runner(command, working_directory, subprocess_env)

        process_id = uuid.uuid4().hex[:12]
        process = ManagedProcess(
            id=process_id,
            repository_id=repository_id,
            role=role,
            command=command,
            working_directory=working_directory,
            port=port,
            runner=runner,
            log_path=os.path.join(self.log_dir, "processes", f"{process_id}.jsonl"),
        )
        process.log_task = asyncio.create_task(self._watch(process))

        # A concurrent start may have claimed the key while we were spawning.
        displaced = self._processes.get(key)
        self._processes[key] = process
        if displaced is not None:
            await self._terminate(displaced)

        logger.info(
            "Managed process started",
            repository_id=repository_id,
            role=role,
            pid=runner.pid,
            port=port,
            command=command,
        )
        return process

    async def stop(self, repository_id: str, role: str = STATIC_SERVER) -> bool:
        process = self._processes.pop((repository_id, role), None)
        if process is None:
            return False
        was_running = process.running
        await self._terminate(process)
        logger.info("Managed process stopped", repository_id=repository_id, role=role)
        return was_running

    async def wait_exited(self, process: ManagedProcess, timeout: float) -> bool:
        """Wait up to *timeout* seconds for *process* to exit."""
        try:
            await asyncio.wait_for(asyncio.shield(process.log_task), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _terminate(self, process: ManagedProcess) -> None:
        if process.running:
            process.runner.kill()
            if not await self.wait_exited(process, self.stop_grace):
                logger.warning(
                    "Process ignored SIGTERM, killing",
                    repository_id=process.repository_id,
                    pid=process.runner.pid,
                )
                process.runner.kill(force=True)
                if not await self.wait_exited(process, self.stop_grace):
                    # Something outside the group still holds the output pipes.
                    logger.error("Process did not exit after SIGKILL", pid=process.runner.pid)
                    process.log_task.cancel()
        if process.log_task is not None:
            try:
                await process.log_task
            except asyncio.CancelledError:
                pass

    async def _watch(self, process: ManagedProcess) -> None:
        """Persist process output, then report the exit."""
        log_file = None
        try:
            if process.log_path:
                await aiofiles.os.makedirs(os.path.dirname(process.log_path), exist_ok=True)
                log_file = await aiofiles.open(process.log_path, "a")
                await log_file.write(
                    json.dumps(
                        {
                            "type": "start",
                            "command": process.command,
                            "pid": process.runner.pid,
                            "ts": time.time(),
                        }
                    )
                    + "\n"
                )
                await log_file.flush()
        except OSError:
            logger.warning("Cannot open process log", path=process.log_path)
            log_file = None

        try:
            await process.runner.read_output(log_file)
        finally:
            process.exit_code = await process.runner.wait()
            process.finished_at = time.time()
            process.runner.close()
            if log_file:
                await log_file.write(
                    json.dumps(
                        {"type": "end", "exit_code": process.exit_code, "ts": time.time()}
                    )
                    + "\n"
                )
                await log_file.close()
            self._exits.put_nowait(process)

    async def _consume_exits(self) -> None:
        while True:
            process = await self._exits.get()
            if self._processes.get(process.key) is process:
                del self._processes[process.key]
            logger.info(
                "Managed process exited",
                repository_id=process.repository_id,
                role=process.role,
                exit_code=process.exit_code,
                uptime=round(process.uptime, 1),
            )
