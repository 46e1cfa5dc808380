"""Self-termination after a period without requests.

Hosts are billed while they run, so an abandoned session must not keep one
alive. Each request runs inside :meth:`IdleGovernor.activity`, which re-arms a
single ``call_later`` timer when the request starts and again when it ends;
the timer never fires while a request is still in progress. When it fires the
governor asks the process to exit and never re-arms.
"""

import asyncio
import os
import signal
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import structlog

from workspace_host.env import IDLE_TIMEOUT

logger = structlog.get_logger(__name__)


def terminate_host() -> None:
    # SIGTERM lets uvicorn run the lifespan shutdown and stop managed processes.
    os.kill(os.getpid(), signal.SIGTERM)


class IdleGovernor:
    def __init__(
        self,
        window: float = IDLE_TIMEOUT,
        on_expire: Callable[[], None] = terminate_host,
    ):
        self.window = window
        self.on_expire = on_expire
        self.last_activity_at = time.monotonic()
        self.fired = False
        self.in_flight = 0
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def enabled(self) -> bool:
        return self.window > 0

    @property
    def armed(self) -> bool:
        return self._handle is not None and not self.fired

    @property
    def remaining(self) -> float:
        return max(0.0, self.window - (time.monotonic() - self.last_activity_at))

    def touch(self) -> None:
        """Record activity and push the deadline one full window out."""
        if self.fired or not self.enabled:
            return
        self.last_activity_at = time.monotonic()
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.window, self._fire)

    @contextmanager
    def activity(self) -> Iterator[None]:
        """Hold off expiry while a request is in progress; the window restarts when it ends."""
        self.in_flight += 1
        self.touch()
        try:
            yield
        finally:
            self.in_flight -= 1
            self.touch()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self.fired or self.in_flight:
            # activity() re-arms when the last request finishes
            return
        self.fired = True
        logger.warning(
            "Idle window elapsed, shutting down host",
            idle_seconds=round(time.monotonic() - self.last_activity_at, 1),
        )
        self.on_expire()
