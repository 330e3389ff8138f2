"""Worker lifecycle: RUNNING -> SHUTTING_DOWN -> STOPPED.

Timeout, SIGINT/SIGTERM and a fatal consumer error all funnel into one
shutdown. begin_shutdown() is the only way out of RUNNING and succeeds
exactly once; it runs on the event loop thread, so the check-and-set cannot
interleave with another coroutine.
"""

import asyncio
from enum import Enum

import structlog

from launchpad.core.exceptions import WorkerShutdownError

logger = structlog.get_logger(__name__)


class WorkerState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class WorkerLifecycle:
    def __init__(self) -> None:
        self._state = WorkerState.RUNNING
        self._requested = asyncio.Event()
        self.reason: str | None = None

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state is WorkerState.RUNNING

    def ensure_running(self) -> None:
        if self._state is not WorkerState.RUNNING:
            raise WorkerShutdownError(f"worker is {self._state.value}")

    def request_shutdown(self, reason: str) -> None:
        """Ask the orchestrator to shut down. Safe to call from signal handlers, repeatedly."""
        if self._requested.is_set():
            logger.debug("shutdown_already_requested", reason=reason)
            return
        self.reason = reason
        self._requested.set()
        logger.info("shutdown_requested", reason=reason)

    async def wait_for_request(self) -> str | None:
        await self._requested.wait()
        return self.reason

    def begin_shutdown(self, reason: str) -> bool:
        """Enter SHUTTING_DOWN. Returns False if shutdown already began."""
        if self._state is not WorkerState.RUNNING:
            return False
        self._state = WorkerState.SHUTTING_DOWN
        if self.reason is None:
            self.reason = reason
        self._requested.set()
        return True

    def mark_stopped(self) -> None:
        self._state = WorkerState.STOPPED
