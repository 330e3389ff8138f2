"""StatusUpdater: derives deployment status from persisted build logs.

The rule is content-based, evaluated over every persisted line of a run:

1. any line containing "Upload complete..."   -> READY
2. else any line matching /error/i            -> FAILED
3. otherwise                                  -> IN_PROGRESS

Completion is checked before errors. The "error" match is a known heuristic:
a benign line mentioning the word fails the build if no completion marker was
seen. Workers that publish a build.completed event bypass the heuristic via
apply_outcome().
"""

import asyncio
import re
import time
from collections.abc import Iterable

import structlog

from launchpad.bus.messages import BuildOutcome
from launchpad.core.exceptions import DeploymentNotFoundError
from launchpad.schemas.deployments import DeploymentStatus, LogRecord
from launchpad.services.event_store import EventStore
from launchpad.services.registry import DeploymentRegistry

logger = structlog.get_logger(__name__)

UPLOAD_COMPLETE_MARKER = "Upload complete..."
_ERROR_RE = re.compile(r"error", re.IGNORECASE)

POLL_TIMEOUT_SECONDS = 60.0
POLL_INTERVAL_SECONDS = 2.0


def derive_status(lines: Iterable[str]) -> DeploymentStatus:
    """Apply the completion-before-error rule to a set of log lines."""
    lines = list(lines)
    if any(UPLOAD_COMPLETE_MARKER in line for line in lines):
        return DeploymentStatus.READY
    if any(_ERROR_RE.search(line) for line in lines):
        return DeploymentStatus.FAILED
    return DeploymentStatus.IN_PROGRESS


class StatusUpdater:
    """Pushes derived status into the registry. Never leaves a terminal state."""

    def __init__(
        self,
        event_store: EventStore,
        registry: DeploymentRegistry,
        poll_timeout: float = POLL_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        clock=time.monotonic,
    ) -> None:
        self._event_store = event_store
        self._registry = registry
        self._poll_timeout = poll_timeout
        self._poll_interval = poll_interval
        self._clock = clock

    async def current_status(self, deployment_id: str) -> DeploymentStatus:
        status = await self._registry.get_status(deployment_id)
        if status is None:
            raise DeploymentNotFoundError(deployment_id)
        return status

    async def evaluate(
        self,
        deployment_id: str,
        logs: list[LogRecord] | None = None,
    ) -> DeploymentStatus:
        """Evaluate the log rule for a run and apply any terminal result.

        Args:
            deployment_id: Run to evaluate
            logs: Already-fetched records; fetched from the event store if None

        Returns:
            The run's status after evaluation
        """
        current = await self.current_status(deployment_id)
        if current.is_terminal:
            return current

        if logs is None:
            logs = await self._event_store.fetch_logs(deployment_id)
        derived = derive_status(record.log for record in logs)
        if not derived.is_terminal:
            return current

        message = "Upload complete" if derived is DeploymentStatus.READY else "Error found in build logs"
        await self._registry.transition(deployment_id, derived, message)
        return await self.current_status(deployment_id)

    async def apply_outcome(self, deployment_id: str, outcome: BuildOutcome) -> DeploymentStatus:
        """Apply a structured build.completed outcome."""
        target = DeploymentStatus.READY if outcome is BuildOutcome.SUCCESS else DeploymentStatus.FAILED
        await self._registry.transition(deployment_id, target, f"Build finished: {outcome.value}")
        return await self.current_status(deployment_id)

    async def poll_until_terminal(self, deployment_id: str) -> DeploymentStatus:
        """Re-evaluate until the run is terminal or the poll window runs out.

        When the window closes without a terminal state the run is forced to
        FAILED. This is independent of the worker's own build timeout.
        """
        started = self._clock()
        while True:
            status = await self.evaluate(deployment_id)
            if status.is_terminal:
                return status

            if self._clock() - started >= self._poll_timeout:
                logger.warning(
                    "deployment_poll_timeout",
                    deployment_id=deployment_id,
                    timeout_seconds=self._poll_timeout,
                )
                await self._registry.transition(
                    deployment_id,
                    DeploymentStatus.FAILED,
                    f"No terminal log line within {self._poll_timeout:.0f}s",
                )
                return await self.current_status(deployment_id)

            await asyncio.sleep(self._poll_interval)
