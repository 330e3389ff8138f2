"""WorkerProcess: one build, one consumer, one shutdown.

The build and the log consumer run as concurrent tasks in one process and
share a single lifecycle. Whichever comes first (build finished, 30-minute
ceiling, SIGINT/SIGTERM, consumer crash) leads into the same shutdown:
stop accepting log lines, kill the child, close bus/storage connections with
a bounded grace period.

Exit codes: 0 after any clean shutdown, success or not (the platform reads
the outcome from the logs); 1 when the consumer died on a bus error. Startup
failures (bus unreachable) are raised to the caller.
"""

import asyncio
import signal
import uuid
from dataclasses import dataclass

import structlog

from launchpad.bus.event_bus import EventBus, RedisStreamBus
from launchpad.bus.messages import BuildOutcome
from launchpad.core.config import BuildSettings, Settings, get_settings
from launchpad.core.logging import bind_build_context
from launchpad.db.base import close_db, get_session_factory, init_db
from launchpad.services.event_store import EventStore, SqlEventStore
from launchpad.services.registry import DeploymentRegistry
from launchpad.services.status_updater import StatusUpdater
from launchpad.storage.artifact_store import ArtifactStore, S3ArtifactStore
from launchpad.worker.build import BuildResult, BuildWorker
from launchpad.worker.consumer import LogConsumer
from launchpad.worker.lifecycle import WorkerLifecycle
from launchpad.worker.publisher import LogPublisher

logger = structlog.get_logger(__name__)

# Time allowed for the consumer to reach build.completed after the build returns
CONSUMER_DRAIN_SECONDS = 30.0
SUBSCRIBE_TIMEOUT_SECONDS = 30.0
_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class WorkerReport:
    event_id: str
    outcome: BuildOutcome
    reason: str
    exit_code: int = 0
    uploaded: int = 0
    persisted: int = 0


class WorkerProcess:
    def __init__(
        self,
        build_settings: BuildSettings,
        settings: Settings,
        bus: EventBus,
        store: ArtifactStore,
        event_store: EventStore,
        registry: DeploymentRegistry | None = None,
        base_env: dict[str, str] | None = None,
    ) -> None:
        self.build_settings = build_settings
        self.settings = settings
        self.event_id = uuid.uuid4().hex  # one per process, shared by every line
        self.lifecycle = WorkerLifecycle()
        self._bus = bus
        self._store = store
        self._event_store = event_store
        self._registry = registry
        self.publisher = LogPublisher(
            bus,
            topic=settings.log_topic,
            partition_key=settings.log_partition_key,
            project_uri=build_settings.project_uri,
            deployment_id=build_settings.deployment_id,
            event_id=self.event_id,
            lifecycle=self.lifecycle,
        )
        self.build = BuildWorker(build_settings, self.publisher, store, base_env=base_env)
        self.consumer: LogConsumer | None = None
        self._tasks: list[asyncio.Task] = []
        self._signals_installed = False

    async def run(self, install_signal_handlers: bool = True) -> WorkerReport:
        bind_build_context(
            deployment_id=self.build_settings.deployment_id,
            project_uri=self.build_settings.project_uri,
            event_id=self.event_id,
        )
        await self.publisher.start()
        self.consumer = self._create_consumer()

        if install_signal_handlers:
            self._install_signal_handlers()

        consumer_task = asyncio.create_task(self.consumer.run(), name="log-consumer")
        self._tasks.append(consumer_task)

        result: BuildResult | None = None
        reason = "completed"
        exit_code = 0
        try:
            await self._wait_subscribed(consumer_task)

            build_task = asyncio.create_task(self.build.run(), name="build")
            shutdown_task = asyncio.create_task(self.lifecycle.wait_for_request(), name="shutdown-request")
            self._tasks.extend([build_task, shutdown_task])

            done, _pending = await asyncio.wait(
                {build_task, consumer_task, shutdown_task},
                timeout=self.build_settings.build_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if build_task in done:
                result = build_task.result()
                await asyncio.wait({consumer_task}, timeout=CONSUMER_DRAIN_SECONDS)
            elif consumer_task in done:
                reason = "consumer_failed"
            elif shutdown_task in done:
                reason = self.lifecycle.reason or "shutdown_requested"
            else:
                reason = "timeout"

            if consumer_task.done() and not consumer_task.cancelled() and consumer_task.exception():
                exc = consumer_task.exception()
                logger.error("log_consumer_crashed", error=str(exc), error_type=type(exc).__name__)
                reason = "consumer_failed"
                exit_code = 1

            if result is None:
                await self._report_interrupted(reason)
        finally:
            await self.shutdown(reason)

        stats = self.consumer.stats
        report = WorkerReport(
            event_id=self.event_id,
            outcome=result.outcome if result and exit_code == 0 else BuildOutcome.FAILURE,
            reason=reason,
            exit_code=exit_code,
            uploaded=result.uploaded if result else 0,
            persisted=stats.persisted,
        )
        logger.info("worker_finished", outcome=report.outcome.value, reason=reason, exit_code=exit_code)
        return report

    async def shutdown(self, reason: str) -> None:
        """Single shutdown path. Later calls are ignored."""
        if not self.lifecycle.begin_shutdown(reason):
            logger.debug("shutdown_already_in_progress", reason=reason)
            return

        grace = self.build_settings.shutdown_grace_seconds
        logger.info("worker_shutting_down", reason=reason, grace_seconds=grace)
        self._remove_signal_handlers()
        self.build.terminate()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            # The consumer notices the state change on its next poll; give it the grace period
            _done, still_pending = await asyncio.wait(pending, timeout=grace)
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)

        try:
            await asyncio.wait_for(self._close_connections(), timeout=grace)
        except TimeoutError:
            logger.warning("shutdown_grace_exceeded", grace_seconds=grace)
        self.lifecycle.mark_stopped()

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _create_consumer(self) -> LogConsumer:
        if self._registry is None and isinstance(self._bus, RedisStreamBus):
            self._registry = DeploymentRegistry(self._bus.client)
        status_updater = None
        if self._registry is not None:
            status_updater = StatusUpdater(self._event_store, self._registry)
        return LogConsumer(
            self._bus,
            self._event_store,
            topic=self.settings.log_topic,
            deployment_id=self.build_settings.deployment_id,
            lifecycle=self.lifecycle,
            status_updater=status_updater,
            batch_size=self.settings.consumer_batch_size,
            block_ms=self.settings.consumer_block_ms,
            heartbeat_interval=self.settings.consumer_heartbeat_seconds,
            held_batch_backoff=self.settings.consumer_held_batch_backoff_seconds,
        )

    async def _wait_subscribed(self, consumer_task: asyncio.Task) -> None:
        """Block until the consumer group exists so no early build line is missed."""
        ready = asyncio.create_task(self.consumer.subscribed.wait())
        done, _ = await asyncio.wait(
            {ready, consumer_task},
            timeout=SUBSCRIBE_TIMEOUT_SECONDS,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if ready not in done:
            ready.cancel()
            if consumer_task in done:
                # Re-raise the subscription failure; a worker that cannot consume is fatal
                consumer_task.result()
            raise TimeoutError("log consumer did not subscribe in time")

    async def _report_interrupted(self, reason: str) -> None:
        """Leave a failure trail in the logs for runs that did not finish on their own."""
        grace = self.build_settings.shutdown_grace_seconds
        try:
            await asyncio.wait_for(
                self._publish_interrupted(reason),
                timeout=grace,
            )
        except TimeoutError:
            logger.warning("interrupt_report_timed_out", reason=reason)

    async def _publish_interrupted(self, reason: str) -> None:
        await self.publisher.publish_line(f"Error: build terminated ({reason})")
        await self.publisher.publish_completed(BuildOutcome.FAILURE)

    async def _close_connections(self) -> None:
        if self.consumer is not None:
            await self.consumer.close()
        await self._bus.close()
        await self._store.close()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _SIGNALS:
            loop.add_signal_handler(sig, self.lifecycle.request_shutdown, f"signal:{sig.name}")
        self._signals_installed = True

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        self._signals_installed = False
        loop = asyncio.get_running_loop()
        for sig in _SIGNALS:
            loop.remove_signal_handler(sig)


async def run_worker(build_settings: BuildSettings, settings: Settings | None = None) -> WorkerReport:
    """Wire production adapters (Redis bus, S3, SQL event store) and run one build."""
    settings = settings or get_settings()
    await init_db(settings.database_url)
    try:
        process = WorkerProcess(
            build_settings,
            settings,
            bus=RedisStreamBus(url=settings.redis_url),
            store=S3ArtifactStore(
                bucket=settings.artifact_bucket,
                region=settings.aws_region,
                endpoint_url=settings.s3_endpoint_url,
            ),
            event_store=SqlEventStore(get_session_factory()),
        )
        return await process.run()
    finally:
        await close_db()
