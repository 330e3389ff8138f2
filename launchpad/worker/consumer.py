"""LogConsumer: persists one deployment's log lines from the shared topic.

Every build publishes to the same topic, so the consumer reads everything and
keeps only messages whose deployment_id matches its own. Offsets are
committed manually after persistence. A batch that contains a line which
could not be persisted is not committed at all; its messages are delivered
again when a consumer with the same name restarts (duplicates over loss).

The run ends when the build.completed event for this deployment has been
processed, or when the worker begins shutting down; in that case whatever is
already on the topic is drained without blocking before the run returns.
"""

import asyncio
from dataclasses import dataclass

import structlog
from redis.exceptions import RedisError

from launchpad.bus.event_bus import BusConsumer, BusRecord, EventBus
from launchpad.bus.messages import BuildCompletedMessage, MalformedMessageError, decode_message
from launchpad.core.exceptions import DeploymentNotFoundError, EventStoreError, LaunchpadError
from launchpad.services.event_store import EventStore
from launchpad.services.status_updater import StatusUpdater
from launchpad.worker.lifecycle import WorkerLifecycle

logger = structlog.get_logger(__name__)


def group_name(deployment_id: str) -> str:
    return f"log-consumer:{deployment_id}"


@dataclass
class ConsumerStats:
    persisted: int = 0
    discarded: int = 0
    failed: int = 0
    malformed: int = 0
    batches_committed: int = 0
    batches_held: int = 0


class LogConsumer:
    def __init__(
        self,
        bus: EventBus,
        event_store: EventStore,
        topic: str,
        deployment_id: str,
        lifecycle: WorkerLifecycle,
        status_updater: StatusUpdater | None = None,
        batch_size: int = 100,
        block_ms: int = 1000,
        heartbeat_interval: float = 3.0,
        held_batch_backoff: float = 0.5,
        consumer_name: str | None = None,
    ) -> None:
        self._bus = bus
        self._event_store = event_store
        self._topic = topic
        self.deployment_id = deployment_id
        self._lifecycle = lifecycle
        self._status_updater = status_updater
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._heartbeat_interval = heartbeat_interval
        self._held_batch_backoff = held_batch_backoff
        # Stable per deployment so a restarted consumer picks up its own pending entries
        self._consumer_name = consumer_name or f"worker-{deployment_id}"
        self._consumer: BusConsumer | None = None
        self.subscribed = asyncio.Event()
        self.completed: BuildCompletedMessage | None = None
        self.stats = ConsumerStats()

    async def start(self) -> None:
        """Join the consumer group, positioned at the current end of the topic."""
        if self._consumer is not None:
            return
        consumer = self._bus.consumer(self._topic, group_name(self.deployment_id), self._consumer_name)
        await consumer.subscribe()
        self._consumer = consumer
        self.subscribed.set()
        logger.info("log_consumer_subscribed", topic=self._topic, group=group_name(self.deployment_id))

    async def run(self) -> ConsumerStats:
        """Consume until this deployment's build.completed arrives or shutdown begins.

        EventBusError (lost connection) propagates to the caller.
        """
        await self.start()
        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            while self.completed is None and self._lifecycle.accepting:
                records = await self._consumer.poll(self._batch_size, self._block_ms)
                if records and not await self.process_batch(records):
                    # Pause before the next batch while the event store is failing
                    await asyncio.sleep(self._held_batch_backoff)
            if self.completed is None:
                await self._drain_available()
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        await self._settle_status()
        logger.info("log_consumer_finished", **self.stats.__dict__)
        return self.stats

    async def process_batch(self, records: list[BusRecord]) -> bool:
        """Filter and persist a batch. Returns True if the batch was committed."""
        batch_ok = True
        for record in records:
            try:
                message = decode_message(record.value)
            except MalformedMessageError as exc:
                # Undecodable payloads can never succeed; count and move on
                self.stats.malformed += 1
                logger.warning("log_message_malformed", record_id=record.id, error=str(exc))
                continue

            if message.deployment_id != self.deployment_id:
                self.stats.discarded += 1
                continue

            if isinstance(message, BuildCompletedMessage):
                self.completed = message
                continue

            try:
                await self._event_store.append_log(
                    event_id=message.event_id or record.id,
                    deployment_id=message.deployment_id,
                    log=message.log,
                )
            except EventStoreError as exc:
                batch_ok = False
                self.stats.failed += 1
                logger.error("log_persist_failed", record_id=record.id, error=str(exc))
                continue
            self.stats.persisted += 1

        if not batch_ok:
            self.stats.batches_held += 1
            logger.warning("log_batch_not_committed", size=len(records))
            return False

        await self._consumer.commit([record.id for record in records])
        self.stats.batches_committed += 1
        return True

    async def close(self) -> None:
        if self._consumer is not None:
            await self._consumer.close()

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _drain_available(self) -> None:
        """Process what was published before shutdown began, without blocking."""
        while self.completed is None:
            records = await self._consumer.poll(self._batch_size, None)
            if not records:
                return
            await self.process_batch(records)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self._consumer.heartbeat()
            except Exception as exc:
                logger.warning("log_consumer_heartbeat_failed", error=str(exc))

    async def _settle_status(self) -> None:
        """Push the run's status to the registry once the stream has ended."""
        if self._status_updater is None:
            return
        try:
            if self.completed is not None:
                status = await self._status_updater.apply_outcome(self.deployment_id, self.completed.outcome)
            else:
                status = await self._status_updater.evaluate(self.deployment_id)
        except DeploymentNotFoundError:
            logger.warning("deployment_not_registered", deployment_id=self.deployment_id)
            return
        except (LaunchpadError, RedisError) as exc:
            logger.warning("deployment_status_update_failed", error=str(exc))
            return
        logger.info("deployment_status_settled", status=status.value)
