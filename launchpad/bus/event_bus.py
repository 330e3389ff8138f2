"""EventBus: durable pub/sub log topic with consumer groups.

The abstract EventBus/BusConsumer pair is what the worker and the log
consumer program against. RedisStreamBus binds it to Redis Streams:

- topic          -> stream key
- publish        -> XADD {key, value}
- consumer group -> XGROUP CREATE ... $ MKSTREAM (starts from "now")
- poll           -> XREADGROUP, replaying this member's pending entries first
- commit         -> XACK
- heartbeat      -> TTL'd liveness lease per group member; on subscribe, pending
                    entries of members whose lease expired are XCLAIMed

Swapping to per-deployment topics only changes the topic string handed in by
callers; the interfaces stay the same.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from launchpad.core.exceptions import EventBusError
from launchpad.db.redis import create_redis, ping

logger = structlog.get_logger(__name__)

HEARTBEAT_TTL_SECONDS = 30
STREAM_MAXLEN = 100_000

_transient = retry(
    retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.25, min=0.25, max=2),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "event_bus_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


@dataclass(frozen=True)
class BusRecord:
    """A single delivered message. `id` is what gets committed."""

    id: str
    key: str
    value: str


class BusConsumer(ABC):
    """Consumer-group member with manual offset commit."""

    @abstractmethod
    async def subscribe(self) -> None: ...

    @abstractmethod
    async def poll(self, count: int, block_ms: int | None) -> list[BusRecord]: ...

    @abstractmethod
    async def commit(self, record_ids: list[str]) -> None: ...

    @abstractmethod
    async def heartbeat(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class EventBus(ABC):
    """Publisher connection plus a factory for consumers on the same bus."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def publish(self, topic: str, key: str, value: str) -> str: ...

    @abstractmethod
    def consumer(self, topic: str, group: str, name: str) -> BusConsumer: ...

    @abstractmethod
    async def close(self) -> None: ...


class RedisStreamConsumer(BusConsumer):
    def __init__(
        self,
        client: redis.Redis,
        topic: str,
        group: str,
        name: str,
        heartbeat_ttl: int = HEARTBEAT_TTL_SECONDS,
    ) -> None:
        self._client = client
        self.topic = topic
        self.group = group
        self.name = name
        self._heartbeat_ttl = heartbeat_ttl
        # Pending replay walks forward from here; None once this member's backlog is exhausted
        self._pending_cursor: str | None = "0"
        self._liveness_key = self._lease_key(name)

    async def subscribe(self) -> None:
        """Join the group, creating it at the current end of the stream.

        A group that already exists keeps its offsets, so a restarted consumer
        resumes where the last commit left off. Entries left pending by dead
        members are claimed before the first poll.
        """
        try:
            await self._client.xgroup_create(self.topic, self.group, id="$", mkstream=True)
            logger.info("consumer_group_created", topic=self.topic, group=self.group)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise EventBusError(f"cannot create consumer group {self.group}: {exc}") from exc
            logger.info("consumer_group_rejoined", topic=self.topic, group=self.group)
        except RedisError as exc:
            raise EventBusError(f"cannot subscribe to {self.topic}: {exc}") from exc
        await self.heartbeat()
        await self.reclaim_orphans()

    async def poll(self, count: int, block_ms: int | None) -> list[BusRecord]:
        """Return the next batch: uncommitted deliveries first, then new entries.

        Each pending entry is replayed at most once per consumer instance. An
        entry that is still not committed after its replay stays pending for
        the next restart instead of being read again in a loop.

        block_ms=None returns immediately when nothing is available.
        """
        try:
            while self._pending_cursor is not None:
                records, last_id = await self._read(self._pending_cursor, count, block_ms=None)
                if last_id is None:
                    self._pending_cursor = None
                    break
                self._pending_cursor = last_id
                if records:
                    return records
            records, _last_id = await self._read(">", count, block_ms=block_ms)
            return records
        except RedisError as exc:
            raise EventBusError(f"poll failed on {self.topic}: {exc}") from exc

    @_transient
    async def _read(self, last_id: str, count: int, block_ms: int | None) -> tuple[list[BusRecord], str | None]:
        """XREADGROUP from last_id; also returns the id of the last entry seen."""
        response = await self._client.xreadgroup(
            self.group,
            self.name,
            {self.topic: last_id},
            count=count,
            block=block_ms,
        )
        records: list[BusRecord] = []
        trimmed: list[str] = []
        seen: str | None = None
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                seen = entry_id
                if not fields:
                    # Pending entry whose payload was trimmed from the stream
                    trimmed.append(entry_id)
                    continue
                records.append(BusRecord(id=entry_id, key=fields.get("key", ""), value=fields.get("value", "")))
        if trimmed:
            await self._client.xack(self.topic, self.group, *trimmed)
        return records, seen

    @_transient
    async def commit(self, record_ids: list[str]) -> None:
        if not record_ids:
            return
        await self._client.xack(self.topic, self.group, *record_ids)

    async def heartbeat(self) -> None:
        """Refresh this member's liveness lease.

        Once the lease expires the member counts as dead, and the next member
        to subscribe to the group claims its pending entries.
        """
        await self._client.set(
            self._liveness_key,
            datetime.now(UTC).isoformat(),
            ex=self._heartbeat_ttl,
        )

    async def reclaim_orphans(self) -> int:
        """Claim the pending entries of members whose lease has expired.

        Claimed entries join this member's pending list and are replayed by
        the next poll. Returns the number of entries claimed.
        """
        claimed = 0
        try:
            summary = await self._client.xpending(self.topic, self.group)
            for member in summary.get("consumers") or []:
                name = member["name"]
                if name == self.name or await self._client.exists(self._lease_key(name)):
                    continue
                entries = await self._client.xpending_range(
                    self.topic,
                    self.group,
                    min="-",
                    max="+",
                    count=int(member["pending"]),
                    consumername=name,
                )
                ids = [entry["message_id"] for entry in entries]
                if not ids:
                    continue
                await self._client.xclaim(self.topic, self.group, self.name, 0, ids, justid=True)
                claimed += len(ids)
                logger.warning("consumer_orphans_reclaimed", group=self.group, dead_member=name, count=len(ids))
        except RedisError as exc:
            raise EventBusError(f"cannot reclaim pending entries in {self.group}: {exc}") from exc
        return claimed

    def _lease_key(self, member: str) -> str:
        return f"{self.topic}:group:{self.group}:member:{member}:alive"

    async def close(self) -> None:
        try:
            await self._client.delete(self._liveness_key)
        except RedisError as exc:
            logger.warning("consumer_close_failed", group=self.group, error=str(exc))


class RedisStreamBus(EventBus):
    """Redis Streams binding. One client per process, shared by publisher and consumers."""

    def __init__(self, url: str | None = None, client: redis.Redis | None = None) -> None:
        if url is None and client is None:
            raise ValueError("RedisStreamBus needs a url or a client")
        self._url = url
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise EventBusError("event bus is not connected")
        return self._client

    async def connect(self) -> None:
        """Open the connection. Calling it again is a no-op."""
        if self._client is None:
            self._client = create_redis(self._url)
        try:
            await ping(self._client)
        except RedisError as exc:
            raise EventBusError(f"cannot connect to event bus: {exc}") from exc

    async def publish(self, topic: str, key: str, value: str) -> str:
        try:
            return await self._xadd(topic, key, value)
        except RedisError as exc:
            raise EventBusError(f"publish to {topic} failed: {exc}") from exc

    @_transient
    async def _xadd(self, topic: str, key: str, value: str) -> str:
        return await self.client.xadd(
            topic,
            {"key": key, "value": value},
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )

    def consumer(self, topic: str, group: str, name: str) -> RedisStreamConsumer:
        return RedisStreamConsumer(self.client, topic, group, name)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
