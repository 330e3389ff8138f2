"""Unit tests for RedisStreamBus / RedisStreamConsumer.

fakeredis provides in-process Streams with consumer groups, so these tests
exercise the real XADD / XREADGROUP / XACK calls.
"""

import pytest

from launchpad.bus.event_bus import RedisStreamBus
from launchpad.core.exceptions import EventBusError

pytestmark = pytest.mark.unit

TOPIC = "container-logs"


# ---------------------------------------------------------------------------
# Publish
# ---------------------------------------------------------------------------


async def test_publish_appends_key_and_value(bus, redis):
    """publish writes one stream entry carrying the partition key and value."""
    entry_id = await bus.publish(TOPIC, "log", '{"log": "hi"}')

    entries = await redis.xrange(TOPIC)
    assert len(entries) == 1
    assert entries[0][0] == entry_id
    assert entries[0][1] == {"key": "log", "value": '{"log": "hi"}'}


async def test_bus_requires_url_or_client():
    with pytest.raises(ValueError):
        RedisStreamBus()


async def test_client_before_connect_raises():
    bus = RedisStreamBus(url="redis://localhost:6379")
    with pytest.raises(EventBusError):
        _ = bus.client


async def test_close_keeps_borrowed_client_open(redis):
    """A bus built around an existing client does not close it."""
    bus = RedisStreamBus(client=redis)
    await bus.connect()
    await bus.close()
    assert await redis.ping()


# ---------------------------------------------------------------------------
# Consume
# ---------------------------------------------------------------------------


async def test_new_group_starts_at_end_of_topic(bus):
    """Messages published before subscribing are not delivered."""
    await bus.publish(TOPIC, "log", "before")

    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await bus.publish(TOPIC, "log", "after")

    records = await consumer.poll(count=10, block_ms=10)
    assert [r.value for r in records] == ["after"]


async def test_uncommitted_records_are_redelivered_to_restarted_member(bus):
    """A member that restarts with the same name gets its pending records first."""
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await bus.publish(TOPIC, "log", "one")
    await bus.publish(TOPIC, "log", "two")

    first = await consumer.poll(count=10, block_ms=10)
    assert [r.value for r in first] == ["one", "two"]
    # no commit: simulate a crash

    restarted = bus.consumer(TOPIC, "group-a", "worker-a")
    await restarted.subscribe()
    replayed = await restarted.poll(count=10, block_ms=10)
    assert [r.value for r in replayed] == ["one", "two"]


async def test_pending_records_are_replayed_once_per_member_instance(bus):
    """An entry that stays uncommitted after its replay does not block new entries."""
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await bus.publish(TOPIC, "log", "stuck")
    await consumer.poll(count=10, block_ms=10)

    restarted = bus.consumer(TOPIC, "group-a", "worker-a")
    await restarted.subscribe()
    assert [r.value for r in await restarted.poll(count=10, block_ms=10)] == ["stuck"]

    await bus.publish(TOPIC, "log", "fresh")
    assert [r.value for r in await restarted.poll(count=10, block_ms=10)] == ["fresh"]
    assert await restarted.poll(count=10, block_ms=None) == []


async def test_committed_records_are_not_redelivered(bus):
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await bus.publish(TOPIC, "log", "one")

    records = await consumer.poll(count=10, block_ms=10)
    await consumer.commit([r.id for r in records])

    restarted = bus.consumer(TOPIC, "group-a", "worker-a")
    await restarted.subscribe()
    assert await restarted.poll(count=10, block_ms=10) == []


async def test_groups_receive_independent_copies(bus):
    """Two deployments' consumer groups each see every message on the shared topic."""
    first = bus.consumer(TOPIC, "log-consumer:dep-1", "worker-dep-1")
    second = bus.consumer(TOPIC, "log-consumer:dep-2", "worker-dep-2")
    await first.subscribe()
    await second.subscribe()

    await bus.publish(TOPIC, "log", "shared")

    assert [r.value for r in await first.poll(10, 10)] == ["shared"]
    assert [r.value for r in await second.poll(10, 10)] == ["shared"]


async def test_resubscribe_to_existing_group_keeps_offsets(bus):
    """Re-creating an existing group (BUSYGROUP) rejoins instead of failing."""
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await bus.publish(TOPIC, "log", "kept")

    again = bus.consumer(TOPIC, "group-a", "worker-b")
    await again.subscribe()
    assert [r.value for r in await again.poll(10, 10)] == ["kept"]


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


async def test_heartbeat_sets_expiring_liveness_key(bus, redis):
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()

    key = f"{TOPIC}:group:group-a:member:worker-a:alive"
    assert await redis.exists(key) == 1
    assert 0 < await redis.ttl(key) <= 30


async def test_subscribe_claims_entries_of_member_with_expired_lease(bus, redis):
    dead = bus.consumer(TOPIC, "group-a", "worker-old")
    await dead.subscribe()
    await bus.publish(TOPIC, "log", "orphan")
    await dead.poll(count=10, block_ms=10)
    # lease expiry
    await redis.delete(f"{TOPIC}:group:group-a:member:worker-old:alive")

    heir = bus.consumer(TOPIC, "group-a", "worker-new")
    await heir.subscribe()

    assert [r.value for r in await heir.poll(count=10, block_ms=10)] == ["orphan"]


async def test_subscribe_leaves_entries_of_live_member_alone(bus):
    live = bus.consumer(TOPIC, "group-a", "worker-old")
    await live.subscribe()
    await bus.publish(TOPIC, "log", "in flight")
    await live.poll(count=10, block_ms=10)

    other = bus.consumer(TOPIC, "group-a", "worker-new")
    await other.subscribe()

    assert await other.reclaim_orphans() == 0
    assert await other.poll(count=10, block_ms=10) == []


async def test_close_removes_liveness_key(bus, redis):
    consumer = bus.consumer(TOPIC, "group-a", "worker-a")
    await consumer.subscribe()
    await consumer.close()

    assert await redis.exists(f"{TOPIC}:group:group-a:member:worker-a:alive") == 0
