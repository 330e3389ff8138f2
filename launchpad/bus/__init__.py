from launchpad.bus.event_bus import BusConsumer, BusRecord, EventBus, RedisStreamBus, RedisStreamConsumer
from launchpad.bus.messages import (
    BuildCompletedMessage,
    BuildOutcome,
    LogMessage,
    MalformedMessageError,
    decode_message,
    encode_message,
)

__all__ = [
    "BuildCompletedMessage",
    "BuildOutcome",
    "BusConsumer",
    "BusRecord",
    "EventBus",
    "LogMessage",
    "MalformedMessageError",
    "RedisStreamBus",
    "RedisStreamConsumer",
    "decode_message",
    "encode_message",
]
