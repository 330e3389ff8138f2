"""Bus payloads published by build workers on the shared log topic.

Every payload carries project_uri and deployment_id so consumers can filter a
shared topic down to a single run. Payloads without a "type" field are plain
log lines.
"""

import json
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ValidationError


class BuildOutcome(str, Enum):
    """Result reported by the structured terminal event."""

    SUCCESS = "success"
    FAILURE = "failure"


class LogMessage(BaseModel):
    """One line of build output."""

    type: Literal["log"] = "log"
    project_uri: str
    deployment_id: str
    log: str
    event_id: str | None = None


class BuildCompletedMessage(BaseModel):
    """Terminal event, published once as the last message of a run."""

    type: Literal["build.completed"] = "build.completed"
    project_uri: str
    deployment_id: str
    event_id: str
    outcome: BuildOutcome


BusPayload = LogMessage | BuildCompletedMessage


class MalformedMessageError(ValueError):
    """Raised when a bus record cannot be decoded into a known payload."""


def encode_message(message: BusPayload) -> str:
    return message.model_dump_json(exclude_none=True)


def decode_message(raw: str | bytes) -> BusPayload:
    """Parse a JSON bus value into a LogMessage or BuildCompletedMessage."""
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"invalid JSON payload: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedMessageError("payload must be a JSON object")

    try:
        if data.get("type") == "build.completed":
            return BuildCompletedMessage.model_validate(data)
        return LogMessage.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessageError(str(exc)) from exc
