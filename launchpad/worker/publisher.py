"""LogPublisher: turns build output into LogMessages on the shared log topic.

Receives raw stdout/stderr chunks, buffers them into complete lines, sanitizes
(strip ANSI codes, redact secrets, truncate) and publishes each line tagged
with this worker's event_id, project_uri and deployment_id.

Usage:
    publisher = LogPublisher(bus, topic="container-logs", partition_key="log",
                             project_uri="demo123", deployment_id="dep-1",
                             event_id=event_id, lifecycle=lifecycle)
    await publisher.start()
    await publisher.on_stdout("installing\n")
    await publisher.flush()
"""

import re

import structlog

from launchpad.bus.event_bus import EventBus
from launchpad.bus.messages import BuildCompletedMessage, BuildOutcome, LogMessage, encode_message
from launchpad.core.exceptions import EventBusError, WorkerShutdownError
from launchpad.worker.lifecycle import WorkerLifecycle

logger = structlog.get_logger(__name__)

MAX_LINE_LENGTH = 2000  # chars, longer lines are truncated

# Covers all standard ANSI/VT100 escape sequences
_ANSI_RE = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

# key=value patterns keep the key and lose the value; standalone tokens are replaced whole.
_SECRET_PATTERNS = [
    re.compile(r"(?i)(api[_-]?key|secret|token|password|passwd|auth)\s*[=:]\s*\S{8,}"),
    re.compile(r"(?i)sk-[a-zA-Z0-9]{20,}"),
    re.compile(r"(?i)ghp_[a-zA-Z0-9]{30,}"),
    re.compile(r"(?i)postgres(?:ql)?://[^\s'\"]+"),
    re.compile(r"(?i)redis://[^\s'\"]+"),
    re.compile(r"(?i)mongodb(?:\+srv)?://[^\s'\"]+"),
    re.compile(r"AKIA[0-9A-Z]{16}"),
]


def _redact(match: re.Match) -> str:
    matched = match.group(0)
    sep = re.search(r"[=:]\s*", matched)
    if sep and not matched.lower().startswith(("postgres", "redis", "mongodb")):
        return matched[: sep.end()] + "[REDACTED]"
    return "[REDACTED]"


def sanitize_line(line: str) -> str:
    clean = _ANSI_RE.sub("", line).rstrip("\r")
    for pattern in _SECRET_PATTERNS:
        clean = pattern.sub(_redact, clean)
    if len(clean) > MAX_LINE_LENGTH:
        clean = clean[:MAX_LINE_LENGTH] + "...[truncated]"
    return clean


class LogPublisher:
    """Single publisher for the lifetime of a worker process."""

    def __init__(
        self,
        bus: EventBus,
        topic: str,
        partition_key: str,
        project_uri: str,
        deployment_id: str,
        event_id: str,
        lifecycle: WorkerLifecycle,
    ) -> None:
        self._bus = bus
        self._topic = topic
        self._partition_key = partition_key
        self.project_uri = project_uri
        self.deployment_id = deployment_id
        self.event_id = event_id
        self._lifecycle = lifecycle
        self._connected = False
        self._buffers = {"stdout": "", "stderr": ""}
        self.published = 0
        self.dropped = 0

    async def start(self) -> None:
        """Open the bus connection once. Errors propagate: no bus, no build."""
        if self._connected:
            return
        await self._bus.connect()
        self._connected = True
        logger.info("log_publisher_connected", topic=self._topic)

    # -----------------------------------------------------------------------
    # Output callbacks
    # -----------------------------------------------------------------------

    async def on_stdout(self, chunk: str) -> None:
        await self._feed("stdout", chunk)

    async def on_stderr(self, chunk: str) -> None:
        await self._feed("stderr", chunk)

    async def flush(self) -> None:
        """Publish whatever is left in the buffers (a last line without newline)."""
        for source, remainder in self._buffers.items():
            if remainder:
                self._buffers[source] = ""
                await self._write(remainder)

    async def publish_line(self, text: str) -> bool:
        """Publish a worker-authored line (status markers, errors) immediately."""
        return await self._write(text)

    async def publish_completed(self, outcome: BuildOutcome) -> bool:
        message = BuildCompletedMessage(
            project_uri=self.project_uri,
            deployment_id=self.deployment_id,
            event_id=self.event_id,
            outcome=outcome,
        )
        return await self._send(encode_message(message))

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _feed(self, source: str, chunk: str) -> None:
        buffered = self._buffers[source] + chunk
        lines = buffered.split("\n")
        # Last element is the incomplete remainder ("" when the chunk ended with \n)
        self._buffers[source] = lines[-1]
        for line in lines[:-1]:
            await self._write(line)

    async def _write(self, line: str) -> bool:
        if not line.strip():
            return False
        message = LogMessage(
            project_uri=self.project_uri,
            deployment_id=self.deployment_id,
            log=sanitize_line(line),
            event_id=self.event_id,
        )
        return await self._send(encode_message(message))

    async def _send(self, value: str) -> bool:
        """Publish one payload. Bus errors are logged, never raised into the build."""
        try:
            self._lifecycle.ensure_running()
        except WorkerShutdownError:
            self.dropped += 1
            logger.debug("log_line_dropped_after_shutdown")
            return False

        try:
            await self._bus.publish(self._topic, self._partition_key, value)
        except EventBusError as exc:
            self.dropped += 1
            logger.warning("log_publish_failed", error=str(exc))
            return False
        self.published += 1
        return True
