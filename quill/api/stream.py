"""Server-sent event decoding for the streaming Messages API.

StreamDecoder turns raw bytes (split at arbitrary points by the transport)
into typed StreamEvents. Only `data:` lines carry payloads; `event:` lines,
comments and blank lines are ignored. `data: [DONE]` ends the stream.

Malformed JSON is dropped with a ProtocolWarning (logged and recorded on
the decoder). An in-stream `error` event raises ProtocolError and ends the
stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from quill.errors import ProtocolError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"

KNOWN_EVENT_TYPES = frozenset({
    "message_start",
    "content_block_start",
    "content_block_delta",
    "content_block_stop",
    "message_delta",
    "message_stop",
    "error",
})


class ProtocolWarning(UserWarning):
    """A payload that could not be decoded and was skipped."""


@dataclass
class StreamEvent:
    """A single decoded protocol event."""

    type: str  # content_block_start, content_block_delta, ..., message_stop
    index: int = 0
    content_block: dict[str, Any] = field(default_factory=dict)
    delta: dict[str, Any] = field(default_factory=dict)
    usage: dict[str, Any] | None = None
    stop_reason: str | None = None


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Convert one decoded payload into a StreamEvent.

    Returns None for keepalives and unknown event types. Raises
    ProtocolError for in-stream error events (HTTP 200 but error body).
    """
    event_type = data.get("type")

    if event_type == "error":
        error = data.get("error") or {}
        error_type = error.get("type", "unknown")
        raise ProtocolError(f"{error_type}: {error.get('message', '')}", error_type=error_type)

    if event_type not in KNOWN_EVENT_TYPES:
        if event_type != "ping":
            logger.debug("Skipping unknown stream event type: %s", event_type)
        return None

    index = data.get("index", 0) or 0

    if event_type == "message_start":
        message = data.get("message") or {}
        return StreamEvent(type=event_type, usage=message.get("usage"))

    if event_type == "content_block_start":
        return StreamEvent(type=event_type, index=index, content_block=data.get("content_block") or {})

    if event_type == "content_block_delta":
        return StreamEvent(type=event_type, index=index, delta=data.get("delta") or {})

    if event_type == "content_block_stop":
        return StreamEvent(type=event_type, index=index)

    if event_type == "message_delta":
        # Usage may sit at the top level (current API) or inside delta
        delta = data.get("delta") or {}
        usage = data.get("usage") or delta.get("usage")
        return StreamEvent(
            type=event_type,
            delta=delta,
            usage=usage,
            stop_reason=delta.get("stop_reason"),
        )

    return StreamEvent(type="message_stop")


class StreamDecoder:
    """Incremental SSE decoder.

    feed() is the synchronous core: it accepts the next chunk and returns
    every event completed by it. decode() wraps an async byte source in a
    lazy, finite, non-restartable event stream.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._done = False
        self._consumed = False
        self.warnings: list[ProtocolWarning] = []

    @property
    def done(self) -> bool:
        """True once [DONE], message_stop or an error event was seen."""
        return self._done

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if self._done:
            return []
        text = chunk if isinstance(chunk, str) else self._utf8.decode(chunk)
        self._buffer += text

        events: list[StreamEvent] = []
        while not self._done:
            newline = self._buffer.find("\n")
            if newline < 0:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1 :]
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[StreamEvent]:
        """Process a trailing line that arrived without a newline."""
        if self._done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if not tail.strip():
            return []
        event = self._process_line(tail.rstrip("\r"))
        return [event] if event is not None else []

    def _process_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            return None
        if payload == DONE_MARKER:
            self._done = True
            return None

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            self._warn(f"Malformed JSON payload dropped ({e.msg}): {payload[:200]}")
            return None
        if not isinstance(data, dict):
            self._warn(f"Non-object payload dropped: {payload[:200]}")
            return None

        try:
            event = parse_sse_event(data)
        except ProtocolError:
            self._done = True
            raise
        if event is not None and event.type == "message_stop":
            self._done = True
        return event

    def _warn(self, message: str) -> None:
        warning = ProtocolWarning(message)
        self.warnings.append(warning)
        logger.warning("ProtocolWarning: %s", message)

    async def decode(self, source: AsyncIterable[bytes]) -> AsyncIterator[StreamEvent]:
        """Yield events from an async byte source until the stream ends."""
        if self._consumed:
            raise RuntimeError("StreamDecoder.decode() can only be consumed once")
        self._consumed = True

        async for chunk in source:
            for event in self.feed(chunk):
                yield event
            if self._done:
                return
        for event in self.flush():
            yield event
