"""Builds one assistant Message per model turn from decoded stream events.

The assembler is a small state machine (NONE, IN_TEXT, IN_THINKING,
IN_TOOL_USE). Text deltas are surfaced immediately for display, and each
tool call is surfaced as soon as its block closes so execution can start
before the turn ends.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Union

from quill.api.models import (
    ContentBlock,
    Message,
    TextBlock,
    ToolCallRequest,
    ToolUseBlock,
)
from quill.api.stream import StreamEvent

logger = logging.getLogger(__name__)


class AssemblerState(StrEnum):
    NONE = "none"
    IN_TEXT = "in_text"
    IN_THINKING = "in_thinking"
    IN_TOOL_USE = "in_tool_use"


@dataclass
class TextDelta:
    text: str


@dataclass
class ThinkingComplete:
    text: str


@dataclass
class ToolCallReady:
    request: ToolCallRequest


@dataclass
class UsageUpdate:
    usage: dict[str, Any]


@dataclass
class TurnComplete:
    message: Message
    stop_reason: str | None = None


AssemblerOutput = Union[TextDelta, ThinkingComplete, ToolCallReady, UsageUpdate, TurnComplete]


@dataclass
class _ToolAccumulator:
    id: str
    name: str
    parts: list[str] = field(default_factory=list)
    initial_input: Any = None

    def finish(self) -> Any:
        """Parse accumulated JSON. Empty input is {}; malformed input stays a raw string."""
        raw = "".join(self.parts)
        if not raw.strip():
            return self.initial_input if isinstance(self.initial_input, dict) else {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed input for tool %s (%s); keeping raw string", self.name, self.id)
            return raw


class ContentAssembler:
    """Consumes StreamEvents for one model turn.

    `message_index` is the position the finished message will take in the
    conversation; it is stamped on every ToolCallRequest.
    """

    def __init__(self, message_index: int = -1) -> None:
        self._message_index = message_index
        self.state = AssemblerState.NONE
        self._content: list[ContentBlock] = []
        self._open_text: TextBlock | None = None
        self._thinking_parts: list[str] = []
        self._thinking: list[str] = []
        self._tool: _ToolAccumulator | None = None
        self._usage: dict[str, Any] = {}
        self._stop_reason: str | None = None
        self.complete = False

    @property
    def usage(self) -> dict[str, Any]:
        return dict(self._usage)

    def process(self, event: StreamEvent) -> list[AssemblerOutput]:
        """Advance the state machine by one event."""
        if self.complete:
            return []

        if event.type == "message_start":
            return self._record_usage(event.usage)

        if event.type == "content_block_start":
            return self._start_block(event)

        if event.type == "content_block_delta":
            return self._apply_delta(event.delta)

        if event.type == "content_block_stop":
            return self._stop_block()

        if event.type == "message_delta":
            if event.stop_reason:
                self._stop_reason = event.stop_reason
            return self._record_usage(event.usage)

        if event.type == "message_stop":
            outputs = self._stop_block() if self.state != AssemblerState.NONE else []
            self.complete = True
            outputs.append(TurnComplete(message=self._build_message(), stop_reason=self._stop_reason))
            return outputs

        return []

    async def assemble(self, events: AsyncIterable[StreamEvent]) -> AsyncIterator[AssemblerOutput]:
        async for event in events:
            for output in self.process(event):
                yield output

    def partial_message(self) -> Message:
        """In-progress message, with any open tool call closed as raw input."""
        content = [b for b in self._content if not (isinstance(b, TextBlock) and not b.text)]
        if self.state == AssemblerState.IN_TOOL_USE and self._tool is not None:
            raw = "".join(self._tool.parts)
            content.append(ToolUseBlock(id=self._tool.id, name=self._tool.name, input=raw or {}))
        thinking = list(self._thinking)
        if self.state == AssemblerState.IN_THINKING and self._thinking_parts:
            thinking.append("".join(self._thinking_parts))
        return Message(
            role="assistant",
            content=content,
            thinking="\n\n".join(thinking) or None,
            usage=self.usage or None,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _start_block(self, event: StreamEvent) -> list[AssemblerOutput]:
        outputs: list[AssemblerOutput] = []
        if self.state != AssemblerState.NONE:
            # Previous block never got its stop event
            outputs.extend(self._stop_block())

        block = event.content_block
        kind = block.get("type", "text")
        if kind in ("thinking", "redacted_thinking"):
            self.state = AssemblerState.IN_THINKING
            self._thinking_parts = [block.get("thinking", "")] if block.get("thinking") else []
        elif kind == "tool_use":
            self.state = AssemblerState.IN_TOOL_USE
            self._open_text = None
            self._tool = _ToolAccumulator(
                id=block.get("id", ""),
                name=block.get("name", ""),
                initial_input=block.get("input"),
            )
        else:
            self.state = AssemblerState.IN_TEXT
            self._open_text = TextBlock(text="")
            self._content.append(self._open_text)
            initial = block.get("text", "")
            if initial:
                self._open_text.text += initial
                outputs.append(TextDelta(text=initial))
        return outputs

    def _apply_delta(self, delta: dict[str, Any]) -> list[AssemblerOutput]:
        if self.state == AssemblerState.IN_THINKING:
            piece = delta.get("thinking")
            if piece is None:
                piece = delta.get("text")
            if piece:
                self._thinking_parts.append(piece)
            return []

        if self.state == AssemblerState.IN_TOOL_USE:
            if self._tool is not None and delta.get("partial_json"):
                self._tool.parts.append(delta["partial_json"])
            return []

        text = delta.get("text")
        if not text:
            return []
        if self._open_text is None:
            self._open_text = TextBlock(text="")
            self._content.append(self._open_text)
        self._open_text.text += text
        return [TextDelta(text=text)]

    def _stop_block(self) -> list[AssemblerOutput]:
        outputs: list[AssemblerOutput] = []
        if self.state == AssemblerState.IN_THINKING:
            text = "".join(self._thinking_parts)
            self._thinking_parts = []
            if text:
                self._thinking.append(text)
                outputs.append(ThinkingComplete(text=text))
        elif self.state == AssemblerState.IN_TOOL_USE and self._tool is not None:
            block = ToolUseBlock(id=self._tool.id, name=self._tool.name, input=self._tool.finish())
            self._tool = None
            self._content.append(block)
            outputs.append(ToolCallReady(ToolCallRequest.from_block(block, self._message_index)))
        elif self.state == AssemblerState.IN_TEXT:
            self._open_text = None
        self.state = AssemblerState.NONE
        return outputs

    def _record_usage(self, usage: dict[str, Any] | None) -> list[AssemblerOutput]:
        if not usage:
            return []
        for key, value in usage.items():
            if isinstance(value, int):
                self._usage[key] = value
        return [UsageUpdate(usage=dict(usage))]

    def _build_message(self) -> Message:
        # Empty text blocks are dropped; the API rejects them on replay
        content = [b for b in self._content if not (isinstance(b, TextBlock) and not b.text)]
        return Message(
            role="assistant",
            content=content,
            thinking="\n\n".join(self._thinking) or None,
            usage=self.usage or None,
        )
