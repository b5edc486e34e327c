"""Shared data models for the conversation engine.

Content blocks, messages and the conversation container live here so the
decoder, assembler, coordinator, compactor and engine can all import them
without importing each other.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal, Union

Role = Literal["user", "assistant", "system"]


# ------------------------------------------------------------------
# Content blocks
# ------------------------------------------------------------------


@dataclass
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ThinkingBlock:
    text: str
    type: Literal["thinking"] = "thinking"

    def to_api(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.text}


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: Any  # dict when the streamed JSON parsed, raw string otherwise
    type: Literal["tool_use"] = "tool_use"

    def to_api(self) -> dict[str, Any]:
        # The API only accepts object input; a raw fallback string is wrapped
        tool_input = self.input if isinstance(self.input, dict) else {"raw_input": self.input}
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": tool_input}


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str | list[dict[str, Any]]
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(
            item.get("text", "") for item in self.content if isinstance(item, dict)
        )


@dataclass
class MediaBlock:
    """Image or document attachment supplied with a user message."""

    media_type: str
    data: str  # base64
    kind: Literal["image", "document"] = "image"
    type: Literal["media"] = "media"

    def to_api(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "source": {"type": "base64", "media_type": self.media_type, "data": self.data},
        }


ContentBlock = Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock, MediaBlock]


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    thinking: str | None = None  # Kept apart from visible content
    usage: dict[str, int] | None = None

    @classmethod
    def user(cls, text: str, attachments: list[MediaBlock] | None = None) -> Message:
        blocks: list[ContentBlock] = list(attachments or [])
        blocks.append(TextBlock(text=text))
        return cls(role="user", content=blocks)

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", content=[TextBlock(text=text)])

    @property
    def text(self) -> str:
        """Concatenated visible text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def is_tool_result_message(self) -> bool:
        """User message whose content is tool results rather than typed text."""
        return (
            self.role == "user"
            and len(self.content) > 0
            and isinstance(self.content[0], ToolResultBlock)
        )

    @property
    def has_error(self) -> bool:
        return any(b.is_error for b in self.tool_results)

    def to_api(self) -> dict[str, Any]:
        return {"role": self.role, "content": [b.to_api() for b in self.content]}


@dataclass
class ToolCallRequest:
    """A model-requested tool invocation, derived 1:1 from a ToolUseBlock."""

    id: str
    name: str
    input: Any
    origin_message_index: int = -1

    @classmethod
    def from_block(cls, block: ToolUseBlock, origin_message_index: int = -1) -> ToolCallRequest:
        return cls(
            id=block.id,
            name=block.name,
            input=block.input,
            origin_message_index=origin_message_index,
        )


# ------------------------------------------------------------------
# Accounting and state
# ------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Cumulative token usage. Only ever grows within a conversation."""

    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0
    total: int = 0

    def add(self, usage: dict[str, Any] | None) -> TokenUsage:
        """Accumulate an API usage dict. Negative or missing counts are ignored."""
        if not usage:
            return self
        self.input += max(0, int(usage.get("input_tokens") or 0))
        self.output += max(0, int(usage.get("output_tokens") or 0))
        self.cache_creation += max(0, int(usage.get("cache_creation_input_tokens") or 0))
        self.cache_read += max(0, int(usage.get("cache_read_input_tokens") or 0))
        self.total = self.input + self.output
        return self

    def as_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cache_creation": self.cache_creation,
            "cache_read": self.cache_read,
            "total": self.total,
        }


class ConversationState(StrEnum):
    IDLE = "idle"
    PROCESSING = "processing"
    STREAMING = "streaming"
    AWAITING_TOOLS = "awaiting_tools"
    ERROR = "error"
    TERMINATED = "terminated"


@dataclass
class CompactionBoundary:
    index: int
    score: int


@dataclass
class CompactionReport:
    """Outcome of a single compaction rewrite."""

    original_count: int
    compacted_count: int
    token_savings: int
    pre_compact_tokens: int
    post_compact_tokens: int
    boundary: CompactionBoundary


@dataclass
class Conversation:
    """History, usage and bookkeeping for one session.

    Owned exclusively by the ConversationEngine. Messages are appended
    between turns and replaced wholesale only by compaction.
    """

    session_id: str
    messages: list[Message] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    compaction_count: int = 0
    last_compaction: CompactionReport | None = None

    def append(self, message: Message) -> int:
        self.messages.append(message)
        return len(self.messages) - 1

    def replace_history(self, messages: list[Message], report: CompactionReport) -> None:
        self.messages = list(messages)
        self.compaction_count += 1
        self.last_compaction = report

    def pending_tool_use_ids(self) -> list[str]:
        """ToolUse ids that do not yet have a ToolResult."""
        resolved = {r.tool_use_id for m in self.messages for r in m.tool_results}
        return [
            u.id for m in self.messages for u in m.tool_uses if u.id not in resolved
        ]

    def validate_pairing(self) -> list[str]:
        """Return pairing violations (empty list means the history is valid).

        Every ToolResult must reference a ToolUse in the same or an earlier
        message, and each ToolUse may be answered at most once.
        """
        problems: list[str] = []
        seen_uses: set[str] = set()
        answered: set[str] = set()
        for index, message in enumerate(self.messages):
            for block in message.content:
                if isinstance(block, ToolUseBlock):
                    seen_uses.add(block.id)
                elif isinstance(block, ToolResultBlock):
                    if block.tool_use_id not in seen_uses:
                        problems.append(
                            f"message {index}: result for unknown tool use {block.tool_use_id}"
                        )
                    elif block.tool_use_id in answered:
                        problems.append(
                            f"message {index}: duplicate result for {block.tool_use_id}"
                        )
                    answered.add(block.tool_use_id)
        return problems


def block_to_text(block: ContentBlock) -> str:
    """Readable one-line-ish rendering of a block, used for summaries."""
    if isinstance(block, (TextBlock, ThinkingBlock)):
        return block.text
    if isinstance(block, ToolUseBlock):
        return f"{block.name}({json.dumps(block.input, sort_keys=True, default=str)})"
    if isinstance(block, ToolResultBlock):
        return block.text
    return f"[{block.kind}: {block.media_type}]"
