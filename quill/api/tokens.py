"""Token estimation and usage accounting.

The estimator is a pure heuristic (no tokenizer): it is used to decide
when to compact and to report savings, not for billing. Billing-grade
numbers come from the API usage payloads accumulated by UsageTracker.
"""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass, field
from typing import Any

from quill.api.models import (
    ContentBlock,
    MediaBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)

MESSAGE_OVERHEAD = 4
TOOL_USE_OVERHEAD = 50
MEDIA_TOKENS = 1500
TOKENS_PER_WORD = 1.3

DEFAULT_CONTEXT_LIMIT = 200_000

# Context window per model family prefix
MODEL_CONTEXT_LIMITS: dict[str, int] = {
    "claude-3-opus": 200_000,
    "claude-3-5-sonnet": 200_000,
    "claude-3-haiku": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-2.1": 200_000,
    "claude-2.0": 100_000,
    "claude-instant-1.2": 100_000,
}

# USD per million tokens
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-3-opus": {"input": 15.00, "output": 75.00, "cache_write": 18.75, "cache_read": 1.50},
    "claude-opus-4": {"input": 15.00, "output": 75.00, "cache_write": 18.75, "cache_read": 1.50},
    "claude-3-5-sonnet": {"input": 3.00, "output": 15.00, "cache_write": 3.75, "cache_read": 0.30},
    "claude-sonnet-4": {"input": 3.00, "output": 15.00, "cache_write": 3.75, "cache_read": 0.30},
    "claude-3-haiku": {"input": 0.25, "output": 1.25, "cache_write": 0.30, "cache_read": 0.03},
}


def _lookup(table: dict[str, Any], model: str) -> Any | None:
    for prefix, value in table.items():
        if model.startswith(prefix):
            return value
    return None


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts for text, blocks and message lists.

    Text cost is the larger of a word-based (1.3 tokens/word) and a
    char-based (chars x ratio, chars/4 by default) estimate. The char
    ratio can be calibrated from actual API input_tokens.

    For a fixed ratio every estimate is a pure function of its input,
    and appending a message never lowers the estimate of a list.
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio: float = ratio  # tokens per char
        self._samples: int = 0

    @property
    def samples(self) -> int:
        """Number of calibration samples received."""
        return self._samples

    @property
    def ratio(self) -> float:
        """Current tokens-per-char ratio."""
        return self._ratio

    def estimate_text(self, text: str | Any) -> int:
        """Estimate token count for text (non-strings are JSON-encoded)."""
        if text is None:
            return 0
        if not isinstance(text, str):
            text = json.dumps(text, sort_keys=True, default=str)
        if not text:
            return 0
        words = len(text.split())
        word_based = math.ceil(words * TOKENS_PER_WORD)
        char_based = math.ceil(len(text) * self._ratio)
        return max(word_based, char_based)

    def estimate_block(self, block: ContentBlock) -> int:
        if isinstance(block, (TextBlock, ThinkingBlock)):
            return self.estimate_text(block.text)
        if isinstance(block, ToolUseBlock):
            return TOOL_USE_OVERHEAD + self.estimate_text(block.input)
        if isinstance(block, ToolResultBlock):
            return self.estimate_text(block.content)
        if isinstance(block, MediaBlock):
            return MEDIA_TOKENS
        return 0

    def estimate_message(self, message: Message) -> int:
        total = MESSAGE_OVERHEAD + sum(self.estimate_block(b) for b in message.content)
        if message.thinking:
            total += self.estimate_text(message.thinking)
        return total

    def estimate_messages(self, messages: list[Message]) -> int:
        """Estimate total tokens for a message list."""
        return sum(self.estimate_message(m) for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        """Update ratio from actual API input_tokens. EMA with alpha=0.1."""
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


# ------------------------------------------------------------------
# Usage tracking
# ------------------------------------------------------------------


@dataclass
class UsageSample:
    timestamp: float
    input: int
    output: int
    cache_creation: int
    cache_read: int


@dataclass
class UsageTracker:
    """Accumulates API usage for one conversation and prices it."""

    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    history: list[UsageSample] = field(default_factory=list)

    @property
    def context_limit(self) -> int:
        return _lookup(MODEL_CONTEXT_LIMITS, self.model) or DEFAULT_CONTEXT_LIMIT

    def update(self, usage: dict[str, Any] | None) -> TokenUsage:
        if not usage:
            return self.usage
        self.usage.add(usage)
        self.history.append(UsageSample(
            timestamp=time.time(),
            input=int(usage.get("input_tokens") or 0),
            output=int(usage.get("output_tokens") or 0),
            cache_creation=int(usage.get("cache_creation_input_tokens") or 0),
            cache_read=int(usage.get("cache_read_input_tokens") or 0),
        ))
        return self.usage

    def cost(self) -> dict[str, float] | None:
        """Cost in USD by category, or None for models without pricing."""
        pricing = _lookup(MODEL_PRICING, self.model)
        if pricing is None:
            return None
        cost = {
            "input": self.usage.input / 1_000_000 * pricing["input"],
            "output": self.usage.output / 1_000_000 * pricing["output"],
            "cache_write": self.usage.cache_creation / 1_000_000 * pricing["cache_write"],
            "cache_read": self.usage.cache_read / 1_000_000 * pricing["cache_read"],
        }
        cost["total"] = sum(cost.values())
        return cost

    def summary(self) -> dict[str, Any]:
        limit = self.context_limit
        cost = self.cost()
        return {
            "tokens": {
                "used": self.usage.total,
                "limit": limit,
                "percentage": f"{self.usage.total / limit * 100:.1f}%",
                "remaining": max(0, limit - self.usage.total),
            },
            "breakdown": {
                "input": self.usage.input,
                "output": self.usage.output,
                "cache": self.usage.cache_creation + self.usage.cache_read,
            },
            "cost": {k: f"${v:.4f}" for k, v in cost.items()} if cost else None,
        }

    def reset(self) -> None:
        self.usage = TokenUsage()
        self.history.clear()


def format_token_count(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 1_000_000:
        return f"{count / 1000:.1f}k"
    return f"{count / 1_000_000:.2f}M"
