"""Tests for token estimation and usage accounting.

- TestTokenEstimator: text, blocks, messages, monotonicity, calibration
- TestUsageTracker: accumulation, pricing, summary
"""

from __future__ import annotations

import pytest

from quill.api.models import (
    MediaBlock,
    Message,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from quill.api.tokens import (
    MEDIA_TOKENS,
    MESSAGE_OVERHEAD,
    TOOL_USE_OVERHEAD,
    TokenEstimator,
    UsageTracker,
    format_token_count,
)


# ===========================================================================
# TokenEstimator
# ===========================================================================


class TestTokenEstimator:
    def test_empty_text(self):
        estimator = TokenEstimator()
        assert estimator.estimate_text("") == 0
        assert estimator.estimate_text(None) == 0

    def test_word_based_wins_for_short_words(self):
        # 10 words of 1 char: 13 by words, 5 by chars
        assert TokenEstimator().estimate_text("a b c d e f g h i j") == 13

    def test_char_based_wins_for_long_words(self):
        assert TokenEstimator().estimate_text("x" * 400) == 100

    def test_structured_content_encoded_as_json(self):
        estimator = TokenEstimator()
        assert estimator.estimate_text({"b": 1, "a": 2}) == estimator.estimate_text('{"a": 2, "b": 1}')

    def test_block_costs(self):
        estimator = TokenEstimator()
        assert estimator.estimate_block(TextBlock(text="x" * 40)) == 10
        assert estimator.estimate_block(ThinkingBlock(text="x" * 40)) == 10
        assert estimator.estimate_block(ToolUseBlock(id="t", name="Read", input={})) == TOOL_USE_OVERHEAD + 2
        assert estimator.estimate_block(ToolResultBlock(tool_use_id="t", content="x" * 80)) == 20
        assert estimator.estimate_block(MediaBlock(media_type="image/png", data="AAAA")) == MEDIA_TOKENS

    def test_structured_tool_result(self):
        estimator = TokenEstimator()
        content = [{"type": "text", "text": "hello"}]
        block = ToolResultBlock(tool_use_id="t", content=content)
        assert estimator.estimate_block(block) == estimator.estimate_text(content)

    def test_message_overhead_and_thinking(self):
        estimator = TokenEstimator()
        message = Message(role="assistant", content=[TextBlock(text="x" * 40)], thinking="y" * 40)
        assert estimator.estimate_message(message) == MESSAGE_OVERHEAD + 10 + 10
        assert estimator.estimate_message(Message(role="user")) == MESSAGE_OVERHEAD

    def test_appending_never_decreases_estimate(self):
        estimator = TokenEstimator()
        samples = [
            Message.user("hello"),
            Message(role="assistant", content=[]),
            Message(role="assistant", content=[ToolUseBlock(id="t1", name="Bash", input={"command": "ls"})]),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t1", content="")]),
            Message.system("summary " * 50),
            Message.user("", attachments=[MediaBlock(media_type="image/png", data="AAAA")]),
        ]
        messages: list[Message] = []
        previous = estimator.estimate_messages(messages)
        for message in samples * 3:
            messages.append(message)
            current = estimator.estimate_messages(messages)
            assert current >= previous
            previous = current

    def test_estimates_are_pure(self):
        estimator = TokenEstimator()
        messages = [Message.user("repeatable input " * 20)]
        assert estimator.estimate_messages(messages) == estimator.estimate_messages(messages)

    def test_calibrate_moves_ratio_toward_observed(self):
        estimator = TokenEstimator()
        estimator.calibrate(1000, 500)
        assert estimator.ratio == pytest.approx(0.275)
        assert estimator.samples == 1

    def test_calibrate_ignores_non_positive(self):
        estimator = TokenEstimator()
        estimator.calibrate(0, 100)
        estimator.calibrate(100, 0)
        assert estimator.ratio == 0.25
        assert estimator.samples == 0


# ===========================================================================
# UsageTracker
# ===========================================================================


class TestUsageTracker:
    def test_accumulates_usage(self):
        tracker = UsageTracker(model="claude-sonnet-4-5-20250514")
        tracker.update({"input_tokens": 100, "output_tokens": 20, "cache_read_input_tokens": 50})
        tracker.update({"input_tokens": 10, "output_tokens": 5})
        tracker.update(None)

        assert tracker.usage.input == 110
        assert tracker.usage.output == 25
        assert tracker.usage.cache_read == 50
        assert tracker.usage.total == 135
        assert len(tracker.history) == 2

    def test_shares_usage_object(self):
        usage = TokenUsage()
        tracker = UsageTracker(model="claude-sonnet-4-5", usage=usage)
        tracker.update({"input_tokens": 7})
        assert usage.input == 7

    def test_cost(self):
        tracker = UsageTracker(model="claude-sonnet-4-5-20250514")
        tracker.update({"input_tokens": 1_000_000, "output_tokens": 200_000})
        cost = tracker.cost()
        assert cost["input"] == pytest.approx(3.0)
        assert cost["output"] == pytest.approx(3.0)
        assert cost["total"] == pytest.approx(6.0)

    def test_unknown_model_has_no_cost(self):
        tracker = UsageTracker(model="some-local-model")
        tracker.update({"input_tokens": 10})
        assert tracker.cost() is None
        assert tracker.summary()["cost"] is None
        assert tracker.context_limit == 200_000

    def test_summary(self):
        tracker = UsageTracker(model="claude-2.0")
        tracker.update({"input_tokens": 40_000, "output_tokens": 10_000, "cache_creation_input_tokens": 5})
        summary = tracker.summary()
        assert summary["tokens"]["limit"] == 100_000
        assert summary["tokens"]["used"] == 50_000
        assert summary["tokens"]["percentage"] == "50.0%"
        assert summary["tokens"]["remaining"] == 50_000
        assert summary["breakdown"]["cache"] == 5

    def test_reset(self):
        tracker = UsageTracker(model="claude-opus-4")
        tracker.update({"input_tokens": 10})
        tracker.reset()
        assert tracker.usage.total == 0
        assert tracker.history == []

    def test_negative_counts_ignored(self):
        usage = TokenUsage().add({"input_tokens": -5, "output_tokens": None})
        assert usage.as_dict() == {"input": 0, "output": 0, "cache_creation": 0, "cache_read": 0, "total": 0}

    @pytest.mark.parametrize(
        ("count", "expected"),
        [(999, "999"), (1500, "1.5k"), (2_500_000, "2.50M")],
    )
    def test_format_token_count(self, count, expected):
        assert format_token_count(count) == expected
