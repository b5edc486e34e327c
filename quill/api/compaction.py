"""History compaction: boundary scoring plus a structured summary.

When the estimated history size crosses the threshold, the compactor picks
a boundary near `len(messages) * target_ratio`, summarizes everything
before it into one system message, preserves critical tool calls verbatim
in a second system message, and keeps the boundary message and everything
after it untouched. No model call is made; the summary is built from
message statistics.

A boundary never separates a tool use from its result, and never lands
inside a chained tool sequence (a tool result immediately followed by the
assistant's next tool call).
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from quill.api.models import (
    CompactionBoundary,
    CompactionReport,
    MediaBlock,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from quill.api.tokens import TokenEstimator
from quill.config import Settings
from quill.errors import CompactionError
from quill.utils import text_overlap, truncate

logger = logging.getLogger(__name__)

BASE_SCORE = 100
AFTER_TOOL_RESULT_BONUS = 50
AFTER_ASSISTANT_BONUS = 30
TOOL_SEQUENCE_PENALTY = 100
NATURAL_BREAK_BONUS = 20
NEARBY_ERROR_PENALTY = 30
TOPIC_CHANGE_BONUS = 25

ERROR_DISTANCE = 2
CONVERSATION_GAP = timedelta(minutes=5)
TOPIC_OVERLAP_THRESHOLD = 0.2

MAX_USER_REQUESTS = 5
USER_REQUEST_CHARS = 200

SUMMARY_HEADER = "# Previous Conversation Summary"
PRESERVED_HEADER = "## Preserved Tool Calls"
_OMITTED_LINE = re.compile(r"^\((\d+) earlier critical calls omitted\)$")

_FILE_MUTATION_WORDS = ("write", "edit", "create", "modify", "notebook")
_SHELL_WORDS = ("bash", "shell", "execute")
_MUTATING_COMMAND = re.compile(
    r"(?:^|[;&|]\s*)(?:sudo\s+)?"
    r"(?:rm|mv|cp|mkdir|rmdir|touch|chmod|chown|ln|dd|truncate|kill|pkill|"
    r"sed\s+-i|git\s+(?:commit|push|reset|checkout|merge|rebase|rm|mv|apply|stash|clean|tag)|"
    r"npm\s+(?:install|i|uninstall|publish)|pip3?\s+(?:install|uninstall)|yarn\s+(?:add|remove)|"
    r"apt(?:-get)?\s+(?:install|remove|purge)|brew\s+(?:install|uninstall))\b"
    r"|>"
)


@dataclass
class CompactionResult:
    messages: list[Message]
    report: CompactionReport


@dataclass
class _Groups:
    """Messages before the boundary, grouped by kind."""

    user_inputs: list[str] = field(default_factory=list)
    assistant_responses: list[str] = field(default_factory=list)
    tool_calls: list[ToolUseBlock] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    media: int = 0
    prior_summaries: int = 0
    prior_preserved: list[str] = field(default_factory=list)
    prior_omitted: int = 0
    results: dict[str, ToolResultBlock] = field(default_factory=dict)


def categorize_tool_call(name: str) -> str:
    lowered = name.lower()
    if "bash" in lowered or "shell" in lowered:
        return "Command execution"
    if "write" in lowered or "create" in lowered:
        return "File creation"
    if "edit" in lowered or "modify" in lowered:
        return "File modification"
    if "read" in lowered or "view" in lowered:
        return "File reading"
    if "search" in lowered or "grep" in lowered:
        return "Searching"
    if "web" in lowered or "fetch" in lowered:
        return "Web access"
    return "Other operations"


def is_mutating_command(command: str) -> bool:
    return bool(_MUTATING_COMMAND.search(command.strip()))


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _format_preserved(call: ToolUseBlock, result: ToolResultBlock | None) -> str:
    entry = f"- {call.name} {json.dumps(call.input, sort_keys=True, default=str)}"
    if result is not None and result.is_error:
        entry += f"\n  Error: {result.text}"
    return entry


def _carry_preserved(text: str, groups: _Groups) -> None:
    """Collect the entries of an earlier preserved-calls block."""
    entries: list[str] = []
    # Header and intro line come first
    for line in text.splitlines()[2:]:
        omitted = _OMITTED_LINE.match(line)
        if omitted:
            groups.prior_omitted += int(omitted.group(1))
        elif line.startswith("- "):
            entries.append(line)
        elif entries:
            entries[-1] += "\n" + line
    groups.prior_preserved.extend(entries)


class ContextCompactor:
    """Decides when and where to compact, and builds the rewritten history."""

    def __init__(self, settings: Settings, estimator: TokenEstimator | None = None) -> None:
        self._settings = settings
        self.estimator = estimator or TokenEstimator()

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def needs_compaction(self, messages: list[Message]) -> bool:
        count = len(messages)
        if count < self._settings.compaction_min_messages:
            return False
        if count > self._settings.compaction_max_messages:
            return True
        return self.estimator.estimate_messages(messages) >= self._settings.compaction_threshold

    def stats(self, messages: list[Message]) -> dict[str, object]:
        tokens = self.estimator.estimate_messages(messages)
        threshold = self._settings.compaction_threshold
        needs = self.needs_compaction(messages)
        return {
            "token_count": tokens,
            "threshold": threshold,
            "percentage_full": f"{tokens / threshold * 100:.1f}%",
            "needs_compaction": needs,
            "message_count": len(messages),
            "estimated_savings": int(tokens * (1 - self._settings.compaction_target_ratio))
            if needs
            else 0,
        }

    # ------------------------------------------------------------------
    # Boundary search
    # ------------------------------------------------------------------

    def find_boundary(self, messages: list[Message]) -> CompactionBoundary | None:
        """Best-scoring index in the window around the target, or None."""
        count = len(messages)
        if count < 2:
            return None
        target = int(count * self._settings.compaction_target_ratio)
        window = self._settings.compaction_window
        low = max(1, target - window)
        high = min(count - 1, target + window)

        result_index = self._result_positions(messages)
        best: CompactionBoundary | None = None
        best_key: tuple[int, int] | None = None
        for index in range(low, high + 1):
            if self.splits_tool_sequence(messages, index, result_index):
                continue
            score = self.score_boundary(messages, index, result_index)
            key = (score, -abs(index - target))
            if best_key is None or key > best_key:
                best_key = key
                best = CompactionBoundary(index=index, score=score)

        if best is None:
            logger.info(
                "No acceptable compaction boundary in [%d, %d] of %d messages", low, high, count
            )
        return best

    @staticmethod
    def _result_positions(messages: list[Message]) -> dict[str, int]:
        positions: dict[str, int] = {}
        for index, message in enumerate(messages):
            for result in message.tool_results:
                positions.setdefault(result.tool_use_id, index)
        return positions

    def splits_tool_sequence(
        self,
        messages: list[Message],
        index: int,
        result_index: dict[str, int] | None = None,
    ) -> bool:
        """True if cutting before `index` separates a tool pair or a chained sequence."""
        if index <= 0 or index >= len(messages):
            return False
        if result_index is None:
            result_index = self._result_positions(messages)

        for message in messages[:index]:
            for use in message.tool_uses:
                answered_at = result_index.get(use.id)
                if answered_at is not None and answered_at >= index:
                    return True

        prev, current = messages[index - 1], messages[index]
        return prev.is_tool_result_message and current.role == "assistant" and bool(current.tool_uses)

    def score_boundary(
        self,
        messages: list[Message],
        index: int,
        result_index: dict[str, int] | None = None,
    ) -> int:
        prev, current = messages[index - 1], messages[index]
        score = BASE_SCORE

        if prev.is_tool_result_message:
            score += AFTER_TOOL_RESULT_BONUS
        if prev.role == "assistant":
            score += AFTER_ASSISTANT_BONUS
        if self.splits_tool_sequence(messages, index, result_index):
            score -= TOOL_SEQUENCE_PENALTY

        topic_change = self._is_topic_change(messages, index)
        if self._is_natural_break(prev, current) or topic_change:
            score += NATURAL_BREAK_BONUS

        low = max(0, index - ERROR_DISTANCE)
        high = min(len(messages), index + ERROR_DISTANCE + 1)
        if any(m.has_error for m in messages[low:high]):
            score -= NEARBY_ERROR_PENALTY

        if topic_change:
            score += TOPIC_CHANGE_BONUS
        return score

    @staticmethod
    def _is_natural_break(prev: Message, current: Message) -> bool:
        if (
            prev.role == "user"
            and current.role == "user"
            and not prev.is_tool_result_message
            and not current.is_tool_result_message
        ):
            return True
        return current.created_at - prev.created_at > CONVERSATION_GAP

    @staticmethod
    def _is_topic_change(messages: list[Message], index: int) -> bool:
        """Low word overlap between the user texts on either side of the boundary."""
        before = next(
            (m.text for m in reversed(messages[:index]) if m.role == "user" and m.text),
            None,
        )
        after = next(
            (m.text for m in messages[index:] if m.role == "user" and m.text),
            None,
        )
        if not before or not after:
            return False
        return text_overlap(before, after) < TOPIC_OVERLAP_THRESHOLD

    # ------------------------------------------------------------------
    # Rewrite
    # ------------------------------------------------------------------

    def compact(self, messages: list[Message]) -> CompactionResult | None:
        """Rewrite history, or return None when no boundary is acceptable.

        Raises CompactionError when the rewrite itself fails; the input
        list is never modified.
        """
        try:
            boundary = self.find_boundary(messages)
            if boundary is None:
                return None
            return self._rewrite(messages, boundary)
        except Exception as e:
            raise CompactionError(f"Compaction of {len(messages)} messages failed: {e}") from e

    def _rewrite(self, messages: list[Message], boundary: CompactionBoundary) -> CompactionResult:
        pre_tokens = self.estimator.estimate_messages(messages)
        compacted = messages[: boundary.index]
        groups = self._group(compacted)

        new_messages: list[Message] = [Message.system(self._summary_text(groups, boundary))]
        preserved = self._preserved_calls_text(groups)
        if preserved:
            new_messages.append(Message.system(preserved))
        new_messages.extend(messages[boundary.index :])

        post_tokens = self.estimator.estimate_messages(new_messages)
        report = CompactionReport(
            original_count=len(messages),
            compacted_count=len(new_messages),
            token_savings=pre_tokens - post_tokens,
            pre_compact_tokens=pre_tokens,
            post_compact_tokens=post_tokens,
            boundary=boundary,
        )
        logger.info(
            "Compacted %d messages -> %d (boundary=%d score=%d, %d -> %d tokens)",
            report.original_count,
            report.compacted_count,
            boundary.index,
            boundary.score,
            pre_tokens,
            post_tokens,
        )
        return CompactionResult(messages=new_messages, report=report)

    @staticmethod
    def _group(messages: list[Message]) -> _Groups:
        groups = _Groups()
        for message in messages:
            if message.role == "system":
                groups.prior_summaries += 1
                if message.text.startswith(PRESERVED_HEADER):
                    _carry_preserved(message.text, groups)
                continue
            for block in message.content:
                if isinstance(block, MediaBlock):
                    groups.media += 1
                elif isinstance(block, ToolUseBlock):
                    groups.tool_calls.append(block)
                elif isinstance(block, ToolResultBlock):
                    groups.results[block.tool_use_id] = block
                    if block.is_error:
                        groups.errors.append(block.text)
                elif isinstance(block, TextBlock) and block.text:
                    if message.role == "user":
                        groups.user_inputs.append(block.text)
                    else:
                        groups.assistant_responses.append(block.text)
        return groups

    def _summary_text(self, groups: _Groups, boundary: CompactionBoundary) -> str:
        lines = [
            SUMMARY_HEADER,
            f"Compacted {boundary.index} messages at {datetime.now(UTC).isoformat()}",
            "",
            f"User inputs: {len(groups.user_inputs)}",
            f"Assistant responses: {len(groups.assistant_responses)}",
            f"Tool calls: {len(groups.tool_calls)}",
            f"Errors: {len(groups.errors)}",
            f"Media attachments: {groups.media}",
        ]
        if groups.prior_summaries:
            lines.append(f"Earlier summaries folded in: {groups.prior_summaries}")

        if groups.tool_calls:
            lines += ["", "## Tools Used"]
            for name, count in Counter(c.name for c in groups.tool_calls).items():
                lines.append(f"- {name}: {_plural(count, 'time')}")

        lines += ["", "## Summary of Previous Conversation", ""]

        if groups.user_inputs:
            lines.append("### User Requests")
            unique = list(dict.fromkeys(groups.user_inputs))
            for request in unique[:MAX_USER_REQUESTS]:
                lines.append(f"- {truncate(request, USER_REQUEST_CHARS)}")
            if len(groups.user_inputs) > MAX_USER_REQUESTS:
                lines.append(f"- ... and {len(groups.user_inputs) - MAX_USER_REQUESTS} more requests")
            lines.append("")

        if groups.tool_calls:
            lines.append("### Actions Taken")
            for category, count in Counter(categorize_tool_call(c.name) for c in groups.tool_calls).items():
                lines.append(f"- {category}: {_plural(count, 'operation')}")
            lines.append("")

        if groups.errors:
            lines.append("### Issues Encountered")
            lines.append(f"- {_plural(len(groups.errors), 'tool error')} handled")
            lines.append("")

        return "\n".join(lines).rstrip()

    def _is_critical(self, call: ToolUseBlock, result: ToolResultBlock | None) -> bool:
        if result is not None and result.is_error:
            return True
        lowered = call.name.lower()
        if any(word in lowered for word in _SHELL_WORDS):
            command = call.input.get("command", "") if isinstance(call.input, dict) else str(call.input)
            return is_mutating_command(str(command))
        return any(word in lowered for word in _FILE_MUTATION_WORDS)

    def _preserved_calls_text(self, groups: _Groups) -> str | None:
        entries = list(groups.prior_preserved)
        for call in groups.tool_calls:
            result = groups.results.get(call.id)
            if self._is_critical(call, result):
                entries.append(_format_preserved(call, result))
        if not entries:
            return None

        limit = self._settings.compaction_max_preserved_calls
        omitted = groups.prior_omitted + max(0, len(entries) - limit)
        kept = entries[-limit:] if limit > 0 else []

        lines = [
            PRESERVED_HEADER,
            "Tool calls from the compacted history that changed state or failed:",
        ]
        if omitted:
            lines.append(f"({omitted} earlier critical calls omitted)")
        lines.extend(kept)
        return "\n".join(lines)
