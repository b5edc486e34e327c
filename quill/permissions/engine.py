"""PermissionEngine: decides whether a tool call may run.

Evaluation order is deny rules, then allow rules, then ask rules, then the
mode default. Within one behavior, rule sources are consulted in layering
precedence (cliArg first, flagSettings last) and the first matching rule
is reported.

The engine holds one immutable ToolPermissionContext snapshot. Decisions
read whichever snapshot is current; apply_updates() builds a new snapshot
and swaps it in under a lock, so concurrent decisions never observe a
half-applied update.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from quill.permissions.rules import format_rule, parse_rule, rule_matches
from quill.permissions.schemas import (
    PERSISTABLE_SOURCES,
    SOURCE_DISPLAY_NAMES,
    SOURCE_PRECEDENCE,
    PermissionBehavior,
    PermissionDecision,
    PermissionRule,
    PermissionUpdate,
    ToolPermissionContext,
)
from quill.permissions.updates import apply_permission_updates

logger = logging.getLogger(__name__)

_EVALUATION_ORDER: tuple[PermissionBehavior, ...] = ("deny", "allow", "ask")


class SettingsStore(Protocol):
    """External collaborator that persists permission-update intents."""

    async def persist(self, updates: Sequence[PermissionUpdate]) -> None: ...


def find_matching_rule(
    context: ToolPermissionContext,
    behavior: PermissionBehavior,
    tool_name: str,
    tool_input: Any,
) -> PermissionRule | None:
    """First rule of one behavior that covers the call, in source precedence."""
    rules_by_source = context.rules_for(behavior)
    for source in SOURCE_PRECEDENCE:
        for rule_string in rules_by_source.get(source, ()):
            value = parse_rule(rule_string)
            if rule_matches(value, tool_name, tool_input, behavior):
                return PermissionRule(
                    source=source,
                    behavior=behavior,
                    tool_name=value.tool_name,
                    pattern=value.pattern,
                )
    return None


def decide(
    context: ToolPermissionContext,
    tool_name: str,
    tool_input: Any,
) -> PermissionDecision:
    """Pure decision procedure over one snapshot."""
    for behavior in _EVALUATION_ORDER:
        rule = find_matching_rule(context, behavior, tool_name, tool_input)
        if rule is not None:
            source_name = SOURCE_DISPLAY_NAMES.get(rule.source, str(rule.source))
            return PermissionDecision(
                behavior=behavior,
                matched_rule=rule,
                reason=f"{behavior} rule '{format_rule(rule.value)}' from {source_name}",
            )
    return PermissionDecision(
        behavior=context.mode,
        reason=f"No matching rule; permission mode is '{context.mode}'",
    )


class PermissionEngine:
    """Evaluates tool calls against the current permission snapshot."""

    def __init__(
        self,
        context: ToolPermissionContext | None = None,
        settings_store: SettingsStore | None = None,
    ) -> None:
        self._context = context or ToolPermissionContext()
        self._settings_store = settings_store
        self._lock = asyncio.Lock()

    @property
    def context(self) -> ToolPermissionContext:
        return self._context

    def decide(self, tool_name: str, tool_input: Any) -> PermissionDecision:
        decision = decide(self._context, tool_name, tool_input)
        logger.debug("Permission %s for %s: %s", decision.behavior, tool_name, decision.reason)
        return decision

    def replace_context(self, context: ToolPermissionContext) -> None:
        """Install a snapshot re-supplied by the settings store."""
        self._context = context

    async def apply_updates(self, updates: Sequence[PermissionUpdate]) -> ToolPermissionContext:
        """Apply intents to the live snapshot and forward persistable ones.

        Updates are validated and applied to a copy first; the live
        snapshot is only swapped once every update succeeded.
        """
        if not updates:
            return self._context
        async with self._lock:
            new_context = apply_permission_updates(self._context, updates)
            self._context = new_context

            persistable = [u for u in updates if u.destination in PERSISTABLE_SOURCES]
            if persistable and self._settings_store is not None:
                try:
                    await self._settings_store.persist(persistable)
                except Exception:
                    # The in-memory snapshot stays applied for this session
                    logger.exception("Failed to persist %d permission updates", len(persistable))
            return new_context
