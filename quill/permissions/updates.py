"""Applying permission-update intents to a context snapshot.

Every function here is pure: it takes a frozen ToolPermissionContext and
returns a new one. Nothing is written to disk; persistable intents are
handed to the settings store by the PermissionEngine.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from quill.errors import ValidationError
from quill.permissions.rules import ensure_valid_rule, format_rule, parse_rule
from quill.permissions.schemas import (
    PermissionBehavior,
    PermissionUpdate,
    RuleSource,
    ToolPermissionContext,
)

logger = logging.getLogger(__name__)

_RULE_FIELDS: dict[PermissionBehavior, str] = {
    "allow": "allow_rules",
    "deny": "deny_rules",
    "ask": "ask_rules",
}


def _normalize(rules: Iterable[str]) -> tuple[str, ...]:
    """Validate each rule and return it in canonical form."""
    return tuple(format_rule(ensure_valid_rule(rule)) for rule in rules)


def _with_rules(
    context: ToolPermissionContext,
    behavior: PermissionBehavior,
    destination: RuleSource,
    rules: tuple[str, ...],
) -> ToolPermissionContext:
    field_name = _RULE_FIELDS[behavior]
    current = dict(getattr(context, field_name))
    if rules:
        current[destination] = rules
    else:
        current.pop(destination, None)
    return context.model_copy(update={field_name: current})


def apply_permission_update(
    context: ToolPermissionContext,
    update: PermissionUpdate,
) -> ToolPermissionContext:
    """Return the snapshot that results from applying one intent.

    Raises ValidationError for malformed intents or invalid rules; the
    input snapshot is never modified.
    """
    if update.type == "setMode":
        if update.mode is None:
            raise ValidationError("setMode update requires a mode")
        logger.info("Setting permission mode to '%s'", update.mode)
        return context.model_copy(update={"mode": update.mode})

    if update.type in ("addRules", "removeRules", "replaceRules"):
        if update.behavior is None:
            raise ValidationError(f"{update.type} update requires a behavior")
        existing = context.rules_for(update.behavior).get(update.destination, ())

        if update.type == "addRules":
            added = _normalize(update.rules)
            merged = existing + tuple(r for r in added if r not in existing)
            logger.info(
                "Adding %d %s rules to %s", len(added), update.behavior, update.destination
            )
            return _with_rules(context, update.behavior, update.destination, merged)

        if update.type == "replaceRules":
            logger.info("Replacing %s rules in %s", update.behavior, update.destination)
            return _with_rules(
                context, update.behavior, update.destination, _normalize(update.rules)
            )

        # Removal does not validate: a bad rule that slipped in must still be removable
        to_remove = {format_rule(parse_rule(r)) for r in update.rules}
        remaining = tuple(r for r in existing if r not in to_remove)
        logger.info(
            "Removing %d %s rules from %s",
            len(existing) - len(remaining),
            update.behavior,
            update.destination,
        )
        return _with_rules(context, update.behavior, update.destination, remaining)

    if update.type == "addDirectories":
        directories = list(context.additional_directories)
        for directory in update.directories:
            if directory not in directories:
                directories.append(directory)
        logger.info("Adding %d directories", len(update.directories))
        return context.model_copy(update={"additional_directories": tuple(directories)})

    if update.type == "removeDirectories":
        to_remove = set(update.directories)
        directories = tuple(d for d in context.additional_directories if d not in to_remove)
        logger.info("Removing %d directories", len(update.directories))
        return context.model_copy(update={"additional_directories": directories})

    raise ValidationError(f"Unknown permission update type: {update.type}")


def apply_permission_updates(
    context: ToolPermissionContext,
    updates: Iterable[PermissionUpdate],
) -> ToolPermissionContext:
    """Apply intents in order. All-or-nothing: a failure leaves no partial result."""
    for update in updates:
        context = apply_permission_update(context, update)
    return context
