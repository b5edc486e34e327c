"""Layered permission rules for tool calls."""

from quill.permissions.engine import PermissionEngine, SettingsStore, decide
from quill.permissions.rules import (
    format_rule,
    format_validation_error,
    parse_rule,
    rule_matches,
    validate_rule,
)
from quill.permissions.schemas import (
    PermissionDecision,
    PermissionRule,
    PermissionUpdate,
    RuleSource,
    RuleValue,
    ToolPermissionContext,
)

__all__ = [
    "PermissionDecision",
    "PermissionEngine",
    "PermissionRule",
    "PermissionUpdate",
    "RuleSource",
    "RuleValue",
    "SettingsStore",
    "ToolPermissionContext",
    "decide",
    "format_rule",
    "format_validation_error",
    "parse_rule",
    "rule_matches",
    "validate_rule",
]
