"""Permission rule grammar: parsing, formatting, validation and matching.

A rule string is `ToolName` or `ToolName(pattern)`. Patterns are matched
against a per-tool "argument signature" of the call: the simple commands
of a shell command one per line, the path for file tools, `domain:<host>`
for WebFetch, and canonical JSON for everything else.

Namespaced tools exposed by external servers are named
`mcp__<server>__<tool>`; a rule naming only `mcp__<server>` covers every
tool of that server.
"""

from __future__ import annotations

import fnmatch
import json
import logging
import re
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

from quill.errors import ValidationError
from quill.permissions.schemas import PermissionBehavior, RuleValidation, RuleValue

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX = "mcp"
NAMESPACE_SEPARATOR = "__"
PREFIX_WILDCARD = ":*"

SHELL_TOOLS = frozenset({"Bash", "Shell", "Execute"})
FILE_TOOLS = frozenset({"Read", "Write", "Edit", "MultiEdit", "NotebookEdit"})

_FILE_PATH_KEYS = ("file_path", "notebook_path", "path")
# A lone & ends a background job; >&, <& and &> are redirects
_SHELL_SPLIT = re.compile(r"\s*(?:&&|\|\||;|\|&?|(?<![<>&])&(?![>&])|\r?\n)\s*")
_SUBSHELL = re.compile(r"`|\$\(")
_FILE_WILDCARD_OK = re.compile(r"^\*|\*$|\*\*|/\*|\*\.|\*\)")


# ------------------------------------------------------------------
# Grammar
# ------------------------------------------------------------------


def parse_rule(rule: str) -> RuleValue:
    """Parse `Tool` or `Tool(pattern)`.

    The pattern runs from the first "(" to the final ")", so patterns may
    themselves contain parentheses. Anything else is a bare tool name.
    """
    open_index = rule.find("(")
    if open_index > 0 and rule.endswith(")"):
        pattern = rule[open_index + 1 : -1]
        if pattern:
            return RuleValue(tool_name=rule[:open_index], pattern=pattern)
    return RuleValue(tool_name=rule)


def format_rule(value: RuleValue) -> str:
    if value.pattern is not None:
        return f"{value.tool_name}({value.pattern})"
    return value.tool_name


def parse_namespaced_tool(tool_name: str) -> tuple[str, str | None] | None:
    """Split `mcp__server[__tool]` into (server, tool). None if not namespaced."""
    parts = tool_name.split(NAMESPACE_SEPARATOR)
    if parts[0] != NAMESPACE_PREFIX or len(parts) < 2 or not parts[1]:
        return None
    tool = NAMESPACE_SEPARATOR.join(parts[2:]) if len(parts) > 2 else None
    return parts[1], tool or None


def namespaced_tool_name(server: str, tool: str) -> str:
    safe_server = re.sub(r"[^a-zA-Z0-9_-]", "_", server)
    return f"{NAMESPACE_PREFIX}{NAMESPACE_SEPARATOR}{safe_server}{NAMESPACE_SEPARATOR}{tool}"


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


def _validate_web_search(pattern: str) -> RuleValidation:
    if "*" in pattern or "?" in pattern:
        return RuleValidation(
            valid=False,
            error="WebSearch does not support wildcards",
            examples=["WebSearch(claude ai)", "WebSearch(typescript tutorial)"],
        )
    return RuleValidation(valid=True)


def _validate_web_fetch(pattern: str) -> RuleValidation:
    if not pattern.startswith("domain:"):
        return RuleValidation(
            valid=False,
            error='WebFetch permissions must use "domain:" prefix',
            examples=["WebFetch(domain:example.com)", "WebFetch(domain:*.google.com)"],
        )
    return RuleValidation(valid=True)


CUSTOM_VALIDATORS: dict[str, Callable[[str], RuleValidation]] = {
    "WebSearch": _validate_web_search,
    "WebFetch": _validate_web_fetch,
}


def _validate_shell_pattern(pattern: str) -> RuleValidation:
    if PREFIX_WILDCARD in pattern and not pattern.endswith(PREFIX_WILDCARD):
        return RuleValidation(
            valid=False,
            error="The :* pattern must be at the end",
            suggestion="Move :* to the end for prefix matching",
        )
    if " * " in pattern and not pattern.endswith(PREFIX_WILDCARD):
        return RuleValidation(
            valid=False,
            error="Wildcards in the middle of commands are not supported",
            suggestion='Use prefix matching with ":*" or specify exact commands',
            examples=["git:*", "npm install", "docker build:*"],
        )
    if pattern == PREFIX_WILDCARD:
        return RuleValidation(
            valid=False,
            error="Prefix cannot be empty before :*",
            suggestion="Specify a command prefix before :*",
        )
    for quote in ('"', "'"):
        if pattern.count(quote) % 2 != 0:
            return RuleValidation(
                valid=False,
                error=f"Unmatched {quote} quote",
                suggestion="Ensure all quotes are properly paired",
            )
    if pattern == "*":
        return RuleValidation(
            valid=False,
            error='Cannot use "*" alone',
            suggestion="Remove the parentheses or specify a command pattern",
        )
    if "*" in pattern and "/" not in pattern and not pattern.endswith(PREFIX_WILDCARD):
        return RuleValidation(
            valid=False,
            error='Use ":*" for prefix matching, not just "*"',
            suggestion=f'Use "{pattern.replace("*", PREFIX_WILDCARD, 1)}" for prefix matching',
        )
    return RuleValidation(valid=True)


def _validate_file_pattern(pattern: str) -> RuleValidation:
    if PREFIX_WILDCARD in pattern:
        return RuleValidation(
            valid=False,
            error='File patterns do not support ":*" syntax',
            suggestion='Use standard glob patterns like "*.js" or "**/*.ts"',
            examples=["*.js", "**/*.ts", "/path/to/file.txt"],
        )
    if "*" in pattern and not _FILE_WILDCARD_OK.search(pattern):
        return RuleValidation(
            valid=False,
            error="Wildcard placement might be incorrect",
            suggestion="Wildcards are typically used at path boundaries",
            examples=["*.js", "src/**/*.ts", "/path/*/file.txt"],
        )
    return RuleValidation(valid=True)


def validate_rule(rule: str) -> RuleValidation:
    """Check a rule string before it may be persisted."""
    if not rule or not rule.strip():
        return RuleValidation(valid=False, error="Permission rule cannot be empty")

    if rule.count("(") != rule.count(")"):
        return RuleValidation(
            valid=False,
            error="Mismatched parentheses",
            suggestion="Ensure all opening parentheses have matching closing parentheses",
        )

    parsed = parse_rule(rule)

    if "()" in rule:
        tool_name = rule.split("(", 1)[0]
        if not tool_name:
            return RuleValidation(
                valid=False,
                error="Empty parentheses with no tool name",
                suggestion="Specify a tool name before the parentheses",
            )
        return RuleValidation(
            valid=False,
            error="Empty parentheses",
            suggestion=f'Either specify a pattern or use just "{tool_name}" without parentheses',
            examples=[tool_name, f"{tool_name}(some-pattern)"],
        )

    namespaced = parse_namespaced_tool(parsed.tool_name)
    if namespaced is not None:
        if parsed.pattern is not None:
            server, tool = namespaced
            examples = [f"{NAMESPACE_PREFIX}__{server}"]
            if tool:
                examples.append(f"{NAMESPACE_PREFIX}__{server}__{tool}")
            return RuleValidation(
                valid=False,
                error="Namespaced tool rules do not support patterns",
                suggestion=f'Use "{parsed.tool_name}" without parentheses',
                examples=examples,
            )
        return RuleValidation(valid=True)

    if not parsed.tool_name:
        return RuleValidation(valid=False, error="Tool name cannot be empty")

    first = parsed.tool_name[0]
    if not first.isupper():
        return RuleValidation(
            valid=False,
            error="Tool names must start with uppercase",
            suggestion=f'Use "{parsed.tool_name[0].upper()}{parsed.tool_name[1:]}"',
        )

    if parsed.pattern is None:
        return RuleValidation(valid=True)

    validator = CUSTOM_VALIDATORS.get(parsed.tool_name)
    if validator is not None:
        result = validator(parsed.pattern)
        if not result.valid:
            return result

    if parsed.tool_name in SHELL_TOOLS:
        return _validate_shell_pattern(parsed.pattern)
    if parsed.tool_name in FILE_TOOLS:
        return _validate_file_pattern(parsed.pattern)
    return RuleValidation(valid=True)


def format_validation_error(rule: str) -> str | None:
    """Human-readable validation failure, or None when the rule is valid."""
    result = validate_rule(rule)
    if result.valid:
        return None
    message = result.error or "Invalid permission rule"
    if result.suggestion:
        message += f". {result.suggestion}"
    if result.examples:
        message += f". Examples: {', '.join(result.examples)}"
    return message


def ensure_valid_rule(rule: str) -> RuleValue:
    """Parse a rule, raising ValidationError if it may not be persisted."""
    message = format_validation_error(rule)
    if message is not None:
        raise ValidationError(f"Invalid permission rule {rule!r}: {message}")
    return parse_rule(rule)


# ------------------------------------------------------------------
# Matching
# ------------------------------------------------------------------


def argument_signature(tool_name: str, tool_input: Any) -> str:
    """Normalize a call's input into the string rule patterns match against."""
    if not isinstance(tool_input, dict):
        return str(tool_input).strip()

    if tool_name in SHELL_TOOLS:
        return "\n".join(split_shell_command(str(tool_input.get("command", ""))))
    if tool_name in FILE_TOOLS:
        for key in _FILE_PATH_KEYS:
            if tool_input.get(key):
                return str(tool_input[key])
        return ""
    if tool_name == "WebFetch":
        host = urlparse(str(tool_input.get("url", ""))).hostname or ""
        return f"domain:{host}"
    if tool_name == "WebSearch":
        return str(tool_input.get("query", "")).strip()
    return json.dumps(tool_input, sort_keys=True, separators=(",", ":"), default=str)


def split_shell_command(command: str) -> list[str]:
    """Split a compound shell command into whitespace-normalized simple commands."""
    parts = (" ".join(part.split()) for part in _SHELL_SPLIT.split(command))
    return [part for part in parts if part]


def _shell_prefix_matches(prefix: str, command: str) -> bool:
    return command == prefix or command.startswith(prefix + " ")


def _pattern_matches(
    tool_name: str,
    pattern: str,
    signature: str,
    behavior: PermissionBehavior,
) -> bool:
    if tool_name in SHELL_TOOLS and pattern.endswith(PREFIX_WILDCARD):
        prefix = pattern[: -len(PREFIX_WILDCARD)]
        parts = split_shell_command(signature)
        if not parts:
            return False
        if behavior == "deny":
            # One matching part is enough to deny the whole command
            return any(_shell_prefix_matches(prefix, p) for p in parts)
        if _SUBSHELL.search(signature):
            return False
        return all(_shell_prefix_matches(prefix, p) for p in parts)

    if tool_name in SHELL_TOOLS:
        parts = split_shell_command(signature)
        if behavior == "deny" and " ".join(pattern.split()) in parts:
            return True
        return parts == split_shell_command(pattern)

    if pattern == signature:
        return True

    if tool_name in FILE_TOOLS and any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(signature, pattern)

    if pattern.startswith("domain:") and signature.startswith("domain:"):
        return fnmatch.fnmatchcase(signature[len("domain:"):], pattern[len("domain:"):])

    return False


def rule_matches(
    rule: RuleValue,
    tool_name: str,
    tool_input: Any,
    behavior: PermissionBehavior = "allow",
) -> bool:
    """Does a rule cover this call?

    Names must be equal (or a server-only namespaced rule must cover the
    tool's server). A rule without a pattern covers any input.
    """
    if rule.tool_name != tool_name:
        rule_ns = parse_namespaced_tool(rule.tool_name)
        tool_ns = parse_namespaced_tool(tool_name)
        return (
            rule.pattern is None
            and rule_ns is not None
            and tool_ns is not None
            and rule_ns[1] is None
            and rule_ns[0] == tool_ns[0]
        )

    if rule.pattern is None:
        return True

    signature = argument_signature(tool_name, tool_input)
    return _pattern_matches(tool_name, rule.pattern, signature, behavior)
