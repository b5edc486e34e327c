"""Tests for permission rules, decisions and updates.

- TestRuleGrammar: parse/format, namespaced names
- TestRuleValidation: validation failures and messages
- TestRuleMatching: argument signatures and pattern matching
- TestDecide: deny > allow > ask > mode, source layering
- TestPermissionUpdates: pure snapshot updates
- TestPermissionEngine: locked swaps and persistence
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from quill.errors import ValidationError
from quill.permissions import (
    PermissionEngine,
    PermissionUpdate,
    RuleSource,
    RuleValue,
    ToolPermissionContext,
    decide,
    format_rule,
    format_validation_error,
    parse_rule,
    rule_matches,
    validate_rule,
)
from quill.permissions.rules import (
    argument_signature,
    ensure_valid_rule,
    namespaced_tool_name,
    parse_namespaced_tool,
    split_shell_command,
)
from quill.permissions.updates import apply_permission_update, apply_permission_updates


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _matches(rule: str, tool: str, tool_input, behavior: str = "allow") -> bool:
    return rule_matches(parse_rule(rule), tool, tool_input, behavior)


def _bash(command: str) -> dict:
    return {"command": command}


def _context(**rules) -> ToolPermissionContext:
    return ToolPermissionContext(**rules)


# ===========================================================================
# Grammar
# ===========================================================================


class TestRuleGrammar:
    def test_parse_prefix_rule(self):
        """Bash(git:*) parses to tool Bash with pattern git:* and is valid."""
        value = parse_rule("Bash(git:*)")
        assert value == RuleValue(tool_name="Bash", pattern="git:*")
        assert validate_rule("Bash(git:*)").valid

    def test_parse_bare_name(self):
        assert parse_rule("Read") == RuleValue(tool_name="Read")

    def test_pattern_may_contain_parentheses(self):
        value = parse_rule("Bash(echo (hi))")
        assert value.tool_name == "Bash"
        assert value.pattern == "echo (hi)"

    @pytest.mark.parametrize(
        "rule",
        [
            "Bash",
            "Bash(git:*)",
            "Bash(npm run build)",
            "Read(src/**/*.py)",
            "WebFetch(domain:example.com)",
            "WebSearch(claude ai)",
            "mcp__github",
            "mcp__github__create_issue",
            "Bash(echo (hi))",
        ],
    )
    def test_format_round_trips(self, rule):
        assert format_rule(parse_rule(rule)) == rule

    def test_parse_namespaced_tool(self):
        assert parse_namespaced_tool("mcp__github") == ("github", None)
        assert parse_namespaced_tool("mcp__github__create_issue") == ("github", "create_issue")
        assert parse_namespaced_tool("Read") is None
        assert parse_namespaced_tool("mcp__") is None

    def test_namespaced_tool_name_sanitizes_server(self):
        assert namespaced_tool_name("my server", "search") == "mcp__my_server__search"


# ===========================================================================
# Validation
# ===========================================================================


class TestRuleValidation:
    @pytest.mark.parametrize(
        ("rule", "error"),
        [
            ("", "Permission rule cannot be empty"),
            ("   ", "Permission rule cannot be empty"),
            ("Bash(git", "Mismatched parentheses"),
            ("Bash()", "Empty parentheses"),
            ("()", "Empty parentheses with no tool name"),
            ("mcp__github(issues)", "Namespaced tool rules do not support patterns"),
            ("bash", "Tool names must start with uppercase"),
            ("WebSearch(claude*)", "WebSearch does not support wildcards"),
            ("WebFetch(example.com)", 'WebFetch permissions must use "domain:" prefix'),
            ("Bash(git:* status)", "The :* pattern must be at the end"),
            ("Bash(git * status)", "Wildcards in the middle of commands are not supported"),
            ("Bash(:*)", "Prefix cannot be empty before :*"),
            ("Bash(*)", 'Cannot use "*" alone'),
            ('Bash(echo "hi)', 'Unmatched " quote'),
            ("Bash(git*)", 'Use ":*" for prefix matching, not just "*"'),
            ("Read(src:*)", 'File patterns do not support ":*" syntax'),
        ],
    )
    def test_invalid_rules(self, rule, error):
        result = validate_rule(rule)
        assert not result.valid
        assert result.error == error

    @pytest.mark.parametrize(
        "rule",
        [
            "Read",
            "Read(*.py)",
            "Read(src/**/*.ts)",
            "Edit(/etc/hosts)",
            "Bash(npm install)",
            "Bash(docker build:*)",
            "WebFetch(domain:*.google.com)",
            "mcp__github__create_issue",
            "CustomTool(anything goes)",
        ],
    )
    def test_valid_rules(self, rule):
        assert validate_rule(rule).valid

    def test_lowercase_suggestion(self):
        assert validate_rule("bash").suggestion == 'Use "Bash"'

    def test_prefix_suggestion(self):
        assert validate_rule("Bash(git*)").suggestion == 'Use "git:*" for prefix matching'

    def test_format_validation_error(self):
        message = format_validation_error("Bash()")
        assert message.startswith("Empty parentheses. ")
        assert "Examples: Bash, Bash(some-pattern)" in message
        assert format_validation_error("Bash(git:*)") is None

    def test_ensure_valid_rule_raises(self):
        with pytest.raises(ValidationError, match="Mismatched parentheses"):
            ensure_valid_rule("Read(a.txt")
        assert ensure_valid_rule("Read(a.txt)") == RuleValue(tool_name="Read", pattern="a.txt")


# ===========================================================================
# Matching
# ===========================================================================


class TestRuleMatching:
    def test_argument_signatures(self):
        assert argument_signature("Bash", _bash("git   status\n")) == "git status"
        assert argument_signature("Read", {"file_path": "a.txt"}) == "a.txt"
        assert argument_signature("NotebookEdit", {"notebook_path": "n.ipynb"}) == "n.ipynb"
        assert argument_signature("WebFetch", {"url": "https://docs.example.com/a?b=1"}) == "domain:docs.example.com"
        assert argument_signature("WebSearch", {"query": " python "}) == "python"
        assert argument_signature("Lookup", {"b": 2, "a": 1}) == '{"a":1,"b":2}'

    def test_bare_rule_matches_any_input(self):
        assert _matches("Bash", "Bash", _bash("rm -rf /"))
        assert not _matches("Bash", "Read", {"file_path": "a"})

    def test_shell_prefix(self):
        assert _matches("Bash(git:*)", "Bash", _bash("git status"))
        assert _matches("Bash(git:*)", "Bash", _bash("git"))
        assert not _matches("Bash(git:*)", "Bash", _bash("gitk"))
        assert not _matches("Bash(git:*)", "Bash", _bash("echo git"))

    def test_shell_exact(self):
        assert _matches("Bash(npm test)", "Bash", _bash("npm   test"))
        assert not _matches("Bash(npm test)", "Bash", _bash("npm test --watch"))

    def test_compound_command_allow_needs_every_part(self):
        assert _matches("Bash(git:*)", "Bash", _bash("git add . && git commit -m x"))
        assert not _matches("Bash(git:*)", "Bash", _bash("git status && rm -rf /"))
        assert not _matches("Bash(git:*)", "Bash", _bash("git log | sh"))

    def test_compound_command_deny_needs_one_part(self):
        assert _matches("Bash(rm:*)", "Bash", _bash("git status; rm -rf /"), behavior="deny")
        assert not _matches("Bash(rm:*)", "Bash", _bash("git status"), behavior="deny")

    @pytest.mark.parametrize("command", ["git status\nrm -rf /", "git status & rm -rf /"])
    def test_newline_and_background_separate_commands(self, command):
        assert not _matches("Bash(git:*)", "Bash", _bash(command))
        assert _matches("Bash(rm:*)", "Bash", _bash(command), behavior="deny")
        assert _matches("Bash(rm -rf /)", "Bash", _bash(command), behavior="deny")

    def test_redirects_are_not_separators(self):
        assert _matches("Bash(npm test:*)", "Bash", _bash("npm test 2>&1"))
        assert _matches("Bash(make:*)", "Bash", _bash("make &> build.log"))

    def test_subshell_never_allowed_by_prefix(self):
        assert not _matches("Bash(git:*)", "Bash", _bash("git log $(rm -rf /)"))
        assert not _matches("Bash(echo:*)", "Bash", _bash("echo `whoami`"))

    def test_split_shell_command(self):
        assert split_shell_command("a && b || c; d | e") == ["a", "b", "c", "d", "e"]
        assert split_shell_command("a  x\nb & c |& d") == ["a x", "b", "c", "d"]
        assert split_shell_command("sleep 1 &") == ["sleep 1"]

    def test_file_glob(self):
        assert _matches("Read(src/*.py)", "Read", {"file_path": "src/app.py"})
        assert _matches("Edit(*.md)", "Edit", {"file_path": "README.md"})
        assert not _matches("Read(src/*.py)", "Read", {"file_path": "tests/app.py"})
        assert _matches("Read(/etc/hosts)", "Read", {"file_path": "/etc/hosts"})

    def test_domain_glob(self):
        assert _matches("WebFetch(domain:*.example.com)", "WebFetch", {"url": "https://docs.example.com/x"})
        assert _matches("WebFetch(domain:example.com)", "WebFetch", {"url": "http://example.com"})
        assert not _matches("WebFetch(domain:example.com)", "WebFetch", {"url": "https://example.org"})

    def test_other_tools_match_canonical_json(self):
        assert _matches('Lookup({"key":"x"})', "Lookup", {"key": "x"})
        assert not _matches('Lookup({"key":"x"})', "Lookup", {"key": "y"})

    def test_server_rule_covers_namespaced_tools(self):
        assert _matches("mcp__github", "mcp__github__create_issue", {})
        assert not _matches("mcp__github", "mcp__gitlab__create_issue", {})
        assert not _matches("mcp__github__create_issue", "mcp__github__delete_repo", {})
        assert _matches("mcp__github__create_issue", "mcp__github__create_issue", {"title": "x"})


# ===========================================================================
# Decision procedure
# ===========================================================================


class TestDecide:
    def _layered(self) -> ToolPermissionContext:
        return _context(
            mode="ask",
            allow_rules={RuleSource.SESSION: ("Bash(git:*)", "Read")},
            deny_rules={RuleSource.PROJECT_SETTINGS: ("Bash(git push:*)",)},
            ask_rules={RuleSource.USER_SETTINGS: ("Write", "Read(/etc/*)")},
        )

    def test_deny_beats_allow(self):
        decision = decide(self._layered(), "Bash", _bash("git push origin main"))
        assert decision.behavior == "deny"
        assert decision.matched_rule.source == RuleSource.PROJECT_SETTINGS
        assert decision.reason == "deny rule 'Bash(git push:*)' from project settings"

    def test_allow_beats_ask(self):
        decision = decide(self._layered(), "Read", {"file_path": "/etc/passwd"})
        assert decision.behavior == "allow"
        assert decision.matched_rule.tool_name == "Read"

    def test_ask_rule(self):
        decision = decide(self._layered(), "Write", {"file_path": "a.txt"})
        assert decision.behavior == "ask"
        assert decision.reason == "ask rule 'Write' from user settings"

    @pytest.mark.parametrize("mode", ["allow", "deny", "ask"])
    def test_mode_default(self, mode):
        decision = decide(_context(mode=mode), "Bash", _bash("ls"))
        assert decision.behavior == mode
        assert decision.matched_rule is None
        assert decision.reason == f"No matching rule; permission mode is '{mode}'"

    def test_default_mode_is_ask(self):
        assert decide(ToolPermissionContext(), "Anything", {}).behavior == "ask"

    def test_first_source_in_precedence_wins(self):
        context = _context(
            allow_rules={
                RuleSource.USER_SETTINGS: ("Bash",),
                RuleSource.CLI_ARG: ("Bash(git:*)",),
            }
        )
        decision = decide(context, "Bash", _bash("git status"))
        assert decision.matched_rule.source == RuleSource.CLI_ARG
        assert decision.matched_rule.pattern == "git:*"
        assert decision.reason.endswith("from CLI argument")

    @pytest.mark.parametrize("command", ["git status\nrm -rf /", "git status & rm -rf /"])
    def test_chained_command_cannot_ride_an_allow_rule(self, command):
        rules = {
            "allow_rules": {RuleSource.USER_SETTINGS: ("Bash(git:*)",)},
            "deny_rules": {RuleSource.USER_SETTINGS: ("Bash(rm:*)",)},
        }
        assert decide(_context(**rules), "Bash", _bash(command)).behavior == "deny"

        allow_only = _context(mode="ask", allow_rules=rules["allow_rules"])
        decision = decide(allow_only, "Bash", _bash(command))
        assert decision.behavior == "ask"
        assert decision.matched_rule is None

    def test_decision_is_deterministic(self):
        context = self._layered()
        before = context.model_dump()
        first = decide(context, "Bash", _bash("git status && git push"))
        second = decide(context, "Bash", _bash("git status && git push"))
        assert first == second
        assert first.behavior == "deny"
        assert context.model_dump() == before

    def test_context_is_immutable(self):
        context = self._layered()
        with pytest.raises(Exception):
            context.mode = "allow"


# ===========================================================================
# Updates
# ===========================================================================


class TestPermissionUpdates:
    def test_add_rules_normalizes_and_dedupes(self):
        context = ToolPermissionContext()
        update = PermissionUpdate(
            type="addRules",
            destination=RuleSource.SESSION,
            behavior="allow",
            rules=("Bash(git:*)", "Read"),
        )
        once = apply_permission_update(context, update)
        twice = apply_permission_update(once, update)

        assert once.allow_rules[RuleSource.SESSION] == ("Bash(git:*)", "Read")
        assert twice.allow_rules[RuleSource.SESSION] == ("Bash(git:*)", "Read")
        assert context.allow_rules == {}

    def test_add_invalid_rule_raises(self):
        update = PermissionUpdate(
            type="addRules", destination=RuleSource.SESSION, behavior="deny", rules=("Bash()",)
        )
        with pytest.raises(ValidationError, match="Empty parentheses"):
            apply_permission_update(ToolPermissionContext(), update)

    def test_rule_update_requires_behavior(self):
        update = PermissionUpdate(type="addRules", destination=RuleSource.SESSION, rules=("Read",))
        with pytest.raises(ValidationError):
            apply_permission_update(ToolPermissionContext(), update)

    def test_remove_rules(self):
        context = _context(deny_rules={RuleSource.LOCAL_SETTINGS: ("Bash(rm:*)", "Write")})
        update = PermissionUpdate(
            type="removeRules",
            destination=RuleSource.LOCAL_SETTINGS,
            behavior="deny",
            rules=("Write",),
        )
        result = apply_permission_update(context, update)
        assert result.deny_rules[RuleSource.LOCAL_SETTINGS] == ("Bash(rm:*)",)

    def test_removing_last_rule_drops_source(self):
        context = _context(ask_rules={RuleSource.SESSION: ("Write",)})
        update = PermissionUpdate(
            type="removeRules", destination=RuleSource.SESSION, behavior="ask", rules=("Write",)
        )
        assert RuleSource.SESSION not in apply_permission_update(context, update).ask_rules

    def test_replace_rules(self):
        context = _context(allow_rules={RuleSource.SESSION: ("Read",), RuleSource.CLI_ARG: ("Bash",)})
        update = PermissionUpdate(
            type="replaceRules",
            destination=RuleSource.SESSION,
            behavior="allow",
            rules=("Edit(*.md)",),
        )
        result = apply_permission_update(context, update)
        assert result.allow_rules[RuleSource.SESSION] == ("Edit(*.md)",)
        assert result.allow_rules[RuleSource.CLI_ARG] == ("Bash",)

    def test_set_mode(self):
        update = PermissionUpdate(type="setMode", destination=RuleSource.SESSION, mode="deny")
        assert apply_permission_update(ToolPermissionContext(), update).mode == "deny"

        with pytest.raises(ValidationError):
            apply_permission_update(
                ToolPermissionContext(),
                PermissionUpdate(type="setMode", destination=RuleSource.SESSION),
            )

    def test_directories(self):
        add = PermissionUpdate(
            type="addDirectories", destination=RuleSource.SESSION, directories=("/a", "/b", "/a")
        )
        remove = PermissionUpdate(
            type="removeDirectories", destination=RuleSource.SESSION, directories=("/a",)
        )
        added = apply_permission_update(ToolPermissionContext(), add)
        assert added.additional_directories == ("/a", "/b")
        assert apply_permission_update(added, remove).additional_directories == ("/b",)

    def test_updates_apply_in_order(self):
        updates = [
            PermissionUpdate(type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=("Read",)),
            PermissionUpdate(type="setMode", destination=RuleSource.SESSION, mode="deny"),
        ]
        result = apply_permission_updates(ToolPermissionContext(), updates)
        assert result.mode == "deny"
        assert decide(result, "Read", {"file_path": "x"}).behavior == "allow"
        assert decide(result, "Write", {"file_path": "x"}).behavior == "deny"


# ===========================================================================
# PermissionEngine
# ===========================================================================


class TestPermissionEngine:
    @pytest.mark.asyncio
    async def test_apply_updates_swaps_snapshot(self):
        engine = PermissionEngine(ToolPermissionContext(mode="deny"))
        original = engine.context
        assert engine.decide("Read", {"file_path": "a"}).behavior == "deny"

        await engine.apply_updates([
            PermissionUpdate(type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=("Read",)),
        ])

        assert engine.decide("Read", {"file_path": "a"}).behavior == "allow"
        assert original.allow_rules == {}

    @pytest.mark.asyncio
    async def test_only_persistable_updates_forwarded(self):
        store = AsyncMock()
        engine = PermissionEngine(settings_store=store)
        session = PermissionUpdate(
            type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=("Read",)
        )
        local = PermissionUpdate(
            type="addRules", destination=RuleSource.LOCAL_SETTINGS, behavior="deny", rules=("Bash(rm:*)",)
        )

        await engine.apply_updates([session, local])

        store.persist.assert_awaited_once_with([local])
        assert engine.context.deny_rules[RuleSource.LOCAL_SETTINGS] == ("Bash(rm:*)",)

    @pytest.mark.asyncio
    async def test_session_only_updates_not_persisted(self):
        store = AsyncMock()
        engine = PermissionEngine(settings_store=store)
        await engine.apply_updates([
            PermissionUpdate(type="setMode", destination=RuleSource.SESSION, mode="allow"),
        ])
        store.persist.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_snapshot(self, caplog):
        store = AsyncMock()
        store.persist.side_effect = OSError("disk full")
        engine = PermissionEngine(settings_store=store)

        await engine.apply_updates([
            PermissionUpdate(type="addRules", destination=RuleSource.USER_SETTINGS, behavior="allow", rules=("Read",)),
        ])

        assert engine.decide("Read", {"file_path": "a"}).behavior == "allow"
        assert "Failed to persist" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_update_leaves_snapshot_untouched(self):
        engine = PermissionEngine()
        before = engine.context
        with pytest.raises(ValidationError):
            await engine.apply_updates([
                PermissionUpdate(type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=("Read",)),
                PermissionUpdate(type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=("read",)),
            ])
        assert engine.context is before

    @pytest.mark.asyncio
    async def test_concurrent_updates_serialize(self):
        engine = PermissionEngine()

        async def add(rule: str):
            await engine.apply_updates([
                PermissionUpdate(type="addRules", destination=RuleSource.SESSION, behavior="allow", rules=(rule,)),
            ])

        await asyncio.gather(*(add(f"Tool{i}") for i in range(10)))
        assert sorted(engine.context.allow_rules[RuleSource.SESSION]) == sorted(
            f"Tool{i}" for i in range(10)
        )

    @pytest.mark.asyncio
    async def test_empty_updates_noop(self):
        store = AsyncMock()
        engine = PermissionEngine(settings_store=store)
        before = engine.context
        assert await engine.apply_updates([]) is before
        store.persist.assert_not_awaited()
