"""Pydantic DTOs for the permission system.

Rules, decisions and context snapshots are immutable (frozen); the only
way to change what the engine allows is to apply a PermissionUpdate and
swap in the resulting snapshot.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PermissionBehavior = Literal["allow", "deny", "ask"]
PermissionMode = Literal["allow", "deny", "ask"]
UpdateType = Literal[
    "addRules",
    "removeRules",
    "replaceRules",
    "setMode",
    "addDirectories",
    "removeDirectories",
]


class RuleSource(StrEnum):
    """Where a rule came from. Declaration order is layering precedence."""

    CLI_ARG = "cliArg"
    SESSION = "session"
    COMMAND = "command"
    LOCAL_SETTINGS = "localSettings"
    PROJECT_SETTINGS = "projectSettings"
    POLICY_SETTINGS = "policySettings"
    USER_SETTINGS = "userSettings"
    FLAG_SETTINGS = "flagSettings"


SOURCE_PRECEDENCE: tuple[RuleSource, ...] = tuple(RuleSource)

PERSISTABLE_SOURCES = frozenset({
    RuleSource.LOCAL_SETTINGS,
    RuleSource.PROJECT_SETTINGS,
    RuleSource.USER_SETTINGS,
})

SOURCE_DISPLAY_NAMES: dict[RuleSource, str] = {
    RuleSource.CLI_ARG: "CLI argument",
    RuleSource.SESSION: "current session",
    RuleSource.COMMAND: "current session",
    RuleSource.LOCAL_SETTINGS: "local settings",
    RuleSource.PROJECT_SETTINGS: "project settings",
    RuleSource.POLICY_SETTINGS: "policy settings",
    RuleSource.USER_SETTINGS: "user settings",
    RuleSource.FLAG_SETTINGS: "flag settings",
}


class RuleValue(BaseModel):
    """Parsed form of `ToolName` or `ToolName(pattern)`."""

    model_config = ConfigDict(frozen=True)

    tool_name: str
    pattern: str | None = None


class PermissionRule(BaseModel):
    """A single rule from one source."""

    model_config = ConfigDict(frozen=True)

    source: RuleSource
    behavior: PermissionBehavior
    tool_name: str
    pattern: str | None = None

    @property
    def value(self) -> RuleValue:
        return RuleValue(tool_name=self.tool_name, pattern=self.pattern)


class PermissionDecision(BaseModel):
    """Result of evaluating a tool call. Pure function of its inputs."""

    model_config = ConfigDict(frozen=True)

    behavior: PermissionBehavior
    matched_rule: PermissionRule | None = None
    reason: str


class RuleValidation(BaseModel):
    """Outcome of validating a rule string before it may be persisted."""

    valid: bool
    error: str | None = None
    suggestion: str | None = None
    examples: list[str] = Field(default_factory=list)


class ToolPermissionContext(BaseModel):
    """Resolved snapshot of rules and mode, as supplied by the settings store.

    Rule lists hold rule strings keyed by source.
    """

    model_config = ConfigDict(frozen=True)

    mode: PermissionMode = "ask"
    allow_rules: dict[RuleSource, tuple[str, ...]] = Field(default_factory=dict)
    deny_rules: dict[RuleSource, tuple[str, ...]] = Field(default_factory=dict)
    ask_rules: dict[RuleSource, tuple[str, ...]] = Field(default_factory=dict)
    additional_directories: tuple[str, ...] = ()

    def rules_for(self, behavior: PermissionBehavior) -> dict[RuleSource, tuple[str, ...]]:
        if behavior == "allow":
            return self.allow_rules
        if behavior == "deny":
            return self.deny_rules
        return self.ask_rules


class PermissionUpdate(BaseModel):
    """An intent to change permissions, applied by an external settings store."""

    model_config = ConfigDict(frozen=True)

    type: UpdateType
    destination: RuleSource
    behavior: PermissionBehavior | None = None
    rules: tuple[str, ...] = ()
    mode: PermissionMode | None = None
    directories: tuple[str, ...] = ()
