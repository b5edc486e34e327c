"""Exception hierarchy for the conversation engine.

Only ProtocolError (and NetworkError once retries are exhausted) is allowed
to unwind the engine's control loop. Everything else is turned into a
tool result or a log line where it happens.
"""

from __future__ import annotations


class QuillError(Exception):
    """Base class for all engine errors."""


class ProtocolError(QuillError):
    """Malformed or terminated model stream, or an in-stream error event."""

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class NetworkError(QuillError):
    """Transport-level failure talking to the model backend (retryable)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class ToolExecutionError(QuillError):
    """A tool raised while executing. Isolated to its task."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class PermissionDenied(QuillError):
    """A tool call was denied by rule, mode, or the approver. Never retried."""


class ValidationError(QuillError):
    """A permission rule or a tool call failed validation before dispatch."""


class CompactionError(QuillError):
    """Compaction could not produce a rewritten history."""


class EngineClosedError(QuillError):
    """The engine was terminated and cannot run further turns."""
