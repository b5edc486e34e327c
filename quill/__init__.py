"""Quill -- agentic conversation engine.

Public API:
    ConversationEngine - Turn loop over the streaming Messages API
    TurnOutcome        - Result of one user turn
    Settings           - Configuration (QUILL_ env prefix)
    EventBus, Event    - Ordered event delivery to observers
    ToolRegistry       - Tool registration
    PermissionEngine   - Layered permission rules
"""

from quill.api.engine import ConversationEngine, TurnOutcome
from quill.api.tools import FunctionTool, Tool, ToolContext, ToolDefinition, ToolOutput, ToolRegistry
from quill.config import Settings, configure_logging
from quill.events import Event, EventBus, EventType
from quill.permissions.engine import PermissionEngine

__all__ = [
    "ConversationEngine",
    "Event",
    "EventBus",
    "EventType",
    "FunctionTool",
    "PermissionEngine",
    "Settings",
    "Tool",
    "ToolContext",
    "ToolDefinition",
    "ToolOutput",
    "ToolRegistry",
    "TurnOutcome",
    "configure_logging",
]
