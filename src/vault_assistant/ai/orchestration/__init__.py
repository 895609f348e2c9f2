"""Conversation orchestration: history, dispatch, and the follow-up loop."""

from .history import HistoryStore
from .orchestrator import (
    ConversationEvent,
    ConversationOrchestrator,
    ConversationOutcome,
    ConversationState,
    OrchestratorConfig,
)
from .tool_dispatcher import PermissionTable, ToolDispatcher, ToolPermission

__all__ = [
    "ConversationEvent",
    "ConversationOrchestrator",
    "ConversationOutcome",
    "ConversationState",
    "HistoryStore",
    "OrchestratorConfig",
    "PermissionTable",
    "ToolDispatcher",
    "ToolPermission",
]
