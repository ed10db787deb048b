"""
Chat engine: sessions, context window management and the send orchestrator.
"""

from .cards import escape_markup, format_tool_call_card
from .context import ContextConfig, ContextWindowManager, FilteredMessages
from .orchestrator import ChatCallbacks, ChatOrchestrator
from .store import SessionStore, SqlSessionStore
from .strings import get_string, set_locale
from .types import (
    ContextState,
    ContextSummary,
    FileAttachment,
    ImageAttachment,
    Message,
    MessageRole,
    SendOptions,
    Session,
    SessionMeta,
)

__all__ = [
    "escape_markup",
    "format_tool_call_card",
    "ContextConfig",
    "ContextWindowManager",
    "FilteredMessages",
    "ChatCallbacks",
    "ChatOrchestrator",
    "SessionStore",
    "SqlSessionStore",
    "get_string",
    "set_locale",
    "ContextState",
    "ContextSummary",
    "FileAttachment",
    "ImageAttachment",
    "Message",
    "MessageRole",
    "SendOptions",
    "Session",
    "SessionMeta",
]
