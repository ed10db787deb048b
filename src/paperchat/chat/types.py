"""
Conversation data model: sessions, messages and context-summary state.
"""

import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum

from ..llm.base import ImageInput, LLMMessage, ToolCall

_ID_ALPHABET = string.ascii_lowercase + string.digits


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def _short_random(length: int) -> str:
    return "".join(random.choices(_ID_ALPHABET, k=length))


def generate_id() -> str:
    """Sortable unique id for messages: ``<epoch-ms>-<random>``."""
    return f"{now_ms()}-{_short_random(7)}"


def generate_session_id() -> str:
    return f"{now_ms()}-{_short_random(6)}"


class MessageRole(str, Enum):
    """Message roles for conversation."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    ERROR = "error"


@dataclass
class ImageAttachment:
    """An image the user attached to a message."""

    data: str  # base64 data or URL
    mime_type: str = "image/png"
    type: str = "base64"  # "base64" | "url"
    name: str | None = None


@dataclass
class FileAttachment:
    """A text file the user attached to a message."""

    name: str
    content: str
    type: str = "text/plain"


@dataclass
class Message:
    """One entry in a session's history."""

    role: MessageRole
    content: str = ""
    id: str = field(default_factory=generate_id)
    timestamp: int = field(default_factory=now_ms)
    images: list[ImageAttachment] | None = None
    files: list[FileAttachment] | None = None
    selected_text: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    pdf_context: bool = False
    is_system_notice: bool = False

    @property
    def is_conversational(self) -> bool:
        """User/assistant/tool turns plus transient system notices."""
        if self.role in (MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL):
            return True
        return self.role == MessageRole.SYSTEM and self.is_system_notice

    @property
    def is_durable_system(self) -> bool:
        return self.role == MessageRole.SYSTEM and not self.is_system_notice

    def to_llm_message(self) -> LLMMessage:
        """Convert to the provider-facing message shape."""
        if self.role == MessageRole.ERROR:
            raise ValueError("Error messages are never sent to a model")
        images = None
        if self.images:
            images = [
                ImageInput(data=img.data, mime_type=img.mime_type, is_url=img.type == "url")
                for img in self.images
            ]
        return LLMMessage(
            role=self.role.value,  # type: ignore[arg-type]
            content=self.content,
            tool_calls=self.tool_calls,
            tool_call_id=self.tool_call_id,
            images=images,
        )


@dataclass
class ContextSummary:
    """Condensed replacement for older history. At most one per session."""

    content: str
    covered_message_ids: list[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)
    message_count_at_creation: int = 0
    id: str = field(default_factory=lambda: f"summary-{now_ms()}")


@dataclass
class ContextState:
    """Bookkeeping for background summarization."""

    summary_in_progress: bool = False
    last_summary_message_count: int = 0


@dataclass
class Session:
    """A persisted conversation thread, independent of any one document."""

    id: str = field(default_factory=generate_session_id)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    last_active_item_key: str | None = None
    last_active_item_keys: list[str] | None = None
    messages: list[Message] = field(default_factory=list)
    context_summary: ContextSummary | None = None
    context_state: ContextState | None = None

    def remove_message(self, message_id: str) -> bool:
        """Remove a message by id. Returns whether it was present."""
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                del self.messages[index]
                return True
        return False

    def conversation_messages(self) -> list[Message]:
        return [m for m in self.messages if m.is_conversational]


@dataclass
class SessionMeta:
    """Lightweight listing entry for a session."""

    id: str
    created_at: int
    updated_at: int
    message_count: int = 0
    last_message_preview: str = ""
    last_message_time: int = 0


@dataclass
class SendOptions:
    """Per-call options for ``send_message``."""

    item_key: str | None = None
    images: list[ImageAttachment] | None = None
    files: list[FileAttachment] | None = None
    selected_text: str | None = None


def filter_valid_messages(messages: list[Message]) -> list[Message]:
    """Drop blank messages left behind by interrupted sends.

    Tool and system messages, and assistant turns that carry tool calls, are
    always kept.
    """
    return [
        m for m in messages
        if m.role in (MessageRole.TOOL, MessageRole.SYSTEM)
        or m.tool_calls
        or (m.content and m.content.strip())
    ]


def build_session_meta(session: Session) -> SessionMeta:
    """Summarize a session for listings."""
    preview = ""
    last_time = session.updated_at or now_ms()

    for message in reversed(session.messages):
        if message.content and message.role != MessageRole.TOOL:
            preview = message.content[:50] + ("..." if len(message.content) > 50 else "")
            last_time = message.timestamp or last_time
            break

    return SessionMeta(
        id=session.id,
        created_at=session.created_at,
        updated_at=session.updated_at,
        message_count=len(session.messages),
        last_message_preview=preview,
        last_message_time=last_time,
    )
