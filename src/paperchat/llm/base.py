"""
Base classes for LLM providers.

Providers advertise optional features through ``capabilities`` and the chat
engine branches on those flags instead of on the provider class.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Literal, Union


class Capability(str, Enum):
    """Optional provider features."""
    TOOL_CALLING = "tool_calling"
    STREAMING_TOOL_CALLING = "streaming_tool_calling"
    PDF_UPLOAD = "pdf_upload"
    CREDENTIAL_REFRESH = "credential_refresh"


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ToolCall:
    """A tool call made by the LLM.

    ``raw_arguments`` keeps the JSON text exactly as the model produced it,
    which may not parse when the model emits malformed arguments.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    raw_arguments: str | None = None

    @classmethod
    def from_json(cls, id: str, name: str, raw_arguments: str) -> "ToolCall":
        """Build a tool call from a JSON argument string."""
        try:
            parsed = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError:
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        return cls(id=id, name=name, arguments=parsed, raw_arguments=raw_arguments)

    @property
    def arguments_json(self) -> str:
        if self.raw_arguments is not None:
            return self.raw_arguments
        return json.dumps(self.arguments)


@dataclass
class ImageInput:
    """An image passed to a vision-capable model."""

    data: str
    mime_type: str = "image/png"
    is_url: bool = False


@dataclass
class PdfAttachment:
    """A raw PDF handed to providers that accept documents."""

    data: str  # base64
    mime_type: str = "application/pdf"
    name: str = "document.pdf"


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: Literal["user", "assistant", "system", "tool"]
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    images: list[ImageInput] | None = None


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


@dataclass
class TextDelta:
    """A chunk of assistant text."""

    text: str


@dataclass
class ToolCallStart:
    """The model opened a tool call at ``index``."""

    index: int
    id: str
    name: str


@dataclass
class ToolCallDelta:
    """A fragment of the JSON arguments of the tool call at ``index``."""

    index: int
    arguments_delta: str


@dataclass
class StreamComplete:
    """The model finished its turn."""

    stop_reason: str = "end_turn"


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallDelta, StreamComplete]


class BaseLLM(ABC):
    """Base class for LLM providers."""

    capabilities: frozenset[Capability] = frozenset()

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass

    def is_ready(self) -> bool:
        """Whether the provider has what it needs to make requests."""
        return bool(self.api_key and self.model)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @abstractmethod
    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @abstractmethod
    def stream(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
        attachment: PdfAttachment | None = None,
    ) -> AsyncIterator[str]:
        """Stream a plain text response from the LLM."""
        pass

    def stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Stream a tool-enabled response as typed events."""
        raise NotImplementedError(
            f"{self.provider_name} does not support streaming tool calls"
        )
