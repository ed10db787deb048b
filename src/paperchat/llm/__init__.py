"""
LLM module for multi-provider AI model support.

Providers:
- Anthropic Claude (native SDK)
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    Capability,
    ImageInput,
    LLMMessage,
    LLMResponse,
    PdfAttachment,
    StreamComplete,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolDefinition,
)
from .anthropic import AnthropicLLM
from .openai import OpenAILLM
from .fallback import ProviderManager
from .factory import create_llm, create_provider_manager

__all__ = [
    "BaseLLM",
    "Capability",
    "ImageInput",
    "LLMMessage",
    "LLMResponse",
    "PdfAttachment",
    "StreamComplete",
    "StreamEvent",
    "TextDelta",
    "ToolCall",
    "ToolCallDelta",
    "ToolCallStart",
    "ToolDefinition",
    "AnthropicLLM",
    "OpenAILLM",
    "ProviderManager",
    "create_llm",
    "create_provider_manager",
]
