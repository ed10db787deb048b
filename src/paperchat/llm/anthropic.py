"""
Anthropic Claude LLM provider.
"""

from functools import cached_property
from typing import Any, AsyncIterator

import anthropic
import structlog

from .base import (
    BaseLLM,
    Capability,
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

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    capabilities = frozenset({
        Capability.TOOL_CALLING,
        Capability.STREAMING_TOOL_CALLING,
        Capability.PDF_UPLOAD,
    })

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)

    @cached_property
    def client(self) -> anthropic.AsyncAnthropic:
        return anthropic.AsyncAnthropic(
            api_key=self.api_key,
            base_url=self.base_url,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_user_content(
        self,
        msg: LLMMessage,
        attachment: PdfAttachment | None = None,
    ) -> str | list[dict[str, Any]]:
        if not msg.images and attachment is None:
            return msg.content

        blocks: list[dict[str, Any]] = []
        if attachment is not None:
            blocks.append({
                "type": "document",
                "source": {
                    "type": "base64",
                    "media_type": attachment.mime_type,
                    "data": attachment.data,
                },
            })
        for image in msg.images or []:
            if image.is_url:
                source = {"type": "url", "url": image.data}
            else:
                source = {"type": "base64", "media_type": image.mime_type, "data": image.data}
            blocks.append({"type": "image", "source": source})
        blocks.append({"type": "text", "text": msg.content})
        return blocks

    def _convert_messages(
        self,
        messages: list[LLMMessage],
        attachment: PdfAttachment | None = None,
    ) -> list[dict[str, Any]]:
        """Convert LLMMessages to Anthropic format.

        Leading system messages become the system prompt; system messages that
        appear mid-conversation (notices, summaries) are sent as user text so
        they keep their position.
        """
        converted = []
        last_user_index = max(
            (i for i, m in enumerate(messages) if m.role == "user"),
            default=-1,
        )
        seen_non_system = False

        for i, msg in enumerate(messages):
            if msg.role == "system":
                if seen_non_system:
                    converted.append({"role": "user", "content": f"[System notice] {msg.content}"})
                continue

            seen_non_system = True

            if msg.role == "tool":
                converted.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": msg.tool_call_id,
                            "content": msg.content,
                        }
                    ],
                })
            elif msg.role == "assistant" and msg.tool_calls:
                content: list[dict[str, Any]] = []
                if msg.content:
                    content.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                converted.append({"role": "assistant", "content": content})
            elif msg.role == "user":
                converted.append({
                    "role": "user",
                    "content": self._convert_user_content(
                        msg, attachment if i == last_user_index else None
                    ),
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to Anthropic format."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.parameters,
            }
            for tool in tools
        ]

    def _extract_system_prompt(self, messages: list[LLMMessage]) -> str | None:
        """Join the system messages that precede the conversation."""
        parts = []
        for msg in messages:
            if msg.role != "system":
                break
            parts.append(msg.content)
        return "\n\n".join(parts) if parts else None

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
        attachment: PdfAttachment | None = None,
    ) -> dict[str, Any]:
        system = system_prompt or self._extract_system_prompt(messages)

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": self._convert_messages(messages, attachment),
        }

        if system:
            kwargs["system"] = system

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        kwargs = self._build_kwargs(messages, tools, system_prompt)

        try:
            response = await self.client.messages.create(**kwargs)

            content = ""
            tool_calls = []

            for block in response.content:
                if block.type == "text":
                    content += block.text
                elif block.type == "tool_use":
                    tool_calls.append(ToolCall(
                        id=block.id,
                        name=block.name,
                        arguments=dict(block.input) if isinstance(block.input, dict) else {},
                    ))

            return LLMResponse(
                content=content,
                tool_calls=tool_calls,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                model=response.model,
                stop_reason=response.stop_reason,
                raw_response=response,
            )

        except anthropic.APIError as e:
            logger.error("Anthropic API error", error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
        attachment: PdfAttachment | None = None,
    ) -> AsyncIterator[str]:
        """Stream a response from Claude."""
        kwargs = self._build_kwargs(messages, None, system_prompt, attachment)

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield text

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise

    async def stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Stream a tool-enabled response from Claude as typed events."""
        kwargs = self._build_kwargs(messages, tools, None)
        kwargs["stream"] = True

        stop_reason = "end_turn"
        try:
            stream = await self.client.messages.create(**kwargs)

            async for event in stream:
                if event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        yield ToolCallStart(index=event.index, id=block.id, name=block.name)
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(text=delta.text)
                    elif delta.type == "input_json_delta":
                        yield ToolCallDelta(index=event.index, arguments_delta=delta.partial_json)
                elif event.type == "message_delta":
                    if event.delta.stop_reason:
                        stop_reason = event.delta.stop_reason

            yield StreamComplete(stop_reason=stop_reason)

        except anthropic.APIError as e:
            logger.error("Anthropic streaming error", error=str(e))
            raise
