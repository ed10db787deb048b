"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

from functools import cached_property
from typing import Any, AsyncIterator

import openai
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


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    capabilities = frozenset({
        Capability.TOOL_CALLING,
        Capability.STREAMING_TOOL_CALLING,
    })

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        name: str = "openai",
    ):
        super().__init__(api_key, model, base_url, max_tokens, temperature)
        self._name = name

    @cached_property
    def client(self) -> openai.AsyncOpenAI:
        """SDK client, created on first request so a missing key only fails at send time."""
        return openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
        )

    @property
    def provider_name(self) -> str:
        return self._name

    def _convert_content(self, msg: LLMMessage) -> str | list[dict[str, Any]]:
        if not msg.images:
            return msg.content
        parts: list[dict[str, Any]] = [{"type": "text", "text": msg.content}]
        for image in msg.images:
            url = image.data if image.is_url else f"data:{image.mime_type};base64,{image.data}"
            parts.append({"type": "image_url", "image_url": {"url": url}})
        return parts

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict[str, Any]]:
        """Convert LLMMessages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                tool_calls = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.name,
                            "arguments": tc.arguments_json,
                        },
                    }
                    for tc in msg.tool_calls
                ]
                converted.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": tool_calls,
                })
            else:
                converted.append({
                    "role": msg.role,
                    "content": self._convert_content(msg),
                })

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_kwargs(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None,
        system_prompt: str | None,
    ) -> dict[str, Any]:
        converted_messages = self._convert_messages(messages)

        if system_prompt:
            converted_messages.insert(0, {"role": "system", "content": system_prompt})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": converted_messages,
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        return kwargs

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        kwargs = self._build_kwargs(messages, tools, system_prompt)

        try:
            response = await self.client.chat.completions.create(**kwargs)

            choice = response.choices[0]
            message = choice.message

            content = message.content or ""
            tool_calls = []

            if message.tool_calls:
                for tc in message.tool_calls:
                    tool_calls.append(ToolCall.from_json(
                        id=tc.id,
                        name=tc.function.name,
                        raw_arguments=tc.function.arguments or "",
                    ))

            return LLMResponse(
                content=content,
                tool_calls=tool_calls,
                input_tokens=response.usage.prompt_tokens if response.usage else 0,
                output_tokens=response.usage.completion_tokens if response.usage else 0,
                model=response.model,
                stop_reason=choice.finish_reason,
                raw_response=response,
            )

        except openai.APIError as e:
            logger.error("OpenAI API error", provider=self.provider_name, error=str(e))
            raise

    async def stream(
        self,
        messages: list[LLMMessage],
        system_prompt: str | None = None,
        attachment: PdfAttachment | None = None,
    ) -> AsyncIterator[str]:
        """Stream a response from GPT."""
        kwargs = self._build_kwargs(messages, None, system_prompt)
        kwargs["stream"] = True

        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content

        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self.provider_name, error=str(e))
            raise

    async def stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition],
    ) -> AsyncIterator[StreamEvent]:
        """Stream a tool-enabled response from GPT as typed events."""
        kwargs = self._build_kwargs(messages, tools, None)
        kwargs["stream"] = True

        stop_reason = "end_turn"
        try:
            stream = await self.client.chat.completions.create(**kwargs)

            async for chunk in stream:  # type: ignore
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta.content:
                    yield TextDelta(text=delta.content)

                for tc in delta.tool_calls or []:
                    if tc.id and tc.function and tc.function.name:
                        yield ToolCallStart(index=tc.index, id=tc.id, name=tc.function.name)
                    if tc.function and tc.function.arguments:
                        yield ToolCallDelta(index=tc.index, arguments_delta=tc.function.arguments)

                if choice.finish_reason:
                    stop_reason = choice.finish_reason

            yield StreamComplete(stop_reason=stop_reason)

        except openai.APIError as e:
            logger.error("OpenAI streaming error", provider=self.provider_name, error=str(e))
            raise

