"""
Base classes for tools.
"""

from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from ..llm.base import ToolDefinition


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    error: str | None = None

    def to_text(self) -> str:
        """Text handed back to the model as the tool message content."""
        if self.success:
            return self.output
        return f"Error: {self.error or 'Tool execution failed'}"


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, number, boolean, array
    description: str
    required: bool = True
    enum: list[str] | None = None
    items: dict[str, Any] | None = None


@dataclass
class Tool:
    """
    A tool exposed to the model.

    Handlers are coroutines. Tools that read the open paper receive the parsed
    structure as the ``paper`` keyword argument in addition to the model's
    arguments. Multi-document tools receive ``papers``, a dict of item key to
    parsed structure, and are offered only while several papers are selected.
    """

    name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]
    requires_document: bool = True
    multi_document: bool = False

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop: dict[str, Any] = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.items:
                prop["items"] = param.items

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters_schema(),
        )

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        return [p.name for p in self.parameters if p.required and p.name not in arguments]

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool handler."""
        return await self.handler(**kwargs)
