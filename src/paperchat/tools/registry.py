"""
Tool executor: tool definitions for the model and dispatch of its tool calls.
"""

import json
import time
from typing import Any

import structlog

from ..documents import DocumentSource
from ..llm.base import ToolCall, ToolDefinition
from .base import Tool
from .paper_tools import create_paper_tools
from .parser import PaperStructure, parse_paper_structure

logger = structlog.get_logger()

CACHE_TTL_SECONDS = 5 * 60
MAX_CACHE_SIZE = 10


class ToolExecutor:
    """Registry of tools plus a small cache of parsed papers."""

    def __init__(
        self,
        document_source: DocumentSource | None = None,
        register_defaults: bool = True,
    ):
        self.document_source = document_source
        self.current_item_key: str | None = None
        self.current_item_keys: list[str] = []
        self._tools: dict[str, Tool] = {}
        self._paper_cache: dict[str, tuple[PaperStructure, float]] = {}

        if register_defaults:
            for tool in create_paper_tools():
                self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def get_definitions(self, has_document: bool = True) -> list[ToolDefinition]:
        """Definitions for the model.

        Paper tools are offered only when a paper is open, cross-paper tools
        only while more than one paper is selected.
        """
        multiple = len(self.current_item_keys) > 1
        return [
            tool.to_definition()
            for tool in self._tools.values()
            if (has_document or not tool.requires_document)
            and (multiple or not tool.multi_document)
        ]

    async def extract_paper(self, item_key: str) -> PaperStructure | None:
        """Extract and parse a paper's text, with a short-lived cache."""
        cached = self._paper_cache.get(item_key)
        if cached and time.monotonic() - cached[1] < CACHE_TTL_SECONDS:
            return cached[0]

        if self.document_source is None:
            return None

        text = await self.document_source.get_text(item_key)
        if not text:
            logger.info("No text available for item", item_key=item_key)
            return None

        structure = parse_paper_structure(text)
        self._add_to_cache(item_key, structure)
        return structure

    def _add_to_cache(self, item_key: str, structure: PaperStructure) -> None:
        if item_key not in self._paper_cache and len(self._paper_cache) >= MAX_CACHE_SIZE:
            oldest = min(self._paper_cache, key=lambda k: self._paper_cache[k][1])
            del self._paper_cache[oldest]
            logger.debug("Paper cache evicted", item_key=oldest)
        self._paper_cache[item_key] = (structure, time.monotonic())

    def invalidate_cache(self, item_key: str | None = None) -> None:
        if item_key is None:
            self._paper_cache.clear()
        else:
            self._paper_cache.pop(item_key, None)

    async def execute_tool_call(
        self,
        call: ToolCall,
        paper_structure: PaperStructure | None = None,
    ) -> str:
        """Run one tool call and return the text for the tool message.

        Problems the model can fix (unknown tool, bad arguments, no paper) come
        back as ``"Error: ..."`` text. Exceptions raised by a handler propagate.
        """
        arguments: dict[str, Any] = dict(call.arguments)
        if not arguments and call.raw_arguments and call.raw_arguments.strip():
            try:
                parsed = json.loads(call.raw_arguments)
            except json.JSONDecodeError:
                return f"Error: Invalid arguments JSON: {call.raw_arguments}"
            if not isinstance(parsed, dict):
                return f"Error: Invalid arguments JSON: {call.raw_arguments}"
            arguments = parsed

        tool = self.get(call.name)
        if tool is None:
            return f"Error: Unknown tool: {call.name}"

        missing = tool.missing_arguments(arguments)
        if missing:
            return f"Error: Invalid arguments for {tool.name}. Required: {', '.join(missing)}"

        item_key = arguments.pop("item_key", None) or self.current_item_key
        kwargs: dict[str, Any] = dict(arguments)

        if tool.requires_document:
            paper = await self.extract_paper(item_key) if item_key else None
            if paper is None:
                paper = paper_structure
            if paper is None:
                if item_key:
                    return (
                        f'Error: Could not extract PDF content for item "{item_key}". '
                        "The item may not exist or may not have a PDF attachment."
                    )
                return "Error: No paper content available. Please select a paper first."
            kwargs["paper"] = paper

        if tool.multi_document:
            item_keys = kwargs.pop("item_keys", None) or self.current_item_keys
            if isinstance(item_keys, str):
                item_keys = [item_keys]
            if not item_keys:
                return "Error: No papers selected. Please select papers or provide item_keys."

            papers = {}
            for key in item_keys:
                paper = await self.extract_paper(key)
                if paper is not None:
                    papers[key] = paper
            if not papers:
                return "Error: Could not extract any paper content."
            kwargs["papers"] = papers

        logger.info("Executing tool", tool_name=tool.name, arguments=arguments)
        result = await tool.execute(**kwargs)
        logger.info("Tool executed", tool_name=tool.name, success=result.success)
        return result.to_text()
