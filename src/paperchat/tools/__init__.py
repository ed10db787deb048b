"""Paper tools exposed to the model."""

from .base import Tool, ToolParameter, ToolResult
from .parser import PaperStructure, parse_page_range, parse_paper_structure
from .prompts import generate_paper_context_prompt
from .registry import ToolExecutor

__all__ = [
    "Tool",
    "ToolParameter",
    "ToolResult",
    "PaperStructure",
    "parse_page_range",
    "parse_paper_structure",
    "generate_paper_context_prompt",
    "ToolExecutor",
]
