"""
Tool-call status cards embedded in assistant display text.

A front end recognizes the ``<tool-call>`` block and renders it as a card.
Every piece of model- or user-supplied text is escaped before embedding.
"""

import json
from typing import Literal

from .strings import get_string

ToolCallStatus = Literal["calling", "completed", "error"]

MAX_ARGS_PREVIEW = 60
MAX_RESULT_PREVIEW = 100

_STATUS_ICONS = {
    "calling": "⏳",
    "completed": "✓",
    "error": "✗",
}

_STATUS_LABELS = {
    "calling": "tool-status-calling",
    "completed": "tool-status-done",
    "error": "tool-status-error",
}


def escape_markup(text: str) -> str:
    """Escape ``& < > " '`` for embedding inside the card markup."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def format_arguments(raw_arguments: str) -> str:
    """Render JSON arguments as ``key=value`` pairs for display."""
    try:
        parsed = json.loads(raw_arguments)
    except (json.JSONDecodeError, TypeError):
        return _truncate(raw_arguments or "", MAX_ARGS_PREVIEW)

    if isinstance(parsed, dict):
        display = ", ".join(
            f"{key}={json.dumps(value, ensure_ascii=False)}" for key, value in parsed.items()
        )
    else:
        display = raw_arguments
    return _truncate(display, MAX_ARGS_PREVIEW)


def format_tool_call_card(
    tool_name: str,
    raw_arguments: str,
    status: ToolCallStatus,
    result_preview: str | None = None,
) -> str:
    """Build the card markup for one tool call."""
    escaped_name = escape_markup(tool_name)
    escaped_args = escape_markup(format_arguments(raw_arguments))
    escaped_result = (
        escape_markup(_truncate(result_preview, MAX_RESULT_PREVIEW))
        if result_preview
        else ""
    )

    card = f'\n<tool-call status="{status}">\n'
    card += f"<tool-name>{_STATUS_ICONS[status]} {escaped_name}</tool-name>\n"
    if escaped_args:
        card += f"<tool-args>{escaped_args}</tool-args>\n"
    card += f"<tool-status>{get_string(_STATUS_LABELS[status])}</tool-status>\n"
    if escaped_result and status == "completed":
        card += f"<tool-result>{escaped_result}</tool-result>\n"
    card += "</tool-call>\n"
    return card
