"""Plain-text rendering of tool inputs for permission prompts.

Registry-based, one small function per tool. Adding a tool:

    @tool_formatter("MyTool")
    def _format_my_tool(args):
        return f"Target: {args.get('target')}"
"""

from __future__ import annotations

import json
from typing import Any, Callable

_FORMATTERS: dict[str, Callable[[dict], str]] = {}

WRITE_PREVIEW_CHARS = 200
DEFAULT_PREVIEW_CHARS = 500


def tool_formatter(name: str):
    """Decorator to register a formatter for a given tool name."""

    def decorator(fn: Callable[[dict], str]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


@tool_formatter("Write")
def _format_write(args: dict) -> str:
    content = str(args.get("content"))[:WRITE_PREVIEW_CHARS]
    return f"File: {args.get('file_path')}\nContent: {content}..."


@tool_formatter("Edit")
def _format_edit(args: dict) -> str:
    return (
        f"File: {args.get('file_path')}\n"
        f"Old: {args.get('old_string')}\n"
        f"New: {args.get('new_string')}"
    )


@tool_formatter("Bash")
def _format_bash(args: dict) -> str:
    return f"Command: {args.get('command')}"


@tool_formatter("Read")
def _format_read(args: dict) -> str:
    return f"File: {args.get('file_path')}"


def _format_default(tool_input: Any) -> str:
    try:
        text = json.dumps(tool_input, indent=2, default=str)
    except (TypeError, ValueError):
        text = str(tool_input)
    return text[:DEFAULT_PREVIEW_CHARS]


def format_tool_input(tool_name: str, tool_input: Any) -> str:
    """Human-readable summary of *tool_input* for a permission prompt."""
    if not isinstance(tool_input, dict):
        return str(tool_input)
    formatter = _FORMATTERS.get(tool_name)
    if formatter is None:
        return _format_default(tool_input)
    return formatter(tool_input)
