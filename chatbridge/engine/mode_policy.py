"""Permission-mode policy for tool use.

Pure decision table: (permission mode, tool class) -> allow/ask/deny.
Tool classification lives in TOOL_CLASSES so new tools can be added
without touching the decision logic.
"""
from __future__ import annotations

from enum import Enum

from .models import PermissionMode


class Decision(str, Enum):
    ALLOW = "allow"
    ASK = "ask"
    DENY = "deny"


class ToolClass(str, Enum):
    EDIT = "edit"                # destructive, file edits only
    DESTRUCTIVE = "destructive"  # destructive, anything else (shell, todo state)
    SAFE = "safe"                # read-only inspection


TOOL_CLASSES: dict[str, ToolClass] = {
    "Write": ToolClass.EDIT,
    "Edit": ToolClass.EDIT,
    "MultiEdit": ToolClass.EDIT,
    "NotebookEdit": ToolClass.EDIT,
    "Bash": ToolClass.DESTRUCTIVE,
    "TodoWrite": ToolClass.DESTRUCTIVE,
}

POLICY: dict[PermissionMode, dict[ToolClass, Decision]] = {
    PermissionMode.BYPASS: {
        ToolClass.EDIT: Decision.ALLOW,
        ToolClass.DESTRUCTIVE: Decision.ALLOW,
        ToolClass.SAFE: Decision.ALLOW,
    },
    PermissionMode.PLAN: {
        ToolClass.EDIT: Decision.DENY,
        ToolClass.DESTRUCTIVE: Decision.DENY,
        ToolClass.SAFE: Decision.ALLOW,
    },
    PermissionMode.ACCEPT_EDITS: {
        ToolClass.EDIT: Decision.ALLOW,
        ToolClass.DESTRUCTIVE: Decision.ASK,
        ToolClass.SAFE: Decision.ALLOW,
    },
    PermissionMode.DONT_ASK: {
        ToolClass.EDIT: Decision.DENY,
        ToolClass.DESTRUCTIVE: Decision.DENY,
        ToolClass.SAFE: Decision.ALLOW,
    },
    PermissionMode.DEFAULT: {
        ToolClass.EDIT: Decision.ASK,
        ToolClass.DESTRUCTIVE: Decision.ASK,
        ToolClass.SAFE: Decision.ALLOW,
    },
}

_DENY_REASONS = {
    PermissionMode.PLAN: "Destructive tools not allowed in plan mode",
    PermissionMode.DONT_ASK: "Tool not pre-approved in dontAsk mode",
}


def classify(tool_name: str) -> ToolClass:
    return TOOL_CLASSES.get(tool_name, ToolClass.SAFE)


def is_destructive(tool_name: str) -> bool:
    return classify(tool_name) is not ToolClass.SAFE


def is_edit_tool(tool_name: str) -> bool:
    return classify(tool_name) is ToolClass.EDIT


def decide(mode: PermissionMode, tool_name: str) -> Decision:
    return POLICY[mode][classify(tool_name)]


def deny_reason(mode: PermissionMode, tool_name: str) -> str:
    """Message returned to the model when *tool_name* is denied outright."""
    return _DENY_REASONS.get(mode, f"{tool_name} is not allowed in {mode.value} mode")
