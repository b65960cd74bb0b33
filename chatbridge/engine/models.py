"""Core data models for the conversation engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import RuntimeConfig


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"
    DONT_ASK = "dontAsk"

    @classmethod
    def parse(cls, value: str) -> PermissionMode:
        """Parse a mode name, accepting snake_case and short aliases."""
        mapping = {
            "default": cls.DEFAULT,
            "acceptedits": cls.ACCEPT_EDITS,
            "accept_edits": cls.ACCEPT_EDITS,
            "accept-edits": cls.ACCEPT_EDITS,
            "bypasspermissions": cls.BYPASS,
            "bypass": cls.BYPASS,
            "plan": cls.PLAN,
            "dontask": cls.DONT_ASK,
            "dont_ask": cls.DONT_ASK,
            "dont-ask": cls.DONT_ASK,
        }
        mode = mapping.get(value.strip().lower())
        if mode is None:
            raise ValueError(f"Unknown permission mode: {value}")
        return mode


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_permission_id() -> str:
    """Generation-time-stamped id with a random suffix."""
    return f"perm_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class ConversationTurn:
    role: TurnRole
    text: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class PermissionRequest:
    """An outstanding "may I use tool X" question for the human."""
    tool_name: str
    description: str
    raw_input: Any = None
    id: str = field(default_factory=make_permission_id)
    created_at: float = field(default_factory=time.monotonic)
    future: asyncio.Future[bool] | None = field(default=None, repr=False)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class InboundMessage:
    """A message delivered by the transport."""
    text: str
    sender_id: str
    is_group: bool = False
    group_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def conversation_id(self) -> str:
        """Groups share one conversation; direct chats are per sender."""
        if self.is_group and self.group_id:
            return self.group_id
        return self.sender_id


# Async callback the backend invokes before each tool use.
# Signature: async def handler(tool_name, tool_input) -> bool
PermissionHandler = Callable[[str, Any], Awaitable[bool]]

# Invoked at most once per query when the backend mints a new session.
SessionCreatedCallback = Callable[[str], None]

# Reply / typing channels supplied by the transport for one message.
ReplyChannel = Callable[[str], Awaitable[None]]
TypingChannel = Callable[[], Awaitable[None]]


@dataclass
class QueryRequest:
    """Everything the backend needs for one conversational turn."""
    prompt: str
    history: list[str]
    config: RuntimeConfig
    session_id: str | None = None
    fork_session: bool = False
    permission_handler: PermissionHandler | None = field(default=None, repr=False)
    on_session_created: SessionCreatedCallback | None = field(
        default=None, repr=False,
    )


@dataclass
class QueryResult:
    """Final outcome of a backend query."""
    text: str = ""
    tools_used: list[str] = field(default_factory=list)
    error: str | None = None
    session_id: str | None = None
    cost_usd: float | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
