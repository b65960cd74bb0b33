"""Abstract base for assistant backends.

A backend runs one conversational turn against an assistant runtime.
Everything the turn needs, including the per-query permission handler
and session-created callback, arrives in the QueryRequest; backends
keep no conversation state of their own.
"""
from __future__ import annotations

import abc

from .models import QueryRequest, QueryResult

HISTORY_SEPARATOR = "\n\n---\n\n"


def build_prompt(request: QueryRequest) -> str:
    """Prior turns followed by the new prompt, separated by rules."""
    if not request.history:
        return request.prompt
    return HISTORY_SEPARATOR.join([*request.history, request.prompt])


class AssistantBackend(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - ClaudeBackend: Claude Agent SDK (claude_agent_sdk.query())
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude')."""

    @abc.abstractmethod
    async def query(self, request: QueryRequest) -> QueryResult:
        """Run one turn.

        Failures are reported through ``QueryResult.error``; this method
        should not raise for runtime errors.
        """

    async def stop(self) -> None:
        """Release backend resources. Default is a no-op."""
