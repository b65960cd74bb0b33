"""Per-conversation turn log.

Supplies prior turns as prompt context for the next query. Entries are
kept in insertion order; the log is owned by exactly one orchestrator.
"""
from __future__ import annotations

from .models import ConversationTurn, TurnRole

_ROLE_LABELS = {
    TurnRole.USER: "User",
    TurnRole.ASSISTANT: "Assistant",
}


class HistoryLog:
    """Append-only ordered record of conversation turns.

    Thread-safe for single-event-loop usage.
    """

    def __init__(self) -> None:
        self._turns: list[ConversationTurn] = []
        self._generation = 0

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)

    def add_user(self, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=TurnRole.USER, text=text)
        self.append(turn)
        return turn

    def add_assistant(self, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=TurnRole.ASSISTANT, text=text)
        self.append(turn)
        return turn

    def snapshot_for_prompt(self) -> list[str]:
        """Return the prior turns as labelled texts, oldest first.

        Returns a fresh list on every call; repeated calls without a
        mutation in between return equal sequences.
        """
        return [
            f"{_ROLE_LABELS[turn.role]}: {turn.text}" for turn in self._turns
        ]

    def turns(self) -> list[ConversationTurn]:
        return list(self._turns)

    def truncate(self, length: int) -> None:
        """Drop every turn after the first *length* turns."""
        del self._turns[max(length, 0):]

    def clear(self) -> None:
        self._turns.clear()
        self._generation += 1

    @property
    def generation(self) -> int:
        """Bumped on every clear; a turn started earlier must not write back."""
        return self._generation

    @property
    def length(self) -> int:
        return len(self._turns)

    def __len__(self) -> int:
        return len(self._turns)
