"""Session lifecycle and invalidation rules.

Holds the resumable session handle and the one-shot fork flag, and owns
every RuntimeConfig mutator whose effect on the session matters.
Sessions are directory-scoped on the backend, and directory, model and
system prompt changes alter context incompatibly with a resumed
session, so those mutators drop the session. Permission mode is
orthogonal to conversational context and never does.

Invariant: whenever the session id is cleared, the HistoryLog is cleared
in the same call.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .config import VALID_SETTING_SOURCES, RuntimeConfig, expand_path
from .errors import (
    EmptyAgentNameError,
    InvalidDirectoryError,
    InvalidSettingSourceError,
    NoActiveSessionError,
    UnknownModelError,
)
from .history import HistoryLog
from .models import PermissionMode

logger = logging.getLogger(__name__)


class ModelResolver(Protocol):
    def resolve(self, name: str) -> str | None: ...


class SessionLifecycle:
    """Session state plus the config mutators that are coupled to it."""

    def __init__(
        self,
        config: RuntimeConfig,
        history: HistoryLog,
        model_resolver: ModelResolver,
        session_id: str | None = None,
        fork_on_next_query: bool = False,
    ) -> None:
        self._config = config
        self._history = history
        self._resolver = model_resolver
        self._session_id = session_id
        self._fork_on_next_query = fork_on_next_query and session_id is not None
        self._generation = 0

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def fork_on_next_query(self) -> bool:
        return self._fork_on_next_query

    @property
    def generation(self) -> int:
        """Bumped whenever the session handle is replaced or dropped."""
        return self._generation

    # ── Session handle ──

    def set_session_id(self, session_id: str | None) -> None:
        """Point the next query at *session_id*; None starts a new session."""
        if session_id is None:
            self.clear_session()
            return
        self._session_id = session_id
        self._generation += 1
        logger.info("Session ID set to: %s", session_id)

    def clear_session(self) -> bool:
        """Drop the session and its history. Returns True if one was set."""
        had_session = self._session_id is not None
        self._session_id = None
        self._fork_on_next_query = False
        self._history.clear()
        self._generation += 1
        logger.info("Session ID cleared (history cleared)")
        return had_session

    def on_session_created(self, session_id: str) -> None:
        """Backend callback: a new session handle was minted."""
        self._session_id = session_id
        logger.info("Session ID captured: %s", session_id)
        logger.info(
            "Resume later with --resume %s (add --fork to branch it), "
            "or use /session and /fork from chat",
            session_id,
        )

    def enable_fork_for_next_query(self) -> None:
        if self._session_id is None:
            raise NoActiveSessionError("fork")
        self._fork_on_next_query = True
        logger.info("Fork enabled for session %s", self._session_id)

    def consume_fork_flag(self) -> bool:
        """Return the fork flag and reset it; forking is one-shot."""
        fork = self._fork_on_next_query
        self._fork_on_next_query = False
        return fork

    # ── Invalidating mutators ──

    def on_directory_change(self, raw_path: str) -> Path:
        target = expand_path(raw_path, base=self._config.working_directory)
        if not target.exists():
            raise InvalidDirectoryError(str(target), "Directory not found")
        if not target.is_dir():
            raise InvalidDirectoryError(str(target), "Path is not a directory")

        self.clear_session()
        self._config.working_directory = str(target)
        logger.info(
            "Working directory changed to %s (session cleared, sessions are "
            "tied to their original directory)",
            target,
        )
        return target

    def on_model_change(self, shorthand: str) -> str:
        resolved = self._resolver.resolve(shorthand)
        if resolved is None:
            raise UnknownModelError(shorthand.strip())

        self.clear_session()
        self._config.model = resolved
        logger.info("Model changed to %s (session cleared)", resolved)
        return resolved

    def on_system_prompt_change(self, value: str | None) -> None:
        self.clear_session()
        self._config.system_prompt = value or None
        self._config.system_prompt_append = None
        logger.info(
            "System prompt %s (session cleared)",
            f"set ({len(value)} chars)" if value else "cleared",
        )

    def on_system_prompt_append_change(self, value: str | None) -> None:
        self.clear_session()
        self._config.system_prompt_append = value or None
        self._config.system_prompt = None
        logger.info(
            "System prompt append %s (session cleared)",
            f"set ({len(value)} chars)" if value else "cleared",
        )

    # ── Non-invalidating mutators ──

    def on_mode_change(self, mode: PermissionMode) -> None:
        self._config.permission_mode = mode
        logger.info("Mode changed to: %s", mode.value)

    def on_claude_md_sources_change(self, sources: list[str] | None) -> None:
        if sources:
            invalid = [s for s in sources if s not in VALID_SETTING_SOURCES]
            if invalid:
                raise InvalidSettingSourceError(invalid, VALID_SETTING_SOURCES)
        self._config.claude_md_sources = list(sources) if sources else None
        logger.info(
            "Setting sources %s",
            f"set to: {', '.join(sources)}" if sources else "cleared",
        )

    def on_agent_name_change(self, name: str) -> str:
        name = name.strip()
        if not name:
            raise EmptyAgentNameError()
        self._config.agent_name = name
        logger.info("Agent name changed to: %s", name)
        return name
