"""Tool-permission arbitration.

Each request is an asyncio Future registered under a unique id. Three
paths race to settle it: an explicit resolve by id, a free-text Y/N
reply (which always targets the newest pending request), and a
cancellable timer that auto-denies. Settling pops the request from the
registry first, so whichever path runs first wins and every later
attempt is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import DEFAULT_PERMISSION_TIMEOUT_SECONDS
from .models import PermissionRequest

logger = logging.getLogger(__name__)

# Delivers a new request to the human (the transport sends the prompt).
PermissionNotifier = Callable[[PermissionRequest], Awaitable[None]]

_ALLOW_REPLIES = frozenset({"Y", "YES", "ALLOW"})
_DENY_REPLIES = frozenset({"N", "NO", "DENY"})


def parse_permission_reply(text: str) -> bool | None:
    """Map a free-text reply to allow/deny, or None if it is neither."""
    normalized = text.strip().upper()
    if normalized in _ALLOW_REPLIES:
        return True
    if normalized in _DENY_REPLIES:
        return False
    return None


class PermissionArbiter:
    """Registry of outstanding tool-permission requests for one conversation."""

    def __init__(
        self,
        notify: PermissionNotifier | None = None,
        timeout_seconds: float = DEFAULT_PERMISSION_TIMEOUT_SECONDS,
    ) -> None:
        self._notify = notify
        # Set to 0 (or a negative value) to disable the timeout.
        self._timeout = timeout_seconds
        # Insertion order doubles as creation order for newest-wins.
        self._pending: dict[str, PermissionRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def pending(self) -> list[PermissionRequest]:
        return list(self._pending.values())

    async def request(
        self, tool_name: str, description: str, raw_input: Any = None,
    ) -> bool:
        """Register a request, notify the human, and wait for the outcome."""
        loop = asyncio.get_running_loop()
        request = PermissionRequest(
            tool_name=tool_name,
            description=description,
            raw_input=raw_input,
        )
        request.future = loop.create_future()
        self._pending[request.id] = request
        if self._timeout > 0:
            request.timer = loop.call_later(
                self._timeout, self._expire, request.id,
            )
        logger.info(
            "Permission request queued request_id=%s tool=%s pending=%d",
            request.id, tool_name, len(self._pending),
        )

        if self._notify is not None:
            try:
                await self._notify(request)
            except Exception:
                # The request stays pending; a reply or the timer settles it.
                logger.exception(
                    "Permission notification failed request_id=%s", request.id,
                )

        try:
            allowed = await request.future
        except asyncio.CancelledError:
            self._settle(request.id, False)
            raise
        logger.info(
            "Permission request resolved request_id=%s tool=%s result=%s",
            request.id, tool_name, "allow" if allowed else "deny",
        )
        return allowed

    def resolve(self, request_id: str, allowed: bool) -> bool:
        """Resolve a specific request. Returns False if it is no longer pending."""
        if self._settle(request_id, allowed):
            return True
        logger.warning(
            "Permission resolve ignored request_id=%s (missing or already done)",
            request_id,
        )
        return False

    def try_resolve_from_message(self, text: str) -> bool:
        """Treat *text* as a Y/N reply to the newest pending request.

        Returns False, without side effects, when the text is not a
        recognised reply or nothing is pending.
        """
        allowed = parse_permission_reply(text)
        if allowed is None or not self._pending:
            return False
        latest = next(reversed(self._pending.values()))
        logger.info(
            "Permission %s %s for %s",
            latest.id, "granted" if allowed else "denied", latest.tool_name,
        )
        return self._settle(latest.id, allowed)

    def cancel_all(self) -> int:
        """Deny every pending request and clear the registry."""
        request_ids = list(self._pending)
        for request_id in request_ids:
            self._settle(request_id, False)
        if request_ids:
            logger.info("Cancelled %d pending permission request(s)", len(request_ids))
        return len(request_ids)

    def format_request(self, request: PermissionRequest) -> str:
        """Human-facing prompt for a permission request."""
        lines = [
            "🔐 *Permission Request*",
            "",
            f"Claude wants to use *{request.tool_name}*:",
            "",
            "```",
            request.description,
            "```",
            "",
            "Reply *Y* to allow or *N* to deny.",
        ]
        if self._timeout > 0:
            minutes = max(1, round(self._timeout / 60))
            unit = "minute" if minutes == 1 else "minutes"
            lines.append(f"(Auto-denies in {minutes} {unit})")
        return "\n".join(lines)

    # ── internals ──

    def _expire(self, request_id: str) -> None:
        request = self._pending.get(request_id)
        if request is not None and self._settle(request_id, False):
            logger.warning(
                "Permission request %s timed out, denying %s",
                request_id, request.tool_name,
            )

    def _settle(self, request_id: str, allowed: bool) -> bool:
        request = self._pending.pop(request_id, None)
        if request is None:
            return False
        if request.timer is not None:
            request.timer.cancel()
        if request.future is not None and not request.future.done():
            request.future.set_result(allowed)
        return True
