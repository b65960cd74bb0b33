"""Messaging transport interface.

A transport moves text between the bridge and a chat network. Inbound
messages and lifecycle events are pushed to handlers registered by the
router; outbound text and typing indicators go through ``send_text`` and
``send_typing``.
"""
from __future__ import annotations

import abc
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from chatbridge.engine.models import InboundMessage

logger = logging.getLogger(__name__)

READY = "ready"
DISCONNECTED = "disconnected"

MessageHandler = Callable[[InboundMessage], Awaitable[None]]
EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class Transport(abc.ABC):
    """Abstract transport.

    Implementations:
    - WebhookTransport: inbound via the HTTP bridge, outbound via webhook
    """

    def __init__(self) -> None:
        self._message_handler: MessageHandler | None = None
        self._event_handler: EventHandler | None = None

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    def set_event_handler(self, handler: EventHandler | None) -> None:
        self._event_handler = handler

    async def deliver(self, message: InboundMessage) -> None:
        """Hand an inbound message to the registered handler."""
        if self._message_handler is None:
            logger.warning("Inbound message %s dropped: no handler", message.id)
            return
        await self._message_handler(message)

    async def emit(self, event: str, **data: Any) -> None:
        """Report a lifecycle event (``ready``, ``disconnected``)."""
        logger.info("Transport event: %s", event)
        if self._event_handler is not None:
            await self._event_handler(event, data)

    @abc.abstractmethod
    async def send_text(self, destination: str, text: str) -> None:
        """Send *text* to a sender id or group id."""

    @abc.abstractmethod
    async def send_typing(self, destination: str) -> None:
        """Show a typing indicator, where the network supports one."""

    @abc.abstractmethod
    async def start(self) -> None:
        """Connect. Emits ``ready`` once messages can flow."""

    @abc.abstractmethod
    async def stop(self) -> None:
        """Disconnect and release resources."""
