"""Adapters package - Bridge between the engine and chat networks.

This package contains the transport interface, the conversation router
that owns per-conversation orchestrators, and the aiohttp bridge that
exposes them over HTTP.
"""
from __future__ import annotations

__all__ = [
    "ConversationRouter",
    "Transport",
    "WebhookTransport",
    "BridgeServer",
]

from chatbridge.adapters.router import ConversationRouter
from chatbridge.adapters.transport import Transport
from chatbridge.adapters.webhook import BridgeServer, WebhookTransport
