"""HTTP bridge: inbound REST endpoint plus outbound webhook transport.

A chat gateway (WhatsApp bridge, Slack relay, test harness...) POSTs
inbound messages to this server and receives the agent's replies as
JSON POSTs to ``outbound_url``.

Routes:
    GET  /health
    POST /messages                                     {text, sender_id, is_group?, group_id?, id?}
    GET  /conversations
    GET  /conversations/{id}/permissions
    POST /conversations/{id}/permissions/{request_id}  {allowed}

Outbound payloads:
    {"type": "text", "to": "<destination>", "text": "..."}
    {"type": "typing", "to": "<destination>"}
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import aiohttp
from aiohttp import web

from chatbridge.engine.models import InboundMessage, PermissionRequest

from .router import ConversationRouter
from .transport import DISCONNECTED, READY, Transport

logger = logging.getLogger(__name__)

DEFAULT_OUTBOUND_TIMEOUT_SECONDS = 15.0


class WebhookTransport(Transport):
    """Sends outbound traffic as JSON POSTs; inbound arrives via BridgeServer."""

    def __init__(
        self,
        outbound_url: str | None,
        timeout_seconds: float = DEFAULT_OUTBOUND_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__()
        self._outbound_url = outbound_url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    @property
    def outbound_url(self) -> str | None:
        return self._outbound_url

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        if not self._outbound_url:
            logger.warning("No outbound URL configured; replies will only be logged")
        await self.emit(READY)

    async def stop(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
        await self.emit(DISCONNECTED, reason="stopped")

    async def send_text(self, destination: str, text: str) -> None:
        await self._post({"type": "text", "to": destination, "text": text})

    async def send_typing(self, destination: str) -> None:
        await self._post({"type": "typing", "to": destination})

    async def _post(self, payload: dict[str, Any]) -> None:
        if not self._outbound_url:
            logger.info(
                "Outbound %s to %s (not delivered): %s",
                payload["type"], payload["to"], str(payload.get("text", ""))[:200],
            )
            return
        if self._session is None:
            raise RuntimeError("WebhookTransport is not started")
        async with self._session.post(self._outbound_url, json=payload) as resp:
            resp.raise_for_status()
        logger.debug("Outbound %s delivered to %s", payload["type"], payload["to"])


class BridgeServer:
    """aiohttp application exposing the bridge over HTTP."""

    def __init__(
        self,
        router: ConversationRouter,
        transport: Transport,
        host: str = "127.0.0.1",
        port: int = 8787,
    ) -> None:
        self._router = router
        self._transport = transport
        self._host = host
        self._port = port
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/messages", self._handle_inbound_message)
        r.add_get("/conversations", self._handle_list_conversations)
        r.add_get("/conversations/{id}/permissions", self._handle_list_permissions)
        r.add_post(
            "/conversations/{id}/permissions/{request_id}",
            self._handle_resolve_permission,
        )

    # ── Lifecycle ──

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Bridge server listening on %s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Bridge server stopped")

    # ── Handlers ──

    async def _read_json(self, request: web.Request) -> tuple[dict | None, web.Response | None]:
        try:
            body = await request.json()
        except ValueError:
            return None, web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return None, web.json_response({"error": "Body must be a JSON object"}, status=400)
        return body, None

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "conversations": len(self._router.conversations),
            "in_flight": self._router.in_flight,
        })

    async def _handle_inbound_message(self, request: web.Request) -> web.Response:
        body, err = await self._read_json(request)
        if err:
            return err
        text = body.get("text")
        sender_id = body.get("sender_id")
        if not isinstance(text, str) or not isinstance(sender_id, str) or not sender_id.strip():
            return web.json_response(
                {"error": "text and sender_id are required"}, status=400,
            )
        is_group = bool(body.get("is_group", False))
        group_id = body.get("group_id") or None
        if is_group and not group_id:
            return web.json_response(
                {"error": "group_id is required for group messages"}, status=400,
            )

        message = InboundMessage(
            text=text,
            sender_id=sender_id.strip(),
            is_group=is_group,
            group_id=group_id,
        )
        if body.get("id"):
            message.id = str(body["id"])

        if not self._router.is_allowed(message):
            logger.warning("Rejected message from non-whitelisted sender %s", message.sender_id)
            return web.json_response({"error": "Sender not whitelisted"}, status=403)

        await self._transport.deliver(message)
        return web.json_response(
            {"status": "accepted", "id": message.id, "conversation_id": message.conversation_id},
            status=202,
        )

    async def _handle_list_conversations(self, request: web.Request) -> web.Response:
        conversations = [
            {
                "id": conversation_id,
                "pending_permissions": orchestrator.arbiter.pending_count,
                "session_id": orchestrator.session.session_id,
                "mode": orchestrator.config.permission_mode.value,
            }
            for conversation_id, orchestrator in self._router.conversations.items()
        ]
        return web.json_response({"conversations": conversations})

    async def _handle_list_permissions(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        orchestrator = self._router.get(conversation_id)
        if orchestrator is None:
            return web.json_response(
                {"error": f"Conversation {conversation_id} not found"}, status=404,
            )
        return web.json_response({
            "permissions": [
                _serialize_permission(p) for p in orchestrator.pending_permissions
            ],
        })

    async def _handle_resolve_permission(self, request: web.Request) -> web.Response:
        conversation_id = request.match_info["id"]
        request_id = request.match_info["request_id"]
        orchestrator = self._router.get(conversation_id)
        if orchestrator is None:
            return web.json_response(
                {"error": f"Conversation {conversation_id} not found"}, status=404,
            )
        body, err = await self._read_json(request)
        if err:
            return err
        allowed = body.get("allowed")
        if not isinstance(allowed, bool):
            return web.json_response({"error": "allowed must be a boolean"}, status=400)

        logger.info(
            "Resolve permission conv=%s request_id=%s allowed=%s",
            conversation_id[:12], request_id, allowed,
        )
        if not orchestrator.resolve_permission(request_id, allowed):
            return web.json_response(
                {"error": f"Permission request {request_id} not pending"}, status=404,
            )
        return web.json_response({"status": "resolved", "allowed": allowed})


def _serialize_permission(request: PermissionRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "tool_name": request.tool_name,
        "description": request.description,
        "age_seconds": round(time.monotonic() - request.created_at, 1),
    }
