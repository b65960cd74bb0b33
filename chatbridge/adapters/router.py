"""Routes transport traffic to per-conversation orchestrators.

Each conversation (a direct chat with one sender, or one group) gets its
own ConversationOrchestrator built from a copy of the template
RuntimeConfig. Every inbound message runs as its own task so a Y/N
permission reply can be handled while the query that asked for it is
still waiting.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from chatbridge.engine.backend import AssistantBackend
from chatbridge.engine.config import BridgeConfig
from chatbridge.engine.model_registry import ModelRegistry, build_default_registry
from chatbridge.engine.models import InboundMessage
from chatbridge.engine.orchestrator import ConversationOrchestrator

from .transport import DISCONNECTED, READY, Transport

logger = logging.getLogger(__name__)


class ConversationRouter:
    """Owns every orchestrator and the transport wiring."""

    def __init__(
        self,
        bridge: BridgeConfig,
        backend: AssistantBackend,
        transport: Transport,
        model_registry: ModelRegistry | None = None,
    ) -> None:
        self._bridge = bridge
        self._backend = backend
        self._transport = transport
        self._registry = model_registry or build_default_registry(bridge.model_aliases)
        self._orchestrators: dict[str, ConversationOrchestrator] = {}
        self._tasks: set[asyncio.Task] = set()
        # --resume/--fork apply to the first conversation only.
        self._pending_resume = bridge.resume_session_id
        self._pending_fork = bridge.fork_session
        self._closed = False

        transport.set_message_handler(self.on_message)
        transport.set_event_handler(self.on_transport_event)

    @property
    def conversations(self) -> dict[str, ConversationOrchestrator]:
        return dict(self._orchestrators)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def get(self, conversation_id: str) -> ConversationOrchestrator | None:
        return self._orchestrators.get(conversation_id)

    def orchestrator_for(self, conversation_id: str) -> ConversationOrchestrator:
        orchestrator = self._orchestrators.get(conversation_id)
        if orchestrator is not None:
            return orchestrator

        session_id, fork = self._pending_resume, self._pending_fork
        self._pending_resume, self._pending_fork = None, False
        orchestrator = ConversationOrchestrator(
            conversation_id,
            self._bridge.runtime.copy(),
            self._backend,
            bridge=self._bridge,
            model_registry=self._registry,
            session_id=session_id,
            fork_on_next_query=fork,
        )
        self._orchestrators[conversation_id] = orchestrator
        logger.info(
            "Conversation created conv=%s resume=%s fork=%s total=%d",
            conversation_id[:12], (session_id or "none")[:12], fork,
            len(self._orchestrators),
        )
        return orchestrator

    def is_allowed(self, message: InboundMessage) -> bool:
        if self._bridge.is_whitelisted(message.sender_id):
            return True
        return message.is_group and self._bridge.allow_all_group_participants

    # ── Transport callbacks ──

    async def on_message(self, message: InboundMessage) -> None:
        """Accept an inbound message and process it in the background."""
        if self._closed:
            logger.warning("Message %s dropped: router is shut down", message.id)
            return
        if not self.is_allowed(message):
            logger.warning(
                "Ignoring message from non-whitelisted sender %s", message.sender_id,
            )
            return
        task = asyncio.create_task(
            self._process(message), name=f"message-{message.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def on_transport_event(self, event: str, data: dict[str, Any]) -> None:
        if event == READY:
            logger.info("Transport ready. Listening for messages...")
            await self.send_startup_announcement()
        elif event == DISCONNECTED:
            logger.warning("Transport disconnected: %s", data.get("reason", "unknown"))
        else:
            logger.debug("Transport event ignored: %s", event)

    async def _process(self, message: InboundMessage) -> None:
        conversation_id = message.conversation_id
        orchestrator = self.orchestrator_for(conversation_id)

        async def reply(text: str) -> None:
            await self.send(conversation_id, text, orchestrator.config.agent_name)

        async def typing() -> None:
            await self._transport.send_typing(conversation_id)

        try:
            await orchestrator.handle(message, reply, typing)
        except asyncio.CancelledError:
            logger.info("Message task cancelled conv=%s id=%s", conversation_id[:12], message.id)
            raise
        except Exception:
            logger.exception(
                "Unhandled error processing message conv=%s id=%s",
                conversation_id[:12], message.id,
            )

    # ── Outbound ──

    async def send(self, destination: str, text: str, agent_name: str | None = None) -> None:
        if agent_name:
            text = f"*[{agent_name}]* {text}"
        await self._transport.send_text(destination, text)

    async def send_startup_announcement(self) -> None:
        runtime = self._bridge.runtime
        announcement = "\n".join([
            "Now online!",
            "",
            f"📁 Working directory: `{runtime.working_directory}`",
            f"🔐 Mode: {runtime.permission_mode.value}",
            f"🧠 Model: {runtime.model}",
            "",
            "Type */help* for available commands.",
        ])
        for contact in self._bridge.whitelist:
            try:
                await self.send(contact, announcement, runtime.agent_name)
                logger.info("Startup announcement sent to %s", contact)
            except Exception:
                logger.exception("Failed to send startup announcement to %s", contact)

    # ── Lifecycle ──

    async def start(self) -> None:
        await self._transport.start()

    async def shutdown(self) -> None:
        """Deny pending permissions, cancel in-flight work, close the transport."""
        if self._closed:
            return
        self._closed = True
        logger.info(
            "Router shutting down conversations=%d in_flight=%d",
            len(self._orchestrators), len(self._tasks),
        )
        for orchestrator in list(self._orchestrators.values()):
            await orchestrator.dispose()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._backend.stop()
        await self._transport.stop()
        logger.info("Router shut down")
