"""Tests for ConversationRouter: per-conversation isolation, whitelist, lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from chatbridge.adapters.router import ConversationRouter
from chatbridge.adapters.transport import DISCONNECTED, READY, Transport
from chatbridge.engine.backend import AssistantBackend
from chatbridge.engine.config import BridgeConfig, RuntimeConfig
from chatbridge.engine.models import InboundMessage, PermissionMode, QueryResult


class FakeBackend(AssistantBackend):
    def __init__(self, script=None):
        self.requests = []
        self.script = script
        self.stop = AsyncMock()

    @property
    def name(self) -> str:
        return "fake"

    async def query(self, request):
        self.requests.append(request)
        if self.script is not None:
            return await self.script(request)
        return QueryResult(text=f"echo: {request.prompt}")


class FakeTransport(Transport):
    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str]] = []
        self.typing: list[str] = []
        self.started = False
        self.stopped = False

    async def send_text(self, destination, text):
        self.sent.append((destination, text))

    async def send_typing(self, destination):
        self.typing.append(destination)

    async def start(self):
        self.started = True
        await self.emit(READY)

    async def stop(self):
        self.stopped = True
        await self.emit(DISCONNECTED, reason="stopped")


ALICE = "+15550000001"
BOB = "+15550000002"


def _bridge(tmp_path, **kwargs) -> BridgeConfig:
    runtime = RuntimeConfig(working_directory=str(tmp_path), agent_name="Batman")
    return BridgeConfig(runtime=runtime, whitelist=[ALICE, BOB], **kwargs)


async def _drain(router: ConversationRouter) -> None:
    for _ in range(500):
        if router.in_flight == 0:
            return
        await asyncio.sleep(0)
    raise AssertionError("message tasks did not finish")


class TestRouting:
    @pytest.mark.asyncio
    async def test_reply_prefixed_with_agent_name(self, tmp_path):
        transport = FakeTransport()
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(), transport)

        await transport.deliver(InboundMessage(text="hi", sender_id=ALICE))
        await _drain(router)

        assert transport.sent == [(ALICE, "*[Batman]* echo: hi")]
        assert transport.typing == [ALICE]

    @pytest.mark.asyncio
    async def test_conversations_are_isolated(self, tmp_path):
        transport = FakeTransport()
        backend = FakeBackend()
        router = ConversationRouter(_bridge(tmp_path), backend, transport)

        await transport.deliver(InboundMessage(text="/plan", sender_id=ALICE))
        await _drain(router)
        await transport.deliver(InboundMessage(text="/name Robin", sender_id=BOB))
        await _drain(router)

        alice = router.get(ALICE)
        bob = router.get(BOB)
        assert alice is not bob
        assert alice.config.permission_mode is PermissionMode.PLAN
        assert bob.config.permission_mode is PermissionMode.DEFAULT
        assert bob.config.agent_name == "Robin"
        assert alice.config.agent_name == "Batman"
        assert (BOB, "*[Robin]* ✓ Agent name changed to: *Robin*") in transport.sent

    @pytest.mark.asyncio
    async def test_group_shares_one_conversation(self, tmp_path):
        transport = FakeTransport()
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(), transport)

        for sender in (ALICE, BOB):
            await transport.deliver(InboundMessage(
                text="@ai hello", sender_id=sender, is_group=True, group_id="team@g.us",
            ))
        await _drain(router)

        assert list(router.conversations) == ["team@g.us"]
        assert len(router.get("team@g.us").history) == 4

    @pytest.mark.asyncio
    async def test_permission_reply_while_query_suspended(self, tmp_path):
        async def script(request):
            allowed = await request.permission_handler("Bash", {"command": "make"})
            return QueryResult(text=f"allowed={allowed}")

        transport = FakeTransport()
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(script), transport)

        await transport.deliver(InboundMessage(text="build it", sender_id=ALICE))
        for _ in range(500):
            orchestrator = router.get(ALICE)
            if orchestrator is not None and orchestrator.arbiter.pending_count:
                break
            await asyncio.sleep(0)
        await transport.deliver(InboundMessage(text="Y", sender_id=ALICE))
        await _drain(router)

        assert transport.sent[-1] == (ALICE, "*[Batman]* allowed=True")
        assert "Permission Request" in transport.sent[0][1]

    @pytest.mark.asyncio
    async def test_task_errors_are_contained(self, tmp_path):
        transport = FakeTransport()
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(), transport)
        transport.send_text = AsyncMock(side_effect=ConnectionError("down"))

        await transport.deliver(InboundMessage(text="hi", sender_id=ALICE))
        await _drain(router)
        assert router.in_flight == 0


class TestWhitelist:
    @pytest.mark.asyncio
    async def test_unknown_sender_ignored(self, tmp_path):
        transport = FakeTransport()
        backend = FakeBackend()
        router = ConversationRouter(_bridge(tmp_path), backend, transport)

        await transport.deliver(InboundMessage(text="hi", sender_id="+19999999999"))
        await _drain(router)
        assert backend.requests == []
        assert router.conversations == {}

    def test_formatting_ignored(self, tmp_path):
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(), FakeTransport())
        assert router.is_allowed(InboundMessage(text="x", sender_id="15550000001@s.whatsapp.net"))

    def test_group_participants_override(self, tmp_path):
        message = InboundMessage(
            text="@ai hi", sender_id="+19999999999", is_group=True, group_id="g",
        )
        strict = ConversationRouter(_bridge(tmp_path), FakeBackend(), FakeTransport())
        assert not strict.is_allowed(message)

        relaxed = ConversationRouter(
            _bridge(tmp_path, allow_all_group_participants=True), FakeBackend(), FakeTransport(),
        )
        assert relaxed.is_allowed(message)
        direct = InboundMessage(text="hi", sender_id="+19999999999")
        assert not relaxed.is_allowed(direct)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_sends_announcement(self, tmp_path):
        transport = FakeTransport()
        router = ConversationRouter(_bridge(tmp_path), FakeBackend(), transport)
        await router.start()

        assert transport.started
        assert [dest for dest, _ in transport.sent] == [ALICE, BOB]
        assert transport.sent[0][1].startswith("*[Batman]* Now online!")

    @pytest.mark.asyncio
    async def test_resume_applies_to_first_conversation_only(self, tmp_path):
        bridge = _bridge(tmp_path, resume_session_id="sess-old", fork_session=True)
        router = ConversationRouter(bridge, FakeBackend(), FakeTransport())

        first = router.orchestrator_for(ALICE)
        second = router.orchestrator_for(BOB)
        assert first.session.session_id == "sess-old"
        assert first.session.fork_on_next_query is True
        assert second.session.session_id is None
        assert router.orchestrator_for(ALICE) is first

    @pytest.mark.asyncio
    async def test_shutdown_denies_and_closes(self, tmp_path):
        async def script(request):
            allowed = await request.permission_handler("Write", {})
            return QueryResult(text=f"allowed={allowed}")

        transport = FakeTransport()
        backend = FakeBackend(script)
        router = ConversationRouter(_bridge(tmp_path), backend, transport)

        await transport.deliver(InboundMessage(text="write", sender_id=ALICE))
        for _ in range(500):
            orchestrator = router.get(ALICE)
            if orchestrator is not None and orchestrator.arbiter.pending_count:
                break
            await asyncio.sleep(0)

        await router.shutdown()
        assert router.get(ALICE).arbiter.pending_count == 0
        assert router.in_flight == 0
        backend.stop.assert_awaited_once()
        assert transport.stopped

        await transport.deliver(InboundMessage(text="late", sender_id=ALICE))
        assert router.in_flight == 0
