"""Tests for PermissionArbiter: request/resolve correlation and the timeout race."""

from __future__ import annotations

import asyncio
import re

import pytest

from chatbridge.engine.models import PermissionRequest, make_permission_id
from chatbridge.engine.permissions import PermissionArbiter, parse_permission_reply


class _Recorder:
    def __init__(self) -> None:
        self.requests: list[PermissionRequest] = []

    async def __call__(self, request: PermissionRequest) -> None:
        self.requests.append(request)


async def _wait_for_pending(arbiter: PermissionArbiter, count: int = 1) -> None:
    for _ in range(100):
        if arbiter.pending_count >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} pending requests")


# ── reply parsing ──


class TestParsePermissionReply:
    @pytest.mark.parametrize("text", ["y", "Y", " yes ", "YES", "allow", "Allow"])
    def test_allow_words(self, text):
        assert parse_permission_reply(text) is True

    @pytest.mark.parametrize("text", ["n", "N", "no", " NO ", "deny", "Deny"])
    def test_deny_words(self, text):
        assert parse_permission_reply(text) is False

    @pytest.mark.parametrize("text", ["maybe", "yes please", "", "/status", "nope"])
    def test_other_text_is_not_a_reply(self, text):
        assert parse_permission_reply(text) is None


class TestPermissionId:
    def test_id_format_and_uniqueness(self):
        ids = {make_permission_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(re.fullmatch(r"perm_\d+_[0-9a-f]{6}", i) for i in ids)


# ── request / resolve ──


class TestPermissionArbiter:
    @pytest.mark.asyncio
    async def test_request_notifies_and_resolves_by_id(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0)

        task = asyncio.create_task(arbiter.request("Write", "File: /tmp/x", {"a": 1}))
        await _wait_for_pending(arbiter)

        assert len(notify.requests) == 1
        request = notify.requests[0]
        assert request.tool_name == "Write"
        assert request.raw_input == {"a": 1}

        assert arbiter.resolve(request.id, True) is True
        assert await task is True
        assert arbiter.pending_count == 0

    @pytest.mark.asyncio
    async def test_second_resolve_is_noop(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0)
        task = asyncio.create_task(arbiter.request("Bash", "Command: ls"))
        await _wait_for_pending(arbiter)
        request_id = notify.requests[0].id

        assert arbiter.resolve(request_id, False) is True
        assert arbiter.resolve(request_id, True) is False
        assert await task is False

    def test_resolve_unknown_id(self):
        arbiter = PermissionArbiter()
        assert arbiter.resolve("perm_missing", True) is False

    @pytest.mark.asyncio
    async def test_free_text_resolves_newest_pending(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0)

        first = asyncio.create_task(arbiter.request("Write", "first"))
        await _wait_for_pending(arbiter, 1)
        second = asyncio.create_task(arbiter.request("Bash", "second"))
        await _wait_for_pending(arbiter, 2)

        assert arbiter.try_resolve_from_message("Y") is True
        assert await second is True
        assert not first.done()
        assert arbiter.pending_count == 1

        assert arbiter.try_resolve_from_message("no") is True
        assert await first is False
        assert arbiter.pending_count == 0

    @pytest.mark.asyncio
    async def test_unrecognized_text_leaves_requests_pending(self):
        arbiter = PermissionArbiter(timeout_seconds=0)
        task = asyncio.create_task(arbiter.request("Write", "x"))
        await _wait_for_pending(arbiter)

        assert arbiter.try_resolve_from_message("what does it do?") is False
        assert arbiter.pending_count == 1

        arbiter.cancel_all()
        assert await task is False

    def test_free_text_with_nothing_pending(self):
        arbiter = PermissionArbiter()
        assert arbiter.try_resolve_from_message("Y") is False

    @pytest.mark.asyncio
    async def test_timeout_auto_denies(self):
        arbiter = PermissionArbiter(timeout_seconds=0.05)
        allowed = await asyncio.wait_for(arbiter.request("Bash", "Command: rm -rf x"), 2)
        assert allowed is False
        assert arbiter.pending_count == 0

    @pytest.mark.asyncio
    async def test_resolution_cancels_timer(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0.05)
        task = asyncio.create_task(arbiter.request("Write", "x"))
        await _wait_for_pending(arbiter)
        request = notify.requests[0]

        arbiter.resolve(request.id, True)
        assert request.timer is not None and request.timer.cancelled()
        await asyncio.sleep(0.1)
        assert await task is True

    @pytest.mark.asyncio
    async def test_late_reply_after_timeout_is_noop(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0.01)
        assert await arbiter.request("Write", "x") is False
        assert arbiter.resolve(notify.requests[0].id, True) is False
        assert arbiter.try_resolve_from_message("Y") is False

    @pytest.mark.asyncio
    async def test_cancel_all_denies_everything(self):
        arbiter = PermissionArbiter(timeout_seconds=0)
        tasks = [asyncio.create_task(arbiter.request("Write", str(i))) for i in range(3)]
        await _wait_for_pending(arbiter, 3)

        assert arbiter.cancel_all() == 3
        assert await asyncio.gather(*tasks) == [False, False, False]
        assert arbiter.pending_count == 0
        assert arbiter.cancel_all() == 0

    @pytest.mark.asyncio
    async def test_notifier_failure_keeps_request_pending(self):
        async def failing_notify(request):
            raise RuntimeError("transport down")

        arbiter = PermissionArbiter(notify=failing_notify, timeout_seconds=0)
        task = asyncio.create_task(arbiter.request("Write", "x"))
        await _wait_for_pending(arbiter)
        await asyncio.sleep(0)

        assert not task.done()
        assert arbiter.try_resolve_from_message("yes") is True
        assert await task is True

    @pytest.mark.asyncio
    async def test_cancelled_waiter_removes_request(self):
        notify = _Recorder()
        arbiter = PermissionArbiter(notify=notify, timeout_seconds=0)
        task = asyncio.create_task(arbiter.request("Write", "x"))
        await _wait_for_pending(arbiter)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert arbiter.pending_count == 0
        assert arbiter.resolve(notify.requests[0].id, True) is False


# ── prompt text ──


class TestFormatRequest:
    def test_includes_tool_and_description(self):
        arbiter = PermissionArbiter(timeout_seconds=300)
        request = PermissionRequest(tool_name="Bash", description="Command: ls -la")
        text = arbiter.format_request(request)
        assert "*Bash*" in text
        assert "Command: ls -la" in text
        assert "Reply *Y* to allow or *N* to deny." in text
        assert "(Auto-denies in 5 minutes)" in text

    def test_no_timeout_line_when_disabled(self):
        arbiter = PermissionArbiter(timeout_seconds=0)
        text = arbiter.format_request(PermissionRequest(tool_name="Write", description="x"))
        assert "Auto-denies" not in text
