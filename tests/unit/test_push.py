"""
Unit Tests for Channel Push

Tests ref correlation, timeouts and at-most-once resolution.
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from switchyard.realtime.protocol import PushStatus


class TestPushSend:
    """Test transmission and ref assignment."""

    @pytest.mark.asyncio
    async def test_ref_assigned_on_send(self, connected, join):
        """Test a sent push carries a fresh ref and the join ref."""
        client, transport = connected()
        channel = join(client, transport, "room:1")

        push = channel.push("shout", {"body": "hi"})

        frame = transport.last("shout")
        assert push.ref is not None
        assert frame.ref == push.ref
        assert frame.join_ref == channel.join_ref()
        assert frame.payload == {"body": "hi"}

    @pytest.mark.asyncio
    async def test_buffered_push_has_no_ref(self, connected, join):
        """Test a push waiting in the channel buffer is not yet timed."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        transport.drop()

        push = channel.push("shout", {})

        assert push.ref is None
        assert not push.sent
        await asyncio.sleep(0.1)
        assert not push.resolved

    @pytest.mark.asyncio
    async def test_buffered_push_timed_from_flush(self, connected, join, transports):
        """Test a buffered push starts its timeout only once it is flushed."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        transport.drop()
        timeouts = []

        push = channel.push("shout", {}, timeout=0.1).receive("timeout", timeouts.append)
        await asyncio.sleep(0.15)
        assert not push.resolved

        transports[-1].open()
        transports[-1].reply(transports[-1].last("phx_join"))

        frame = transports[-1].last("shout")
        assert push.sent
        assert frame.ref == push.ref

        await asyncio.sleep(0.05)
        assert not push.resolved

        await asyncio.sleep(0.1)
        assert push.received_status is PushStatus.TIMEOUT
        assert timeouts == [{}]


class TestPushResolution:
    """Test reply, timeout and stale triggers."""

    @pytest.mark.asyncio
    async def test_ok_reply_resolves(self, connected, join):
        """Test a matching reply runs the ok hook and wakes waiters."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        received = []

        push = channel.push("shout", {}).receive("ok", received.append)
        transport.reply(transport.last("shout"), "ok", {"id": 7})

        assert received == [{"id": 7}]
        assert await push.wait() == (PushStatus.OK, {"id": 7})

    @pytest.mark.asyncio
    async def test_timeout_fires_once_and_ignores_late_reply(self, connected, join):
        """Test an unanswered push times out once and stays timed out."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        calls = []

        push = (
            channel.push("shout", {}, timeout=0.05)
            .receive("ok", lambda r: calls.append("ok"))
            .receive("error", lambda r: calls.append("error"))
            .receive("timeout", lambda r: calls.append("timeout"))
        )
        frame = transport.last("shout")
        await asyncio.sleep(0.1)

        transport.reply(frame, "ok")
        await asyncio.sleep(0.1)

        assert calls == ["timeout"]
        assert push.received_status is PushStatus.TIMEOUT

    @pytest.mark.asyncio
    async def test_stale_ref_is_ignored(self, connected, join):
        """Test a trigger for an older ref is a no-op."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        push = channel.push("shout", {})
        old_ref = push.ref

        push.resend()

        assert push.ref != old_ref
        assert push.trigger("ok", {}, old_ref) is False
        assert not push.resolved
        assert push.trigger("ok", {}, push.ref) is True

    @pytest.mark.asyncio
    async def test_resolves_at_most_once(self, connected, join):
        """Test a second trigger after resolution is ignored."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        received = []

        push = channel.push("shout", {}).receive("error", received.append)
        ref = push.ref

        assert push.trigger("error", {"reason": "nope"}, ref)
        assert not push.trigger("error", {"reason": "again"}, ref)
        assert received == [{"reason": "nope"}]

    @pytest.mark.asyncio
    async def test_late_hook_fires_immediately(self, connected, join):
        """Test registering a hook after resolution invokes it at once."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        push = channel.push("shout", {})
        transport.reply(transport.last("shout"), "ok", {"n": 1})

        received = []
        push.receive("ok", received.append)

        assert received == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_hook_failure_is_logged(self, connected, join):
        """Test an exception in a hook is logged and later hooks still run."""
        client, transport = connected()
        channel = join(client, transport, "room:1")
        received = []

        def boom(response):
            raise RuntimeError("hook broke")

        push = channel.push("shout", {}).receive("ok", boom).receive("ok", received.append)

        with capture_logs() as logs:
            transport.reply(transport.last("shout"), "ok")

        assert received == [{}]
        assert push.received_status is PushStatus.OK
        failures = [entry for entry in logs if entry["event"] == "Push callback failed"]
        assert failures[0]["push_event"] == "shout"
        assert failures[0]["error"] == "hook broke"
