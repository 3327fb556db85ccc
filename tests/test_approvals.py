"""Tests for the approval broker and the per-chat write lease."""

import asyncio

import pytest

from colloquy.api.approvals import ApprovalBroker
from colloquy.api.leases import ChatLeases
from colloquy.errors import ChatBusyError

# ---------------------------------------------------------------------------
# ApprovalBroker
# ---------------------------------------------------------------------------


class TestApprovalBroker:
    async def test_decision_delivered_to_waiter(self):
        broker = ApprovalBroker()
        waiter = asyncio.create_task(broker.request("chat", "call_1", timeout=5))
        await asyncio.sleep(0)

        assert broker.pending("chat") == ["call_1"]
        assert broker.resolve("chat", "call_1", True) is True
        assert await waiter is True
        assert broker.pending("chat") == []

    async def test_early_decision_not_lost(self):
        """Resolving between register() and request() still counts."""
        broker = ApprovalBroker()
        broker.register("chat", "call_1")

        assert broker.resolve("chat", "call_1", False) is True
        assert await broker.request("chat", "call_1", timeout=5) is False

    async def test_timeout_is_denial(self):
        broker = ApprovalBroker()
        assert await broker.request("chat", "call_1", timeout=0.01) is False
        assert broker.pending("chat") == []

    async def test_resolve_unknown_call(self):
        broker = ApprovalBroker()
        assert broker.resolve("chat", "nope", True) is False

    async def test_resolve_twice(self):
        broker = ApprovalBroker()
        broker.register("chat", "call_1")

        assert broker.resolve("chat", "call_1", True) is True
        assert broker.resolve("chat", "call_1", False) is False
        assert await broker.request("chat", "call_1", timeout=5) is True

    async def test_pending_scoped_by_chat(self):
        broker = ApprovalBroker()
        broker.register("a", "call_1")
        broker.register("b", "call_2")

        assert broker.pending("a") == ["call_1"]
        assert broker.pending("b") == ["call_2"]


# ---------------------------------------------------------------------------
# ChatLeases
# ---------------------------------------------------------------------------


class TestChatLeases:
    def test_acquire_and_release(self):
        leases = ChatLeases()
        token = leases.acquire("chat")

        assert leases.is_held("chat")
        with pytest.raises(ChatBusyError) as excinfo:
            leases.acquire("chat")
        assert excinfo.value.chat_id == "chat"

        leases.release("chat", token)
        assert not leases.is_held("chat")

    def test_stale_release_is_ignored(self):
        leases = ChatLeases()
        old = leases.acquire("chat")
        leases.release("chat", old)
        leases.acquire("chat", "new-holder")

        leases.release("chat", old)

        assert leases.is_held("chat")

    def test_chats_are_independent(self):
        leases = ChatLeases()
        leases.acquire("a")
        leases.acquire("b")
        assert leases.is_held("a") and leases.is_held("b")

    def test_hold_releases_on_error(self):
        leases = ChatLeases()
        with pytest.raises(RuntimeError):
            with leases.hold("chat"):
                assert leases.is_held("chat")
                raise RuntimeError("boom")
        assert not leases.is_held("chat")
