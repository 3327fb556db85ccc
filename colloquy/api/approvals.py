"""Approval broker: carries a user's approve/deny decision to a waiting turn.

A turn registers the tool call before announcing ``requires-approval`` and
then waits; the REST layer resolves it when the user answers. No answer
within the timeout counts as a denial.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class ApprovalBroker:
    def __init__(self) -> None:
        self._pending: dict[tuple[str, str], asyncio.Future[bool]] = {}

    def register(self, chat_id: str, tool_call_id: str) -> None:
        """Open the slot so an early decision is not lost."""
        key = (chat_id, tool_call_id)
        if key not in self._pending:
            self._pending[key] = asyncio.get_running_loop().create_future()

    async def request(self, chat_id: str, tool_call_id: str, timeout: float) -> bool:
        """Wait for the decision. Returns False on denial or timeout."""
        self.register(chat_id, tool_call_id)
        future = self._pending[(chat_id, tool_call_id)]
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Approval for %s in chat %s timed out after %.0fs", tool_call_id, chat_id, timeout)
            return False
        finally:
            self._pending.pop((chat_id, tool_call_id), None)

    def resolve(self, chat_id: str, tool_call_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False if nothing is waiting for it."""
        future = self._pending.get((chat_id, tool_call_id))
        if future is None or future.done():
            return False
        future.set_result(approved)
        logger.info("Tool call %s in chat %s %s", tool_call_id, chat_id, "approved" if approved else "denied")
        return True

    def pending(self, chat_id: str) -> list[str]:
        return [call_id for (cid, call_id), fut in self._pending.items() if cid == chat_id and not fut.done()]
