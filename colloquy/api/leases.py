"""Single-writer lease per chat.

At most one turn (or edit/delete) may write to a chat at a time. Holders
are identified by an opaque token so a stale release cannot free a lease
someone else has since taken. The table lives in-process: it serializes
writers within one server, and the store's row lock covers the rest.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from colloquy.errors import ChatBusyError

logger = logging.getLogger(__name__)


class ChatLeases:
    def __init__(self) -> None:
        self._holders: dict[str, str] = {}

    def acquire(self, chat_id: str, token: str | None = None) -> str:
        """Take the lease or raise ChatBusyError. Returns the holder token."""
        if chat_id in self._holders:
            raise ChatBusyError(chat_id)
        token = token or uuid4().hex
        self._holders[chat_id] = token
        return token

    def release(self, chat_id: str, token: str) -> None:
        if self._holders.get(chat_id) == token:
            del self._holders[chat_id]
        else:
            logger.debug("Ignoring release of chat %s by non-holder", chat_id)

    def is_held(self, chat_id: str) -> bool:
        return chat_id in self._holders

    @contextmanager
    def hold(self, chat_id: str) -> Iterator[str]:
        token = self.acquire(chat_id)
        try:
            yield token
        finally:
            self.release(chat_id, token)
