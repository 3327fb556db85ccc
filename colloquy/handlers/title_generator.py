"""Title generator: names a chat after its first exchange.

Listens to: turn_completed

Uses a cheap, fast model. Best effort: on any failure the title stays null
(clients show a placeholder) and nothing is retried. Writing the title
never moves the chat's updated_at.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from colloquy.chats.parts import text_of
from colloquy.chats.store import ConversationStore
from colloquy.config import Settings
from colloquy.events import TURN_COMPLETED, Event, EventBus

logger = logging.getLogger(__name__)

_TITLE_PROMPT = """Generate a short title (max 6 words) for this conversation. Return ONLY the title, no quotes or explanation.

User: {user_text}
Assistant: {assistant_text}

Title:"""

_QUOTES = re.compile(r"^[\"'“”‘’`]+|[\"'“”‘’`]+$")
_TITLE_PREFIX = re.compile(r"^title:\s*", re.IGNORECASE)


class TitleModel(Protocol):
    async def complete(
        self,
        model: str,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str: ...


def clean_title(raw: str, max_length: int = 50) -> str:
    """Strip quoting artifacts and a leading 'Title:', then truncate."""
    title = raw.strip().splitlines()[0].strip() if raw.strip() else ""
    title = _TITLE_PREFIX.sub("", title)
    title = _QUOTES.sub("", title).strip()
    return title[:max_length].strip()


class TitleGenerator:
    def __init__(
        self,
        store: ConversationStore,
        model: TitleModel,
        settings: Settings,
        bus: EventBus,
    ):
        self._store = store
        self._model = model
        self._settings = settings
        bus.on(TURN_COMPLETED, self.handle)

    async def handle(self, event: Event) -> None:
        """Title the chat from its first exchange if it has none yet."""
        try:
            chat = await self._store.get_chat(event.chat_id)
            if chat is None or chat.title is not None:
                return

            user_text = event.data.get("user_text") or ""
            assistant_text = event.data.get("assistant_text") or ""
            if not user_text:
                messages = await self._store.list_ordered(event.chat_id)
                user_text = next((text_of(m.parts) for m in messages if m.role == "user"), "")
                assistant_text = next((text_of(m.parts) for m in messages if m.role == "assistant"), "")
            if not user_text.strip():
                return

            title = await self.generate(user_text, assistant_text)
            if not title:
                return

            if await self._store.set_title_if_missing(event.chat_id, title):
                logger.info("Chat %s titled: %s", event.chat_id, title)
        except Exception:
            logger.exception("Failed to generate title for chat %s", event.chat_id)

    async def generate(self, user_text: str, assistant_text: str) -> str | None:
        prompt = _TITLE_PROMPT.format(user_text=user_text[:200], assistant_text=assistant_text[:200])
        raw = await self._model.complete(
            self._settings.title_model,
            prompt,
            max_tokens=20,
            temperature=0.7,
        )
        return clean_title(raw, self._settings.title_max_length) or None
