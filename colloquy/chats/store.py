"""Conversation store: durable chats and their ordered messages.

Every public method runs in one transaction. Methods accept an optional
session so callers can compose several operations into a single unit;
without one they open, commit and close their own.

Message ``created_at`` is the ordering and truncation key. It comes from a
per-chat logical clock: each append takes ``max(now, latest + 1us)`` while
holding the chat row, so timestamps are strictly increasing within a chat
even when the wall clock stalls or steps backwards.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.chats.parts import TextPart, dump_parts, parse_parts
from colloquy.chats.schemas import (
    ChatDetail,
    ChatPage,
    CloneResult,
    EditResult,
    MessageDetail,
    MessageInput,
    SharedAgent,
    SharedChat,
    ShareSettings,
    ShareUpdate,
)
from colloquy.errors import NotFoundError, PersistenceError, ValidationError
from colloquy.storage.database import Database
from colloquy.storage.models import Agent, Chat, ChatMessage
from colloquy.utils import loads_or_default

logger = logging.getLogger(__name__)

CLOCK_STEP = timedelta(microseconds=1)
MAX_TITLE_LENGTH = 200


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ConversationStore:
    """Owns chat and message records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def create_chat(
        self,
        user_id: str,
        agent_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ChatDetail:
        """Create an empty chat.

        Uses the given agent, else the default agent, else any agent.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._create_chat(user_id, agent_id, session)
                await session.commit()
                return result
        return await self._create_chat(user_id, agent_id, session)

    async def _create_chat(self, user_id: str, agent_id: str | None, session: AsyncSession) -> ChatDetail:
        if not user_id:
            raise ValidationError("user_id is required")

        if agent_id is not None:
            agent = await session.get(Agent, agent_id)
            if agent is None:
                raise NotFoundError(f"Agent {agent_id} not found")
        else:
            result = await session.execute(
                select(Agent).order_by(Agent.is_default.desc(), Agent.created_at, Agent.id).limit(1)
            )
            agent = result.scalars().first()
            if agent is None:
                raise ValidationError("No agents configured")

        now = _utcnow()
        chat = Chat(
            id=str(uuid4()),
            user_id=user_id,
            agent_id=agent.id,
            title=None,
            created_at=now,
            updated_at=now,
        )
        session.add(chat)
        await session.flush()
        logger.debug("Created chat %s for user %s with agent %s", chat.id, user_id, agent.slug)
        return self._chat_detail(chat)

    async def get_chat(
        self,
        chat_id: str,
        user_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ChatDetail | None:
        """Fetch a live chat, optionally scoped to its owner."""
        if session is None:
            async with self.db.session() as session:
                return await self._get(chat_id, user_id, session)
        return await self._get(chat_id, user_id, session)

    async def _get(self, chat_id: str, user_id: str | None, session: AsyncSession) -> ChatDetail | None:
        chat = await self._get_chat_orm(chat_id, user_id, session)
        if chat is None:
            return None
        return self._chat_detail(chat)

    async def list_chats(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        search: str | None = None,
        session: AsyncSession | None = None,
    ) -> ChatPage:
        """A user's live chats, most recent message activity first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_chats(user_id, limit, offset, search, session)
        return await self._list_chats(user_id, limit, offset, search, session)

    async def _list_chats(
        self,
        user_id: str,
        limit: int,
        offset: int,
        search: str | None,
        session: AsyncSession,
    ) -> ChatPage:
        limit = max(1, min(limit, 100))
        offset = max(0, offset)

        conditions = [Chat.user_id == user_id, Chat.deleted_at.is_(None)]
        if search and search.strip():
            conditions.append(Chat.title.ilike(f"%{search.strip()}%"))

        total = await session.scalar(select(func.count()).select_from(Chat).where(*conditions))
        result = await session.execute(
            select(Chat).where(*conditions).order_by(Chat.updated_at.desc(), Chat.id).limit(limit).offset(offset)
        )
        return ChatPage(
            chats=[self._chat_detail(c) for c in result.scalars().all()],
            total=total or 0,
            limit=limit,
            offset=offset,
        )

    async def update_chat(
        self,
        chat_id: str,
        user_id: str | None = None,
        title: str | None = None,
        agent_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ChatDetail:
        """Rename a chat or switch its agent. Never touches updated_at."""
        if session is None:
            async with self.db.session() as session:
                result = await self._update_chat(chat_id, user_id, title, agent_id, session)
                await session.commit()
                return result
        return await self._update_chat(chat_id, user_id, title, agent_id, session)

    async def _update_chat(
        self,
        chat_id: str,
        user_id: str | None,
        title: str | None,
        agent_id: str | None,
        session: AsyncSession,
    ) -> ChatDetail:
        chat = await self._require_chat(chat_id, user_id, session)

        if title is not None:
            title = title.strip()
            if not title:
                raise ValidationError("title must not be empty")
            chat.title = title[:MAX_TITLE_LENGTH]

        if agent_id is not None:
            if await session.get(Agent, agent_id) is None:
                raise NotFoundError(f"Agent {agent_id} not found")
            # Prior messages keep whatever agent produced them
            chat.agent_id = agent_id

        await session.flush()
        return self._chat_detail(chat)

    async def set_title_if_missing(self, chat_id: str, title: str, session: AsyncSession | None = None) -> bool:
        """Set the title only while it is still null. Returns True if written."""
        if session is None:
            async with self.db.session() as session:
                written = await self._set_title_if_missing(chat_id, title, session)
                await session.commit()
                return written
        return await self._set_title_if_missing(chat_id, title, session)

    async def _set_title_if_missing(self, chat_id: str, title: str, session: AsyncSession) -> bool:
        result = await session.execute(
            update(Chat)
            .where(Chat.id == chat_id, Chat.title.is_(None), Chat.deleted_at.is_(None))
            .values(title=title[:MAX_TITLE_LENGTH])
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def soft_delete_chat(
        self,
        chat_id: str,
        user_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> None:
        """Hide a chat from listings and lookups. Messages are kept."""
        if session is None:
            async with self.db.session() as session:
                await self._soft_delete_chat(chat_id, user_id, session)
                await session.commit()
                return
        await self._soft_delete_chat(chat_id, user_id, session)

    async def _soft_delete_chat(self, chat_id: str, user_id: str | None, session: AsyncSession) -> None:
        chat = await self._require_chat(chat_id, user_id, session)
        chat.deleted_at = _utcnow()
        await session.flush()

    # ------------------------------------------------------------------
    # append() / list_ordered()
    # ------------------------------------------------------------------

    async def append(
        self,
        chat_id: str,
        message: MessageInput,
        session: AsyncSession | None = None,
    ) -> MessageDetail:
        """Insert one message at the tail of the chat and advance updated_at.

        Either the whole message (all parts) commits or nothing does.
        """
        if session is None:
            try:
                async with self.db.session() as session:
                    result = await self._append(chat_id, message, session)
                    await session.commit()
                    return result
            except SQLAlchemyError as e:
                raise PersistenceError(f"Could not append message to chat {chat_id}: {e}") from e
        return await self._append(chat_id, message, session)

    async def _append(self, chat_id: str, message: MessageInput, session: AsyncSession) -> MessageDetail:
        chat = await self._lock_chat(chat_id, session)

        latest = await session.scalar(select(func.max(ChatMessage.created_at)).where(ChatMessage.chat_id == chat_id))
        created_at = _utcnow()
        if latest is not None and created_at <= _aware(latest):
            created_at = _aware(latest) + CLOCK_STEP

        row = ChatMessage(
            id=str(uuid4()),
            chat_id=chat_id,
            role=message.role,
            parts=dump_parts(message.parts),
            message_metadata=json.dumps(message.metadata) if message.metadata else None,
            created_at=created_at,
        )
        session.add(row)
        chat.updated_at = created_at
        await session.flush()
        return self._message_detail(row)

    async def list_ordered(self, chat_id: str, session: AsyncSession | None = None) -> list[MessageDetail]:
        """All messages of a chat, oldest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_ordered(chat_id, session)
        return await self._list_ordered(chat_id, session)

    async def _list_ordered(self, chat_id: str, session: AsyncSession) -> list[MessageDetail]:
        result = await session.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_id == chat_id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        )
        return [self._message_detail(m) for m in result.scalars().all()]

    async def get_message(
        self,
        chat_id: str,
        message_id: str,
        session: AsyncSession | None = None,
    ) -> MessageDetail | None:
        if session is None:
            async with self.db.session() as session:
                row = await self._get_message_orm(chat_id, message_id, session)
                return self._message_detail(row) if row is not None else None
        row = await self._get_message_orm(chat_id, message_id, session)
        return self._message_detail(row) if row is not None else None

    # ------------------------------------------------------------------
    # Confirmation support
    # ------------------------------------------------------------------

    async def count_after(self, chat_id: str, message_id: str, session: AsyncSession | None = None) -> int:
        """Number of messages strictly after the given one."""
        if session is None:
            async with self.db.session() as session:
                return await self._count_after(chat_id, message_id, None, session)
        return await self._count_after(chat_id, message_id, None, session)

    async def later_user_messages(
        self,
        chat_id: str,
        message_id: str,
        session: AsyncSession | None = None,
    ) -> int:
        """Number of user messages strictly after the given one.

        Non-zero means the message is not part of the latest exchange.
        """
        if session is None:
            async with self.db.session() as session:
                return await self._count_after(chat_id, message_id, "user", session)
        return await self._count_after(chat_id, message_id, "user", session)

    async def _count_after(self, chat_id: str, message_id: str, role: str | None, session: AsyncSession) -> int:
        target = await self._require_message(chat_id, message_id, session)
        query = (
            select(func.count())
            .select_from(ChatMessage)
            .where(ChatMessage.chat_id == chat_id, ChatMessage.created_at > target.created_at)
        )
        if role is not None:
            query = query.where(ChatMessage.role == role)
        return await session.scalar(query) or 0

    async def user_message_at_or_before(
        self,
        chat_id: str,
        message_id: str,
        session: AsyncSession | None = None,
    ) -> MessageDetail:
        """The retry anchor: the message itself if it is a user message,
        otherwise the closest user message preceding it."""
        if session is None:
            async with self.db.session() as session:
                return await self._user_message_at_or_before(chat_id, message_id, session)
        return await self._user_message_at_or_before(chat_id, message_id, session)

    async def _user_message_at_or_before(self, chat_id: str, message_id: str, session: AsyncSession) -> MessageDetail:
        target = await self._require_message(chat_id, message_id, session)
        if target.role == "user":
            return self._message_detail(target)
        result = await session.execute(
            select(ChatMessage)
            .where(
                ChatMessage.chat_id == chat_id,
                ChatMessage.role == "user",
                ChatMessage.created_at < target.created_at,
            )
            .order_by(ChatMessage.created_at.desc())
            .limit(1)
        )
        anchor = result.scalars().first()
        if anchor is None:
            raise ValidationError(f"No user message precedes message {message_id}")
        return self._message_detail(anchor)

    # ------------------------------------------------------------------
    # Truncation: truncate_after() / edit_user_message() / delete_from_message()
    # ------------------------------------------------------------------

    async def truncate_after(self, chat_id: str, after: datetime, session: AsyncSession | None = None) -> int:
        """Delete every message with created_at strictly greater than ``after``."""
        if session is None:
            async with self.db.session() as session:
                count = await self._truncate_after(chat_id, after, session)
                await session.commit()
                return count
        return await self._truncate_after(chat_id, after, session)

    async def _truncate_after(self, chat_id: str, after: datetime, session: AsyncSession) -> int:
        chat = await self._lock_chat(chat_id, session)
        result = await session.execute(
            delete(ChatMessage)
            .where(ChatMessage.chat_id == chat_id, ChatMessage.created_at > after)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            chat.updated_at = _utcnow()
            await session.flush()
        return result.rowcount

    async def edit_user_message(
        self,
        chat_id: str,
        message_id: str,
        new_text: str,
        session: AsyncSession | None = None,
    ) -> EditResult:
        """Rewrite a user message and drop everything after it.

        The edited message keeps its id and timestamp and becomes the tail of
        the chat, ready for a fresh assistant reply.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._edit_user_message(chat_id, message_id, new_text, session)
                await session.commit()
                return result
        return await self._edit_user_message(chat_id, message_id, new_text, session)

    async def _edit_user_message(
        self,
        chat_id: str,
        message_id: str,
        new_text: str,
        session: AsyncSession,
    ) -> EditResult:
        text = (new_text or "").strip()
        if not text:
            raise ValidationError("content must not be empty")

        chat = await self._lock_chat(chat_id, session)
        target = await self._require_message(chat_id, message_id, session)
        if target.role != "user":
            raise ValidationError("Only user messages can be edited")

        deleted = await self._truncate_after(chat_id, target.created_at, session)
        target.parts = dump_parts([TextPart(text=text)])
        chat.updated_at = _utcnow()
        await session.flush()

        logger.info("Edited message %s in chat %s, removed %d later message(s)", message_id, chat_id, deleted)
        return EditResult(message=self._message_detail(target), deleted_count=deleted)

    async def delete_from_message(
        self,
        chat_id: str,
        message_id: str,
        session: AsyncSession | None = None,
    ) -> int:
        """Delete the message and everything after it. Returns the count."""
        if session is None:
            async with self.db.session() as session:
                count = await self._delete_from_message(chat_id, message_id, session)
                await session.commit()
                return count
        return await self._delete_from_message(chat_id, message_id, session)

    async def _delete_from_message(self, chat_id: str, message_id: str, session: AsyncSession) -> int:
        chat = await self._lock_chat(chat_id, session)
        target = await self._require_message(chat_id, message_id, session)

        result = await session.execute(
            delete(ChatMessage)
            .where(
                ChatMessage.chat_id == chat_id,
                or_(ChatMessage.id == target.id, ChatMessage.created_at > target.created_at),
            )
            .execution_options(synchronize_session=False)
        )
        session.expunge(target)
        chat.updated_at = _utcnow()
        await session.flush()

        logger.info("Deleted %d message(s) from %s onward in chat %s", result.rowcount, message_id, chat_id)
        return result.rowcount

    # ------------------------------------------------------------------
    # Sharing: share links, the shared view and cloning
    # ------------------------------------------------------------------

    async def get_sharing(
        self,
        chat_id: str,
        user_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ShareSettings:
        if session is None:
            async with self.db.session() as session:
                return self._share_settings(await self._require_chat(chat_id, user_id, session))
        return self._share_settings(await self._require_chat(chat_id, user_id, session))

    async def set_sharing(
        self,
        chat_id: str,
        change: ShareUpdate,
        user_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> ShareSettings:
        """Enable, disable, retype or re-key a chat's share link.

        Enabling for the first time mints the link id; ``regenerate`` mints a
        new one, which kills the old link. Never touches updated_at.
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._set_sharing(chat_id, change, user_id, session)
                await session.commit()
                return result
        return await self._set_sharing(chat_id, change, user_id, session)

    async def _set_sharing(
        self,
        chat_id: str,
        change: ShareUpdate,
        user_id: str | None,
        session: AsyncSession,
    ) -> ShareSettings:
        chat = await self._require_chat(chat_id, user_id, session)

        if change.regenerate or (change.enabled and chat.sharing_uuid is None):
            chat.sharing_uuid = str(uuid4())
        if change.enabled is not None:
            chat.sharing_enabled = change.enabled
        if change.type is not None:
            chat.sharing_type = change.type

        await session.flush()
        logger.info(
            "Chat %s sharing %s (%s)", chat_id, "enabled" if chat.sharing_enabled else "disabled", chat.sharing_type
        )
        return self._share_settings(chat)

    async def get_shared(self, sharing_uuid: str, session: AsyncSession | None = None) -> SharedChat | None:
        """The chat behind a share link, or None if the link is unknown or off."""
        if session is None:
            async with self.db.session() as session:
                return await self._get_shared(sharing_uuid, session)
        return await self._get_shared(sharing_uuid, session)

    async def _get_shared(self, sharing_uuid: str, session: AsyncSession) -> SharedChat | None:
        chat = await self._shared_chat_orm(sharing_uuid, session)
        if chat is None:
            return None

        agent = await session.get(Agent, chat.agent_id)
        return SharedChat(
            id=chat.id,
            owner_id=chat.user_id,
            title=chat.title,
            created_at=_aware(chat.created_at),
            sharing_type=chat.sharing_type,
            agent=(
                SharedAgent(
                    id=agent.id,
                    name=agent.name,
                    slug=agent.slug,
                    description=agent.description,
                    visibility=agent.visibility,
                )
                if agent is not None
                else None
            ),
            messages=await self._list_ordered(chat.id, session),
        )

    async def clone_chat(
        self,
        sharing_uuid: str,
        user_id: str,
        session: AsyncSession | None = None,
    ) -> CloneResult:
        """Copy a shared chat into ``user_id``'s account.

        Messages get fresh ids and fresh timestamps in their original order.
        An agent the new owner may not pick is swapped for the default public
        agent (else any public agent).
        """
        if session is None:
            async with self.db.session() as session:
                result = await self._clone_chat(sharing_uuid, user_id, session)
                await session.commit()
                return result
        return await self._clone_chat(sharing_uuid, user_id, session)

    async def _clone_chat(self, sharing_uuid: str, user_id: str, session: AsyncSession) -> CloneResult:
        if not user_id:
            raise ValidationError("user_id is required")
        original = await self._shared_chat_orm(sharing_uuid, session)
        if original is None:
            raise NotFoundError("Shared chat not found")

        agent = await session.get(Agent, original.agent_id)
        if agent is None or agent.visibility != "public":
            result = await session.execute(
                select(Agent)
                .where(Agent.visibility == "public")
                .order_by(Agent.is_default.desc(), Agent.created_at, Agent.id)
                .limit(1)
            )
            agent = result.scalars().first()
            if agent is None:
                raise ValidationError("No available agent found")

        result = await session.execute(
            select(ChatMessage)
            .where(ChatMessage.chat_id == original.id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        )
        originals = result.scalars().all()

        now = _utcnow()
        clone = Chat(
            id=str(uuid4()),
            user_id=user_id,
            agent_id=agent.id,
            title=f"{original.title} (copy)"[:MAX_TITLE_LENGTH] if original.title else "Cloned Chat",
            created_at=now,
            updated_at=now + CLOCK_STEP * max(len(originals) - 1, 0),
        )
        session.add(clone)
        for position, message in enumerate(originals):
            session.add(
                ChatMessage(
                    id=str(uuid4()),
                    chat_id=clone.id,
                    role=message.role,
                    parts=message.parts,
                    message_metadata=message.message_metadata,
                    created_at=now + CLOCK_STEP * position,
                )
            )
        await session.flush()

        logger.info("Cloned chat %s into %s for user %s (%d messages)", original.id, clone.id, user_id, len(originals))
        return CloneResult(
            chat=self._chat_detail(clone),
            agent_changed=agent.id != original.agent_id,
            message_count=len(originals),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _shared_chat_orm(self, sharing_uuid: str, session: AsyncSession) -> Chat | None:
        if not sharing_uuid:
            return None
        result = await session.execute(
            select(Chat).where(
                Chat.sharing_uuid == sharing_uuid,
                Chat.sharing_enabled == true(),
                Chat.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    def _share_settings(self, chat: Chat) -> ShareSettings:
        return ShareSettings(
            sharing_uuid=chat.sharing_uuid,
            sharing_enabled=bool(chat.sharing_enabled),
            sharing_type=chat.sharing_type or "public",
        )

    async def _get_chat_orm(self, chat_id: str, user_id: str | None, session: AsyncSession) -> Chat | None:
        query = select(Chat).where(Chat.id == chat_id, Chat.deleted_at.is_(None))
        if user_id is not None:
            query = query.where(Chat.user_id == user_id)
        result = await session.execute(query)
        return result.scalars().first()

    async def _require_chat(self, chat_id: str, user_id: str | None, session: AsyncSession) -> Chat:
        chat = await self._get_chat_orm(chat_id, user_id, session)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        return chat

    async def _lock_chat(self, chat_id: str, session: AsyncSession) -> Chat:
        """Load the chat row FOR UPDATE so writers to one chat serialize."""
        result = await session.execute(
            select(Chat).where(Chat.id == chat_id, Chat.deleted_at.is_(None)).with_for_update()
        )
        chat = result.scalars().first()
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        return chat

    async def _get_message_orm(self, chat_id: str, message_id: str, session: AsyncSession) -> ChatMessage | None:
        result = await session.execute(
            select(ChatMessage).where(ChatMessage.id == message_id, ChatMessage.chat_id == chat_id)
        )
        return result.scalars().first()

    async def _require_message(self, chat_id: str, message_id: str, session: AsyncSession) -> ChatMessage:
        message = await self._get_message_orm(chat_id, message_id, session)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found in chat {chat_id}")
        return message

    def _chat_detail(self, chat: Chat) -> ChatDetail:
        return ChatDetail(
            id=chat.id,
            user_id=chat.user_id,
            agent_id=chat.agent_id,
            title=chat.title,
            created_at=_aware(chat.created_at),
            updated_at=_aware(chat.updated_at),
        )

    def _message_detail(self, message: ChatMessage) -> MessageDetail:
        return MessageDetail(
            id=message.id,
            chat_id=message.chat_id,
            role=message.role,
            parts=parse_parts(message.parts),
            metadata=loads_or_default(message.message_metadata, None, expect=dict),
            created_at=_aware(message.created_at),
        )
