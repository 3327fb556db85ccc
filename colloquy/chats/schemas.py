"""Pydantic DTOs for chats and chat messages.

These models define the public contract for the chats module. Top-level
fields are snake_case; message parts keep their camelCase wire names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from colloquy.chats.parts import MessagePart, dump_part

Role = Literal["user", "assistant", "system"]


# --- Chats ---


class ChatDetail(BaseModel):
    id: str
    user_id: str
    agent_id: str
    title: str | None
    created_at: datetime
    updated_at: datetime


class ChatPage(BaseModel):
    """One page of a user's chats, most recently active first."""

    chats: list[ChatDetail]
    total: int
    limit: int
    offset: int


# --- Messages ---


class MessageInput(BaseModel):
    """A message about to be appended."""

    role: Role
    parts: list[MessagePart] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None


class MessageDetail(BaseModel):
    id: str
    chat_id: str
    role: Role
    parts: list[MessagePart]
    metadata: dict[str, Any] | None = None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "role": self.role,
            "parts": [dump_part(p) for p in self.parts],
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


class EditResult(BaseModel):
    """Outcome of an edit: the rewritten message and how many later messages went."""

    message: MessageDetail
    deleted_count: int


# --- Sharing ---

SharingType = Literal["public", "platform"]


class ShareSettings(BaseModel):
    sharing_uuid: str | None
    sharing_enabled: bool
    sharing_type: SharingType


class ShareUpdate(BaseModel):
    """Partial change to a chat's share link. Omitted fields are left alone."""

    enabled: bool | None = None
    type: SharingType | None = None
    regenerate: bool = False


class SharedAgent(BaseModel):
    id: str
    name: str
    slug: str
    description: str | None
    visibility: str


class SharedChat(BaseModel):
    """Read-only view of a chat reached through its share link."""

    id: str
    owner_id: str
    title: str | None
    created_at: datetime
    sharing_type: SharingType
    agent: SharedAgent | None
    messages: list[MessageDetail]


class CloneResult(BaseModel):
    chat: ChatDetail
    agent_changed: bool
    message_count: int
