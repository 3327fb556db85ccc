"""SQLAlchemy ORM models for agents, chats and chat messages.

JSON-shaped columns (parts, metadata, tool configuration) are stored as TEXT
and decoded with parse-or-default at the edges, so rows written by older
versions never make a read fail.
"""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    false,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (
        CheckConstraint("visibility IN ('public', 'admin_only')", name="ck_agents_visibility"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    model: Mapped[str] = mapped_column(String(200), nullable=False)
    enabled_tools: Mapped[str | None] = mapped_column(Text)  # JSON array of tool slugs
    tool_approvals: Mapped[str | None] = mapped_column(Text)  # JSON object slug -> bool
    max_tool_steps: Mapped[int | None] = mapped_column(Integer)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    visibility: Mapped[str] = mapped_column(String(20), nullable=False, default="admin_only", server_default="admin_only")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    chats: Mapped[list["Chat"]] = relationship(back_populates="agent")


class Chat(Base):
    __tablename__ = "chats"
    __table_args__ = (
        CheckConstraint("sharing_type IN ('public', 'platform')", name="ck_chats_sharing_type"),
        Index("idx_chats_user_updated", "user_id", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(36), ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str | None] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # Moves only on message activity, never on metadata edits
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Read-only link; "platform" links need a signed-in viewer
    sharing_uuid: Mapped[str | None] = mapped_column(String(36), unique=True)
    sharing_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    sharing_type: Mapped[str] = mapped_column(String(20), nullable=False, default="public", server_default="public")

    # Relationships
    agent: Mapped["Agent"] = relationship(back_populates="chats")
    messages: Mapped[list["ChatMessage"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", passive_deletes=True
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant', 'system')", name="ck_chat_messages_role"),
        Index("idx_chat_messages_chat_created", "chat_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    chat_id: Mapped[str] = mapped_column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    parts: Mapped[str] = mapped_column(Text, nullable=False, default="[]")  # JSON array of parts
    # "metadata" is reserved on declarative classes
    message_metadata: Mapped[str | None] = mapped_column("metadata", Text)
    # Ordering and truncation key; strictly increasing within a chat
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    chat: Mapped["Chat"] = relationship(back_populates="messages")
