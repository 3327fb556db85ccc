"""Chats module: durable conversations and their message parts.

Public API: ConversationStore + the part union, chat/message and sharing schemas.
"""

from colloquy.chats.parts import (
    FilePart,
    MessagePart,
    ReasoningPart,
    SourcePart,
    TextPart,
    ToolInvocationPart,
    ToolState,
    dump_parts,
    parse_parts,
)
from colloquy.chats.schemas import (
    ChatDetail,
    ChatPage,
    CloneResult,
    EditResult,
    MessageDetail,
    MessageInput,
    Role,
    SharedAgent,
    SharedChat,
    ShareSettings,
    ShareUpdate,
    SharingType,
)
from colloquy.chats.store import ConversationStore

__all__ = [
    "ConversationStore",
    # Parts
    "FilePart",
    "MessagePart",
    "ReasoningPart",
    "SourcePart",
    "TextPart",
    "ToolInvocationPart",
    "ToolState",
    "dump_parts",
    "parse_parts",
    # Schemas
    "ChatDetail",
    "ChatPage",
    "EditResult",
    "MessageDetail",
    "MessageInput",
    "Role",
    # Sharing
    "CloneResult",
    "SharedAgent",
    "SharedChat",
    "ShareSettings",
    "ShareUpdate",
    "SharingType",
]
