"""Message parts: the tagged union stored in ``chat_messages.parts``.

Parts travel camelCase on the wire and in the database (``toolCallId``,
``mediaType`` ...) and snake_case in Python. Decoding is parse-or-default:
a bad row degrades to fewer parts, never to an exception.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from colloquy.errors import IllegalTransitionError
from colloquy.utils import loads_or_default

logger = logging.getLogger(__name__)

ToolState = Literal[
    "input-streaming",
    "input-available",
    "requires-approval",
    "output-available",
    "output-error",
    "output-denied",
]

# Allowed forward moves for one tool invocation. Terminal states map to nothing.
TRANSITIONS: dict[str, frozenset[str]] = {
    "input-streaming": frozenset({"input-available"}),
    "input-available": frozenset({"output-available", "output-error", "requires-approval"}),
    "requires-approval": frozenset({"output-available", "output-error", "output-denied"}),
    "output-available": frozenset(),
    "output-error": frozenset(),
    "output-denied": frozenset(),
}

TERMINAL_STATES = frozenset(state for state, nxt in TRANSITIONS.items() if not nxt)


class _Part(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TextPart(_Part):
    type: Literal["text"] = "text"
    text: str


class ReasoningPart(_Part):
    type: Literal["reasoning"] = "reasoning"
    text: str


class FilePart(_Part):
    type: Literal["file"] = "file"
    url: str
    media_type: str = Field(alias="mediaType")


class SourcePart(_Part):
    type: Literal["source"] = "source"
    ref: str


class ToolInvocationPart(_Part):
    """One model-initiated tool call and where it is in its lifecycle."""

    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    state: ToolState = "input-streaming"
    input: Any = None
    output: Any = None
    error_text: str | None = Field(None, alias="errorText")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, state: ToolState, **changes: Any) -> ToolInvocationPart:
        """Return a copy moved to ``state``; skipping or reversing a state raises."""
        if state not in TRANSITIONS[self.state]:
            raise IllegalTransitionError(self.state, state)
        return self.model_copy(update={"state": state, **changes})


MessagePart = Annotated[
    Union[TextPart, ToolInvocationPart, FilePart, ReasoningPart, SourcePart],
    Field(discriminator="type"),
]

_part_adapter: TypeAdapter[Any] = TypeAdapter(MessagePart)


def _upgrade_legacy(item: dict[str, Any]) -> dict[str, Any]:
    """Older rows store tool parts as ``{"type": "tool-<name>", ...}``."""
    part_type = item.get("type")
    if isinstance(part_type, str) and part_type.startswith("tool-") and part_type != "tool-invocation":
        upgraded = dict(item)
        upgraded["type"] = "tool-invocation"
        upgraded.setdefault("toolName", part_type[len("tool-") :])
        return upgraded
    return item


def parse_part(item: Any) -> MessagePart | None:
    """Validate one decoded part, or None (logged) when it is unusable."""
    if not isinstance(item, dict):
        logger.warning("Dropping non-object message part: %.80r", item)
        return None
    try:
        return _part_adapter.validate_python(_upgrade_legacy(item))
    except PydanticValidationError as e:
        logger.warning("Dropping malformed %r part: %s", item.get("type"), e.errors()[0]["msg"])
        return None


def parse_parts(raw: str | None) -> list[MessagePart]:
    """Decode a stored parts column. Never raises."""
    items = loads_or_default(raw, [], expect=list)
    return [part for item in items if (part := parse_part(item)) is not None]


def validate_parts(items: list[Any]) -> list[MessagePart]:
    """Same as parse_parts for already-decoded input (API payloads)."""
    return [part for item in items if (part := parse_part(item)) is not None]


def dump_part(part: MessagePart) -> dict[str, Any]:
    return part.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_parts(parts: list[MessagePart]) -> str:
    return json.dumps([dump_part(p) for p in parts])


def text_of(parts: list[MessagePart]) -> str:
    """Concatenated text parts, in order."""
    return "".join(p.text for p in parts if isinstance(p, TextPart))
