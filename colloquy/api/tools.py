"""Tool registry: the closed set of capabilities agents can enable.

Provides:
- ToolCapability: one tool, its pydantic input model and async handler
- ToolRegistry: slug -> capability lookup, filled once at startup

Capabilities validate their own input and raise ToolExecutionError on any
failure, so callers only ever see a result dict or that one exception.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from colloquy.errors import ToolExecutionError

logger = logging.getLogger(__name__)

ToolCategory = Literal["utilities", "research", "creative"]
ToolHandler = Callable[[Any], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# ToolCapability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCapability:
    """A registered tool.

    ``requires_approval`` is only the default suggested to admins when they
    enable the tool; the agent's own approval map decides at runtime.
    """

    slug: str
    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler
    category: ToolCategory = "utilities"
    requires_approval: bool = False

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def validate_input(self, args: Any) -> BaseModel:
        if not isinstance(args, dict):
            raise ToolExecutionError(f"{self.slug}: arguments must be a JSON object")
        try:
            return self.input_model.model_validate(args)
        except PydanticValidationError as e:
            problems = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}" for err in e.errors())
            raise ToolExecutionError(f"Invalid input for {self.slug}: {problems}") from e

    async def execute(self, args: Any) -> dict[str, Any]:
        """Validate ``args`` and run the handler once. No retries."""
        params = self.validate_input(args)
        try:
            return await self.handler(params)
        except ToolExecutionError:
            raise
        except Exception as e:
            logger.exception("Tool %s failed", self.slug)
            raise ToolExecutionError(f"{self.slug} failed: {e}") from e

    def definition(self) -> dict[str, Any]:
        """Function descriptor in OpenAI chat-completions format."""
        return {
            "type": "function",
            "function": {
                "name": self.slug,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Static lookup table. Populated during startup, read-only afterwards."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolCapability] = {}

    def register(self, capability: ToolCapability) -> None:
        if capability.slug in self._tools:
            raise ValueError(f"Tool already registered: {capability.slug}")
        self._tools[capability.slug] = capability
        logger.debug("Registered tool '%s'", capability.slug)

    def resolve(self, slug: str) -> ToolCapability | None:
        return self._tools.get(slug)

    def available(self) -> list[dict[str, Any]]:
        """Metadata for the admin tool picker."""
        return [
            {
                "slug": tool.slug,
                "name": tool.name,
                "description": tool.description,
                "category": tool.category,
                "requires_approval": tool.requires_approval,
                "input_schema": tool.input_schema,
            }
            for tool in self._tools.values()
        ]

    @staticmethod
    def definitions(capabilities: Iterable[ToolCapability]) -> list[dict[str, Any]]:
        return [tool.definition() for tool in capabilities]

    def __contains__(self, slug: object) -> bool:
        return slug in self._tools

    def __len__(self) -> int:
        return len(self._tools)
