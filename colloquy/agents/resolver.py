"""Agent resolver: stored agent configuration -> immutable runtime descriptor."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from colloquy.agents.schemas import AgentDetail
from colloquy.api.tools import ToolCapability, ToolRegistry
from colloquy.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedTool:
    capability: ToolCapability
    requires_approval: bool = False


@dataclass(frozen=True)
class AgentRuntime:
    """Everything one turn needs to know about its agent. Never mutated."""

    model: str
    system_instructions: str
    tools: Mapping[str, ResolvedTool] = field(default_factory=lambda: MappingProxyType({}))
    max_steps: int = 10
    agent_id: str | None = None

    def tool(self, slug: str) -> ResolvedTool | None:
        return self.tools.get(slug)

    def tool_definitions(self) -> list[dict[str, Any]]:
        return ToolRegistry.definitions(t.capability for t in self.tools.values())


class AgentResolver:
    def __init__(self, registry: ToolRegistry, settings: Settings) -> None:
        self.registry = registry
        self.settings = settings

    def resolve(self, agent: AgentDetail) -> AgentRuntime:
        """Attach capabilities and approval flags to the agent's enabled tools.

        Slugs missing from the registry are logged and skipped, so an agent
        with a dangling reference still works with its remaining tools.
        """
        tools: dict[str, ResolvedTool] = {}
        for slug in agent.enabled_tools:
            capability = self.registry.resolve(slug)
            if capability is None:
                logger.warning("Agent %s enables unknown tool '%s', skipping", agent.slug, slug)
                continue
            tools[slug] = ResolvedTool(
                capability=capability,
                requires_approval=bool(agent.tool_approvals.get(slug, False)),
            )

        return AgentRuntime(
            model=agent.model,
            system_instructions=agent.system_prompt,
            tools=MappingProxyType(tools),
            max_steps=self._max_steps(agent.max_tool_steps),
            agent_id=agent.id,
        )

    def default_runtime(self) -> AgentRuntime:
        """Used when a chat's agent row no longer exists: default model, no tools."""
        return AgentRuntime(
            model=self.settings.default_model,
            system_instructions=self.settings.default_system_prompt,
            max_steps=self.settings.max_steps,
        )

    def _max_steps(self, override: int | None) -> int:
        if override is None:
            return self.settings.max_steps
        return max(1, min(self.settings.max_steps_limit, override))
