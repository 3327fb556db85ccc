"""Agents module: admin-authored agent configuration and its runtime form.

Public API:
    AgentManager   - the single mutation path (slugs, default agent)
    AgentResolver  - stored agent -> AgentRuntime

Schemas:
    AgentInput, AgentUpdate, AgentDetail, AgentSummary
"""

from colloquy.agents.manager import AgentManager
from colloquy.agents.resolver import AgentResolver, AgentRuntime, ResolvedTool
from colloquy.agents.schemas import AgentDetail, AgentInput, AgentSummary, AgentUpdate, Visibility

__all__ = [
    "AgentManager",
    "AgentResolver",
    "AgentRuntime",
    "ResolvedTool",
    "AgentDetail",
    "AgentInput",
    "AgentSummary",
    "AgentUpdate",
    "Visibility",
]
