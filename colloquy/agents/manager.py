"""Agent management: the only code path that writes agent rows.

Owns two invariants:
- slugs are unique; collisions get a deterministic ``-2``, ``-3`` ... suffix
- at most one agent has ``is_default`` set; setting it clears the previous
  default inside the same transaction
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from colloquy.agents.schemas import AgentDetail, AgentInput, AgentUpdate
from colloquy.api.tools import ToolRegistry
from colloquy.config import Settings
from colloquy.errors import NotFoundError, ValidationError
from colloquy.storage.database import Database
from colloquy.storage.models import Agent
from colloquy.utils import loads_or_default, slugify

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class AgentManager:
    """Create, update and look up agents."""

    def __init__(self, db: Database, settings: Settings, registry: ToolRegistry | None = None) -> None:
        self.db = db
        self.settings = settings
        self.registry = registry

    # ------------------------------------------------------------------
    # create()
    # ------------------------------------------------------------------

    async def create(self, input: AgentInput, session: AsyncSession | None = None) -> AgentDetail:
        if session is None:
            async with self.db.session() as session:
                result = await self._create(input, session)
                await self._commit(session)
                return result
        return await self._create(input, session)

    async def _create(self, input: AgentInput, session: AsyncSession) -> AgentDetail:
        self._check_tools(input.enabled_tools, input.tool_approvals)
        max_steps = self._clamp_steps(input.max_tool_steps)

        agent_id = str(uuid4())
        slug = await self._unique_slug(input.name, agent_id, session)

        if input.is_default:
            await self._clear_default(agent_id, session)

        now = _utcnow()
        agent = Agent(
            id=agent_id,
            name=input.name,
            slug=slug,
            description=input.description or None,
            system_prompt=input.system_prompt,
            model=input.model,
            enabled_tools=json.dumps(sorted(set(input.enabled_tools))),
            tool_approvals=json.dumps(input.tool_approvals),
            max_tool_steps=max_steps,
            is_default=input.is_default,
            visibility=input.visibility,
            created_at=now,
            updated_at=now,
        )
        session.add(agent)
        await session.flush()

        logger.info("Created agent %s (%s)%s", agent.slug, agent.id, " as default" if agent.is_default else "")
        return self._to_detail(agent)

    # ------------------------------------------------------------------
    # update()
    # ------------------------------------------------------------------

    async def update(self, agent_id: str, input: AgentUpdate, session: AsyncSession | None = None) -> AgentDetail:
        if session is None:
            async with self.db.session() as session:
                result = await self._update(agent_id, input, session)
                await self._commit(session)
                return result
        return await self._update(agent_id, input, session)

    async def _update(self, agent_id: str, input: AgentUpdate, session: AsyncSession) -> AgentDetail:
        agent = await session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found")

        fields = input.model_fields_set
        enabled = input.enabled_tools if input.enabled_tools is not None else []
        approvals = input.tool_approvals if input.tool_approvals is not None else {}
        self._check_tools(enabled, approvals)

        if input.name is not None and input.name != agent.name:
            agent.name = input.name
            agent.slug = await self._unique_slug(input.name, agent.id, session)
        if "description" in fields:
            agent.description = input.description or None
        if input.system_prompt is not None:
            agent.system_prompt = input.system_prompt
        if input.model is not None:
            agent.model = input.model
        if "enabled_tools" in fields:
            agent.enabled_tools = json.dumps(sorted(set(enabled)))
        if "tool_approvals" in fields:
            agent.tool_approvals = json.dumps(approvals)
        if "max_tool_steps" in fields:
            agent.max_tool_steps = self._clamp_steps(input.max_tool_steps)
        if input.visibility is not None:
            agent.visibility = input.visibility

        if input.is_default is True and not agent.is_default:
            await self._clear_default(agent.id, session)
            agent.is_default = True
        elif input.is_default is False:
            agent.is_default = False

        agent.updated_at = _utcnow()
        await session.flush()
        return self._to_detail(agent)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, agent_id: str, session: AsyncSession | None = None) -> AgentDetail | None:
        if session is None:
            async with self.db.session() as session:
                agent = await session.get(Agent, agent_id)
                return self._to_detail(agent) if agent is not None else None
        agent = await session.get(Agent, agent_id)
        return self._to_detail(agent) if agent is not None else None

    async def get_by_slug(self, slug: str, session: AsyncSession | None = None) -> AgentDetail | None:
        if session is None:
            async with self.db.session() as session:
                return await self._get_one(select(Agent).where(Agent.slug == slug), session)
        return await self._get_one(select(Agent).where(Agent.slug == slug), session)

    async def get_default(self, session: AsyncSession | None = None) -> AgentDetail | None:
        query = select(Agent).where(Agent.is_default == true())
        if session is None:
            async with self.db.session() as session:
                return await self._get_one(query, session)
        return await self._get_one(query, session)

    async def list_agents(
        self,
        include_admin_only: bool = False,
        session: AsyncSession | None = None,
    ) -> list[AgentDetail]:
        """Default agent first, then newest first."""
        if session is None:
            async with self.db.session() as session:
                return await self._list_agents(include_admin_only, session)
        return await self._list_agents(include_admin_only, session)

    async def _list_agents(self, include_admin_only: bool, session: AsyncSession) -> list[AgentDetail]:
        query = select(Agent).order_by(Agent.is_default.desc(), Agent.created_at.desc(), Agent.id)
        if not include_admin_only:
            query = query.where(Agent.visibility == "public")
        result = await session.execute(query)
        return [self._to_detail(a) for a in result.scalars().all()]

    async def ensure_default(self) -> AgentDetail | None:
        """Seed a default agent when the table is empty. Returns it if created."""
        async with self.db.session() as session:
            existing = await session.scalar(select(Agent.id).limit(1))
            if existing is not None:
                return None
            tools = [t["slug"] for t in self.registry.available()] if self.registry else []
            detail = await self._create(
                AgentInput(
                    name=self.settings.default_agent_name,
                    system_prompt=self.settings.default_system_prompt,
                    model=self.settings.default_model,
                    enabled_tools=tools,
                    is_default=True,
                    visibility="public",
                ),
                session,
            )
            await self._commit(session)
            return detail

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _commit(self, session: AsyncSession) -> None:
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise ValidationError("Agent conflicts with an existing agent; retry the change") from e

    async def _unique_slug(self, name: str, agent_id: str, session: AsyncSession) -> str:
        """First free slug among base, base-2, base-3 ... ignoring the agent's own row."""
        base = slugify(name) or "agent"
        result = await session.execute(
            select(Agent.id, Agent.slug).where(Agent.slug.like(f"{base}%"), Agent.id != agent_id)
        )
        taken = {slug for _, slug in result.all()}
        if base not in taken:
            return base
        counter = 2
        while f"{base}-{counter}" in taken:
            counter += 1
        return f"{base}-{counter}"

    async def _clear_default(self, agent_id: str, session: AsyncSession) -> None:
        await session.execute(
            update(Agent)
            .where(Agent.is_default == true(), Agent.id != agent_id)
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    def _check_tools(self, enabled: list[str], approvals: dict[str, bool]) -> None:
        if self.registry is None:
            return
        unknown = sorted({s for s in [*enabled, *approvals] if s not in self.registry})
        if unknown:
            raise ValidationError(f"Unknown tool(s): {', '.join(unknown)}")

    def _clamp_steps(self, value: int | None) -> int | None:
        if value is None:
            return None
        return max(1, min(self.settings.max_steps_limit, value))

    async def _get_one(self, query, session: AsyncSession) -> AgentDetail | None:
        result = await session.execute(query.limit(1))
        agent = result.scalars().first()
        return self._to_detail(agent) if agent is not None else None

    def _to_detail(self, agent: Agent) -> AgentDetail:
        """Convert ORM Agent to AgentDetail, tolerating malformed JSON columns."""
        tools = loads_or_default(agent.enabled_tools, [], expect=list)
        approvals = loads_or_default(agent.tool_approvals, {}, expect=dict)
        return AgentDetail(
            id=agent.id,
            name=agent.name,
            slug=agent.slug,
            description=agent.description,
            system_prompt=agent.system_prompt,
            model=agent.model,
            enabled_tools=[t for t in tools if isinstance(t, str)],
            tool_approvals={k: v for k, v in approvals.items() if isinstance(v, bool)},
            max_tool_steps=agent.max_tool_steps,
            is_default=bool(agent.is_default),
            visibility=agent.visibility if agent.visibility in ("public", "admin_only") else "admin_only",
            created_at=_aware(agent.created_at),
            updated_at=_aware(agent.updated_at),
        )
