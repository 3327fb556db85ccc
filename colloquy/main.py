"""Colloquy entry point.

Startup order:
  Settings -> Database -> ToolRegistry (+ web tools) -> AgentManager
  (seeds the default agent) -> ConversationStore -> ModelClient
  -> EventBus + TitleGenerator -> TurnOrchestrator -> Starlette -> uvicorn

Components are built inside the Starlette lifespan so they share
uvicorn's event loop. Routes are bound to lazy proxies until then.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import uvicorn
from starlette.applications import Starlette

from colloquy.agents import AgentManager, AgentResolver
from colloquy.api.approvals import ApprovalBroker
from colloquy.api.leases import ChatLeases
from colloquy.api.model_client import ModelClient
from colloquy.api.rest import create_app
from colloquy.api.runner import TurnOrchestrator
from colloquy.api.tools import ToolRegistry
from colloquy.api.web_tools import register_web_tools
from colloquy.chats import ConversationStore
from colloquy.config import Settings
from colloquy.events import EventBus
from colloquy.handlers.title_generator import TitleGenerator
from colloquy.storage.database import Database

logger = logging.getLogger(__name__)


@dataclass
class Components:
    database: Database
    registry: ToolRegistry
    agents: AgentManager
    store: ConversationStore
    model: ModelClient
    orchestrator: TurnOrchestrator
    web_http: httpx.AsyncClient
    bus: EventBus | None = None

    async def aclose(self) -> None:
        """Stop in reverse start order; queued title events drain first."""
        if self.bus is not None:
            await self.bus.stop()
        await self.model.close()
        await self.web_http.aclose()
        await self.database.disconnect()


async def create_components(settings: Settings) -> Components:
    database = Database(settings)
    await database.connect()

    # Tools get their own client: no gateway auth headers, tighter pool
    web_http = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.web_timeout, connect=10),
        limits=httpx.Limits(max_connections=5, max_keepalive_connections=2),
    )
    registry = ToolRegistry()
    register_web_tools(registry, settings, web_http)

    agents = AgentManager(database, settings, registry)
    seeded = await agents.ensure_default()
    if seeded is not None:
        logger.info("Seeded default agent '%s' (%s)", seeded.name, seeded.model)

    store = ConversationStore(database)
    model = ModelClient(settings)
    await model.start()

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus()
        if settings.title_generation_enabled:
            TitleGenerator(store, model, settings, bus)
        await bus.start()

    orchestrator = TurnOrchestrator(
        store,
        agents,
        AgentResolver(registry, settings),
        model,
        settings,
        leases=ChatLeases(),
        approvals=ApprovalBroker(),
        bus=bus,
    )
    return Components(
        database=database,
        registry=registry,
        agents=agents,
        store=store,
        model=model,
        orchestrator=orchestrator,
        web_http=web_http,
        bus=bus,
    )


class _Slot:
    """Holds the Components once the lifespan has built them."""

    components: Components | None = None


class _LazyProxy:
    """Forwards attribute access to one component once it exists."""

    def __init__(self, slot: _Slot, name: str) -> None:
        object.__setattr__(self, "_slot", slot)
        object.__setattr__(self, "_name", name)

    def __getattr__(self, attr):
        slot = object.__getattribute__(self, "_slot")
        name = object.__getattribute__(self, "_name")
        if slot.components is None:
            raise RuntimeError(f"Component '{name}' used before startup finished")
        return getattr(getattr(slot.components, name), attr)


def build_app(settings: Settings) -> Starlette:
    slot = _Slot()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        slot.components = await create_components(settings)
        app.state.components = slot.components
        logger.info("Colloquy ready (default model %s, max_steps=%d)", settings.default_model, settings.max_steps)
        try:
            yield
        finally:
            await slot.components.aclose()
            slot.components = None

    return create_app(
        orchestrator=_LazyProxy(slot, "orchestrator"),
        store=_LazyProxy(slot, "store"),
        agents=_LazyProxy(slot, "agents"),
        registry=_LazyProxy(slot, "registry"),
        database=_LazyProxy(slot, "database"),
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if settings.database_url:
        where = settings.database_url.split("@")[-1]
    else:
        where = f"{settings.db_host}:{settings.db_port}/{settings.db_name}"
    logger.info("Starting Colloquy on %s:%d (database %s)", settings.host, settings.port, where)
    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is not set; every turn will fail at the model call")

    uvicorn.run(build_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
