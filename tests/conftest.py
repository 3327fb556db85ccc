"""Shared fixtures. Every test gets a fresh in-memory SQLite database."""

import pytest
import pytest_asyncio

from colloquy.agents import AgentInput, AgentManager, AgentResolver
from colloquy.api.tools import ToolRegistry
from colloquy.chats import ConversationStore
from colloquy.config import Settings
from colloquy.storage.database import Database
from tests.helpers import USER, make_registry


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        openrouter_api_key="test-key",
        approval_timeout=2.0,
    )


@pytest_asyncio.fixture
async def db(settings):
    """Fresh in-memory database with all tables created."""
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def store(db) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def tool_calls() -> list:
    """Every (tool, argument) pair the fake tools were called with."""
    return []


@pytest.fixture
def registry(tool_calls) -> ToolRegistry:
    return make_registry(tool_calls)


@pytest.fixture
def agents(db, settings, registry) -> AgentManager:
    return AgentManager(db, settings, registry)


@pytest.fixture
def resolver(registry, settings) -> AgentResolver:
    return AgentResolver(registry, settings)


@pytest_asyncio.fixture
async def agent(agents):
    """Default public agent with the weather and broken tools enabled."""
    return await agents.create(
        AgentInput(
            name="Assistant",
            system_prompt="You are a helpful assistant.",
            model="test/model",
            enabled_tools=["weather", "broken"],
            is_default=True,
            visibility="public",
        )
    )


@pytest_asyncio.fixture
async def chat(store, agent):
    return await store.create_chat(USER, agent.id)
