"""Settings via pydantic-settings with COLLOQUY_ env prefix.

Secrets and connection strings use validation_alias to read the same
unprefixed env vars (OPENROUTER_API_KEY, DATABASE_URL, DB_PASSWORD, ...)
that the deployment tooling uses, so a single .env file drives both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env", populate_by_name=True)

    # Full URL wins; otherwise a Postgres URL is assembled from the DB_* fields
    database_url: str = Field("", validation_alias="DATABASE_URL")
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("colloquy", validation_alias="DB_USER")
    db_password: str = Field("colloquy_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("colloquy", validation_alias="DB_NAME")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    # Model gateway (OpenAI-compatible chat completions)
    openrouter_api_key: str = Field("", validation_alias="OPENROUTER_API_KEY")
    llm_base_url: str = "https://openrouter.ai/api/v1"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    temperature: float = 0.7
    max_tokens: int = 4096

    # Agent defaults
    default_model: str = "google/gemini-2.5-flash"
    default_system_prompt: str = "You are a helpful AI assistant. Be concise and friendly."
    default_agent_name: str = "Assistant"
    max_steps: int = 10  # Tool-calling steps per turn unless the agent overrides
    max_steps_limit: int = 50  # Hard ceiling for per-agent overrides

    # Title generation
    title_generation_enabled: bool = True
    title_model: str = "openai/gpt-4.1-nano"
    title_max_length: int = 50

    # Tool approvals
    approval_timeout: float = 300.0  # seconds before a pending approval counts as denied

    # Identity is asserted by the fronting auth proxy
    user_header: str = "x-user-id"
    role_header: str = "x-user-role"

    # Tools
    web_timeout: float = 15.0

    event_bus_enabled: bool = True

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_steps_limit < 1:
            raise ValueError("max_steps_limit must be >= 1")
        if not 1 <= self.max_steps <= self.max_steps_limit:
            raise ValueError(
                f"max_steps ({self.max_steps}) must be between 1 and "
                f"max_steps_limit ({self.max_steps_limit})"
            )
        if self.title_max_length < 1:
            raise ValueError("title_max_length must be >= 1")
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
