"""Pydantic DTOs for agent configuration."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Visibility = Literal["public", "admin_only"]


class AgentInput(BaseModel):
    """Input for creating an agent."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    system_prompt: str = Field(min_length=1)
    model: str = Field(min_length=1, max_length=200)
    enabled_tools: list[str] = []
    tool_approvals: dict[str, bool] = {}  # slug -> needs approval; missing means auto-execute
    max_tool_steps: int | None = None
    is_default: bool = False
    visibility: Visibility = "admin_only"


class AgentUpdate(BaseModel):
    """Partial update. Omitted fields are left alone."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    system_prompt: str | None = Field(None, min_length=1)
    model: str | None = Field(None, min_length=1, max_length=200)
    enabled_tools: list[str] | None = None
    tool_approvals: dict[str, bool] | None = None
    max_tool_steps: int | None = None
    is_default: bool | None = None
    visibility: Visibility | None = None


class AgentDetail(BaseModel):
    id: str
    name: str
    slug: str
    description: str | None
    system_prompt: str
    model: str
    enabled_tools: list[str]
    tool_approvals: dict[str, bool]
    max_tool_steps: int | None
    is_default: bool
    visibility: Visibility
    created_at: datetime
    updated_at: datetime


class AgentSummary(BaseModel):
    """What non-admin users see in the agent picker."""

    id: str
    name: str
    slug: str
    description: str | None
    is_default: bool
