"""Shared fakes: a scripted model gateway and a deterministic tool registry."""

import copy
from typing import Any

from pydantic import BaseModel, Field

from colloquy.api.model_client import ModelDelta
from colloquy.api.tools import ToolCapability, ToolRegistry
from colloquy.errors import ToolExecutionError

USER = "user-1"


# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


def text(*chunks: str) -> list[ModelDelta]:
    return [ModelDelta(type="text_delta", text=c) for c in chunks]


def tool_call(call_id: str, name: str, args: str, index: int = 0) -> list[ModelDelta]:
    """A tool call whose arguments arrive in two fragments."""
    half = len(args) // 2
    return [
        ModelDelta(type="tool_call_start", index=index, tool_call_id=call_id, tool_name=name),
        ModelDelta(type="tool_call_delta", index=index, text=args[:half]),
        ModelDelta(type="tool_call_delta", index=index, text=args[half:]),
    ]


def finish(reason: str = "stop") -> list[ModelDelta]:
    return [
        ModelDelta(type="finish", finish_reason=reason),
        ModelDelta(type="usage", usage={"prompt_tokens": 10, "completion_tokens": 5}),
    ]


class ScriptedModel:
    """Plays back one scripted step per stream() call.

    A step is a list of ModelDelta, or an Exception raised on that call.
    Records the messages it was given so tests can inspect model context.
    """

    def __init__(self, steps: list[Any], titles: list[Any] | None = None) -> None:
        self.steps = list(steps)
        self.titles = list(titles or [])
        self.calls: list[dict[str, Any]] = []
        self.completions: list[dict[str, Any]] = []

    async def stream(self, model, system, messages, tools=None):
        self.calls.append(
            {"model": model, "system": system, "messages": copy.deepcopy(messages), "tools": tools}
        )
        if not self.steps:
            raise AssertionError("model called more times than scripted")
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        for delta in step:
            yield delta

    async def complete(self, model, prompt, max_tokens=None, temperature=None):
        self.completions.append({"model": model, "prompt": prompt})
        if not self.titles:
            raise AssertionError("complete() called more times than scripted")
        result = self.titles.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


# ---------------------------------------------------------------------------
# Fake tools
# ---------------------------------------------------------------------------


class LocationInput(BaseModel):
    location: str = Field(min_length=1)


class QueryInput(BaseModel):
    query: str


def make_registry(calls: list | None = None) -> ToolRegistry:
    """Registry with a deterministic weather tool and a tool that always fails."""
    calls = calls if calls is not None else []

    async def weather(params: LocationInput) -> dict[str, Any]:
        calls.append(("weather", params.location))
        return {"location": params.location, "temp": 18, "condition": "Partly cloudy"}

    async def broken(params: QueryInput) -> dict[str, Any]:
        calls.append(("broken", params.query))
        raise ToolExecutionError("upstream service unavailable")

    registry = ToolRegistry()
    registry.register(
        ToolCapability(
            slug="weather",
            name="Weather Lookup",
            description="Current weather for a location",
            input_model=LocationInput,
            handler=weather,
        )
    )
    registry.register(
        ToolCapability(
            slug="broken",
            name="Broken",
            description="Always fails",
            input_model=QueryInput,
            handler=broken,
            category="research",
        )
    )
    return registry
