"""Model gateway client -- OpenAI-compatible chat completions over httpx.

Talks to OpenRouter by default. Streaming responses are Server-Sent Events
whose ``data:`` lines carry chat-completion chunks; each chunk is parsed into
zero or more ModelDelta values. A ``data: [DONE]`` line ends the stream.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any

import httpx

from colloquy.config import Settings
from colloquy.errors import ModelCallError

logger = logging.getLogger(__name__)


@dataclass
class ModelDelta:
    """A single event from the streaming model response."""

    type: str  # text_delta, tool_call_start, tool_call_delta, finish, usage, error
    text: str = ""
    index: int = 0
    tool_call_id: str = ""
    tool_name: str = ""
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)


def _parse_sse_chunk(data: dict[str, Any]) -> list[ModelDelta]:
    """Parse one chat-completion chunk into deltas.

    Providers report mid-stream failures as a chunk with an ``error`` key
    (HTTP status is already 200 by then). Tool-call arguments arrive as
    string fragments keyed by the call's ``index``; the first fragment for an
    index carries the call id and function name.
    """
    if "error" in data:
        error = data["error"]
        if isinstance(error, dict):
            message = error.get("message") or error.get("code") or "unknown error"
        else:
            message = str(error)
        return [ModelDelta(type="error", text=str(message))]

    deltas: list[ModelDelta] = []
    for choice in data.get("choices") or []:
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            deltas.append(ModelDelta(type="text_delta", text=content))

        for call in delta.get("tool_calls") or []:
            index = call.get("index", 0)
            function = call.get("function") or {}
            if call.get("id"):
                deltas.append(
                    ModelDelta(
                        type="tool_call_start",
                        index=index,
                        tool_call_id=call["id"],
                        tool_name=function.get("name", ""),
                    )
                )
            if function.get("arguments"):
                deltas.append(ModelDelta(type="tool_call_delta", index=index, text=function["arguments"]))

        if choice.get("finish_reason"):
            deltas.append(ModelDelta(type="finish", finish_reason=choice["finish_reason"]))

    usage = data.get("usage")
    if isinstance(usage, dict):
        deltas.append(
            ModelDelta(
                type="usage",
                usage={k: v for k, v in usage.items() if isinstance(v, int)},
            )
        )
    return deltas


class ModelClient:
    """Thin async client for the model gateway.

    ``stream()`` yields ModelDelta values; HTTP and in-stream failures come
    out as a single ``error`` delta, transport failures as ModelCallError.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers = {
            "content-type": "application/json",
            "x-title": "Colloquy",
        }
        if settings.openrouter_api_key:
            headers["authorization"] = f"Bearer {settings.openrouter_api_key}"
        else:
            logger.warning("OPENROUTER_API_KEY is not set -- model calls will fail")

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=20, max_keepalive_connections=10)

        self._http = httpx.AsyncClient(
            base_url=settings.llm_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        logger.info("Model client initialized (%s)", settings.llm_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _build_payload(
        self,
        model: str,
        system: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        stream: bool = False,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Shared by stream() and complete() to avoid divergence."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": ([{"role": "system", "content": system}] if system else []) + messages,
            "max_tokens": max_tokens or self._settings.max_tokens,
            "temperature": self._settings.temperature if temperature is None else temperature,
        }
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def stream(
        self,
        model: str,
        system: str | None,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncGenerator[ModelDelta, None]:
        """One streamed model step."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(model, system, messages, tools, stream=True)
        try:
            async with self._http.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    yield ModelDelta(
                        type="error",
                        text=f"HTTP {response.status_code}: {body.decode(errors='replace')[:500]}",
                    )
                    return

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if raw == "[DONE]":
                        return
                    try:
                        data = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Skipping undecodable stream chunk: %.120s", raw)
                        continue
                    for delta in _parse_sse_chunk(data):
                        yield delta
                        if delta.type == "error":
                            return
        except httpx.HTTPError as e:
            raise ModelCallError(f"Model request failed: {e}") from e

    async def complete(
        self,
        model: str,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """One-shot, non-streamed call for auxiliary tasks (titles)."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(
            model,
            None,
            [{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        try:
            response = await self._http.post("/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise ModelCallError(f"Model request failed: {e}") from e

        if response.status_code != 200:
            raise ModelCallError(f"Model API error ({response.status_code}): {response.text[:500]}")

        data = response.json()
        if "error" in data:
            raise ModelCallError(f"Model API error: {data['error']}")
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""
