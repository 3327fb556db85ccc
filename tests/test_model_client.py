"""Tests for the model gateway client: SSE chunk parsing and HTTP handling.

HTTP is served by httpx.MockTransport, so nothing leaves the process.
"""

import json

import httpx
import pytest

from colloquy.api.model_client import ModelClient, _parse_sse_chunk
from colloquy.errors import ModelCallError

# ---------------------------------------------------------------------------
# _parse_sse_chunk
# ---------------------------------------------------------------------------


class TestParseChunk:
    def test_text_content(self):
        deltas = _parse_sse_chunk({"choices": [{"delta": {"content": "Hello"}}]})
        assert [(d.type, d.text) for d in deltas] == [("text_delta", "Hello")]

    def test_empty_content_ignored(self):
        assert _parse_sse_chunk({"choices": [{"delta": {"content": ""}}]}) == []

    def test_tool_call_start_and_arguments(self):
        chunk = {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {
                                "index": 1,
                                "id": "call_abc",
                                "function": {"name": "weather", "arguments": '{"loc'},
                            }
                        ]
                    }
                }
            ]
        }
        start, args = _parse_sse_chunk(chunk)

        assert start.type == "tool_call_start"
        assert start.index == 1
        assert start.tool_call_id == "call_abc"
        assert start.tool_name == "weather"
        assert args.type == "tool_call_delta"
        assert args.text == '{"loc'

    def test_argument_continuation_has_no_start(self):
        chunk = {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'ation"}'}}]}}]}
        (delta,) = _parse_sse_chunk(chunk)
        assert delta.type == "tool_call_delta"
        assert delta.text == 'ation"}'

    def test_finish_reason(self):
        (delta,) = _parse_sse_chunk({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
        assert delta.type == "finish"
        assert delta.finish_reason == "tool_calls"

    def test_usage_keeps_integers_only(self):
        (delta,) = _parse_sse_chunk(
            {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 4, "cost": 0.0001}}
        )
        assert delta.type == "usage"
        assert delta.usage == {"prompt_tokens": 12, "completion_tokens": 4}

    def test_error_object(self):
        (delta,) = _parse_sse_chunk({"error": {"message": "Rate limited", "code": 429}})
        assert delta.type == "error"
        assert delta.text == "Rate limited"

    def test_error_string(self):
        (delta,) = _parse_sse_chunk({"error": "boom"})
        assert (delta.type, delta.text) == ("error", "boom")


# ---------------------------------------------------------------------------
# ModelClient over a mock transport
# ---------------------------------------------------------------------------


def _sse(*chunks) -> bytes:
    lines = []
    for chunk in chunks:
        if isinstance(chunk, str) and chunk.startswith(":"):
            lines.append(f"{chunk}\n\n")  # SSE comment
        else:
            lines.append(f"data: {chunk if isinstance(chunk, str) else json.dumps(chunk)}\n\n")
    return "".join(lines).encode()


def _client(settings, handler) -> ModelClient:
    client = ModelClient(settings)
    client._http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://gateway.test/api/v1")
    return client


async def _collect(client: ModelClient, system: str | None = "sys", tools=None):
    messages = [{"role": "user", "content": "hi"}]
    return [d async for d in client.stream("test/model", system, messages, tools)]


async def test_stream_text_and_done(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["payload"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            ": keep-alive comment",
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            "[DONE]",
            {"choices": [{"delta": {"content": "after done"}}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client = _client(settings, handler)
    deltas = await _collect(client)
    await client.close()

    assert [d.text for d in deltas if d.type == "text_delta"] == ["Hel", "lo"]
    assert deltas[-1].type == "finish"
    assert seen["path"] == "/api/v1/chat/completions"
    assert seen["payload"]["stream"] is True
    assert seen["payload"]["messages"][0] == {"role": "system", "content": "sys"}
    assert "tools" not in seen["payload"]


async def test_stream_sends_tools(settings):
    seen = {}
    tools = [{"type": "function", "function": {"name": "weather", "description": "", "parameters": {}}}]

    def handler(request):
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, content=_sse("[DONE]"))

    client = _client(settings, handler)
    assert await _collect(client, system=None, tools=tools) == []

    assert seen["payload"]["tools"] == tools
    assert seen["payload"]["messages"] == [{"role": "user", "content": "hi"}]


async def test_stream_skips_bad_json(settings):
    def handler(request):
        return httpx.Response(200, content=_sse("{not json", {"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    deltas = await _collect(_client(settings, handler))
    assert [d.text for d in deltas] == ["ok"]


async def test_stream_error_chunk_ends_stream(settings):
    def handler(request):
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "partial"}}]},
                {"error": {"message": "Provider overloaded"}},
                {"choices": [{"delta": {"content": "never"}}]},
            ),
        )

    deltas = await _collect(_client(settings, handler))
    assert [d.type for d in deltas] == ["text_delta", "error"]
    assert deltas[-1].text == "Provider overloaded"


async def test_stream_http_error_status(settings):
    def handler(request):
        return httpx.Response(503, text="upstream down")

    (delta,) = await _collect(_client(settings, handler))
    assert delta.type == "error"
    assert delta.text.startswith("HTTP 503")
    assert "upstream down" in delta.text


async def test_stream_transport_failure(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ModelCallError):
        await _collect(_client(settings, handler))


async def test_stream_requires_start(settings):
    with pytest.raises(RuntimeError):
        await _collect(ModelClient(settings))


async def test_complete_returns_content(settings):
    seen = {}

    def handler(request):
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Tokyo Weather Today"}}]})

    result = await _client(settings, handler).complete("title/model", "prompt", max_tokens=20, temperature=0.2)

    assert result == "Tokyo Weather Today"
    assert seen["payload"]["model"] == "title/model"
    assert seen["payload"]["max_tokens"] == 20
    assert seen["payload"]["temperature"] == 0.2
    assert "stream" not in seen["payload"]


async def test_complete_error_status(settings):
    def handler(request):
        return httpx.Response(401, json={"error": "bad key"})

    with pytest.raises(ModelCallError):
        await _client(settings, handler).complete("m", "p")


async def test_complete_without_choices(settings):
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    assert await _client(settings, handler).complete("m", "p") == ""


async def test_start_sets_auth_header(settings):
    client = ModelClient(settings)
    await client.start()
    try:
        assert client._http.headers["authorization"] == "Bearer test-key"
        assert str(client._http.base_url).rstrip("/") == settings.llm_base_url
    finally:
        await client.close()
    assert client._http is None
