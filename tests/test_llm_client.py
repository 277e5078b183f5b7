from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from datachat.ai.client import (
    AnthropicClient,
    ChatCompletionsClient,
    ChatRequest,
    _to_anthropic_messages,
    create_llm_client,
    parse_chat_completion,
)
from datachat.config import LLMConfig
from datachat.core.errors import ConfigError

REQUEST = ChatRequest(
    messages=[{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}],
    tools=[{"type": "function", "function": {"name": "t", "description": "d", "parameters": {}}}],
)


def _client(handler, **config) -> ChatCompletionsClient:
    cfg = LLMConfig(api_key="key", **config)
    return ChatCompletionsClient.openrouter(cfg, transport=httpx.MockTransport(handler))


def _completion(message: dict, finish_reason: str = "stop") -> dict:
    return {
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3},
    }


async def test_chat_success_with_tool_calls():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=_completion(
                {
                    "content": None,
                    "tool_calls": [
                        {"id": "call_1", "type": "function", "function": {"name": "t", "arguments": '{"a": 1}'}}
                    ],
                },
                "tool_calls",
            ),
        )

    response = await _client(handler).chat(REQUEST)

    assert response.success
    assert response.content == ""
    assert response.has_tool_calls
    assert response.tool_calls[0].id == "call_1"
    assert response.tool_calls[0].arguments == '{"a": 1}'
    assert response.input_tokens == 12
    assert seen["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert seen["auth"] == "Bearer key"
    assert seen["body"]["tools"] == REQUEST.tools
    assert seen["body"]["tool_choice"] == "auto"
    assert seen["body"]["stream"] is False


async def test_chat_omits_tools_when_none():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion({"content": "hello"}))

    response = await _client(handler).chat(ChatRequest(messages=[{"role": "user", "content": "hi"}]))
    assert response.content == "hello"
    assert "tools" not in seen["body"]


async def test_chat_error_status():
    response = await _client(lambda r: httpx.Response(429, text="rate limited")).chat(REQUEST)
    assert not response.success
    assert response.error == "API error: 429 - rate limited"


async def test_chat_non_json_body():
    response = await _client(lambda r: httpx.Response(200, text="<html>oops</html>")).chat(REQUEST)
    assert not response.success
    assert response.error == "Invalid response format (not JSON): <html>oops</html>"


async def test_chat_timeout():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    response = await _client(handler).chat(REQUEST)
    assert not response.success
    assert response.error == "Request timed out"


async def test_chat_transport_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    response = await _client(handler).chat(REQUEST)
    assert not response.success
    assert response.error.startswith("HTTP error:")


@pytest.mark.parametrize(
    "payload, error",
    [
        ({"error": {"message": "model overloaded"}}, "API error: model overloaded"),
        ({"id": "x"}, "Invalid response: missing 'choices'"),
        ({"choices": []}, "No response from LLM (empty choices)"),
        ({"choices": {"x": 1}}, "Invalid response: 'choices' is not a list"),
        ({"choices": "oops"}, "Invalid response: 'choices' is not a list"),
        ({"choices": [{"message": "hi"}]}, "Invalid response: missing 'message' in choice"),
        ({"choices": [{"finish_reason": "stop"}]}, "Invalid response: missing 'message' in choice"),
        ([1, 2], "Invalid response format (not a JSON object)"),
    ],
)
def test_parse_failures(payload, error):
    response = parse_chat_completion(payload)
    assert not response.success
    assert response.error == error


def test_parse_fills_missing_call_id_and_object_arguments():
    response = parse_chat_completion(
        _completion({"content": "x", "tool_calls": [{"function": {"name": "t", "arguments": {"a": 1}}}]})
    )
    call = response.tool_calls[0]
    assert call.id.startswith("call_")
    assert json.loads(call.arguments) == {"a": 1}


def test_parse_malformed_tool_call():
    response = parse_chat_completion(_completion({"content": "x", "tool_calls": [{"id": "c"}]}))
    assert not response.success
    assert response.error.startswith("JSON error: malformed tool call")


def _sse(*events: str) -> bytes:
    return "".join(f"{event}\n\n" for event in events).encode()


def _delta(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


async def test_stream_yields_fragments_until_done():
    body = _sse(": keep-alive", _delta("Hel"), "data: {broken", _delta("lo"), "data: [DONE]", _delta("ignored"))
    client = _client(lambda r: httpx.Response(200, content=body))

    fragments = [f async for f in client.stream_chat(REQUEST)]
    assert fragments == ["Hel", "lo"]


async def test_stream_sends_no_tools():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse("data: [DONE]"))

    assert [f async for f in _client(handler).stream_chat(REQUEST)] == []
    assert seen["body"]["stream"] is True
    assert "tools" not in seen["body"]


async def test_stream_stops_quietly_when_cancelled():
    cancel = asyncio.Event()
    cancel.set()
    client = _client(lambda r: httpx.Response(200, content=_sse(_delta("a"), _delta("b"))))
    assert [f async for f in client.stream_chat(REQUEST, cancel)] == []


async def test_stream_error_status_is_yielded():
    client = _client(lambda r: httpx.Response(500, text="boom"))
    assert [f async for f in client.stream_chat(REQUEST)] == ["[Error: 500 - boom]"]


async def test_azure_url_and_headers():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion({"content": "ok"}))

    config = LLMConfig(
        provider="azure_openai",
        api_key="azkey",
        endpoint="https://res.openai.azure.com/",
        deployment="gpt-4o",
        api_version="2024-02-15-preview",
    )
    client = ChatCompletionsClient.azure(config, transport=httpx.MockTransport(handler))
    response = await client.chat(REQUEST)

    assert response.content == "ok"
    assert seen["url"] == (
        "https://res.openai.azure.com/openai/deployments/gpt-4o/chat/completions?api-version=2024-02-15-preview"
    )
    assert seen["key"] == "azkey"
    assert "model" not in seen["body"]


def test_factory_requires_credentials():
    with pytest.raises(ConfigError):
        create_llm_client(LLMConfig(provider="openrouter", api_key=""))
    with pytest.raises(ConfigError):
        create_llm_client(LLMConfig(provider="azure_openai", api_key="k"))


def test_factory_builds_anthropic_client():
    client = create_llm_client(LLMConfig(provider="anthropic", api_key="k", model="claude-sonnet-4-5"))
    assert isinstance(client, AnthropicClient)


def test_anthropic_message_conversion():
    system, messages = _to_anthropic_messages(
        [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "q"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "c1", "type": "function", "function": {"name": "a", "arguments": '{"x": 1}'}},
                    {"id": "c2", "type": "function", "function": {"name": "b", "arguments": "{}"}},
                ],
            },
            {"role": "tool", "tool_call_id": "c1", "content": "r1"},
            {"role": "tool", "tool_call_id": "c2", "content": "r2"},
        ]
    )

    assert system == "be brief"
    assert messages[0] == {"role": "user", "content": "q"}
    assert [b["id"] for b in messages[1]["content"]] == ["c1", "c2"]
    assert messages[1]["content"][0]["input"] == {"x": 1}
    assert messages[2]["role"] == "user"
    assert [b["tool_use_id"] for b in messages[2]["content"]] == ["c1", "c2"]
