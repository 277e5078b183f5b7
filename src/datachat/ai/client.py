"""LLM client abstraction with chat-completions (OpenRouter, Azure OpenAI) and Anthropic backends.

Every backend takes and returns the same shapes: messages are chat-completions
style dicts and responses are :class:`ChatResponse`. Transport and protocol
failures never raise; they come back as ``ChatResponse.fail(message)`` so the
orchestrator handles all providers the same way.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import anthropic
import httpx

from datachat.config import LLMConfig
from datachat.core.errors import ConfigError
from datachat.log import get_logger

logger = get_logger(__name__)

OPENROUTER_REFERER = "https://datachat.local"


@dataclass
class LLMToolCall:
    """A tool invocation requested by the model. ``arguments`` is the raw JSON text."""

    id: str
    name: str
    arguments: str = "{}"


@dataclass
class ChatRequest:
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    tool_choice: str | None = "auto"


@dataclass
class ChatResponse:
    """Unified response from any LLM backend."""

    success: bool
    content: str | None = None
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    error: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0

    @classmethod
    def fail(cls, message: str) -> ChatResponse:
        return cls(success=False, error=message)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class LLMClient(ABC):
    """Abstract base class for LLM backends."""

    @abstractmethod
    async def chat(self, request: ChatRequest) -> ChatResponse:
        ...

    @abstractmethod
    def stream_chat(self, request: ChatRequest, cancel_event: asyncio.Event | None = None) -> AsyncIterator[str]:
        """Yield text fragments of a tool-free reply.

        Stops quietly once *cancel_event* is set.
        """
        ...

    async def aclose(self) -> None:
        return None


def parse_chat_completion(payload: Any) -> ChatResponse:
    """Extract content and tool calls from a chat-completions response body."""
    if not isinstance(payload, dict):
        return ChatResponse.fail("Invalid response format (not a JSON object)")

    error = payload.get("error")
    if error:
        message = error.get("message", "Unknown error") if isinstance(error, dict) else str(error)
        return ChatResponse.fail(f"API error: {message}")

    choices = payload.get("choices")
    if choices is None:
        return ChatResponse.fail("Invalid response: missing 'choices'")
    if not isinstance(choices, list):
        return ChatResponse.fail("Invalid response: 'choices' is not a list")
    if not choices:
        return ChatResponse.fail("No response from LLM (empty choices)")

    choice = choices[0]
    message = choice.get("message") if isinstance(choice, dict) else None
    if not isinstance(message, dict):
        return ChatResponse.fail("Invalid response: missing 'message' in choice")

    tool_calls = []
    try:
        for raw in message.get("tool_calls") or []:
            function = raw["function"]
            arguments = function.get("arguments")
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments or {})
            tool_calls.append(
                LLMToolCall(
                    id=raw.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=function["name"],
                    arguments=arguments or "{}",
                )
            )
    except (KeyError, TypeError, AttributeError) as e:
        return ChatResponse.fail(f"JSON error: malformed tool call ({e})")

    usage = payload.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    return ChatResponse(
        success=True,
        content=message.get("content") or "",
        tool_calls=tool_calls,
        finish_reason=choice.get("finish_reason"),
        input_tokens=usage.get("prompt_tokens", 0),
        output_tokens=usage.get("completion_tokens", 0),
    )


class ChatCompletionsClient(LLMClient):
    """OpenAI-compatible ``/chat/completions`` backend over httpx.

    Use :meth:`openrouter` or :meth:`azure` to build one from config.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str],
        model: str | None = None,
        timeout: float = 120.0,
        provider: str = "openrouter",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._model = model
        self._provider = provider
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    @classmethod
    def openrouter(cls, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None) -> ChatCompletionsClient:
        if not config.api_key:
            raise ConfigError("llm.api_key is required for the openrouter provider")
        return cls(
            url=config.base_url.rstrip("/") + "/chat/completions",
            headers={
                "Authorization": f"Bearer {config.api_key}",
                "HTTP-Referer": OPENROUTER_REFERER,
                "X-Title": config.app_name,
            },
            model=config.model,
            timeout=config.timeout,
            provider="openrouter",
            transport=transport,
        )

    @classmethod
    def azure(cls, config: LLMConfig, transport: httpx.AsyncBaseTransport | None = None) -> ChatCompletionsClient:
        if not (config.api_key and config.endpoint and config.deployment):
            raise ConfigError("llm.api_key, llm.endpoint and llm.deployment are required for azure_openai")
        return cls(
            url=(
                f"{config.endpoint.rstrip('/')}/openai/deployments/{config.deployment}"
                f"/chat/completions?api-version={config.api_version}"
            ),
            headers={"api-key": config.api_key},
            timeout=config.timeout,
            provider="azure_openai",
            transport=transport,
        )

    def _body(self, request: ChatRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": stream,
        }
        if self._model:
            body["model"] = self._model
        if request.tools and not stream:
            body["tools"] = request.tools
            if request.tool_choice:
                body["tool_choice"] = request.tool_choice
        return body

    async def chat(self, request: ChatRequest) -> ChatResponse:
        request_id = uuid.uuid4().hex[:8]
        log = logger.bind(request_id=request_id, provider=self._provider)
        log.info(
            "llm_request",
            messages=len(request.messages),
            tools=len(request.tools or []),
        )

        try:
            response = await self._client.post(self._url, json=self._body(request, stream=False))
        except httpx.TimeoutException:
            log.error("llm_request_timeout")
            return ChatResponse.fail("Request timed out")
        except httpx.HTTPError as e:
            log.error("llm_request_failed", error=str(e))
            return ChatResponse.fail(f"HTTP error: {e}")

        if not response.is_success:
            log.error("llm_error_status", status=response.status_code)
            return ChatResponse.fail(f"API error: {response.status_code} - {response.text}")

        try:
            payload = response.json()
        except ValueError:
            log.error("llm_response_not_json", start=response.text[:100])
            return ChatResponse.fail(f"Invalid response format (not JSON): {response.text[:200]}")

        result = parse_chat_completion(payload)
        if result.success:
            log.info(
                "llm_response",
                finish_reason=result.finish_reason,
                tool_calls=len(result.tool_calls),
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )
        else:
            log.error("llm_response_invalid", error=result.error)
        return result

    async def stream_chat(self, request: ChatRequest, cancel_event: asyncio.Event | None = None) -> AsyncIterator[str]:
        request_id = uuid.uuid4().hex[:8]
        log = logger.bind(request_id=request_id, provider=self._provider)

        try:
            async with self._client.stream("POST", self._url, json=self._body(request, stream=True)) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    log.error("llm_stream_error_status", status=response.status_code)
                    yield f"[Error: {response.status_code} - {body}]"
                    return

                async for line in response.aiter_lines():
                    if cancel_event and cancel_event.is_set():
                        log.info("llm_stream_cancelled")
                        return
                    if not line.startswith("data: "):
                        continue
                    data = line[6:].strip()
                    if data == "[DONE]":
                        log.info("llm_stream_completed")
                        return
                    try:
                        choices = json.loads(data).get("choices") or []
                        content = (choices[0].get("delta") or {}).get("content") if choices else None
                    except (ValueError, AttributeError) as e:
                        log.warning("llm_stream_chunk_invalid", error=str(e))
                        continue
                    if content:
                        yield content
        except httpx.HTTPError as e:
            log.error("llm_stream_failed", error=str(e))
            yield f"[Error: {e}]"

    async def aclose(self) -> None:
        await self._client.aclose()


def _to_anthropic_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Split out the system prompt and convert tool traffic into content blocks."""
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message["role"]
        content = message.get("content") or ""

        if role == "system":
            system_parts.append(content)
        elif role == "tool":
            block = {"type": "tool_result", "tool_use_id": message["tool_call_id"], "content": content}
            previous = converted[-1] if converted else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif role == "assistant" and message.get("tool_calls"):
            blocks: list[dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for call in message["tool_calls"]:
                try:
                    arguments = json.loads(call["function"].get("arguments") or "{}")
                except ValueError:
                    arguments = {}
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["function"]["name"],
                        "input": arguments,
                    }
                )
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": role, "content": content})

    return "\n\n".join(system_parts), converted


def _to_anthropic_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool["function"]["name"],
            "description": tool["function"]["description"],
            "input_schema": tool["function"]["parameters"],
        }
        for tool in tools
    ]


class AnthropicClient(LLMClient):
    """Anthropic Messages API backend using the official SDK."""

    def __init__(self, config: LLMConfig):
        if not config.api_key:
            raise ConfigError("llm.api_key is required for the anthropic provider")
        self._model = config.model
        self._client = anthropic.AsyncAnthropic(
            api_key=config.api_key,
            max_retries=config.max_retries,
            timeout=config.timeout,
        )

    def _kwargs(self, request: ChatRequest, with_tools: bool) -> dict[str, Any]:
        system, messages = _to_anthropic_messages(request.messages)
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": request.max_tokens,
            "messages": messages,
            "temperature": request.temperature,
        }
        if system:
            kwargs["system"] = system
        if with_tools and request.tools:
            kwargs["tools"] = _to_anthropic_tools(request.tools)
        return kwargs

    async def chat(self, request: ChatRequest) -> ChatResponse:
        logger.debug("api_request", model=self._model, message_count=len(request.messages))
        try:
            response = await self._client.messages.create(**self._kwargs(request, with_tools=True))
        except anthropic.APITimeoutError:
            logger.error("llm_request_timeout", provider="anthropic")
            return ChatResponse.fail("Request timed out")
        except anthropic.APIConnectionError as e:
            logger.error("llm_request_failed", provider="anthropic", error=str(e))
            return ChatResponse.fail(f"HTTP error: {e}")
        except anthropic.APIStatusError as e:
            logger.error("llm_error_status", provider="anthropic", status=e.status_code)
            return ChatResponse.fail(f"API error: {e.status_code} - {e.message}")

        text = "".join(block.text for block in response.content if block.type == "text")
        tool_calls = [
            LLMToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
            for block in response.content
            if block.type == "tool_use"
        ]
        logger.debug(
            "api_response",
            model=self._model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason,
        )
        return ChatResponse(
            success=True,
            content=text,
            tool_calls=tool_calls,
            finish_reason=response.stop_reason,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream_chat(self, request: ChatRequest, cancel_event: asyncio.Event | None = None) -> AsyncIterator[str]:
        try:
            async with self._client.messages.stream(**self._kwargs(request, with_tools=False)) as stream:
                async for text in stream.text_stream:
                    if cancel_event and cancel_event.is_set():
                        logger.info("llm_stream_cancelled", provider="anthropic")
                        return
                    yield text
        except anthropic.APIError as e:
            logger.error("llm_stream_failed", provider="anthropic", error=str(e))
            yield f"[Error: {e}]"

    async def aclose(self) -> None:
        await self._client.close()


def create_llm_client(config: LLMConfig) -> LLMClient:
    """Pick the backend adapter named by ``config.provider``."""
    match config.provider:
        case "openrouter":
            return ChatCompletionsClient.openrouter(config)
        case "azure_openai":
            return ChatCompletionsClient.azure(config)
        case "anthropic":
            return AnthropicClient(config)
        case _:
            raise ConfigError(f"Unknown LLM provider: {config.provider}")
