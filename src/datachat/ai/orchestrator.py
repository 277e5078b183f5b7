"""Bounded tool-calling loop that turns one user question into an answer."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable

from structlog.contextvars import bound_contextvars

from datachat.ai.client import ChatRequest, LLMClient, LLMToolCall
from datachat.ai.formatting import format_tool_result
from datachat.ai.tools.base import ToolCall, ToolResult
from datachat.ai.tools.registry import ToolRegistry
from datachat.core.session import ChatSession, SessionStore
from datachat.core.types import Outcome, Role
from datachat.log import get_logger

logger = get_logger(__name__)

FALLBACK_ANSWER = "I couldn't generate a response."
PARTIAL_ANSWER = (
    "I've gathered some information but couldn't complete the analysis. "
    "Please try rephrasing your question."
)
CANCELLED_ANSWER = "The request was cancelled."

_CANCELLED = object()


async def _unless_cancelled(aw: Awaitable[Any], cancel_event: asyncio.Event | None) -> Any:
    """Await *aw*, or return ``_CANCELLED`` if *cancel_event* is set first.

    The losing awaitable is cancelled and reaped before returning.
    """
    if cancel_event is None:
        return await aw
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
    if task.cancelled():
        return _CANCELLED
    return task.result()


@dataclass
class OrchestratorResult:
    """Answer plus the full trace of tool calls made while producing it."""

    success: bool
    outcome: Outcome
    answer: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str | None = None
    rounds: int = 0


def _parse_call(raw: LLMToolCall) -> ToolCall:
    """Decode the model's argument text. Undecodable arguments pre-fail the call."""
    call = ToolCall(id=raw.id, name=raw.name)
    try:
        arguments = json.loads(raw.arguments or "{}")
    except ValueError as e:
        call.result = ToolResult.fail(f"Invalid JSON arguments for {raw.name}: {e}")
        return call
    if not isinstance(arguments, dict):
        call.result = ToolResult.fail(f"Arguments for {raw.name} must be a JSON object")
        return call
    call.arguments = arguments
    return call


class QueryOrchestrator:
    """Drives the model through rounds of tool calls until it answers or the cap is hit.

    Each round sends the conversation plus the tool schema, runs the requested
    calls concurrently, and appends one assistant message followed by one tool
    message per call in the order the model asked for them. Every message is
    also appended to the user's session.
    """

    def __init__(
        self,
        client: LLMClient,
        registry: ToolRegistry,
        sessions: SessionStore,
        system_prompt: str,
        assistant_id: str = "default",
        max_iterations: int = 5,
        history_window: int = 10,
        preview_rows: int = 20,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ):
        self._client = client
        self._registry = registry
        self._sessions = sessions
        self._system_prompt = system_prompt
        self._assistant_id = assistant_id
        self._max_iterations = max_iterations
        self._history_window = history_window
        self._preview_rows = preview_rows
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def assistant_id(self) -> str:
        return self._assistant_id

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def clear_session(self, user_id: str) -> bool:
        return self._sessions.clear(user_id)

    def _start(self, session: ChatSession, question: str) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": Role.SYSTEM.value, "content": self._system_prompt}]
        for turn in session.recent_turns(self._history_window):
            messages.append({"role": turn.role.value, "content": turn.content})
        messages.append({"role": Role.USER.value, "content": question})
        session.add_message(Role.USER, question)
        return messages

    async def ask(
        self,
        user_id: str,
        question: str,
        cancel_event: asyncio.Event | None = None,
    ) -> OrchestratorResult:
        run_id = uuid.uuid4().hex[:8]
        with bound_contextvars(run_id=run_id, assistant=self._assistant_id, user_id=user_id):
            return await self._run(user_id, question, cancel_event)

    async def _run(
        self,
        user_id: str,
        question: str,
        cancel_event: asyncio.Event | None,
    ) -> OrchestratorResult:
        session = self._sessions.get_or_create(user_id)
        messages = self._start(session, question)
        tools = self._registry.schema_for_llm()
        trace: list[ToolCall] = []
        logger.info("orchestration_started", question_length=len(question), tools=len(tools))

        for round_no in range(1, self._max_iterations + 1):
            if cancel_event and cancel_event.is_set():
                return self._cancelled(trace, round_no - 1)

            logger.info("orchestration_round", round=round_no)
            response = await _unless_cancelled(
                self._client.chat(
                    ChatRequest(
                        messages=messages,
                        tools=tools or None,
                        temperature=self._temperature,
                        max_tokens=self._max_tokens,
                    )
                ),
                cancel_event,
            )
            if response is _CANCELLED or (cancel_event and cancel_event.is_set()):
                return self._cancelled(trace, round_no)
            if not response.success:
                logger.error("orchestration_llm_failed", round=round_no, error=response.error)
                return OrchestratorResult(
                    success=False,
                    outcome=Outcome.FAILED,
                    error=response.error,
                    tool_calls=trace,
                    rounds=round_no,
                )

            if not response.tool_calls:
                answer = (response.content or "").strip() or FALLBACK_ANSWER
                session.add_message(Role.ASSISTANT, answer)
                logger.info("orchestration_answered", round=round_no, tool_calls=len(trace))
                return OrchestratorResult(
                    success=True,
                    outcome=Outcome.ANSWERED,
                    answer=answer,
                    tool_calls=trace,
                    rounds=round_no,
                )

            calls = [_parse_call(raw) for raw in response.tool_calls]
            results = await _unless_cancelled(
                asyncio.gather(*(self._dispatch(call, user_id) for call in calls)), cancel_event
            )
            if results is _CANCELLED:
                return self._cancelled(trace, round_no)
            for call, result in zip(calls, results):
                call.result = result

            self._append_round(session, messages, response.content or "", calls)
            trace.extend(calls)

        logger.warning("orchestration_iteration_cap", rounds=self._max_iterations, tool_calls=len(trace))
        session.add_message(Role.ASSISTANT, PARTIAL_ANSWER)
        return OrchestratorResult(
            success=True,
            outcome=Outcome.PARTIAL,
            answer=PARTIAL_ANSWER,
            tool_calls=trace,
            rounds=self._max_iterations,
        )

    async def _dispatch(self, call: ToolCall, caller: str) -> ToolResult:
        if call.result is not None:
            return call.result
        tool = self._registry.get(call.name)
        if tool is None:
            logger.warning("tool_not_found", tool=call.name, call_id=call.id)
            return ToolResult.fail(f"Tool '{call.name}' not found")

        logger.info("tool_dispatch", tool=call.name, call_id=call.id, arguments=call.arguments_json)
        try:
            result = await tool.execute(call.arguments, caller)
        except Exception as e:
            logger.error("tool_execution_error", tool=call.name, error=str(e))
            return ToolResult.fail(f"Error executing {call.name}: {e}")
        logger.info("tool_completed", tool=call.name, call_id=call.id, success=result.success)
        return result

    def _append_round(
        self,
        session: ChatSession,
        messages: list[dict[str, Any]],
        content: str,
        calls: list[ToolCall],
    ) -> None:
        messages.append(
            {
                "role": Role.ASSISTANT.value,
                "content": content or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments_json},
                    }
                    for call in calls
                ],
            }
        )
        session.add_message(Role.ASSISTANT, content, tool_calls=calls)

        for call in calls:
            text = format_tool_result(call.result, self._preview_rows)
            messages.append({"role": Role.TOOL.value, "tool_call_id": call.id, "content": text})
            session.add_message(Role.TOOL, text, tool_call_id=call.id)

    def _cancelled(self, trace: list[ToolCall], rounds: int) -> OrchestratorResult:
        logger.info("orchestration_cancelled", rounds=rounds, tool_calls=len(trace))
        return OrchestratorResult(
            success=False,
            outcome=Outcome.CANCELLED,
            answer=CANCELLED_ANSWER,
            tool_calls=trace,
            rounds=rounds,
        )

    async def stream_reply(
        self,
        user_id: str,
        question: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[str]:
        """Stream a tool-free reply. The collected text is appended to the session at the end."""
        session = self._sessions.get_or_create(user_id)
        messages = self._start(session, question)
        request = ChatRequest(messages=messages, temperature=self._temperature, max_tokens=self._max_tokens)

        parts: list[str] = []
        try:
            async for fragment in self._client.stream_chat(request, cancel_event):
                parts.append(fragment)
                yield fragment
        finally:
            session.add_message(Role.ASSISTANT, "".join(parts).strip() or FALLBACK_ANSWER)
