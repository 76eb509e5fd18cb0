"""Agentic response generation: history, tool-calling loop, synthesis and cleanup."""

import asyncio
import collections.abc
import inspect
import json
import logging
import time
from enum import Enum
from typing import Any

from agentscope.message import Msg
from pydantic import BaseModel, Field

from ai_postprocess import clean_response
from ai_prompts import (
    ERROR_MESSAGE,
    FALLBACK_MESSAGE,
    UserContext,
    build_internal_directive,
    build_synthesis_prompt,
    build_system_prompt,
    contains_scaffolding,
)
from ai_tools import CHART_TOOL_NAME, ToolInvocation, ToolRegistry
from app_config import ModelBundle

logger = logging.getLogger("agent-backend")

MAX_ITERATIONS = 5


class LoopPhase(str, Enum):
    awaiting_model = "awaiting_model"
    dispatching_tools = "dispatching_tools"
    synthesizing = "synthesizing"
    done = "done"


class OrchestrationState(BaseModel):
    original_input: str
    current_input: str
    history: list[Msg]
    iteration_count: int = 0
    phase: LoopPhase = LoopPhase.awaiting_model
    tool_results: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    chart_payload: dict[str, Any] | None = None
    final_answer: str | None = None

    class Config:
        arbitrary_types_allowed = True


class AIResponse(BaseModel):
    content: str
    tools_used: list[str] | None = None
    chart_data: dict[str, Any] | None = None
    error: str | None = None


async def get_chat_history(
    store: Any,
    chat_id: str,
    limit: int = 5,
    exclude_message_id: str | None = None,
) -> list[Msg]:
    """Last ``limit`` turns of a chat, oldest first.

    The store returns rows newest first. A failing store yields an empty history.
    """
    try:
        fetch = limit + 1 if exclude_message_id else limit
        rows = await store.fetch_recent_messages(chat_id, fetch)
    except Exception as e:
        logger.warning("history load failed chat_id=%s: %s", chat_id, e)
        return []

    if exclude_message_id:
        rows = [r for r in rows if r.id != exclude_message_id]
    rows = list(rows)[:limit]
    rows.reverse()

    msgs: list[Msg] = []
    for r in rows:
        role = getattr(r.role, "value", r.role)
        if role not in {"user", "assistant"}:
            role = "user"
        msgs.append(Msg(name=role, role=role, content=r.content))
    return msgs


async def resolve_user_context(store: Any, chat_id: str) -> UserContext | None:
    try:
        user = await store.get_user_by_chat_id(chat_id)
    except Exception as e:
        logger.warning("user context lookup failed chat_id=%s: %s", chat_id, e)
        return None
    if user is None:
        return None
    return UserContext(id=user.id, wallet_address=user.wallet_address, email=user.email)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _is_async_iterable(obj: Any) -> bool:
    return isinstance(obj, collections.abc.AsyncIterable) or inspect.isasyncgen(obj)


def _tool_calls_from_chat_response(res: Any) -> list[tuple[str, dict[str, Any]]]:
    content = getattr(res, "content", None)
    if not isinstance(content, list):
        return []
    calls: list[tuple[str, dict[str, Any]]] = []
    for b in content:
        if isinstance(b, dict):
            if b.get("type") != "tool_use":
                continue
            name, raw_input = b.get("name"), b.get("input")
        else:
            if getattr(b, "type", None) != "tool_use":
                continue
            name, raw_input = getattr(b, "name", None), getattr(b, "input", None)
        if not isinstance(name, str) or not name:
            continue
        if isinstance(raw_input, str):
            try:
                raw_input = json.loads(raw_input) if raw_input.strip() else {}
            except ValueError:
                raw_input = {}
        calls.append((name, raw_input if isinstance(raw_input, dict) else {}))
    return calls


def _text_from_chat_response(res: Any) -> str:
    content = getattr(res, "content", None)
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(res) if res is not None else ""
    texts: list[str] = []
    for b in content:
        if isinstance(b, dict):
            if b.get("type") == "text" and isinstance(b.get("text"), str):
                texts.append(b["text"])
        else:
            if getattr(b, "type", None) == "text":
                texts.append(str(getattr(b, "text", "")))
    return "\n".join([t for t in texts if t])


async def _call_model(
    bundle: ModelBundle,
    msgs: list[Msg],
    registry: ToolRegistry | None,
    timeout_s: float,
) -> Any:
    async def _invoke() -> Any:
        formatted = await _maybe_await(bundle.formatter.format(msgs))
        if registry is not None:
            res = await bundle.model(messages=formatted, tools=registry.json_schemas(), tool_choice="auto")
        else:
            res = await bundle.model(messages=formatted)
        if _is_async_iterable(res):
            last = None
            async for chunk in res:
                last = chunk
            return last
        return res

    try:
        if timeout_s > 0:
            return await asyncio.wait_for(_invoke(), timeout=timeout_s)
        return await _invoke()
    except asyncio.TimeoutError as e:
        raise RuntimeError("llm_timeout") from e


def _format_tool_result(inv: ToolInvocation) -> str:
    return f"[{inv.name}]\n{inv.result}"


def _capture_chart(state: OrchestrationState, inv: ToolInvocation) -> ToolInvocation:
    """Take the chart payload out of a chart tool result.

    The first payload in a generation wins. The model only sees the chart message.
    """
    if inv.name != CHART_TOOL_NAME or not inv.ok:
        return inv
    try:
        parsed = json.loads(inv.result)
    except ValueError:
        return inv
    if not isinstance(parsed, dict):
        return inv

    payload = parsed.get("chartData")
    if isinstance(payload, dict) and state.chart_payload is None:
        state.chart_payload = payload

    visible = parsed.get("message") or parsed.get("error")
    if isinstance(visible, str) and visible:
        return inv.model_copy(update={"result": visible})
    return inv


async def run_tool_loop(
    bundle: ModelBundle,
    registry: ToolRegistry | None,
    system_prompt: str,
    history: list[Msg],
    user_input: str,
    llm_timeout_s: float = 60.0,
    tool_timeout_s: float = 20.0,
    max_iterations: int = MAX_ITERATIONS,
) -> AIResponse:
    """Drive model calls and tool dispatch until there is an answer.

    At most ``max_iterations`` tool-bound model calls are made, followed by at most
    one plain synthesis call. Model errors propagate; tool errors never do.
    """
    state = OrchestrationState(original_input=user_input, current_input=user_input, history=list(history))
    system_msg = Msg(name="system", role="system", content=system_prompt)
    pending_calls: list[tuple[str, dict[str, Any]]] = []

    while state.phase != LoopPhase.done:
        if state.phase == LoopPhase.awaiting_model:
            msgs = [system_msg, *state.history, Msg(name="user", role="user", content=state.current_input)]
            t0 = time.monotonic()
            res = await _call_model(bundle, msgs, registry, llm_timeout_s)
            pending_calls = _tool_calls_from_chat_response(res) if registry is not None else []
            logger.info(
                "tool_loop iter=%d tool_calls=%d ms=%d",
                state.iteration_count,
                len(pending_calls),
                int((time.monotonic() - t0) * 1000),
            )

            if pending_calls:
                state.phase = LoopPhase.dispatching_tools
                continue

            text = _text_from_chat_response(res).strip()
            if not text or contains_scaffolding(text):
                if text:
                    logger.warning("tool_loop iter=%d: model echoed internal directive", state.iteration_count)
                if state.tool_results:
                    state.phase = LoopPhase.synthesizing
                else:
                    state.final_answer = FALLBACK_MESSAGE
                    state.phase = LoopPhase.done
                continue

            state.final_answer = text
            state.phase = LoopPhase.done
            continue

        if state.phase == LoopPhase.dispatching_tools:
            invocations = await registry.dispatch_all(pending_calls, timeout_s=tool_timeout_s)
            iteration_results: list[str] = []
            for inv in invocations:
                inv = _capture_chart(state, inv)
                state.tools_used.append(inv.name)
                formatted = _format_tool_result(inv)
                iteration_results.append(formatted)
                state.tool_results.append(formatted)

            state.history.append(Msg(name="user", role="user", content=state.original_input))
            state.history.append(Msg(name="assistant", role="assistant", content="\n\n".join(iteration_results)))
            state.current_input = build_internal_directive(state.original_input, iteration_results)
            state.iteration_count += 1
            pending_calls = []

            if state.iteration_count >= max_iterations:
                logger.info("tool_loop reached max iterations=%d", max_iterations)
                state.phase = LoopPhase.synthesizing
            else:
                state.phase = LoopPhase.awaiting_model
            continue

        if state.phase == LoopPhase.synthesizing:
            if state.final_answer is None and state.tool_results:
                msgs = [
                    system_msg,
                    *history,
                    Msg(
                        name="user",
                        role="user",
                        content=build_synthesis_prompt(state.original_input, state.tool_results),
                    ),
                ]
                res = await _call_model(bundle, msgs, None, llm_timeout_s)
                state.final_answer = _text_from_chat_response(res).strip()
            if state.final_answer is None:
                state.final_answer = FALLBACK_MESSAGE
            state.phase = LoopPhase.done

    content = clean_response(state.final_answer or "")
    if not content:
        content = FALLBACK_MESSAGE

    tools_used = list(dict.fromkeys(state.tools_used))
    return AIResponse(
        content=content,
        tools_used=tools_used or None,
        chart_data=state.chart_payload,
    )


async def generate_ai_response(
    user_message: str,
    *,
    bundle: ModelBundle | None,
    registry: ToolRegistry | None,
    store: Any = None,
    chat_id: str | None = None,
    exclude_message_id: str | None = None,
    history_limit: int = 5,
    llm_timeout_s: float = 60.0,
    tool_timeout_s: float = 20.0,
) -> AIResponse:
    """Generate the assistant reply for one user turn. Never raises."""
    try:
        if bundle is None:
            raise RuntimeError("model not initialized")

        history: list[Msg] = []
        user_context: UserContext | None = None
        if store is not None and chat_id:
            history = await get_chat_history(store, chat_id, history_limit, exclude_message_id=exclude_message_id)
            user_context = await resolve_user_context(store, chat_id)

        return await run_tool_loop(
            bundle=bundle,
            registry=registry,
            system_prompt=build_system_prompt(user_context),
            history=history,
            user_input=user_message,
            llm_timeout_s=llm_timeout_s,
            tool_timeout_s=tool_timeout_s,
        )
    except Exception as e:
        logger.exception("AI response generation failed chat_id=%s", chat_id)
        return AIResponse(content=ERROR_MESSAGE, error=str(e))
