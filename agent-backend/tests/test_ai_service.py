import asyncio
import json
from types import SimpleNamespace

import pytest
from agentscope.message import TextBlock
from agentscope.model import ChatModelBase
from agentscope.tool import ToolResponse

import ai_service
import ai_tools
from ai_prompts import ERROR_MESSAGE, FALLBACK_MESSAGE, INTERNAL_DIRECTIVE_HEADER, contains_scaffolding
from ai_tools import ToolRegistry
from app_config import ModelBundle
from db_store import MessageRole


class _FakeFormatter:
    async def format(self, msgs, **kwargs):
        out = []
        for m in msgs:
            out.append({"role": m.role, "content": m.content})
        return out


class _ScriptedModel(ChatModelBase):
    """Replays canned turns. A turn is either reply text or a list of (tool_name, args)."""

    def __init__(self, turns):
        super().__init__(model_name="fake", stream=False)
        self.turns = list(turns)
        self.calls = []

    async def __call__(self, messages, tools=None, tool_choice=None, structured_model=None, **kwargs):
        self.calls.append({"messages": messages, "tools": tools})
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        if isinstance(turn, list):
            blocks = [
                {"type": "tool_use", "id": f"call_{i}", "name": name, "input": args}
                for i, (name, args) in enumerate(turn)
            ]
            return SimpleNamespace(content=blocks)
        return SimpleNamespace(content=[{"type": "text", "text": turn}])


def _text(text: str) -> ToolResponse:
    return ToolResponse(content=[TextBlock(type="text", text=text)])


async def lookup_price(symbol: str) -> ToolResponse:
    """Look up the USD price of a token.

    Args:
        symbol (str): Token symbol.
    """
    return _text(f"{symbol} = $3000")


async def broken_tool(symbol: str) -> ToolResponse:
    """Always fails.

    Args:
        symbol (str): Token symbol.
    """
    raise RuntimeError("upstream exploded")


async def chart_data(label: str) -> ToolResponse:
    """Return a chart payload.

    Args:
        label (str): Series label.
    """
    payload = {"message": f"chart {label} ready", "chartData": {"type": "line", "data": [label], "metadata": {}}}
    return _text(json.dumps(payload))


def _registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(lookup_price)
    registry.register(broken_tool)
    registry.register(chart_data)
    return registry


def _bundle(model) -> ModelBundle:
    return ModelBundle(model=model, formatter=_FakeFormatter())


async def _run(model, user_input="What is the ETH price?", history=None, registry=None):
    return await ai_service.run_tool_loop(
        bundle=_bundle(model),
        registry=registry or _registry(),
        system_prompt="system",
        history=history or [],
        user_input=user_input,
    )


@pytest.mark.asyncio
async def test_direct_answer_without_tools():
    model = _ScriptedModel(["Hello! How can I help?"])
    res = await _run(model, user_input="hi")

    assert res.content == "Hello! How can I help?"
    assert res.tools_used is None
    assert res.chart_data is None
    assert len(model.calls) == 1
    assert model.calls[0]["tools"]


@pytest.mark.asyncio
async def test_single_tool_round_then_answer():
    model = _ScriptedModel([[("lookup_price", {"symbol": "ETH"})], "ETH trades at $3000."])
    res = await _run(model)

    assert res.content == "ETH trades at $3000."
    assert res.tools_used == ["lookup_price"]
    assert len(model.calls) == 2

    second = model.calls[1]["messages"]
    assert second[0]["role"] == "system"
    assert second[-1]["role"] == "user"
    assert second[-1]["content"].startswith(INTERNAL_DIRECTIVE_HEADER)
    assert "Original user request: What is the ETH price?" in second[-1]["content"]
    assert second[-2] == {"role": "assistant", "content": "[lookup_price]\nETH = $3000"}
    assert second[-3] == {"role": "user", "content": "What is the ETH price?"}


@pytest.mark.asyncio
async def test_leaked_directive_after_results_triggers_synthesis():
    leaked = f"{INTERNAL_DIRECTIVE_HEADER}\nOriginal user request: price?\nTool results obtained:\n..."
    model = _ScriptedModel([[("lookup_price", {"symbol": "ETH"})], leaked, "ETH is $3000 right now."])
    res = await _run(model)

    assert res.content == "ETH is $3000 right now."
    assert len(model.calls) == 3
    assert model.calls[2]["tools"] is None
    synth = model.calls[2]["messages"]
    assert [m["role"] for m in synth] == ["system", "user"]
    assert "ETH = $3000" in synth[-1]["content"]
    assert not contains_scaffolding(res.content)


@pytest.mark.asyncio
async def test_leaked_directive_without_results_uses_fallback():
    model = _ScriptedModel(["Tool results obtained: none. Do not mention internal processing."])
    res = await _run(model)

    assert res.content == FALLBACK_MESSAGE
    assert res.tools_used is None
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_empty_model_text_without_results_uses_fallback():
    model = _ScriptedModel(["   "])
    res = await _run(model)
    assert res.content == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_loop_stops_after_five_tool_rounds_and_synthesizes():
    model = _ScriptedModel([[("lookup_price", {"symbol": "ETH"})]] * 5 + ["Final synthesized answer."])
    res = await _run(model)

    assert res.content == "Final synthesized answer."
    assert len(model.calls) == ai_service.MAX_ITERATIONS + 1
    assert all(c["tools"] for c in model.calls[:5])
    assert model.calls[5]["tools"] is None
    assert res.tools_used == ["lookup_price"]


@pytest.mark.asyncio
async def test_tool_failures_are_fed_back_to_the_model():
    model = _ScriptedModel(
        [
            [("broken_tool", {"symbol": "ETH"}), ("missing_tool", {}), ("lookup_price", {"symbol": "ETH"})],
            "Partial answer: ETH is $3000.",
        ]
    )
    res = await _run(model)

    assert res.content == "Partial answer: ETH is $3000."
    assert res.tools_used == ["broken_tool", "missing_tool", "lookup_price"]
    results_turn = model.calls[1]["messages"][-2]["content"]
    parts = results_turn.split("\n\n")
    assert parts[0] == "[broken_tool]\nError executing tool broken_tool: upstream exploded"
    assert parts[1] == "[missing_tool]\nTool missing_tool not found"
    assert parts[2] == "[lookup_price]\nETH = $3000"


@pytest.mark.asyncio
async def test_first_chart_payload_wins():
    model = _ScriptedModel(
        [
            [("chart_data", {"label": "first"}), ("chart_data", {"label": "second"})],
            [("chart_data", {"label": "third"})],
            "Here is the chart.",
        ]
    )
    res = await _run(model)

    assert res.chart_data == {"type": "line", "data": ["first"], "metadata": {}}
    assert res.tools_used == ["chart_data"]
    # The model sees the chart message, not the raw payload.
    results_turn = model.calls[1]["messages"][-2]["content"]
    assert "chart first ready" in results_turn
    assert "chartData" not in results_turn


def _registry_with_raw_chart(raw: str) -> ToolRegistry:
    async def chart_data(label: str) -> ToolResponse:
        """Return a chart payload.

        Args:
            label (str): Series label.
        """
        return _text(raw)

    registry = ToolRegistry()
    registry.register(chart_data)
    return registry


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["{not json", json.dumps([{"chartData": {"type": "line"}}])])
async def test_unparseable_chart_payload_is_ignored(raw):
    model = _ScriptedModel([[("chart_data", {"label": "eth"})], "No chart this time."])
    res = await _run(model, registry=_registry_with_raw_chart(raw))

    assert res.chart_data is None
    assert res.content == "No chart this time."
    assert res.tools_used == ["chart_data"]
    assert raw in model.calls[1]["messages"][-2]["content"]


@pytest.mark.asyncio
async def test_final_answer_is_cleaned():
    answer = "Here is USDC.\n**Logo:** https://tokens.1inch.io/usdc.png\nBased on the tool results, it is a stablecoin."
    model = _ScriptedModel([answer])
    res = await _run(model)

    assert "![Logo](https://tokens.1inch.io/usdc.png)" in res.content
    assert "tool results" not in res.content.lower()


@pytest.mark.asyncio
async def test_slow_model_times_out():
    class SlowModel(_ScriptedModel):
        async def __call__(self, messages, tools=None, tool_choice=None, structured_model=None, **kwargs):
            await asyncio.sleep(1)
            return SimpleNamespace(content=[{"type": "text", "text": "late"}])

    with pytest.raises(RuntimeError, match="llm_timeout"):
        await ai_service.run_tool_loop(
            bundle=_bundle(SlowModel([])),
            registry=_registry(),
            system_prompt="system",
            history=[],
            user_input="hi",
            llm_timeout_s=0.01,
        )


@pytest.mark.asyncio
async def test_generate_returns_apology_when_model_fails():
    model = _ScriptedModel([RuntimeError("provider down")])
    res = await ai_service.generate_ai_response("hi", bundle=_bundle(model), registry=_registry())

    assert res.content == ERROR_MESSAGE
    assert res.error == "provider down"
    assert res.tools_used is None


@pytest.mark.asyncio
async def test_generate_without_model_reports_error():
    res = await ai_service.generate_ai_response("hi", bundle=None, registry=None)
    assert res.content == ERROR_MESSAGE
    assert res.error


class _FakeStore:
    def __init__(self, rows, user=None, fail=False):
        self.rows = rows
        self.user = user
        self.fail = fail
        self.limits = []

    async def fetch_recent_messages(self, chat_id, limit):
        self.limits.append(limit)
        if self.fail:
            raise RuntimeError("db down")
        return self.rows[:limit]

    async def get_user_by_chat_id(self, chat_id):
        if self.fail:
            raise RuntimeError("db down")
        return self.user


def _row(i, role, content):
    return SimpleNamespace(id=f"m{i}", role=role, content=content)


@pytest.mark.asyncio
async def test_history_is_returned_oldest_first():
    newest_first = [
        _row(4, MessageRole.assistant, "four"),
        _row(3, MessageRole.user, "three"),
        _row(2, MessageRole.assistant, "two"),
        _row(1, MessageRole.user, "one"),
    ]
    store = _FakeStore(newest_first)
    msgs = await ai_service.get_chat_history(store, "chat", limit=3)

    assert [m.content for m in msgs] == ["two", "three", "four"]
    assert [m.role for m in msgs] == ["assistant", "user", "assistant"]
    assert store.limits == [3]


@pytest.mark.asyncio
async def test_history_excludes_current_message():
    newest_first = [
        _row(3, MessageRole.user, "current"),
        _row(2, MessageRole.assistant, "two"),
        _row(1, MessageRole.user, "one"),
    ]
    store = _FakeStore(newest_first)
    msgs = await ai_service.get_chat_history(store, "chat", limit=2, exclude_message_id="m3")

    assert [m.content for m in msgs] == ["one", "two"]
    assert store.limits == [3]


@pytest.mark.asyncio
async def test_history_store_failure_yields_empty_history():
    msgs = await ai_service.get_chat_history(_FakeStore([], fail=True), "chat")
    assert msgs == []


@pytest.mark.asyncio
async def test_generate_uses_history_and_wallet_context():
    user = SimpleNamespace(id="u1", wallet_address="0x" + "a" * 40, email="a@example.com")
    store = _FakeStore([_row(1, MessageRole.user, "earlier question")], user=user)
    model = _ScriptedModel(["Sure."])

    res = await ai_service.generate_ai_response(
        "follow-up",
        bundle=_bundle(model),
        registry=_registry(),
        store=store,
        chat_id="chat",
    )

    assert res.content == "Sure."
    assert res.error is None
    msgs = model.calls[0]["messages"]
    assert "0x" + "a" * 40 in msgs[0]["content"]
    assert msgs[1] == {"role": "user", "content": "earlier question"}
    assert msgs[-1] == {"role": "user", "content": "follow-up"}


@pytest.mark.asyncio
async def test_user_context_failure_does_not_break_generation():
    store = _FakeStore([], fail=True)
    model = _ScriptedModel(["Still here."])
    res = await ai_service.generate_ai_response(
        "hi", bundle=_bundle(model), registry=_registry(), store=store, chat_id="chat"
    )
    assert res.content == "Still here."
    assert res.error is None


@pytest.mark.asyncio
async def test_balance_question_uses_wallet_from_context(monkeypatch):
    wallet = "0x" + "a" * 40
    seen = []

    class _Resp:
        def raise_for_status(self):
            return None

        def json(self):
            return {ai_tools.NATIVE_TOKEN_ADDRESS.lower(): "2000000000000000000"}

    class _Client:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url, params=None, headers=None):
            seen.append(url)
            return _Resp()

    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _Client)
    registry = ai_tools.build_tool_registry({"api_key": "k", "base_url": "https://api.1inch.dev", "timeout_s": 1.0})
    user = SimpleNamespace(id="u1", wallet_address=wallet, email=None)
    model = _ScriptedModel(
        [
            [("token_balances", {"operation": "all_balances", "wallet_address": wallet, "chain": "ethereum"})],
            "You hold 2 ETH.",
        ]
    )

    res = await ai_service.generate_ai_response(
        "What's my ETH balance?",
        bundle=_bundle(model),
        registry=registry,
        store=_FakeStore([], user=user),
        chat_id="chat",
    )

    assert res.content == "You hold 2 ETH."
    assert res.tools_used == ["token_balances"]
    assert seen == [f"https://api.1inch.dev/balance/v1.2/1/balances/{wallet}"]
    results_turn = model.calls[1]["messages"][-2]["content"]
    assert f"ETH ({ai_tools.NATIVE_TOKEN_ADDRESS.lower()}): 2" in results_turn


def test_orchestration_state_starts_clean():
    first = ai_service.OrchestrationState(original_input="a", current_input="a", history=[])
    first.tool_results.append("[lookup_price]\nETH = $3000")
    second = ai_service.OrchestrationState(original_input="b", current_input="b", history=[])

    assert second.tool_results == []
    assert second.phase == ai_service.LoopPhase.awaiting_model
    assert second.chart_payload is None
