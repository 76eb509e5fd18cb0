import asyncio
import json

import pytest
from agentscope.message import TextBlock
from agentscope.tool import ToolResponse

import ai_tools

_API = "https://api.1inch.dev"
_PRESETS = {"api_key": "k", "base_url": _API, "timeout_s": 1.0}
_WALLET = "0x" + "1" * 40
_USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
_WETH = "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"


class _Resp:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self._payload


def _fake_client(routes, seen):
    """``routes`` maps a URL suffix to the JSON payload served for it."""

    def _match(url):
        for suffix, payload in routes.items():
            if url.endswith(suffix):
                return payload
        raise AssertionError(f"unexpected url {url}")

    class _Client:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url, params=None, headers=None):
            seen.append(("GET", url, params, headers))
            return _Resp(_match(url))

        async def post(self, url, json=None, headers=None):
            seen.append(("POST", url, json, headers))
            return _Resp(_match(url))

    return _Client


def _out(tr):
    return ai_tools.tool_output_text(tr)


@pytest.mark.asyncio
async def test_token_balances_all_balances_formats_known_tokens(monkeypatch):
    seen = []
    routes = {
        f"/balance/v1.2/1/balances/{_WALLET}": {
            _USDC.lower(): "2500000",
            ai_tools.NATIVE_TOKEN_ADDRESS.lower(): "1000000000000000000",
            "0x" + "2" * 40: "0",
        }
    }
    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _fake_client(routes, seen))

    text = _out(await ai_tools.token_balances(operation="all_balances", wallet_address=_WALLET, **_PRESETS))

    assert f"USDC ({_USDC.lower()}): 2.5" in text
    assert f"ETH ({ai_tools.NATIVE_TOKEN_ADDRESS.lower()}): 1" in text
    assert "0x" + "2" * 40 not in text
    assert "**Tokens:** 2" in text
    assert seen[0][3]["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_token_balances_rejects_bad_wallet(monkeypatch):
    seen = []
    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _fake_client({}, seen))

    text = _out(await ai_tools.token_balances(operation="all_balances", wallet_address="0x123", **_PRESETS))

    assert text.startswith("Error: Invalid wallet address format")
    assert seen == []


@pytest.mark.asyncio
async def test_token_prices_posts_resolved_addresses(monkeypatch):
    seen = []
    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _fake_client({"/price/v1.1/1": {_USDC: "1.0001"}}, seen))

    text = _out(await ai_tools.token_prices(tokens=["USDC", "NOPE"], **_PRESETS))

    method, url, body, _ = seen[0]
    assert method == "POST"
    assert body == {"tokens": [_USDC], "currency": "USD"}
    assert f"USDC ({_USDC}): 1.0001" in text
    assert "Unresolved tokens: NOPE" in text


@pytest.mark.asyncio
async def test_gas_prices_without_api_key_returns_error_text():
    text = _out(await ai_tools.gas_prices(chain="ethereum", api_key="", base_url=_API))
    assert text == "Error fetching gas prices: ONEINCH_API_KEY is not configured"


@pytest.mark.asyncio
async def test_gas_prices_unsupported_chain():
    text = _out(await ai_tools.gas_prices(chain="solana", **_PRESETS))
    assert text.startswith('Error: Unsupported chain "solana"')


@pytest.mark.asyncio
async def test_get_token_info_includes_logo_line(monkeypatch):
    seen = []
    listing = {"tokens": {_USDC: {"symbol": "USDC", "name": "USD Coin", "address": _USDC, "decimals": 6, "logoURI": "https://tokens.1inch.io/usdc.png"}}}
    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _fake_client({"/swap/v5.2/1/tokens": listing}, seen))

    text = _out(await ai_tools.get_token_info(token="usdc", **_PRESETS))

    assert "**Symbol:** USDC" in text
    assert "**Decimals:** 6" in text
    assert "**Logo:** https://tokens.1inch.io/usdc.png" in text


@pytest.mark.asyncio
async def test_chart_data_line_returns_payload_and_summary(monkeypatch):
    seen = []
    points = [{"time": i, "value": 3000.0 + i} for i in range(30)]
    url = f"/charts/v1.0/chart/line/{_WETH}/{_USDC}/24H/1"
    monkeypatch.setattr(ai_tools.httpx, "AsyncClient", _fake_client({url: {"data": points}}, seen))

    text = _out(await ai_tools.chart_data(chart_type="line", token0="ETH", token1="USDC", period="24H", **_PRESETS))
    obj = json.loads(text)

    chart = obj["chartData"]
    assert chart["type"] == "line"
    assert chart["data"] == points
    assert chart["metadata"]["token0"] == _WETH
    assert chart["metadata"]["summary"]["points"] == 30
    assert chart["metadata"]["summary"]["last"] == 3029.0
    assert "rsi_14" in chart["metadata"]["summary"]
    assert "Line Chart Data Retrieved" in obj["message"]


@pytest.mark.asyncio
async def test_chart_data_invalid_period_returns_error_payload():
    text = _out(await ai_tools.chart_data(chart_type="line", token0="WETH", token1="USDC", period="2H", **_PRESETS))
    obj = json.loads(text)
    assert obj["chartData"] is None
    assert obj["error"].startswith("Invalid period: 2H")


def test_summarize_series_short_input():
    s = ai_tools.summarize_series([1.0, 2.0])
    assert s["points"] == 2
    assert s["change_pct"] == 100.0
    assert s["sma"] == 1.5
    assert "rsi_14" not in s
    assert ai_tools.summarize_series([]) == {"points": 0}


def test_resolve_chain_id_accepts_names_aliases_and_ids():
    assert ai_tools.resolve_chain_id("Polygon") == 137
    assert ai_tools.resolve_chain_id("matic") == 137
    assert ai_tools.resolve_chain_id("42161") == 42161
    assert ai_tools.resolve_chain_id(None) == 1
    assert ai_tools.resolve_chain_id("999999") is None


def _text(text):
    return ToolResponse(content=[TextBlock(type="text", text=text)])


async def echo_key(symbol: str, api_key: str = "") -> ToolResponse:
    """Echo the configured key.

    Args:
        symbol (str): Token symbol.
    """
    return _text(f"{symbol}:{api_key}")


async def slow_tool(delay: float) -> ToolResponse:
    """Sleep, then answer.

    Args:
        delay (float): Seconds to sleep.
    """
    await asyncio.sleep(delay)
    return _text(f"slept {delay}")


def test_build_tool_registry_hides_presets_from_schemas():
    registry = ai_tools.build_tool_registry({"api_key": "k", "base_url": _API, "timeout_s": 1.0})

    assert set(registry.names()) == {f.__name__ for f in ai_tools.ONEINCH_TOOLS}
    schemas = registry.json_schemas()
    assert len(schemas) == len(ai_tools.ONEINCH_TOOLS)
    for schema in schemas:
        props = schema["function"]["parameters"].get("properties", {})
        assert "api_key" not in props
        assert "base_url" not in props


@pytest.mark.asyncio
async def test_dispatch_preset_overrides_model_arguments():
    registry = ai_tools.ToolRegistry()
    registry.register(echo_key, preset_kwargs={"api_key": "secret"})

    inv = await registry.dispatch("echo_key", {"symbol": "ETH", "api_key": "from-model"})

    assert inv.ok
    assert inv.result == "ETH:secret"


@pytest.mark.asyncio
async def test_dispatch_unknown_tool():
    inv = await ai_tools.ToolRegistry().dispatch("nope", {})
    assert not inv.ok
    assert inv.result == "Tool nope not found"


@pytest.mark.asyncio
async def test_dispatch_times_out_slow_tool():
    registry = ai_tools.ToolRegistry()
    registry.register(slow_tool)

    inv = await registry.dispatch("slow_tool", {"delay": 1.0}, timeout_s=0.01)

    assert not inv.ok
    assert inv.result == "Error executing tool slow_tool: timed out after 0.01s"


@pytest.mark.asyncio
async def test_dispatch_all_keeps_request_order():
    registry = ai_tools.ToolRegistry()
    registry.register(slow_tool)

    invs = await registry.dispatch_all([("slow_tool", {"delay": 0.05}), ("slow_tool", {"delay": 0.0})])

    assert [i.result for i in invs] == ["slept 0.05", "slept 0.0"]
