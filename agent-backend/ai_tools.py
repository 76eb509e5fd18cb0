import asyncio
import decimal
import inspect
import json
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import numpy as np
import talib
from agentscope.message import TextBlock
from agentscope.tool import ToolResponse, Toolkit
from pydantic import BaseModel, Field
from web3 import Web3

logger = logging.getLogger("agent-backend")

CHART_TOOL_NAME = "chart_data"

NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

SUPPORTED_CHAINS: dict[str, int] = {
    "ethereum": 1,
    "bsc": 56,
    "polygon": 137,
    "arbitrum": 42161,
    "optimism": 10,
    "avalanche": 43114,
    "gnosis": 100,
    "fantom": 250,
    "klaytn": 8217,
    "aurora": 1313161554,
    "zksync": 324,
    "base": 8453,
}

_CHAIN_ALIASES: dict[str, str] = {
    "eth": "ethereum",
    "mainnet": "ethereum",
    "bnb": "bsc",
    "binance": "bsc",
    "matic": "polygon",
    "arb": "arbitrum",
    "op": "optimism",
    "avax": "avalanche",
}

# symbol -> (address, decimals)
_COMMON_TOKENS: dict[int, dict[str, tuple[str, int]]] = {
    1: {
        "ETH": (NATIVE_TOKEN_ADDRESS, 18),
        "WETH": ("0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18),
        "USDC": ("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6),
        "USDT": ("0xdAC17F958D2ee523a2206206994597C13D831ec7", 6),
        "DAI": ("0x6B175474E89094C44Da98b954EedeAC495271d0F", 18),
        "WBTC": ("0x2260FAC5E5542a773Aa44fBCfeDf7C193bc2C599", 8),
        "LINK": ("0x514910771AF9Ca656af840dff83E8264EcF986CA", 18),
        "UNI": ("0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984", 18),
        "1INCH": ("0x111111111117dC0aa78b770fA6A738034120C302", 18),
    },
    137: {
        "MATIC": (NATIVE_TOKEN_ADDRESS, 18),
        "WMATIC": ("0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270", 18),
        "USDC": ("0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174", 6),
        "USDT": ("0xc2132D05D31c914a87C6611C10748AEb04B58e8F", 6),
        "DAI": ("0x8f3Cf7ad23Cd3CaDbD9735AFf958023239c6A063", 18),
        "WETH": ("0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619", 18),
    },
    56: {
        "BNB": (NATIVE_TOKEN_ADDRESS, 18),
        "WBNB": ("0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c", 18),
        "USDC": ("0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 18),
        "USDT": ("0x55d398326f99059fF775485246999027B3197955", 18),
        "ETH": ("0x2170Ed0880ac9A755fd29B2688956BD959F933F8", 18),
    },
    42161: {
        "ETH": (NATIVE_TOKEN_ADDRESS, 18),
        "WETH": ("0x82aF49447D8a07e3bd95BD0d56f35241523fBab1", 18),
        "USDC": ("0xaf88d065e77c8cC2239327C5EDb3A432268e5831", 6),
        "USDT": ("0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9", 6),
        "DAI": ("0xDA10009cBd5D07dd0CeCc66161FC93D7c9000da1", 18),
    },
}

# Charts are keyed by ERC-20 contracts, so native symbols resolve to the wrapped token.
_WRAPPED_NATIVE = {"ETH": "WETH", "MATIC": "WMATIC", "BNB": "WBNB"}

LINE_CHART_PERIODS = ("24H", "1W", "1M", "1Y", "AllTime")
CANDLE_CHART_SECONDS = (300, 900, 3600, 14400, 86400, 604800)

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _to_wei(amount: str, decimals: int) -> int:
    ctx = decimal.Context(prec=60)
    d = ctx.create_decimal(amount)
    scale = ctx.create_decimal(10) ** ctx.create_decimal(decimals)
    return int((d * scale).to_integral_value(rounding=decimal.ROUND_DOWN))


def _from_wei(amount_wei: int, decimals: int) -> str:
    ctx = decimal.Context(prec=60)
    d = ctx.create_decimal(amount_wei)
    scale = ctx.create_decimal(10) ** ctx.create_decimal(decimals)
    return format((d / scale).normalize(), "f")


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and bool(_ADDRESS_RE.match(value.strip()))


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address.strip())


def resolve_chain_id(chain: str | int | None) -> int | None:
    """Map a chain name, alias or numeric id onto a supported chain id."""
    if chain is None or chain == "":
        return SUPPORTED_CHAINS["ethereum"]
    if isinstance(chain, int):
        return chain if chain in SUPPORTED_CHAINS.values() else None
    s = str(chain).strip().lower()
    if s.isdigit():
        n = int(s)
        return n if n in SUPPORTED_CHAINS.values() else None
    s = _CHAIN_ALIASES.get(s, s)
    return SUPPORTED_CHAINS.get(s)


def chain_name(chain_id: int) -> str:
    for name, cid in SUPPORTED_CHAINS.items():
        if cid == chain_id:
            return name.capitalize()
    return f"Chain {chain_id}"


def _unsupported_chain(chain: Any) -> str:
    return f'Error: Unsupported chain "{chain}". Supported chains: {", ".join(SUPPORTED_CHAINS)}'


def _lookup_token(symbol_or_address: str, chain_id: int) -> tuple[str, int | None] | None:
    """Resolve a symbol or address to ``(address, decimals)`` using the built-in table."""
    raw = symbol_or_address.strip()
    table = _COMMON_TOKENS.get(chain_id, {})
    if _is_address(raw):
        for address, decimals in table.values():
            if address.lower() == raw.lower():
                return address, decimals
        return _checksum(raw), None
    hit = table.get(raw.upper())
    if hit is None:
        return None
    return hit


def _known_decimals(address: str, chain_id: int) -> int:
    for addr, decimals in _COMMON_TOKENS.get(chain_id, {}).values():
        if addr.lower() == address.lower():
            return decimals
    return 18


def _symbol_for(address: str, chain_id: int) -> str | None:
    for symbol, (addr, _) in _COMMON_TOKENS.get(chain_id, {}).items():
        if addr.lower() == address.lower():
            return symbol
    return None


def _headers(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "accept": "application/json"}


def _require_preset(api_key: str, base_url: str) -> None:
    if not base_url:
        raise ValueError("missing preset configuration")
    if not api_key:
        raise ValueError("ONEINCH_API_KEY is not configured")


async def _get_json(url: str, api_key: str, timeout_s: float, params: Any = None) -> Any:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        resp = await client.get(url, params=params, headers=_headers(api_key))
        resp.raise_for_status()
        return resp.json()


async def _post_json(url: str, api_key: str, timeout_s: float, payload: dict[str, Any]) -> Any:
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        resp = await client.post(url, json=payload, headers=_headers(api_key))
        resp.raise_for_status()
        return resp.json()


def _text(text: str) -> ToolResponse:
    return ToolResponse(content=[TextBlock(type="text", text=text)])


def _format_amount(raw: Any, decimals: int) -> str:
    try:
        return _from_wei(int(str(raw)), decimals)
    except (ValueError, decimal.InvalidOperation):
        return str(raw)


def _format_wallet_balances(
    balances: dict[str, Any],
    chain_id: int,
    wallet: str,
    hide_zero: bool,
) -> str:
    lines = [
        "💰 **Token Balances**",
        "",
        f"**Wallet:** {wallet}",
        f"**Chain:** {chain_name(chain_id)} ({chain_id})",
    ]
    shown = 0
    for token, raw in balances.items():
        if hide_zero and str(raw) in {"0", ""}:
            continue
        symbol = _symbol_for(token, chain_id)
        amount = _format_amount(raw, _known_decimals(token, chain_id))
        label = f"{symbol} ({token})" if symbol else token
        lines.append(f"- {label}: {amount}")
        shown += 1
    if shown == 0:
        lines.append("No non-zero balances found." if hide_zero else "No balances returned.")
    else:
        lines.insert(4, f"**Tokens:** {shown}")
    return "\n".join(lines)


async def token_balances(
    operation: str,
    wallet_address: str | None = None,
    wallets: list[str] | None = None,
    tokens: list[str] | None = None,
    chain: str = "ethereum",
    show_zero_balances: bool = False,
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get token balances for wallets using the 1inch Balance API.

    Call this whenever the user asks for token balances or portfolio holdings.
    USDC and USDT use 6 decimals on most chains, ETH, DAI and LINK use 18.

    Args:
        operation (str): One of "all_balances" (every token of one wallet on one chain), "custom_tokens" (selected tokens of one wallet), "multiple_wallets" (selected tokens across several wallets), "all_chains_balances" (every token of one wallet on every supported chain).
        wallet_address (str | None): Wallet address, required for single wallet operations.
        wallets (list[str] | None): Wallet addresses, required for "multiple_wallets".
        tokens (list[str] | None): Token contract addresses, required for "custom_tokens" and "multiple_wallets".
        chain (str): Chain name such as ethereum, polygon, bsc, arbitrum. Ignored for "all_chains_balances".
        show_zero_balances (bool): Include tokens with a zero balance.
    """

    try:
        _require_preset(api_key, base_url)
        chain_id = resolve_chain_id(chain)
        if chain_id is None:
            return _text(_unsupported_chain(chain))

        hide_zero = not show_zero_balances
        root = base_url.rstrip("/") + "/balance/v1.2"
        tokens = [t.strip() for t in (tokens or []) if isinstance(t, str) and t.strip()]
        wallets = [w.strip() for w in (wallets or []) if isinstance(w, str) and w.strip()]

        if operation in {"all_balances", "custom_tokens", "all_chains_balances"}:
            if not wallet_address:
                return _text("Error: Wallet address is required for this balance operation.")
            if not _is_address(wallet_address):
                return _text(
                    "Error: Invalid wallet address format. Must be a valid Ethereum address "
                    "(0x followed by 40 hex characters)."
                )
            wallet_address = wallet_address.strip()

        if operation == "all_balances":
            data = await _get_json(f"{root}/{chain_id}/balances/{wallet_address}", api_key, timeout_s)
            return _text(_format_wallet_balances(data or {}, chain_id, wallet_address, hide_zero))

        if operation == "custom_tokens":
            if not tokens:
                return _text("Error: Tokens array is required for custom token balances. Please provide token contract addresses.")
            invalid = [t for t in tokens if not _is_address(t)]
            if invalid:
                return _text(f"Error: Invalid token address(es): {', '.join(invalid)}. All must be valid contract addresses.")
            data = await _post_json(
                f"{root}/{chain_id}/balances/{wallet_address}",
                api_key,
                timeout_s,
                {"tokens": tokens},
            )
            return _text(_format_wallet_balances(data or {}, chain_id, wallet_address, hide_zero))

        if operation == "multiple_wallets":
            if not wallets or not tokens:
                return _text("Error: Both wallets and tokens are required for multiple wallet balances.")
            invalid = [a for a in [*wallets, *tokens] if not _is_address(a)]
            if invalid:
                return _text(f"Error: Invalid address(es): {', '.join(invalid)}.")
            data = await _post_json(
                f"{root}/{chain_id}/balances/multiple/walletsAndTokens",
                api_key,
                timeout_s,
                {"tokens": tokens, "wallets": wallets},
            )
            sections = [
                _format_wallet_balances(per_wallet or {}, chain_id, wallet, hide_zero)
                for wallet, per_wallet in (data or {}).items()
            ]
            return _text("\n\n".join(sections) if sections else "No balances returned.")

        if operation == "all_chains_balances":
            chain_ids = list(SUPPORTED_CHAINS.values())
            results = await asyncio.gather(
                *[_get_json(f"{root}/{cid}/balances/{wallet_address}", api_key, timeout_s) for cid in chain_ids],
                return_exceptions=True,
            )
            sections: list[str] = []
            failed: list[str] = []
            for cid, res in zip(chain_ids, results):
                if isinstance(res, BaseException):
                    failed.append(chain_name(cid))
                    continue
                if hide_zero and not any(str(v) not in {"0", ""} for v in (res or {}).values()):
                    continue
                sections.append(_format_wallet_balances(res or {}, cid, wallet_address, hide_zero))
            if failed:
                sections.append(f"Could not load balances for: {', '.join(failed)}")
            return _text("\n\n".join(sections) if sections else "No non-zero balances found on any supported chain.")

        return _text(
            f'Error: Unknown operation "{operation}". Use all_balances, custom_tokens, multiple_wallets or all_chains_balances.'
        )

    except Exception as e:
        logger.warning("token_balances failed: %s", e)
        return _text(f"Error fetching token balances: {e}")


async def token_prices(
    operation: str = "get_prices",
    tokens: list[str] | None = None,
    currency: str = "USD",
    chain: str = "ethereum",
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get real-time token prices or the list of supported currencies using the 1inch Price API.

    Args:
        operation (str): "get_prices" for token prices or "supported_currencies" for available currencies.
        tokens (list[str] | None): Token symbols or addresses, e.g. ["ETH", "USDC"] or ["0x..."]. Required for "get_prices".
        currency (str): Quote currency, defaults to "USD".
        chain (str): Chain name such as ethereum, polygon, bsc, arbitrum.
    """

    try:
        _require_preset(api_key, base_url)
        chain_id = resolve_chain_id(chain)
        if chain_id is None:
            return _text(_unsupported_chain(chain))
        root = base_url.rstrip("/") + "/price/v1.1"

        if operation == "supported_currencies":
            data = await _get_json(f"{root}/{chain_id}/currencies", api_key, timeout_s)
            codes = data.get("codes", []) if isinstance(data, dict) else data
            lines = [f"💱 **Supported Currencies** on {chain_name(chain_id)} ({chain_id})", ""]
            lines.extend(f"{i + 1}. **{code}**" for i, code in enumerate(codes or []))
            return _text("\n".join(lines))

        if operation != "get_prices":
            return _text(f'Error: Unknown operation "{operation}". Use get_prices or supported_currencies.')
        if not tokens:
            return _text("Error: Tokens are required for get_prices, e.g. ['ETH', 'USDC'].")

        addresses: list[str] = []
        unresolved: list[str] = []
        for token in tokens:
            hit = _lookup_token(str(token), chain_id)
            if hit is None:
                unresolved.append(str(token))
                continue
            addresses.append(hit[0])
        if not addresses:
            return _text(
                f"Error: Could not resolve {', '.join(unresolved)} on {chain_name(chain_id)}. "
                "Use get_token_info to find the contract address first."
            )

        data = await _post_json(
            f"{root}/{chain_id}",
            api_key,
            timeout_s,
            {"tokens": addresses, "currency": (currency or "USD").upper()},
        )
        prices = data if isinstance(data, dict) else {}
        lines = [
            "💰 **Token Prices**",
            "",
            f"**Chain:** {chain_name(chain_id)} ({chain_id})",
            f"**Currency:** {(currency or 'USD').upper()}",
            "",
        ]
        for address in addresses:
            price = prices.get(address, prices.get(address.lower()))
            symbol = _symbol_for(address, chain_id) or address
            if price is None:
                lines.append(f"- {symbol} ({address}): price unavailable")
            else:
                lines.append(f"- {symbol} ({address}): {price}")
        if unresolved:
            lines.append("")
            lines.append(f"Unresolved tokens: {', '.join(unresolved)}")
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("token_prices failed: %s", e)
        return _text(f"Error fetching token prices: {e}")


def _gwei(raw: Any) -> str:
    try:
        return f"{float(_from_wei(int(str(raw)), 9)):.2f} gwei"
    except (ValueError, decimal.InvalidOperation):
        return str(raw)


async def gas_prices(
    chain: str = "ethereum",
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get real-time gas prices for a chain using the 1inch Gas Price API.

    Args:
        chain (str): Chain name such as ethereum, polygon, bsc, arbitrum, optimism.
    """

    try:
        _require_preset(api_key, base_url)
        chain_id = resolve_chain_id(chain)
        if chain_id is None:
            return _text(_unsupported_chain(chain))

        data = await _get_json(f"{base_url.rstrip('/')}/gas-price/v1.6/{chain_id}", api_key, timeout_s)
        lines = [f"⛽ **Gas Prices** on {chain_name(chain_id)} ({chain_id})", ""]
        if isinstance(data, dict) and "baseFee" in data:
            lines.append(f"**Base Fee:** {_gwei(data['baseFee'])}")
            for tier in ("low", "medium", "high", "instant"):
                info = data.get(tier)
                if not isinstance(info, dict):
                    continue
                lines.append(
                    f"- **{tier.capitalize()}:** max fee {_gwei(info.get('maxFeePerGas'))}, "
                    f"priority fee {_gwei(info.get('maxPriorityFeePerGas'))}"
                )
        elif isinstance(data, dict):
            for tier, value in data.items():
                lines.append(f"- **{tier}:** {_gwei(value)}")
        else:
            lines.append(str(data))
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("gas_prices failed: %s", e)
        return _text(f"Error fetching gas prices: {e}")


async def _fetch_token_details(
    token: str,
    chain_id: int,
    api_key: str,
    base_url: str,
    timeout_s: float,
) -> dict[str, Any] | None:
    root = base_url.rstrip("/")
    if _is_address(token):
        data = await _get_json(f"{root}/token/v1.2/{chain_id}/{token.strip()}", api_key, timeout_s)
        return data if isinstance(data, dict) and data else None

    data = await _get_json(f"{root}/swap/v5.2/{chain_id}/tokens", api_key, timeout_s)
    listing = data.get("tokens", {}) if isinstance(data, dict) else {}
    wanted = token.strip().upper()
    for info in listing.values():
        if isinstance(info, dict) and str(info.get("symbol", "")).upper() == wanted:
            return info
    return None


async def get_token_info(
    token: str,
    chain: str = "ethereum",
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get token metadata (address, symbol, name, decimals, logo) by symbol or contract address.

    Args:
        token (str): Token symbol or contract address, e.g. "USDC" or "0x...".
        chain (str): Chain name such as ethereum, polygon, bsc, arbitrum.
    """

    try:
        _require_preset(api_key, base_url)
        chain_id = resolve_chain_id(chain)
        if chain_id is None:
            return _text(_unsupported_chain(chain))

        info = await _fetch_token_details(token, chain_id, api_key, base_url, timeout_s)
        if info is None:
            return _text(
                f'❌ Token "{token}" not found on {chain_name(chain_id)}. Please check the token symbol or address.'
            )

        method = "by address" if _is_address(token) else "by symbol"
        lines = [
            f"📊 **Token Information** ({method})",
            "",
            f"**Chain:** {chain_name(chain_id)} ({chain_id})",
            f"**Symbol:** {info.get('symbol') or 'N/A'}",
            f"**Name:** {info.get('name') or 'N/A'}",
            f"**Address:** {info.get('address') or token}",
            f"**Decimals:** {info.get('decimals', 'N/A')}",
        ]
        logo = info.get("logoURI")
        if logo:
            lines.append(f"**Logo:** {logo}")
        tags = info.get("tags")
        if isinstance(tags, list) and tags:
            lines.append(f"**Tags:** {', '.join(str(t) for t in tags)}")
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("get_token_info failed: %s", e)
        return _text(f"Error getting token info: {e}")


async def nft_operations(
    operation: str,
    address: str | None = None,
    chains: list[str] | None = None,
    limit: int | None = None,
    offset: int | None = None,
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """List NFT-supported chains or the NFTs held by a wallet using the 1inch NFT API.

    Args:
        operation (str): "supported_chains" or "get_nfts".
        address (str | None): Wallet address, required for "get_nfts".
        chains (list[str] | None): Chain names to search, defaults to ["ethereum"].
        limit (int | None): Maximum number of NFTs to return.
        offset (int | None): Pagination offset.
    """

    try:
        _require_preset(api_key, base_url)
        root = base_url.rstrip("/") + "/nft/v2"

        if operation == "supported_chains":
            data = await _get_json(f"{root}/supportedchains", api_key, timeout_s)
            ids = data if isinstance(data, list) else []
            names = [f"{chain_name(int(cid))} ({cid})" for cid in ids]
            return _text("🖼️ **NFT Supported Chains**\n\n" + "\n".join(f"- {n}" for n in names))

        if operation != "get_nfts":
            return _text(f'Error: Unknown operation "{operation}". Use supported_chains or get_nfts.')
        if not address:
            return _text("Error: Wallet address is required for get_nfts.")
        if not _is_address(address):
            return _text("Error: Invalid wallet address format. Must be a valid Ethereum address.")

        chain_ids: list[int] = []
        for c in chains or ["ethereum"]:
            cid = resolve_chain_id(c)
            if cid is None:
                return _text(_unsupported_chain(c))
            chain_ids.append(cid)

        params: list[tuple[str, Any]] = [("chainIds", cid) for cid in chain_ids]
        params.append(("address", address.strip()))
        if limit:
            params.append(("limit", int(limit)))
        if offset:
            params.append(("offset", int(offset)))

        data = await _get_json(f"{root}/byaddress", api_key, timeout_s, params=params)
        assets = data.get("assets", []) if isinstance(data, dict) else []
        if not assets:
            return _text(f"No NFTs found for {address.strip()}.")

        lines = [f"🖼️ **NFTs for** {address.strip()}", "", f"**Total:** {len(assets)}", ""]
        for i, asset in enumerate(assets, start=1):
            if not isinstance(asset, dict):
                continue
            contract = (asset.get("asset_contract") or {}).get("address") or asset.get("contract") or "unknown"
            lines.append(f"{i}. **{asset.get('name') or 'Unnamed'}** (token id {asset.get('token_id', 'N/A')})")
            lines.append(f"   **Contract:** {contract}")
            if asset.get("chainId"):
                lines.append(f"   **Chain:** {chain_name(int(asset['chainId']))}")
            image = asset.get("image_url") or asset.get("image")
            if image:
                lines.append(f"   **Image:** {image}")
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("nft_operations failed: %s", e)
        return _text(f"Error fetching NFTs: {e}")


async def transaction_history(
    address: str,
    chain_id: str | None = None,
    token_address: str | None = None,
    limit: int | None = None,
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get recent transaction history events for a wallet using the 1inch History API.

    Args:
        address (str): Wallet address.
        chain_id (str | None): Chain id to filter by, e.g. "1" or "137". Empty for all chains.
        token_address (str | None): Only return events touching this token contract.
        limit (int | None): Maximum number of events, default 50, max 100.
    """

    try:
        _require_preset(api_key, base_url)
        if not _is_address(address):
            return _text("Error: Invalid wallet address format. Must be a valid Ethereum address.")

        n = int(limit or 50)
        if n <= 0 or n > 100:
            return _text("Error: limit must be between 1 and 100.")

        params: dict[str, Any] = {"limit": n}
        if chain_id:
            cid = resolve_chain_id(chain_id)
            if cid is None:
                return _text(_unsupported_chain(chain_id))
            params["chainId"] = cid
        if token_address:
            if not _is_address(token_address):
                return _text("Error: Invalid token address format.")
            params["tokenAddress"] = token_address.strip()

        url = f"{base_url.rstrip('/')}/history/v2.0/history/{address.strip()}/events"
        data = await _get_json(url, api_key, timeout_s, params=params)
        items = data.get("items", []) if isinstance(data, dict) else []
        if not items:
            return _text(f"No transactions found for {address.strip()}.")

        lines = [f"📜 **Transaction History** for {address.strip()}", "", f"**Events:** {len(items)}", ""]
        for i, item in enumerate(items, start=1):
            details = item.get("details") or {}
            ts = item.get("timeMs")
            when = time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime(int(ts) / 1000)) if ts else "unknown time"
            kind = details.get("type") or item.get("type") or "Transaction"
            status = details.get("status") or "unknown"
            tx_hash = details.get("txHash") or "N/A"
            cid = details.get("chainId")
            chain_label = chain_name(int(cid)) if cid else "unknown chain"
            lines.append(f"{i}. **{kind}** on {chain_label} at {when} ({status})")
            lines.append(f"   **Tx:** {tx_hash}")
            for action in details.get("tokenActions") or []:
                direction = action.get("direction") or ""
                amount = action.get("amount") or ""
                lines.append(f"   - {direction} {amount} of {action.get('address') or 'unknown token'}".rstrip())
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("transaction_history failed: %s", e)
        return _text(f"Error fetching transaction history: {e}")


def _chart_token(identifier: str, chain_id: int) -> str | None:
    raw = identifier.strip()
    if _is_address(raw):
        return _checksum(raw)
    symbol = _WRAPPED_NATIVE.get(raw.upper(), raw.upper())
    hit = _COMMON_TOKENS.get(chain_id, {}).get(symbol)
    return hit[0] if hit else None


def summarize_series(values: list[float]) -> dict[str, Any]:
    """Basic statistics and indicators over a closing-price series."""
    arr = np.asarray(values, dtype=np.float64)
    arr = arr[np.isfinite(arr)]
    if arr.size == 0:
        return {"points": 0}

    first = float(arr[0])
    last = float(arr[-1])
    summary: dict[str, Any] = {
        "points": int(arr.size),
        "first": first,
        "last": last,
        "high": float(arr.max()),
        "low": float(arr.min()),
        "change_pct": ((last - first) / first * 100.0) if first else None,
    }

    sma_period = min(20, int(arr.size))
    if sma_period >= 2:
        sma = talib.SMA(arr, timeperiod=sma_period)
        if not math.isnan(sma[-1]):
            summary["sma"] = float(sma[-1])
            summary["sma_period"] = sma_period
    if arr.size > 14:
        rsi = talib.RSI(arr, timeperiod=14)
        if not math.isnan(rsi[-1]):
            summary["rsi_14"] = float(rsi[-1])
    return summary


def _chart_error(message: str) -> ToolResponse:
    return _text(json.dumps({"error": message, "chartData": None}, ensure_ascii=False))


async def chart_data(
    chart_type: str,
    token0: str,
    token1: str,
    chain_id: str = "1",
    period: str | None = None,
    seconds: int | None = None,
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get historical price chart data (line or candle) for a token pair using the 1inch Charts API.

    The chart itself is delivered to the client; you receive a short textual summary.

    Args:
        chart_type (str): "line" or "candle".
        token0 (str): Base token address or symbol, e.g. "WETH".
        token1 (str): Quote token address or symbol, e.g. "USDC".
        chain_id (str): Chain id, e.g. "1" for Ethereum or "137" for Polygon.
        period (str | None): Line chart period: 24H, 1W, 1M, 1Y or AllTime.
        seconds (int | None): Candle interval in seconds: 300, 900, 3600, 14400, 86400 or 604800.
    """

    try:
        _require_preset(api_key, base_url)
        cid = resolve_chain_id(chain_id)
        if cid is None:
            return _chart_error(
                f"Invalid chain ID: {chain_id}. Supported chains: {', '.join(str(c) for c in SUPPORTED_CHAINS.values())}"
            )

        t0 = _chart_token(token0, cid)
        t1 = _chart_token(token1, cid)
        symbols = ", ".join(_COMMON_TOKENS.get(cid, {})) or "none available"
        if t0 is None:
            return _chart_error(
                f'Invalid token0 identifier: "{token0}". Use a token address (0x...) or one of: {symbols}'
            )
        if t1 is None:
            return _chart_error(
                f'Invalid token1 identifier: "{token1}". Use a token address (0x...) or one of: {symbols}'
            )

        root = base_url.rstrip("/") + "/charts/v1.0"
        pair = f"{token0.upper() if not _is_address(token0) else t0} / {token1.upper() if not _is_address(token1) else t1}"

        if chart_type == "line":
            if not period:
                return _chart_error(f"Period is required for line charts. Supported periods: {', '.join(LINE_CHART_PERIODS)}")
            if period not in LINE_CHART_PERIODS:
                return _chart_error(f"Invalid period: {period}. Supported periods: {', '.join(LINE_CHART_PERIODS)}")
            data = await _get_json(f"{root}/chart/line/{t0}/{t1}/{period}/{cid}", api_key, timeout_s)
            points = data.get("data", []) if isinstance(data, dict) else []
            closes = [float(p.get("value")) for p in points if isinstance(p, dict) and p.get("value") is not None]
            metadata = {"token0": t0, "token1": t1, "period": period, "chainId": str(cid), "chainName": chain_name(cid)}
            header = f"📈 **Line Chart Data Retrieved**\n\n**Token Pair:** {pair}\n**Chain:** {chain_name(cid)}\n**Period:** {period}"
        elif chart_type == "candle":
            if not seconds:
                return _chart_error(
                    "Seconds parameter is required for candle charts. Supported: "
                    + ", ".join(str(s) for s in CANDLE_CHART_SECONDS)
                )
            seconds = int(seconds)
            if seconds not in CANDLE_CHART_SECONDS:
                return _chart_error(
                    f"Invalid seconds: {seconds}. Supported seconds: {', '.join(str(s) for s in CANDLE_CHART_SECONDS)}"
                )
            data = await _get_json(f"{root}/chart/aggregated/candle/{t0}/{t1}/{seconds}/{cid}", api_key, timeout_s)
            points = data.get("data", []) if isinstance(data, dict) else []
            closes = [float(p.get("close")) for p in points if isinstance(p, dict) and p.get("close") is not None]
            metadata = {"token0": t0, "token1": t1, "seconds": seconds, "chainId": str(cid), "chainName": chain_name(cid)}
            header = (
                f"🕯️ **Candlestick Chart Data Retrieved**\n\n**Token Pair:** {pair}\n"
                f"**Chain:** {chain_name(cid)}\n**Interval:** {seconds} seconds"
            )
        else:
            return _chart_error("Invalid chart type. Use 'line' or 'candle'.")

        summary = summarize_series(closes)
        metadata["summary"] = summary
        lines = [header, f"**Data Points:** {len(points)}"]
        if summary.get("points"):
            lines.append(f"**Latest:** {summary['last']:.6g} (high {summary['high']:.6g}, low {summary['low']:.6g})")
            if summary.get("change_pct") is not None:
                lines.append(f"**Change:** {summary['change_pct']:+.2f}%")
            if "rsi_14" in summary:
                lines.append(f"**RSI(14):** {summary['rsi_14']:.1f}")
        lines.append("")
        lines.append("📊 Chart data has been sent to the client for rendering.")

        payload = {
            "message": "\n".join(lines),
            "chartData": {"type": chart_type, "data": points, "metadata": metadata},
        }
        return _text(json.dumps(payload, ensure_ascii=False))

    except Exception as e:
        logger.warning("chart_data failed: %s", e)
        return _chart_error(f"Error fetching chart data: {e}")


async def oneinch_fusion_swap(
    from_token: str,
    to_token: str,
    amount: str,
    from_address: str,
    chain: str = "ethereum",
    slippage: float = 1.0,
    api_key: str = "",
    base_url: str = "",
    timeout_s: float = 10.0,
) -> ToolResponse:
    """Get a swap quote from 1inch for swapping one token into another on a single chain.

    Quotes are informational; executing the swap requires the user's wallet.

    Args:
        from_token (str): Source token symbol or address, e.g. "ETH" or "0x...".
        to_token (str): Destination token symbol or address, e.g. "USDC".
        amount (str): Amount in token units, e.g. "1" for 1 ETH.
        from_address (str): Wallet address that would perform the swap.
        chain (str): Chain name such as ethereum, polygon, bsc, arbitrum.
        slippage (float): Maximum slippage in percent (0.1 to 50).
    """

    try:
        _require_preset(api_key, base_url)
        chain_id = resolve_chain_id(chain)
        if chain_id is None:
            return _text(_unsupported_chain(chain))
        if not _is_address(from_address):
            return _text("Error: Invalid wallet address format. Must be a valid Ethereum address.")
        slippage = float(slippage)
        if slippage < 0.1 or slippage > 50:
            return _text("Error: slippage must be between 0.1 and 50 percent.")

        resolved: list[tuple[str, int]] = []
        for token in (from_token, to_token):
            hit = _lookup_token(token, chain_id)
            if hit is None:
                return _text(
                    f'Error: Unknown token "{token}" on {chain_name(chain_id)}. Provide the contract address instead.'
                )
            address, decimals = hit
            if decimals is None:
                info = await _fetch_token_details(address, chain_id, api_key, base_url, timeout_s)
                decimals = int((info or {}).get("decimals", 18))
            resolved.append((address, decimals))
        (src, src_decimals), (dst, dst_decimals) = resolved

        amount_wei = _to_wei(str(amount), src_decimals)
        if amount_wei <= 0:
            return _text("Error: amount must be greater than zero.")

        params = {
            "src": src,
            "dst": dst,
            "amount": str(amount_wei),
            "from": from_address.strip(),
            "slippage": str(slippage),
            "disableEstimate": "false",
            "allowPartialFill": "true",
        }
        data = await _get_json(f"{base_url.rstrip('/')}/swap/v5.2/{chain_id}/quote", api_key, timeout_s, params=params)
        out_raw = data.get("toAmount") or data.get("dstAmount") or data.get("toTokenAmount")
        if out_raw is None:
            raise ValueError("unexpected response")
        out_amount = _from_wei(int(str(out_raw)), dst_decimals)

        src_label = from_token.upper() if not _is_address(from_token) else src
        dst_label = to_token.upper() if not _is_address(to_token) else dst
        lines = [
            "🔄 **1inch Swap Quote**",
            "",
            f"**Chain:** {chain_name(chain_id)} ({chain_id})",
            f"**From:** {amount} {src_label} ({src})",
            f"**To:** {out_amount} {dst_label} ({dst})",
            f"**Slippage:** {slippage}%",
        ]
        try:
            rate = decimal.Decimal(out_amount) / decimal.Decimal(str(amount))
            lines.append(f"**Rate:** 1 {src_label} = {format(rate.normalize(), 'f')} {dst_label}")
        except (decimal.InvalidOperation, ZeroDivisionError):
            pass
        gas = data.get("gas") or data.get("estimatedGas")
        if gas:
            lines.append(f"**Estimated Gas:** {gas}")
        lines.append("")
        lines.append("⚠️ This quote is informational. Executing the swap requires signing with your wallet.")
        return _text("\n".join(lines))

    except Exception as e:
        logger.warning("oneinch_fusion_swap failed: %s", e)
        return _text(f"Error getting swap quote: {e}")


def _tool_response_to_output(tr: ToolResponse) -> str:
    parts: list[str] = []
    for b in tr.content:
        if isinstance(b, dict):
            if isinstance(b.get("text"), str):
                parts.append(b["text"])
                continue
            parts.append(str(b))
            continue

        text_attr = getattr(b, "text", None)
        if isinstance(text_attr, str) and text_attr:
            parts.append(text_attr)
            continue

        parts.append(str(b))
    return "\n".join([p for p in parts if p])


def tool_output_text(result: Any) -> str:
    if isinstance(result, ToolResponse):
        return _tool_response_to_output(result)
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


class ToolInvocation(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str
    ok: bool = True


class ToolRegistry:
    """Name-addressed tool functions with the JSON schemas advertised to the model.

    Dispatch never raises: unknown names and failing tools come back as text so the
    caller can feed them to the model like any other result.
    """

    def __init__(self) -> None:
        self._toolkit = Toolkit()
        self._funcs: dict[str, Callable[..., Awaitable[Any]]] = {}
        self._presets: dict[str, dict[str, Any]] = {}

    def register(self, func: Callable[..., Awaitable[Any]], preset_kwargs: dict[str, Any] | None = None) -> None:
        name = func.__name__
        presets = dict(preset_kwargs or {})
        self._toolkit.register_tool_function(func, preset_kwargs=presets)
        self._funcs[name] = func
        self._presets[name] = presets

    def names(self) -> list[str]:
        return list(self._funcs)

    def json_schemas(self) -> list[dict[str, Any]]:
        return self._toolkit.get_json_schemas()

    async def dispatch(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> ToolInvocation:
        args = dict(arguments or {})
        func = self._funcs.get(name)
        if func is None:
            logger.warning("tool not found: %s", name)
            return ToolInvocation(name=name, arguments=args, result=f"Tool {name} not found", ok=False)

        presets = self._presets.get(name, {})
        kwargs = {k: v for k, v in args.items() if k not in presets}
        kwargs.update(presets)

        t0 = time.monotonic()
        try:
            res = func(**kwargs)
            if inspect.isawaitable(res):
                if timeout_s is not None and timeout_s > 0:
                    res = await asyncio.wait_for(res, timeout=timeout_s)
                else:
                    res = await res
            output = tool_output_text(res)
        except asyncio.TimeoutError:
            logger.warning("tool %s timed out after %.1fs", name, timeout_s or 0)
            return ToolInvocation(
                name=name,
                arguments=args,
                result=f"Error executing tool {name}: timed out after {timeout_s}s",
                ok=False,
            )
        except Exception as e:
            logger.warning("tool %s raised %s: %s", name, type(e).__name__, e)
            return ToolInvocation(name=name, arguments=args, result=f"Error executing tool {name}: {e}", ok=False)

        logger.info("tool %s done ms=%d len=%d", name, int((time.monotonic() - t0) * 1000), len(output))
        return ToolInvocation(name=name, arguments=args, result=output)

    async def dispatch_all(
        self,
        calls: list[tuple[str, dict[str, Any]]],
        timeout_s: float | None = None,
    ) -> list[ToolInvocation]:
        """Run independent calls concurrently; results keep the order of ``calls``."""
        results = await asyncio.gather(
            *[self.dispatch(name, args, timeout_s=timeout_s) for name, args in calls],
            return_exceptions=True,
        )
        out: list[ToolInvocation] = []
        for (name, args), res in zip(calls, results):
            if isinstance(res, BaseException):
                out.append(
                    ToolInvocation(name=name, arguments=dict(args or {}), result=f"Error executing tool {name}: {res}", ok=False)
                )
                continue
            out.append(res)
        return out


ONEINCH_TOOLS = (
    oneinch_fusion_swap,
    get_token_info,
    nft_operations,
    token_prices,
    gas_prices,
    token_balances,
    transaction_history,
    chart_data,
)


def build_tool_registry(oneinch: dict[str, Any]) -> ToolRegistry:
    registry = ToolRegistry()
    presets = {
        "api_key": oneinch["api_key"],
        "base_url": oneinch["base_url"],
        "timeout_s": oneinch["timeout_s"],
    }
    for func in ONEINCH_TOOLS:
        registry.register(func, preset_kwargs=presets)
    return registry
