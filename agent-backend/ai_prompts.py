from pydantic import BaseModel

INTERNAL_DIRECTIVE_HEADER = "INTERNAL PROCESSING - DO NOT SHOW THIS TO THE USER"

# Fragments of the directive and synthesis prompts. Seeing any of them in a model answer
# means the model echoed orchestration text instead of answering; the post-processor
# scrubs the same set.
SCAFFOLDING_MARKERS: tuple[str, ...] = (
    "INTERNAL PROCESSING",
    "DO NOT SHOW THIS TO THE USER",
    "Original user request:",
    "Tool results obtained:",
    "What additional tools should be called",
    "If no more tools are needed",
    "Do not mention tool results",
    "Do not mention internal processing",
    "Answer the original question directly",
)

FALLBACK_MESSAGE = (
    "I'm sorry, I wasn't able to put together an answer for that. "
    "Could you rephrase your question or add a bit more detail?"
)

ERROR_MESSAGE = "I apologize, but I'm having trouble processing your request right now. Please try again later."


class UserContext(BaseModel):
    id: str
    wallet_address: str | None = None
    email: str | None = None


def contains_scaffolding(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker.lower() in lowered for marker in SCAFFOLDING_MARKERS)


_BASE_PROMPT = """You are a helpful AI assistant for the Limitless platform, a DeFi companion with live access to the 1inch APIs.

Available tools:

1. **token_balances**: token balances for one or more wallets.
   - "What's in wallet 0xabc...?" -> operation all_balances
   - "How much USDC does 0xabc... hold on Polygon?" -> operation custom_tokens with the USDC contract
   - "Show my holdings on every chain" -> operation all_chains_balances
2. **token_prices**: current prices for tokens by symbol or address.
   - "What's the price of ETH?" -> token_prices, not token_balances
3. **gas_prices**: current gas prices for a chain.
4. **get_token_info**: token metadata (contract address, decimals, logo) by symbol or address.
   - Use it to look up a contract address before calling tools that need one.
5. **nft_operations**: NFTs held by a wallet, or the chains the NFT API supports.
6. **transaction_history**: recent transactions for a wallet.
7. **chart_data**: line or candle price charts for a token pair. The chart is rendered for the user automatically; describe the trend in words.
8. **oneinch_fusion_swap**: swap quotes between two tokens on one chain.
   - "How much USDC would I get for 1 ETH?" -> oneinch_fusion_swap

Guidelines:
- When a question involves the value of holdings, call token_balances first and token_prices second.
- Always render image URLs (NFT images, avatars, token logos) as markdown images: ![name](url).
- When a previous tool call returned an address, reuse that exact address. Never truncate or abbreviate addresses or transaction hashes.
- Quotes are informational; executing a swap requires the user's wallet.
- Be concise, accurate and professional. If you cannot help with something, say what you can do instead."""


def build_system_prompt(user_context: UserContext | None) -> str:
    """Compose the system prompt for one request."""
    if user_context is None:
        return _BASE_PROMPT

    lines = ["", "", "Current user:"]
    lines.append(f"- User id: {user_context.id}")
    if user_context.email:
        lines.append(f"- Email: {user_context.email}")
    if user_context.wallet_address:
        lines.append(f"- Wallet address: {user_context.wallet_address}")
        lines.append("")
        lines.append(
            "When the user says \"my balance\", \"my wallet\", \"my NFTs\", \"my transactions\" or similar "
            f"without naming an address, use {user_context.wallet_address}."
        )
    else:
        lines.append("- No wallet is connected. Ask for an address when a request needs one.")
    return _BASE_PROMPT + "\n".join(lines)


def build_internal_directive(original_input: str, results: list[str]) -> str:
    joined = "\n\n".join(results) if results else "(no results)"
    return (
        f"{INTERNAL_DIRECTIVE_HEADER}\n\n"
        f"Original user request: {original_input}\n\n"
        f"Tool results obtained:\n{joined}\n\n"
        "What additional tools should be called, if any? Call them now. "
        "If no more tools are needed, reply with the final answer for the user and make no tool calls."
    )


def build_synthesis_prompt(original_input: str, results: list[str]) -> str:
    joined = "\n\n".join(results)
    return (
        f"The user asked: {original_input}\n\n"
        f"Information gathered:\n{joined}\n\n"
        "Answer the original question directly and naturally using this information. "
        "Do not mention tool results. Do not mention internal processing. "
        "Write as if you already knew the answer."
    )
