import asyncio
import contextlib
import logging
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ai_service import generate_ai_response
from ai_tools import ToolRegistry, build_tool_registry
from app_config import (
    ModelBundle,
    init_agents,
    load_ai_config,
    load_auth_config,
    load_db_config,
    load_model_bundle,
    load_oneinch_config,
    load_swap_config,
    startup_disabled,
)
from db_store import DelegationStatus, MessageRole, Store, SwapStatus
from privy_auth import AuthenticatedUser, PrivyVerifier, authenticate_and_sync
from swap_service import SwapExecuteRequest, SwapOrderReport, SwapRequest, SwapService

app = FastAPI()
logger = logging.getLogger("agent-backend")

_ID_PATTERN = r"^[0-9a-fA-F-]{1,64}$"


class AITestRequest(BaseModel):
    message: str = Field(min_length=1, max_length=10000)


class UserSyncRequest(BaseModel):
    privy_id: str = Field(min_length=1)
    email: str | None = None
    wallet_address: str | None = None
    linked_accounts: list[dict[str, Any]] = Field(default_factory=list)


class ChatCreateRequest(BaseModel):
    user_id: str = Field(pattern=_ID_PATTERN)
    title: str = Field(min_length=1, max_length=255)


class ChatUpdateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class MessageCreateRequest(BaseModel):
    chat_id: str = Field(pattern=_ID_PATTERN)
    user_id: str = Field(pattern=_ID_PATTERN)
    content: str = Field(min_length=1, max_length=10000)
    role: MessageRole = MessageRole.user


class MessageUpdateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)


class DelegationCreateRequest(BaseModel):
    user_id: str = Field(pattern=_ID_PATTERN)
    chain_id: int = Field(gt=0)
    delegator: str = Field(min_length=1)
    delegatee: str = Field(min_length=1)
    nonce: str = Field(min_length=1)
    authority: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    status: DelegationStatus = DelegationStatus.pending
    transaction_hash: str | None = None


class _ChatLocks:
    """One lock per chat so concurrent posts to a chat are handled in order.

    A chat's lock is dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}
        self._global_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    async def _get_lock(self, chat_id: str) -> asyncio.Lock:
        async with self._global_lock:
            lock = self._locks.get(chat_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[chat_id] = lock
            self._holders[chat_id] = self._holders.get(chat_id, 0) + 1
            return lock

    async def _release(self, chat_id: str) -> None:
        async with self._global_lock:
            remaining = self._holders.get(chat_id, 1) - 1
            if remaining > 0:
                self._holders[chat_id] = remaining
                return
            self._holders.pop(chat_id, None)
            self._locks.pop(chat_id, None)

    @contextlib.asynccontextmanager
    async def hold(self, chat_id: str):
        lock = await self._get_lock(chat_id)
        try:
            async with lock:
                yield
        finally:
            await self._release(chat_id)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "code": "validation_error",
            "message": "Invalid request",
            "details": exc.errors(),
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    if isinstance(detail, dict) and ("code" in detail or "message" in detail):
        payload = {
            "code": detail.get("code", "http_error"),
            "message": detail.get("message", "Request failed"),
        }
        if "details" in detail:
            payload["details"] = detail["details"]
        return JSONResponse(status_code=exc.status_code, content=payload)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "code": "http_error",
            "message": str(detail) if detail is not None else "Request failed",
        },
    )


MODEL_BUNDLE: ModelBundle | None = None
STORE: Store | None = None
TOOLS: ToolRegistry | None = None
VERIFIER: PrivyVerifier | None = None
SWAP_SERVICE: SwapService | None = None
AI_CONFIG: dict[str, Any] = load_ai_config()
CHAT_LOCKS = _ChatLocks()


@app.on_event("startup")
async def startup_event():
    init_agents()
    global MODEL_BUNDLE
    global STORE
    global TOOLS
    global VERIFIER
    global SWAP_SERVICE
    global AI_CONFIG

    if startup_disabled():
        return

    MODEL_BUNDLE = load_model_bundle()
    AI_CONFIG = load_ai_config()
    STORE = Store(load_db_config()["path"])

    oneinch = load_oneinch_config()
    if not oneinch["api_key"]:
        logger.warning("ONEINCH_API_KEY is not set; 1inch tools will fail upstream")
    TOOLS = build_tool_registry(oneinch)

    auth = load_auth_config()
    VERIFIER = PrivyVerifier(app_id=auth["app_id"], user_url=auth["user_url"], timeout_s=auth["timeout_s"])

    swap = load_swap_config()
    SWAP_SERVICE = SwapService(
        store=STORE,
        api_key=oneinch["api_key"],
        base_url=oneinch["base_url"],
        timeout_s=oneinch["timeout_s"],
        poll_interval_s=swap["poll_interval_s"],
        max_attempts=swap["max_attempts"],
    )
    logger.info("startup complete tools=%s", ",".join(TOOLS.names()))


@app.on_event("shutdown")
async def shutdown_event():
    if SWAP_SERVICE is not None:
        await SWAP_SERVICE.shutdown()
    if STORE is not None:
        await STORE.close()


def _store() -> Store:
    if STORE is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "Service not initialized"})
    return STORE


def _swap_service() -> SwapService:
    if SWAP_SERVICE is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "Swap service not initialized"})
    return SWAP_SERVICE


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found"})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/ai/test")
async def ai_test(request: AITestRequest):
    if MODEL_BUNDLE is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "Service not initialized"})

    result = await generate_ai_response(
        request.message,
        bundle=MODEL_BUNDLE,
        registry=TOOLS,
        llm_timeout_s=AI_CONFIG["llm_timeout_s"],
        tool_timeout_s=AI_CONFIG["tool_timeout_s"],
    )
    return {
        "response": result.content,
        "tools_used": result.tools_used,
        "chart_data": result.chart_data,
        "error": result.error,
    }


# Users


@app.post("/user/sync")
async def sync_user(request: UserSyncRequest):
    store = _store()
    user, created = await store.sync_user(
        privy_id=request.privy_id,
        email=request.email,
        wallet_address=request.wallet_address,
        linked_accounts=request.linked_accounts,
    )
    logger.info("user sync privy_id=%s created=%s", request.privy_id, created)
    delegations = await store.get_delegations_by_user_id(user.id)
    return {"success": True, "user": user, "delegations": delegations}


@app.get("/user/users/{privy_id}")
async def get_user(privy_id: str):
    user = await _store().get_user_by_privy_id(privy_id)
    if user is None:
        raise _not_found("user")
    return user


# Chats


@app.post("/user/chats")
async def create_chat(request: ChatCreateRequest):
    try:
        return await _store().create_chat(request.user_id, request.title)
    except ValueError:
        raise _not_found("user")


@app.get("/user/chats/{chat_id}")
async def get_chat(chat_id: str):
    chat = await _store().get_chat(chat_id)
    if chat is None:
        raise _not_found("chat")
    return chat


@app.put("/user/chats/{chat_id}")
async def update_chat(chat_id: str, request: ChatUpdateRequest):
    chat = await _store().update_chat(chat_id, request.title)
    if chat is None:
        raise _not_found("chat")
    return chat


@app.delete("/user/chats/{chat_id}")
async def delete_chat(chat_id: str):
    deleted = await _store().delete_chat(chat_id)
    if not deleted:
        raise _not_found("chat")
    return {"success": True}


@app.get("/user/users/{user_id}/chats")
async def list_user_chats(user_id: str):
    return await _store().get_chats_by_user(user_id)


# Messages


@app.post("/user/messages")
async def create_message(request: MessageCreateRequest):
    store = _store()
    async with CHAT_LOCKS.hold(request.chat_id):
        try:
            user_message = await store.create_message(request.chat_id, request.user_id, request.role, request.content)
        except ValueError:
            raise _not_found("chat or user")

        if request.role != MessageRole.user:
            return {"user_message": user_message}

        result = await generate_ai_response(
            request.content,
            bundle=MODEL_BUNDLE,
            registry=TOOLS,
            store=store,
            chat_id=request.chat_id,
            exclude_message_id=user_message.id,
            history_limit=AI_CONFIG["history_limit"],
            llm_timeout_s=AI_CONFIG["llm_timeout_s"],
            tool_timeout_s=AI_CONFIG["tool_timeout_s"],
        )
        if result.error:
            logger.warning("AI response failed chat_id=%s: %s", request.chat_id, result.error)
            return {"user_message": user_message, "ai_error": "AI response failed"}

        ai_message = await store.create_message(request.chat_id, request.user_id, MessageRole.assistant, result.content)

    return {
        "user_message": user_message,
        "ai_message": ai_message,
        "tools_used": result.tools_used,
        "chart_data": result.chart_data,
    }


@app.get("/user/messages/{message_id}")
async def get_message(message_id: str):
    message = await _store().get_message(message_id)
    if message is None:
        raise _not_found("message")
    return message


@app.put("/user/messages/{message_id}")
async def update_message(message_id: str, request: MessageUpdateRequest):
    message = await _store().update_message(message_id, request.content)
    if message is None:
        raise _not_found("message")
    return message


@app.delete("/user/messages/{message_id}")
async def delete_message(message_id: str):
    deleted = await _store().delete_message(message_id)
    if not deleted:
        raise _not_found("message")
    return {"success": True}


@app.get("/user/chats/{chat_id}/messages")
async def list_chat_messages(chat_id: str):
    return await _store().get_messages_by_chat(chat_id)


@app.get("/user/users/{user_id}/messages")
async def list_user_messages(user_id: str):
    return await _store().get_messages_by_user(user_id)


# Delegations


@app.post("/user/delegations")
async def create_delegation(request: DelegationCreateRequest):
    try:
        return await _store().store_delegation(
            user_id=request.user_id,
            chain_id=request.chain_id,
            delegator=request.delegator,
            delegatee=request.delegatee,
            nonce=request.nonce,
            authority=request.authority,
            signature=request.signature,
            status=request.status,
            transaction_hash=request.transaction_hash,
        )
    except ValueError as e:
        if str(e) == "delegation_exists":
            raise HTTPException(
                status_code=409,
                detail={"code": "delegation_exists", "message": "Delegation already exists for this chain and nonce"},
            )
        raise _not_found("user")


@app.get("/user/delegations/{address}")
async def list_address_delegations(address: str, chain_id: str | None = Query(default=None, pattern=r"^\d+$")):
    return await _store().get_delegations_by_address(address, int(chain_id) if chain_id is not None else None)


@app.get("/user/users/{user_id}/delegations")
async def list_user_delegations(user_id: str):
    return await _store().get_delegations_by_user_id(user_id)


# Swaps


async def _current_user(http_request: Request) -> AuthenticatedUser:
    return await authenticate_and_sync(http_request, VERIFIER, STORE)


def _require_wallet(user: AuthenticatedUser) -> str:
    if not user.wallet_address:
        raise HTTPException(
            status_code=400,
            detail={"code": "wallet_required", "message": "A linked wallet is required for swaps"},
        )
    return user.wallet_address


async def _owned_swap(swap_id: str, user: AuthenticatedUser):
    record = await _store().get_swap_transaction(swap_id)
    if record is None:
        raise _not_found("swap")
    if record.user_id != user.id:
        raise HTTPException(status_code=403, detail={"code": "forbidden", "message": "Not your swap"})
    return record


@app.post("/swap/quote")
async def swap_quote(http_request: Request, request: SwapRequest):
    user = await _current_user(http_request)
    wallet = _require_wallet(user)
    svc = _swap_service()
    try:
        quote = await svc.get_quote(request, wallet)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("swap quote failed user_id=%s: %s", user.id, e)
        raise HTTPException(
            status_code=502,
            detail={"code": "quote_failed", "message": "Failed to get swap quote", "details": str(e)},
        )
    return {"success": True, "quote": quote}


@app.post("/swap/execute")
async def swap_execute(http_request: Request, request: SwapExecuteRequest):
    user = await _current_user(http_request)
    wallet = _require_wallet(user)
    record = await _swap_service().execute(user.id, wallet, request)
    return {"success": record.status != SwapStatus.failed, "swap": record}


@app.get("/swap/status/{swap_id}")
async def swap_status(http_request: Request, swap_id: str):
    user = await _current_user(http_request)
    return await _owned_swap(swap_id, user)


@app.post("/swap/status/{swap_id}/order")
async def swap_report_order(http_request: Request, swap_id: str, report: SwapOrderReport):
    user = await _current_user(http_request)
    await _owned_swap(swap_id, user)
    record = await _swap_service().attach_order(swap_id, report)
    if record is None:
        raise _not_found("swap")
    return record


@app.get("/swap/user/swaps")
async def list_user_swaps(
    http_request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    user = await _current_user(http_request)
    swaps = await _store().list_swap_transactions(user.id, limit=limit, offset=offset)
    return {"swaps": swaps, "limit": limit, "offset": offset}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
