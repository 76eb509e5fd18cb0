import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from db_store import Store, SwapStatus, SwapTransactionRecord

logger = logging.getLogger("agent-backend")

# Order hash recorded while the user signs and submits the order from their wallet.
USER_EXECUTION_ORDER_HASH = "user-will-execute"


class SwapRequest(BaseModel):
    amount: str = Field(min_length=1)
    src_chain_id: int = Field(gt=0)
    dst_chain_id: int = Field(gt=0)
    src_token_address: str = Field(min_length=1)
    dst_token_address: str = Field(min_length=1)


class SwapExecuteRequest(SwapRequest):
    chat_id: str | None = None
    message_id: str | None = None


class SwapOrderReport(BaseModel):
    order_hash: str = Field(min_length=1)
    secrets: list[str] | None = None


class SwapService:
    """1inch Fusion+ cross-chain swaps in quotes-only mode, plus order monitoring.

    Orders are signed by the user's wallet. The backend records the quote, and once
    the client reports the order hash it polls the order until it settles.
    """

    def __init__(
        self,
        store: Store,
        api_key: str,
        base_url: str,
        timeout_s: float = 10.0,
        poll_interval_s: float = 5.0,
        max_attempts: int = 60,
    ) -> None:
        self._store = store
        self._api_key = api_key
        self._root = base_url.rstrip("/") + "/fusion-plus"
        self._timeout_s = timeout_s
        self._poll_interval_s = poll_interval_s
        self._max_attempts = max_attempts
        self._tasks: dict[str, asyncio.Task] = {}

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "accept": "application/json"}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.get(self._root + path, params=params, headers=self._headers())
            resp.raise_for_status()
            return resp.json()

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.post(self._root + path, json=payload, headers=self._headers())
            resp.raise_for_status()
            return resp.json() if resp.content else None

    async def get_quote(self, req: SwapRequest, wallet_address: str) -> dict[str, Any]:
        params = {
            "srcChain": req.src_chain_id,
            "dstChain": req.dst_chain_id,
            "srcTokenAddress": req.src_token_address,
            "dstTokenAddress": req.dst_token_address,
            "amount": req.amount,
            "walletAddress": wallet_address,
            "enableEstimate": "true",
        }
        data = await self._get("/quoter/v1.0/quote/receive", params=params)
        if not isinstance(data, dict):
            raise ValueError("unexpected quote response")
        return data

    async def execute(self, user_id: str, wallet_address: str, req: SwapExecuteRequest) -> SwapTransactionRecord:
        """Record a swap and attach the quote the user will sign.

        The returned record is ``failed`` with ``error_details`` when quoting fails.
        """
        record = await self._store.create_swap_transaction(
            user_id=user_id,
            src_chain_id=req.src_chain_id,
            dst_chain_id=req.dst_chain_id,
            src_token_address=req.src_token_address,
            dst_token_address=req.dst_token_address,
            amount=req.amount,
            wallet_address=wallet_address,
            chat_id=req.chat_id,
            message_id=req.message_id,
        )

        try:
            quote = await self.get_quote(req, wallet_address)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("swap %s quote failed: %s", record.id, e)
            return await self._store.update_swap_transaction(
                record.id,
                status=SwapStatus.failed,
                error_details={"error": str(e)},
            )

        logger.info("swap %s prepared for user execution quote_id=%s", record.id, quote.get("quoteId"))
        return await self._store.update_swap_transaction(
            record.id,
            status=SwapStatus.awaiting_user_execution,
            order_hash=USER_EXECUTION_ORDER_HASH,
            quote=quote,
            secrets=[],
            secret_hashes=[],
        )

    async def attach_order(self, swap_id: str, report: SwapOrderReport) -> SwapTransactionRecord | None:
        record = await self._store.update_swap_transaction(
            swap_id,
            status=SwapStatus.processing,
            order_hash=report.order_hash,
            secrets=report.secrets or [],
        )
        if record is not None:
            self.start_monitor(swap_id, report.order_hash, report.secrets or [])
        return record

    async def monitor_order(self, order_hash: str, secrets: list[str]) -> dict[str, Any]:
        """One monitoring step: check the order and hand over secrets for ready fills."""
        try:
            order = await self._get(f"/orders/v1.0/order/status/{order_hash}")
            status = order.get("status") if isinstance(order, dict) else None
            if status == "executed":
                return {"status": "completed", "order": order}
            if status in {"expired", "cancelled", "refunded"}:
                return {"status": "error", "error": f"order {status}", "order": order}

            if secrets:
                fills = await self._get(f"/orders/v1.0/order/ready-to-accept-secret-fills/{order_hash}")
                for fill in (fills or {}).get("fills", []):
                    idx = fill.get("idx")
                    if not isinstance(idx, int) or idx < 0 or idx >= len(secrets):
                        logger.warning("order %s: no secret for fill index %s", order_hash, idx)
                        continue
                    try:
                        await self._post("/relayer/v1.0/submit/secret", {"orderHash": order_hash, "secret": secrets[idx]})
                        logger.info("order %s: secret submitted for fill %d", order_hash, idx)
                    except httpx.HTTPError as e:
                        logger.warning("order %s: secret submission failed: %s", order_hash, e)

            return {"status": "processing", "order": order}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("order %s monitoring error: %s", order_hash, e)
            return {"status": "error", "error": str(e)}

    async def _monitor_loop(self, swap_id: str, order_hash: str, secrets: list[str]) -> None:
        attempts = 0
        while True:
            await asyncio.sleep(self._poll_interval_s)
            attempts += 1
            result = await self.monitor_order(order_hash, secrets)

            if result["status"] == "completed":
                await self._store.update_swap_transaction(swap_id, status=SwapStatus.completed)
                logger.info("swap %s completed", swap_id)
                return

            if result["status"] == "error" or attempts >= self._max_attempts:
                await self._store.update_swap_transaction(
                    swap_id,
                    status=SwapStatus.failed,
                    error_details={"error": result.get("error") or "Monitoring timeout"},
                )
                logger.info("swap %s failed or timed out after %d attempts", swap_id, attempts)
                return

    def start_monitor(self, swap_id: str, order_hash: str, secrets: list[str]) -> asyncio.Task:
        existing = self._tasks.get(swap_id)
        if existing is not None and not existing.done():
            existing.cancel()
        task = asyncio.create_task(self._monitor_loop(swap_id, order_hash, secrets))
        self._tasks[swap_id] = task

        def _forget(t: asyncio.Task) -> None:
            if self._tasks.get(swap_id) is t:
                self._tasks.pop(swap_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error("swap %s monitor crashed: %s", swap_id, t.exception())

        task.add_done_callback(_forget)
        return task

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
