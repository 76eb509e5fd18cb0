import asyncio

import httpx
import pytest

import swap_service
from db_store import Store, SwapStatus
from swap_service import SwapExecuteRequest, SwapOrderReport, SwapService

_WALLET = "0x" + "a" * 40
_ORDER = "0x" + "f" * 64


class _Resp:
    def __init__(self, payload, error=None):
        self._payload = payload
        self._error = error
        self.content = b"{}" if payload is not None else b""

    def raise_for_status(self):
        if self._error is not None:
            raise httpx.HTTPError(self._error)
        return None

    def json(self):
        return self._payload


def _fake_client(handler, seen):
    class _Client:
        def __init__(self, *args, **kwargs):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url, params=None, headers=None):
            seen.append(("GET", url, params))
            return handler("GET", url, params)

        async def post(self, url, json=None, headers=None):
            seen.append(("POST", url, json))
            return handler("POST", url, json)

    return _Client


def _request(**overrides):
    body = dict(
        amount="1000000",
        src_chain_id=1,
        dst_chain_id=137,
        src_token_address="0x" + "1" * 40,
        dst_token_address="0x" + "2" * 40,
    )
    body.update(overrides)
    return SwapExecuteRequest(**body)


async def _setup(tmp_path, **kwargs):
    store = Store(tmp_path / "db.sqlite")
    user, _ = await store.sync_user(privy_id="did:privy:alice", wallet_address=_WALLET)
    svc = SwapService(store, api_key="k", base_url="https://api.1inch.dev", poll_interval_s=0, **kwargs)
    return store, user, svc


@pytest.mark.asyncio
async def test_execute_records_quote_for_user_execution(tmp_path, monkeypatch):
    seen = []

    def handler(method, url, body):
        assert url == "https://api.1inch.dev/fusion-plus/quoter/v1.0/quote/receive"
        return _Resp({"quoteId": "q-1", "dstTokenAmount": "999"})

    monkeypatch.setattr(swap_service.httpx, "AsyncClient", _fake_client(handler, seen))
    store, user, svc = await _setup(tmp_path)

    record = await svc.execute(user.id, _WALLET, _request())

    assert record.status == SwapStatus.awaiting_user_execution
    assert record.order_hash == swap_service.USER_EXECUTION_ORDER_HASH
    assert record.quote == {"quoteId": "q-1", "dstTokenAmount": "999"}
    assert record.secrets == []
    params = seen[0][2]
    assert params["walletAddress"] == _WALLET
    assert params["srcChain"] == 1
    assert params["dstChain"] == 137
    assert params["enableEstimate"] == "true"
    await store.close()


@pytest.mark.asyncio
async def test_execute_marks_failed_when_quote_fails(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(
        swap_service.httpx, "AsyncClient", _fake_client(lambda m, u, b: _Resp(None, error="insufficient liquidity"), seen)
    )
    store, user, svc = await _setup(tmp_path)

    record = await svc.execute(user.id, _WALLET, _request())

    assert record.status == SwapStatus.failed
    assert record.error_details == {"error": "insufficient liquidity"}
    stored = await store.get_swap_transaction(record.id)
    assert stored.status == SwapStatus.failed
    await store.close()


@pytest.mark.asyncio
async def test_monitor_completes_when_order_executes(tmp_path, monkeypatch):
    seen = []
    statuses = iter(["pending", "pending", "executed"])

    def handler(method, url, body):
        if "/order/status/" in url:
            return _Resp({"status": next(statuses)})
        raise AssertionError(url)

    monkeypatch.setattr(swap_service.httpx, "AsyncClient", _fake_client(handler, seen))
    store, user, svc = await _setup(tmp_path)
    record = await store.create_swap_transaction(user.id, 1, 137, "0x1", "0x2", "1", _WALLET)

    await svc._monitor_loop(record.id, _ORDER, [])

    assert (await store.get_swap_transaction(record.id)).status == SwapStatus.completed
    assert len(seen) == 3
    await store.close()


@pytest.mark.asyncio
async def test_monitor_gives_up_after_max_attempts(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(
        swap_service.httpx, "AsyncClient", _fake_client(lambda m, u, b: _Resp({"status": "pending"}), seen)
    )
    store, user, svc = await _setup(tmp_path, max_attempts=3)
    record = await store.create_swap_transaction(user.id, 1, 137, "0x1", "0x2", "1", _WALLET)

    await svc._monitor_loop(record.id, _ORDER, [])

    stored = await store.get_swap_transaction(record.id)
    assert stored.status == SwapStatus.failed
    assert stored.error_details == {"error": "Monitoring timeout"}
    assert len(seen) == 3
    await store.close()


@pytest.mark.asyncio
async def test_monitor_fails_on_upstream_error(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(
        swap_service.httpx, "AsyncClient", _fake_client(lambda m, u, b: _Resp(None, error="502 from relayer"), seen)
    )
    store, user, svc = await _setup(tmp_path)
    record = await store.create_swap_transaction(user.id, 1, 137, "0x1", "0x2", "1", _WALLET)

    await svc._monitor_loop(record.id, _ORDER, [])

    stored = await store.get_swap_transaction(record.id)
    assert stored.status == SwapStatus.failed
    assert stored.error_details == {"error": "502 from relayer"}
    await store.close()


@pytest.mark.asyncio
async def test_monitor_submits_secrets_for_ready_fills(tmp_path, monkeypatch):
    seen = []

    def handler(method, url, body):
        if "/order/status/" in url:
            return _Resp({"status": "pending"})
        if "/ready-to-accept-secret-fills/" in url:
            return _Resp({"fills": [{"idx": 0}, {"idx": 5}]})
        if url.endswith("/relayer/v1.0/submit/secret"):
            return _Resp(None)
        raise AssertionError(url)

    monkeypatch.setattr(swap_service.httpx, "AsyncClient", _fake_client(handler, seen))
    _, _, svc = await _setup(tmp_path)

    result = await svc.monitor_order(_ORDER, ["0xsecret0"])

    assert result["status"] == "processing"
    posts = [s for s in seen if s[0] == "POST"]
    assert posts == [("POST", "https://api.1inch.dev/fusion-plus/relayer/v1.0/submit/secret", {"orderHash": _ORDER, "secret": "0xsecret0"})]


@pytest.mark.asyncio
async def test_attach_order_starts_monitor(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(
        swap_service.httpx, "AsyncClient", _fake_client(lambda m, u, b: _Resp({"status": "executed"}), seen)
    )
    store, user, svc = await _setup(tmp_path)
    record = await store.create_swap_transaction(user.id, 1, 137, "0x1", "0x2", "1", _WALLET)

    updated = await svc.attach_order(record.id, SwapOrderReport(order_hash=_ORDER))
    assert updated.status == SwapStatus.processing
    assert updated.order_hash == _ORDER

    task = svc._tasks[record.id]
    await task
    assert (await store.get_swap_transaction(record.id)).status == SwapStatus.completed
    await store.close()


@pytest.mark.asyncio
async def test_shutdown_cancels_running_monitors(tmp_path, monkeypatch):
    seen = []
    monkeypatch.setattr(
        swap_service.httpx, "AsyncClient", _fake_client(lambda m, u, b: _Resp({"status": "pending"}), seen)
    )
    store, user, _ = await _setup(tmp_path)
    svc = SwapService(store, api_key="k", base_url="https://api.1inch.dev", poll_interval_s=60)

    task = svc.start_monitor("swap-1", _ORDER, [])
    await asyncio.sleep(0)
    await svc.shutdown()

    assert task.cancelled()
    assert svc._tasks == {}
    await store.close()
