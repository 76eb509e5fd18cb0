import logging
from typing import Any

import httpx
from fastapi import HTTPException, Request
from pydantic import BaseModel, Field

logger = logging.getLogger("agent-backend")

_WALLET_ACCOUNT_TYPES = {"wallet", "ethereum_wallet", "smart_wallet"}


class PrivyUser(BaseModel):
    privy_id: str
    wallet_address: str | None = None
    email: str | None = None
    linked_accounts: list[dict[str, Any]] = Field(default_factory=list)


class AuthenticatedUser(BaseModel):
    id: str
    privy_id: str
    wallet_address: str | None = None
    email: str | None = None
    linked_accounts: list[dict[str, Any]] = Field(default_factory=list)


def _field(obj: dict[str, Any], *names: str) -> Any:
    for n in names:
        if n in obj and obj[n] is not None:
            return obj[n]
    return None


def extract_privy_user(payload: dict[str, Any]) -> PrivyUser:
    """Normalise a Privy user object (camelCase or snake_case) into a ``PrivyUser``."""
    user = payload.get("user") if isinstance(payload.get("user"), dict) else payload
    privy_id = str(_field(user, "id", "userId", "user_id") or "").strip()
    if not privy_id:
        raise ValueError("privy_user_missing_id")

    linked = _field(user, "linked_accounts", "linkedAccounts") or []
    linked = [a for a in linked if isinstance(a, dict)]

    wallet_address = None
    wallet = user.get("wallet")
    if isinstance(wallet, dict) and wallet.get("address"):
        wallet_address = str(wallet["address"])
    if wallet_address is None:
        for account in linked:
            if account.get("type") in _WALLET_ACCOUNT_TYPES and account.get("address"):
                wallet_address = str(account["address"])
                break

    email = None
    email_obj = user.get("email")
    if isinstance(email_obj, dict) and email_obj.get("address"):
        email = str(email_obj["address"])
    if email is None:
        for account in linked:
            if account.get("type") == "email" and account.get("address"):
                email = str(account["address"])
                break

    return PrivyUser(privy_id=privy_id, wallet_address=wallet_address, email=email, linked_accounts=linked)


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Missing or invalid authorization header"},
        )
    token = header[len("Bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "Missing bearer token"})
    return token


class PrivyVerifier:
    """Resolves a Privy access token to the user it was issued for."""

    def __init__(self, app_id: str, user_url: str, timeout_s: float = 10.0) -> None:
        self._app_id = app_id
        self._user_url = user_url
        self._timeout_s = timeout_s

    async def verify(self, token: str) -> PrivyUser:
        if not self._app_id:
            raise RuntimeError("Missing required env: PRIVY_APP_ID")

        headers = {
            "Authorization": f"Bearer {token}",
            "privy-app-id": self._app_id,
            "accept": "application/json",
        }
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            resp = await client.get(self._user_url, headers=headers)
            if resp.status_code in (401, 403, 404):
                raise PermissionError("invalid_token")
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict):
            raise PermissionError("invalid_token")
        try:
            return extract_privy_user(data)
        except ValueError as e:
            raise PermissionError("invalid_token") from e


async def authenticate_and_sync(request: Request, verifier: PrivyVerifier | None, store: Any) -> AuthenticatedUser:
    """Verify the bearer token and upsert the user so routes get a local user id."""
    token = bearer_token(request)
    if verifier is None or store is None:
        raise HTTPException(status_code=503, detail={"code": "not_ready", "message": "Service not initialized"})

    try:
        privy_user = await verifier.verify(token)
    except PermissionError:
        raise HTTPException(status_code=401, detail={"code": "unauthorized", "message": "Invalid or expired token"})
    except httpx.HTTPError as e:
        logger.warning("privy verification failed: %s", e)
        raise HTTPException(status_code=502, detail={"code": "auth_upstream_error", "message": "Authentication failed"})

    user, _ = await store.sync_user(
        privy_id=privy_user.privy_id,
        email=privy_user.email,
        wallet_address=privy_user.wallet_address,
        linked_accounts=privy_user.linked_accounts,
    )
    return AuthenticatedUser(
        id=user.id,
        privy_id=user.privy_id,
        wallet_address=user.wallet_address,
        email=user.email,
        linked_accounts=privy_user.linked_accounts,
    )
