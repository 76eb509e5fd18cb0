"""SQLite persistence for users, chats, messages, delegations and swap transactions."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite
from pydantic import BaseModel, Field

logger = logging.getLogger("agent-backend")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


class MessageRole(str, Enum):
    user = "user"
    assistant = "assistant"


class DelegationStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    failed = "failed"


class SwapStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    awaiting_user_execution = "awaiting_user_execution"
    completed = "completed"
    failed = "failed"


class UserRecord(BaseModel):
    id: str
    privy_id: str
    email: str | None = None
    wallet_address: str | None = None
    linked_accounts: list[Any] = Field(default_factory=list)
    created_at: str
    updated_at: str


class ChatRecord(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str


class MessageRecord(BaseModel):
    id: str
    chat_id: str
    user_id: str
    role: MessageRole
    content: str
    created_at: str
    updated_at: str


class DelegationRecord(BaseModel):
    id: str
    user_id: str
    chain_id: int
    delegator: str
    delegatee: str
    nonce: str
    authority: str
    signature: str
    status: DelegationStatus = DelegationStatus.pending
    transaction_hash: str | None = None
    created_at: str


class SwapTransactionRecord(BaseModel):
    id: str
    user_id: str
    chat_id: str | None = None
    message_id: str | None = None
    src_chain_id: int
    dst_chain_id: int
    src_token_address: str
    dst_token_address: str
    amount: str
    wallet_address: str
    status: SwapStatus = SwapStatus.pending
    order_hash: str | None = None
    quote: dict[str, Any] | None = None
    secrets: list[str] | None = None
    secret_hashes: list[str] | None = None
    error_details: dict[str, Any] | None = None
    created_at: str
    updated_at: str


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        privy_id TEXT NOT NULL UNIQUE,
        email TEXT,
        wallet_address TEXT,
        linked_accounts TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delegations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        chain_id INTEGER NOT NULL,
        delegator TEXT NOT NULL,
        delegatee TEXT NOT NULL,
        nonce TEXT NOT NULL,
        authority TEXT NOT NULL,
        signature TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        transaction_hash TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (user_id, chain_id, nonce)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS swap_transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        chat_id TEXT REFERENCES chats(id) ON DELETE SET NULL,
        message_id TEXT REFERENCES messages(id) ON DELETE SET NULL,
        src_chain_id INTEGER NOT NULL,
        dst_chain_id INTEGER NOT NULL,
        src_token_address TEXT NOT NULL,
        dst_token_address TEXT NOT NULL,
        amount TEXT NOT NULL,
        wallet_address TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        order_hash TEXT,
        quote TEXT,
        secrets TEXT,
        secret_hashes TEXT,
        error_details TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_created ON messages(chat_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_user_created ON messages(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_chats_user_updated ON chats(user_id, updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_delegations_delegator ON delegations(delegator, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_swaps_user_created ON swap_transactions(user_id, created_at DESC)",
)

_USER_COLS = "id, privy_id, email, wallet_address, linked_accounts, created_at, updated_at"
_CHAT_COLS = "id, user_id, title, created_at, updated_at"
_MESSAGE_COLS = "id, chat_id, user_id, role, content, created_at, updated_at"
_DELEGATION_COLS = (
    "id, user_id, chain_id, delegator, delegatee, nonce, authority, signature, status, transaction_hash, created_at"
)
_SWAP_COLS = (
    "id, user_id, chat_id, message_id, src_chain_id, dst_chain_id, src_token_address, dst_token_address, "
    "amount, wallet_address, status, order_hash, quote, secrets, secret_hashes, error_details, created_at, updated_at"
)

_SWAP_JSON_FIELDS = {"quote", "secrets", "secret_hashes", "error_details"}
_SWAP_UPDATABLE = {"status", "order_hash", "quote", "secrets", "secret_hashes", "error_details"}


def _user_from_row(row: Any) -> UserRecord:
    return UserRecord(
        id=row[0],
        privy_id=row[1],
        email=row[2],
        wallet_address=row[3],
        linked_accounts=_loads(row[4]) or [],
        created_at=row[5],
        updated_at=row[6],
    )


def _chat_from_row(row: Any) -> ChatRecord:
    return ChatRecord(id=row[0], user_id=row[1], title=row[2], created_at=row[3], updated_at=row[4])


def _message_from_row(row: Any) -> MessageRecord:
    return MessageRecord(
        id=row[0],
        chat_id=row[1],
        user_id=row[2],
        role=row[3],
        content=row[4],
        created_at=row[5],
        updated_at=row[6],
    )


def _delegation_from_row(row: Any) -> DelegationRecord:
    return DelegationRecord(
        id=row[0],
        user_id=row[1],
        chain_id=row[2],
        delegator=row[3],
        delegatee=row[4],
        nonce=row[5],
        authority=row[6],
        signature=row[7],
        status=row[8],
        transaction_hash=row[9],
        created_at=row[10],
    )


def _swap_from_row(row: Any) -> SwapTransactionRecord:
    return SwapTransactionRecord(
        id=row[0],
        user_id=row[1],
        chat_id=row[2],
        message_id=row[3],
        src_chain_id=row[4],
        dst_chain_id=row[5],
        src_token_address=row[6],
        dst_token_address=row[7],
        amount=row[8],
        wallet_address=row[9],
        status=row[10],
        order_hash=row[11],
        quote=_loads(row[12]),
        secrets=_loads(row[13]),
        secret_hashes=_loads(row[14]),
        error_details=_loads(row[15]),
        created_at=row[16],
        updated_at=row[17],
    )


class Store:
    """Async SQLite store backing the HTTP API and the conversation memory.

    Rows are ordered by ``created_at`` with ``rowid`` as tie breaker, so two rows
    written within the same clock tick keep their insertion order.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA foreign_keys = ON")
            for stmt in _SCHEMA:
                await self._db.execute(stmt)
            await self._db.commit()
            logger.info("store ready path=%s", self.db_path)
        return self._db

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def _fetchone(self, sql: str, params: tuple[Any, ...]) -> Any:
        db = await self._ensure_db()
        async with db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[Any]:
        db = await self._ensure_db()
        async with db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return list(rows)

    # Users

    async def sync_user(
        self,
        privy_id: str,
        email: str | None = None,
        wallet_address: str | None = None,
        linked_accounts: list[Any] | None = None,
    ) -> tuple[UserRecord, bool]:
        """Insert or update the user identified by ``privy_id``.

        Returns the stored user and whether it was newly created.
        """
        db = await self._ensure_db()
        now = _utcnow_iso()
        existing = await self.get_user_by_privy_id(privy_id)
        if existing is not None:
            await db.execute(
                "UPDATE users SET email = ?, wallet_address = ?, linked_accounts = ?, updated_at = ? WHERE privy_id = ?",
                (email, wallet_address, _dumps(linked_accounts or []), now, privy_id),
            )
            await db.commit()
            user = await self.get_user_by_privy_id(privy_id)
            return user, False

        user_id = _new_id()
        await db.execute(
            f"INSERT INTO users ({_USER_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (user_id, privy_id, email, wallet_address, _dumps(linked_accounts or []), now, now),
        )
        await db.commit()
        logger.info("user created id=%s", user_id)
        user = await self.get_user(user_id)
        return user, True

    async def get_user(self, user_id: str) -> UserRecord | None:
        row = await self._fetchone(f"SELECT {_USER_COLS} FROM users WHERE id = ?", (user_id,))
        return _user_from_row(row) if row else None

    async def get_user_by_privy_id(self, privy_id: str) -> UserRecord | None:
        row = await self._fetchone(f"SELECT {_USER_COLS} FROM users WHERE privy_id = ?", (privy_id,))
        return _user_from_row(row) if row else None

    async def get_user_by_chat_id(self, chat_id: str) -> UserRecord | None:
        """Resolve the owner of a chat."""
        cols = ", ".join(f"u.{c.strip()}" for c in _USER_COLS.split(","))
        row = await self._fetchone(
            f"SELECT {cols} FROM chats c JOIN users u ON u.id = c.user_id WHERE c.id = ?",
            (chat_id,),
        )
        return _user_from_row(row) if row else None

    # Delegations

    async def store_delegation(
        self,
        user_id: str,
        chain_id: int,
        delegator: str,
        delegatee: str,
        nonce: str,
        authority: str,
        signature: str,
        status: DelegationStatus = DelegationStatus.pending,
        transaction_hash: str | None = None,
    ) -> DelegationRecord:
        db = await self._ensure_db()
        delegation_id = _new_id()
        try:
            await db.execute(
                f"INSERT INTO delegations ({_DELEGATION_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    delegation_id,
                    user_id,
                    int(chain_id),
                    delegator,
                    delegatee,
                    nonce,
                    authority,
                    signature,
                    DelegationStatus(status).value,
                    transaction_hash,
                    _utcnow_iso(),
                ),
            )
            await db.commit()
        except sqlite3.IntegrityError as e:
            await db.rollback()
            if "UNIQUE" in str(e):
                raise ValueError("delegation_exists") from e
            raise ValueError("user_not_found") from e
        row = await self._fetchone(f"SELECT {_DELEGATION_COLS} FROM delegations WHERE id = ?", (delegation_id,))
        return _delegation_from_row(row)

    async def get_delegations_by_address(self, address: str, chain_id: int | None = None) -> list[DelegationRecord]:
        """Delegations signed by ``address``, newest first."""
        sql = f"SELECT {_DELEGATION_COLS} FROM delegations WHERE delegator = ?"
        params: tuple[Any, ...] = (address,)
        if chain_id is not None:
            sql += " AND chain_id = ?"
            params = (address, int(chain_id))
        sql += " ORDER BY created_at DESC, rowid DESC"
        rows = await self._fetchall(sql, params)
        return [_delegation_from_row(r) for r in rows]

    async def get_delegations_by_user_id(self, user_id: str) -> list[DelegationRecord]:
        rows = await self._fetchall(
            f"SELECT {_DELEGATION_COLS} FROM delegations WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )
        return [_delegation_from_row(r) for r in rows]

    # Chats

    async def create_chat(self, user_id: str, title: str) -> ChatRecord:
        db = await self._ensure_db()
        chat_id = _new_id()
        now = _utcnow_iso()
        try:
            await db.execute(
                f"INSERT INTO chats ({_CHAT_COLS}) VALUES (?, ?, ?, ?, ?)",
                (chat_id, user_id, title, now, now),
            )
            await db.commit()
        except sqlite3.IntegrityError as e:
            await db.rollback()
            raise ValueError("user_not_found") from e
        return ChatRecord(id=chat_id, user_id=user_id, title=title, created_at=now, updated_at=now)

    async def get_chat(self, chat_id: str) -> ChatRecord | None:
        row = await self._fetchone(f"SELECT {_CHAT_COLS} FROM chats WHERE id = ?", (chat_id,))
        return _chat_from_row(row) if row else None

    async def get_chats_by_user(self, user_id: str) -> list[ChatRecord]:
        rows = await self._fetchall(
            f"SELECT {_CHAT_COLS} FROM chats WHERE user_id = ? ORDER BY updated_at DESC, rowid DESC",
            (user_id,),
        )
        return [_chat_from_row(r) for r in rows]

    async def update_chat(self, chat_id: str, title: str) -> ChatRecord | None:
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE chats SET title = ?, updated_at = ? WHERE id = ?",
            (title, _utcnow_iso(), chat_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_chat(chat_id)

    async def delete_chat(self, chat_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
        await db.commit()
        return cursor.rowcount > 0

    # Messages

    async def create_message(self, chat_id: str, user_id: str, role: MessageRole, content: str) -> MessageRecord:
        db = await self._ensure_db()
        message_id = _new_id()
        now = _utcnow_iso()
        role_value = MessageRole(role).value
        try:
            await db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (message_id, chat_id, user_id, role_value, content, now, now),
            )
            await db.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))
            await db.commit()
        except sqlite3.IntegrityError as e:
            await db.rollback()
            raise ValueError("chat_or_user_not_found") from e
        return MessageRecord(
            id=message_id,
            chat_id=chat_id,
            user_id=user_id,
            role=role_value,
            content=content,
            created_at=now,
            updated_at=now,
        )

    async def get_message(self, message_id: str) -> MessageRecord | None:
        row = await self._fetchone(f"SELECT {_MESSAGE_COLS} FROM messages WHERE id = ?", (message_id,))
        return _message_from_row(row) if row else None

    async def get_messages_by_chat(self, chat_id: str) -> list[MessageRecord]:
        rows = await self._fetchall(
            f"SELECT {_MESSAGE_COLS} FROM messages WHERE chat_id = ? ORDER BY created_at ASC, rowid ASC",
            (chat_id,),
        )
        return [_message_from_row(r) for r in rows]

    async def get_messages_by_user(self, user_id: str) -> list[MessageRecord]:
        rows = await self._fetchall(
            f"SELECT {_MESSAGE_COLS} FROM messages WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
            (user_id,),
        )
        return [_message_from_row(r) for r in rows]

    async def fetch_recent_messages(self, chat_id: str, limit: int) -> list[MessageRecord]:
        """Return the ``limit`` most recent messages of a chat, newest first."""
        rows = await self._fetchall(
            f"SELECT {_MESSAGE_COLS} FROM messages WHERE chat_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (chat_id, int(limit)),
        )
        return [_message_from_row(r) for r in rows]

    async def update_message(self, message_id: str, content: str) -> MessageRecord | None:
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE messages SET content = ?, updated_at = ? WHERE id = ?",
            (content, _utcnow_iso(), message_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_message(message_id)

    async def delete_message(self, message_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await db.commit()
        return cursor.rowcount > 0

    # Swap transactions

    async def create_swap_transaction(
        self,
        user_id: str,
        src_chain_id: int,
        dst_chain_id: int,
        src_token_address: str,
        dst_token_address: str,
        amount: str,
        wallet_address: str,
        chat_id: str | None = None,
        message_id: str | None = None,
    ) -> SwapTransactionRecord:
        db = await self._ensure_db()
        swap_id = _new_id()
        now = _utcnow_iso()
        await db.execute(
            f"INSERT INTO swap_transactions ({_SWAP_COLS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL, NULL, ?, ?)",
            (
                swap_id,
                user_id,
                chat_id,
                message_id,
                int(src_chain_id),
                int(dst_chain_id),
                src_token_address,
                dst_token_address,
                str(amount),
                wallet_address,
                SwapStatus.pending.value,
                now,
                now,
            ),
        )
        await db.commit()
        return await self.get_swap_transaction(swap_id)

    async def update_swap_transaction(self, swap_id: str, **fields: Any) -> SwapTransactionRecord | None:
        unknown = set(fields) - _SWAP_UPDATABLE
        if unknown:
            raise ValueError(f"unknown swap fields: {sorted(unknown)}")
        if not fields:
            return await self.get_swap_transaction(swap_id)

        assignments: list[str] = []
        params: list[Any] = []
        for key, value in fields.items():
            if key in _SWAP_JSON_FIELDS:
                value = _dumps(value)
            elif key == "status":
                value = SwapStatus(value).value
            assignments.append(f"{key} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(_utcnow_iso())
        params.append(swap_id)

        db = await self._ensure_db()
        cursor = await db.execute(
            f"UPDATE swap_transactions SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        await db.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_swap_transaction(swap_id)

    async def get_swap_transaction(self, swap_id: str) -> SwapTransactionRecord | None:
        row = await self._fetchone(f"SELECT {_SWAP_COLS} FROM swap_transactions WHERE id = ?", (swap_id,))
        return _swap_from_row(row) if row else None

    async def list_swap_transactions(self, user_id: str, limit: int = 10, offset: int = 0) -> list[SwapTransactionRecord]:
        rows = await self._fetchall(
            f"SELECT {_SWAP_COLS} FROM swap_transactions WHERE user_id = ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (user_id, int(limit), int(offset)),
        )
        return [_swap_from_row(r) for r in rows]
