from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite
import structlog

from ..errors import TransactionError
from ..models import Authority, BlacklistEntry, KeywordViolation
from .base import StorageGateway

logger = structlog.get_logger(__name__)


CREATE_ACCOUNTS = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    authority INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
)
"""


CREATE_BINDINGS = """
CREATE TABLE IF NOT EXISTS account_bindings (
    external_user_id TEXT PRIMARY KEY,
    account_id INTEGER NOT NULL REFERENCES accounts(id)
)
"""


CREATE_BLACKLIST = """
CREATE TABLE IF NOT EXISTS blacklist_manager (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL UNIQUE,
    external_user_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    operator_id TEXT NOT NULL
)
"""


CREATE_VIOLATIONS = """
CREATE TABLE IF NOT EXISTS keyword_violations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_user_id TEXT NOT NULL,
    guild_id TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    last_violation_at TEXT NOT NULL,
    UNIQUE(external_user_id, guild_id)
)
"""


class SQLiteStorage(StorageGateway):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._conn: Optional[aiosqlite.Connection] = None
        # Transactions share one connection, so they must not interleave.
        self._tx_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        for statement in (CREATE_ACCOUNTS, CREATE_BINDINGS, CREATE_BLACKLIST, CREATE_VIOLATIONS):
            await self._conn.execute(statement)
        logger.info("sqlite_connected", path=str(self._path))

    async def disconnect(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements atomically; any failure rolls everything back."""
        assert self._conn
        conn = self._conn
        async with self._tx_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                logger.error("sqlite_begin_failed", error=str(exc))
                raise TransactionError(str(exc)) from exc
            try:
                yield conn
            except Exception as exc:
                await self._rollback(conn)
                logger.error("sqlite_transaction_rolled_back", error=str(exc))
                raise TransactionError(str(exc)) from exc
            except BaseException:
                await self._rollback(conn)
                raise
            try:
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(conn)
                logger.error("sqlite_commit_failed", error=str(exc))
                raise TransactionError(str(exc)) from exc

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.warning("sqlite_rollback_failed", error=str(exc))

    async def _fetchone(self, query: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        assert self._conn
        cursor = await self._conn.execute(query, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def resolve_account(self, external_user_id: str) -> Optional[int]:
        row = await self._fetchone(
            "SELECT account_id FROM account_bindings WHERE external_user_id = ?",
            (external_user_id,),
        )
        return row["account_id"] if row else None

    async def get_authority(self, external_user_id: str) -> Optional[int]:
        row = await self._fetchone(
            """
            SELECT a.authority FROM accounts a
            JOIN account_bindings b ON b.account_id = a.id
            WHERE b.external_user_id = ?
            """,
            (external_user_id,),
        )
        return row["authority"] if row else None

    async def link_account(
        self,
        external_user_id: str,
        *,
        account_id: Optional[int] = None,
        authority: int = Authority.MEMBER,
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT account_id FROM account_bindings WHERE external_user_id = ?",
                (external_user_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if row:
                return row["account_id"]
            if account_id is None:
                cursor = await conn.execute(
                    "INSERT INTO accounts (authority, created_at) VALUES (?, ?)",
                    (int(authority), _now().isoformat()),
                )
                account_id = cursor.lastrowid
                await cursor.close()
            await conn.execute(
                "INSERT INTO account_bindings (external_user_id, account_id) VALUES (?, ?)",
                (external_user_id, account_id),
            )
        logger.info("sqlite_account_linked", external_user_id=external_user_id, account_id=account_id)
        return account_id

    async def ban_account(
        self,
        account_id: int,
        external_user_id: str,
        display_name: str,
        operator_id: str,
        created_at: datetime,
    ) -> None:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE accounts SET authority = ? WHERE id = ?",
                (int(Authority.BANNED), account_id),
            )
            if cursor.rowcount != 1:
                await cursor.close()
                raise LookupError(f"account {account_id} does not exist")
            await cursor.close()
            await conn.execute(
                """
                INSERT INTO blacklist_manager (
                    account_id, external_user_id, display_name, created_at, operator_id
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    external_user_id=excluded.external_user_id,
                    display_name=excluded.display_name,
                    operator_id=excluded.operator_id
                """,
                (account_id, external_user_id, display_name, created_at.isoformat(), operator_id),
            )
        logger.info("sqlite_ban_committed", account_id=account_id, external_user_id=external_user_id)

    async def unban_account(self, account_id: int) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE accounts SET authority = ? WHERE id = ? AND authority = ?",
                (int(Authority.MEMBER), account_id, int(Authority.BANNED)),
            )
            await conn.execute("DELETE FROM blacklist_manager WHERE account_id = ?", (account_id,))
        logger.info("sqlite_unban_committed", account_id=account_id)

    async def get_entry(
        self,
        *,
        account_id: Optional[int] = None,
        external_user_id: Optional[str] = None,
    ) -> Optional[BlacklistEntry]:
        if account_id is not None:
            row = await self._fetchone(
                "SELECT * FROM blacklist_manager WHERE account_id = ?", (account_id,)
            )
        elif external_user_id is not None:
            row = await self._fetchone(
                "SELECT * FROM blacklist_manager WHERE external_user_id = ?", (external_user_id,)
            )
        else:
            raise ValueError("account_id or external_user_id is required")
        return _entry_from_row(row) if row else None

    async def list_entries(self, offset: int, limit: int) -> tuple[list[BlacklistEntry], int]:
        assert self._conn
        cursor = await self._conn.execute(
            "SELECT * FROM blacklist_manager ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (limit, offset),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        total_row = await self._fetchone("SELECT COUNT(*) AS total FROM blacklist_manager")
        return [_entry_from_row(row) for row in rows], total_row["total"]

    async def banned_external_ids(self) -> set[str]:
        assert self._conn
        cursor = await self._conn.execute(
            """
            SELECT external_user_id FROM blacklist_manager
            UNION
            SELECT b.external_user_id FROM account_bindings b
            JOIN blacklist_manager m ON m.account_id = b.account_id
            """
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return {row[0] for row in rows}

    async def record_violation(
        self,
        external_user_id: str,
        guild_id: str,
        at: datetime,
        threshold: int,
    ) -> tuple[int, bool]:
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO keyword_violations (external_user_id, guild_id, count, last_violation_at)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(external_user_id, guild_id) DO UPDATE SET
                    count=keyword_violations.count + 1,
                    last_violation_at=excluded.last_violation_at
                """,
                (external_user_id, guild_id, at.isoformat()),
            )
            cursor = await conn.execute(
                "SELECT count FROM keyword_violations WHERE external_user_id = ? AND guild_id = ?",
                (external_user_id, guild_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
            count = row["count"]
            reached = count >= threshold
            if reached:
                await conn.execute(
                    "UPDATE keyword_violations SET count = 0 WHERE external_user_id = ? AND guild_id = ?",
                    (external_user_id, guild_id),
                )
        return count, reached

    async def reset_violations(self, external_user_id: str, guild_id: str) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE keyword_violations SET count = 0 WHERE external_user_id = ? AND guild_id = ?",
                (external_user_id, guild_id),
            )

    async def get_violation(self, external_user_id: str, guild_id: str) -> Optional[KeywordViolation]:
        row = await self._fetchone(
            "SELECT * FROM keyword_violations WHERE external_user_id = ? AND guild_id = ?",
            (external_user_id, guild_id),
        )
        if not row:
            return None
        return KeywordViolation(
            id=row["id"],
            external_user_id=row["external_user_id"],
            guild_id=row["guild_id"],
            count=row["count"],
            last_violation_at=datetime.fromisoformat(row["last_violation_at"]),
        )


def _entry_from_row(row: aiosqlite.Row) -> BlacklistEntry:
    return BlacklistEntry(
        id=row["id"],
        account_id=row["account_id"],
        external_user_id=row["external_user_id"],
        display_name=row["display_name"],
        created_at=datetime.fromisoformat(row["created_at"]),
        operator_id=row["operator_id"],
    )


def _now() -> datetime:
    return datetime.now(timezone.utc)
