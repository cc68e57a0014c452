"""SQLite implementation of the QuotaLedger protocol."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from terminus.core.exceptions import ConfigurationError, LedgerError
from terminus.core.logging_config import get_logger
from terminus.core.models import ExceededRecord, UsageInfo, UsageRecord, UsageUpdate

PathLike = str | Path

logger = get_logger(__name__)

USAGE_DDL = """
    CREATE TABLE IF NOT EXISTS usage (
        key TEXT PRIMARY KEY,
        size_bytes INTEGER NOT NULL DEFAULT 0,
        quota INTEGER
    )
"""

# Each write is one UPSERT ... RETURNING statement: SQLite serializes it per
# row, so two concurrent adds to one key cannot lose an update, and the row
# read back is the row just written.
_ADD_SQL = """
    INSERT INTO usage (key, size_bytes) VALUES (:key, :delta)
    ON CONFLICT (key) DO UPDATE SET size_bytes = size_bytes + excluded.size_bytes
    RETURNING size_bytes, quota
"""

_SET_SQL = """
    INSERT INTO usage (key, size_bytes) VALUES (:key, :size)
    ON CONFLICT (key) DO UPDATE SET size_bytes = excluded.size_bytes
    RETURNING size_bytes, quota
"""

_SET_QUOTA_SQL = """
    INSERT INTO usage (key, size_bytes, quota) VALUES (:key, 0, :quota)
    ON CONFLICT (key) DO UPDATE SET quota = excluded.quota
    RETURNING size_bytes, quota
"""

# Binding an int outside the INTEGER range raises OverflowError; a closed
# aiosqlite connection raises ValueError.
_DB_ERRORS: tuple[type[Exception], ...] = (sqlite3.Error, OverflowError, ValueError)

_GET_SQL = "SELECT key, size_bytes, quota FROM usage WHERE key = :key"

_EXCEEDED_SQL = """
    SELECT key, size_bytes, COALESCE(quota, :default_quota)
    FROM usage
    WHERE size_bytes > COALESCE(quota, :default_quota)
    ORDER BY key
"""


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Create the usage table if it does not exist yet."""
    await conn.execute(USAGE_DDL)
    await conn.commit()


class SqliteQuotaLedger:
    """SQLite-backed implementation of QuotaLedger.

    Built around a live aiosqlite connection; the caller owns that connection
    unless the ledger was created with :meth:`open`. Several processes may share
    one database file: WAL mode and a busy timeout make writers queue up
    instead of failing.

    Args:
        conn: Open aiosqlite connection whose database has the usage table.
        default_quota_bytes: Quota for keys without an override.

    Example:
        async with await SqliteQuotaLedger.open("./terminus.db", 5_000) as ledger:
            update = await ledger.add_size_bytes("alice", 17)
            if update.exceeded:
                ...
    """

    def __init__(self, conn: aiosqlite.Connection, default_quota_bytes: int) -> None:
        if default_quota_bytes < 0:
            raise ConfigurationError("default quota must be >= 0")
        self._conn = conn
        self.default_quota_bytes = default_quota_bytes
        self._owns_connection = False
        self._logger = logger.bind(ledger="sqlite")

    @classmethod
    async def open(
        cls,
        db_path: PathLike,
        default_quota_bytes: int,
        *,
        busy_timeout_seconds: float = 5.0,
    ) -> SqliteQuotaLedger:
        """Open (creating if needed) a ledger database file.

        Raises:
            LedgerError: If the database cannot be opened or initialized.
        """
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = await aiosqlite.connect(str(path), timeout=busy_timeout_seconds)
            await conn.execute("PRAGMA journal_mode=WAL")
            await ensure_schema(conn)
        except sqlite3.Error as exc:
            raise LedgerError(f"open ledger {path}: {exc}", operation="open") from exc
        ledger = cls(conn, default_quota_bytes)
        ledger._owns_connection = True
        return ledger

    async def get(self, key: str) -> UsageRecord | None:
        rows = await self._fetch("get", _GET_SQL, {"key": key}, key=key)
        if not rows:
            return None
        row_key, size_bytes, quota = rows[0]
        return UsageRecord(key=row_key, usage_bytes=size_bytes, quota_bytes=quota)

    async def set(self, key: str, usage_bytes: int) -> UsageUpdate:
        return await self._write("set", _SET_SQL, {"key": key, "size": usage_bytes}, key)

    async def add_size_bytes(self, key: str, delta_bytes: int) -> UsageUpdate:
        return await self._write(
            "add_size_bytes", _ADD_SQL, {"key": key, "delta": delta_bytes}, key
        )

    async def set_quota(self, key: str, quota_bytes: int | None) -> UsageUpdate:
        return await self._write(
            "set_quota", _SET_QUOTA_SQL, {"key": key, "quota": quota_bytes}, key
        )

    async def get_exceeded(self) -> list[ExceededRecord]:
        rows = await self._fetch(
            "get_exceeded", _EXCEEDED_SQL, {"default_quota": self.default_quota_bytes}
        )
        return [
            ExceededRecord(key=key, info=UsageInfo(usage_bytes=size_bytes, quota_bytes=quota))
            for key, size_bytes, quota in rows
        ]

    async def _write(
        self, operation: str, sql: str, params: dict[str, Any], key: str
    ) -> UsageUpdate:
        try:
            async with self._conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
            await self._conn.commit()
        except _DB_ERRORS as exc:
            # Leave no open transaction behind: the next commit would publish this write.
            with contextlib.suppress(*_DB_ERRORS):
                await self._conn.rollback()
            raise LedgerError(
                f"{operation} key {key}: {exc}", operation=operation, key=key
            ) from exc

        size_bytes, quota = rows[0]
        effective_quota = quota if quota is not None else self.default_quota_bytes
        update = UsageUpdate(
            key=key,
            usage_bytes=size_bytes,
            quota_bytes=effective_quota,
            exceeded=size_bytes > effective_quota,
        )
        self._logger.debug(
            "usage_written",
            operation=operation,
            key=key,
            usage_bytes=size_bytes,
            quota_bytes=effective_quota,
        )
        return update

    async def _fetch(
        self, operation: str, sql: str, params: dict[str, Any], key: str | None = None
    ) -> list[Any]:
        try:
            async with self._conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except _DB_ERRORS as exc:
            raise LedgerError(f"{operation}: {exc}", operation=operation, key=key) from exc

    async def close(self) -> None:
        """Close the connection if this ledger opened it."""
        if self._owns_connection:
            await self._conn.close()
            self._owns_connection = False

    async def __aenter__(self) -> SqliteQuotaLedger:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

