from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiosqlite

from .errors import StorageError
from .models import (
    AMOUNT_DECIMALS,
    Alert,
    AlertCondition,
    Cryptocurrency,
    Trade,
    TradeType,
    now_ms,
)


logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_CAS_TABLES = frozenset({"alerts", "wallets"})

Params = Union[Sequence[Any], Dict[str, Any]]


def trade_from_row(row: aiosqlite.Row) -> Trade:
    return Trade(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        symbol=row["symbol"],
        type=TradeType(row["trade_type"]),
        amount=float(row["amount"]),
        price=float(row["price"]),
        total_value=float(row["total_value"]),
        status=row["status"],
        alert_id=int(row["alert_id"]) if row["alert_id"] is not None else None,
        created_at=int(row["created_at"]),
    )


def alert_from_row(row: aiosqlite.Row) -> Alert:
    return Alert(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        symbol=row["symbol"],
        target_price=float(row["target_price"]),
        condition=AlertCondition(row["condition"]),
        is_active=bool(row["is_active"]),
        is_triggered=bool(row["is_triggered"]),
        trade_type=TradeType(row["trade_type"]),
        trade_amount=float(row["trade_amount"]),
        created_at=int(row["created_at"]),
        updated_at=int(row["updated_at"]),
        triggered_at=int(row["triggered_at"]) if row["triggered_at"] is not None else None,
    )


_ALERT_SELECT = """
SELECT a.*, c.symbol AS symbol
FROM alerts a
JOIN cryptocurrencies c ON a.crypto_id = c.id
"""

_TRADE_SELECT = """
SELECT t.*, c.symbol AS symbol
FROM trades t
JOIN cryptocurrencies c ON t.crypto_id = c.id
"""


class Transaction:
    """One unit of work on a dedicated connection.

    Obtained from ``Database.transaction()``; never constructed directly.
    Every statement runs inside the same ``BEGIN IMMEDIATE`` block, so the
    store's write lock is held from the first read to commit/rollback.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def execute(self, sql: str, params: Params = ()) -> aiosqlite.Cursor:
        return await self._conn.execute(sql, params)

    async def fetchone(self, sql: str, params: Params = ()) -> Optional[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: Params = ()) -> List[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    async def compare_and_set(
        self,
        table: str,
        row_id: int,
        expected: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> bool:
        """UPDATE ``table`` row ``row_id`` only if every ``expected`` column still holds its value.

        Returns True when exactly one row changed. A False result means the row
        is gone or another writer got there first.
        """
        if table not in _CAS_TABLES:
            raise ValueError(f"compare_and_set not allowed on table {table!r}")
        if not updates:
            raise ValueError("compare_and_set needs at least one column to update")
        for col in (*expected.keys(), *updates.keys()):
            if not _IDENTIFIER.match(col):
                raise ValueError(f"invalid column name {col!r}")

        sql = f"UPDATE {table} SET " + ", ".join(f"{col}=?" for col in updates)
        sql += " WHERE id=?"
        params: List[Any] = list(updates.values()) + [row_id]
        for col, value in expected.items():
            sql += f" AND {col}=?"
            params.append(value)
        cursor = await self._conn.execute(sql, params)
        return cursor.rowcount == 1

    # ------------------------------------------------------------ ledger

    async def user_exists(self, user_id: int) -> bool:
        row = await self.fetchone("SELECT 1 FROM users WHERE id=?", (user_id,))
        return row is not None

    async def get_wallet_balance(self, user_id: int, crypto_id: int) -> Optional[float]:
        row = await self.fetchone(
            "SELECT balance FROM wallets WHERE user_id=? AND crypto_id=?",
            (user_id, crypto_id),
        )
        if row is None:
            return None
        return float(row["balance"])

    async def insert_trade(
        self,
        user_id: int,
        crypto_id: int,
        trade_type: TradeType,
        amount: float,
        price: float,
        total_value: float,
        alert_id: Optional[int],
        created_at: int,
        status: str = "completed",
    ) -> int:
        sql = """
        INSERT INTO trades (
          user_id, crypto_id, trade_type, amount, price, total_value, status, alert_id, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        params = (
            user_id,
            crypto_id,
            trade_type.value,
            amount,
            price,
            total_value,
            status,
            alert_id,
            created_at,
        )
        cursor = await self._conn.execute(sql, params)
        return int(cursor.lastrowid)

    async def credit_wallet(self, user_id: int, crypto_id: int, amount: float, updated_at: int) -> None:
        sql = f"""
        INSERT INTO wallets (user_id, crypto_id, balance, created_at, updated_at)
        VALUES (?, ?, ROUND(?, {AMOUNT_DECIMALS}), ?, ?)
        ON CONFLICT(user_id, crypto_id) DO UPDATE SET
          balance=ROUND(wallets.balance + excluded.balance, {AMOUNT_DECIMALS}),
          updated_at=excluded.updated_at
        """
        await self._conn.execute(sql, (user_id, crypto_id, amount, updated_at, updated_at))

    async def debit_wallet(self, user_id: int, crypto_id: int, amount: float, updated_at: int) -> bool:
        sql = f"""
        UPDATE wallets SET
          balance=ROUND(balance - ?, {AMOUNT_DECIMALS}),
          updated_at=?
        WHERE user_id=? AND crypto_id=? AND balance >= ?
        """
        cursor = await self._conn.execute(sql, (amount, updated_at, user_id, crypto_id, amount))
        return cursor.rowcount == 1

    async def find_pending_alert(
        self, user_id: int, crypto_id: int, target_price: float, condition: AlertCondition
    ) -> Optional[int]:
        row = await self.fetchone(
            """
            SELECT id FROM alerts
            WHERE user_id=? AND crypto_id=? AND target_price=? AND condition=?
              AND is_active=1 AND is_triggered=0
            LIMIT 1
            """,
            (user_id, crypto_id, target_price, condition.value),
        )
        return int(row["id"]) if row is not None else None

    async def insert_alert(
        self,
        user_id: int,
        crypto_id: int,
        target_price: float,
        condition: AlertCondition,
        trade_type: TradeType,
        trade_amount: float,
        created_at: int,
    ) -> int:
        sql = """
        INSERT INTO alerts (
          user_id, crypto_id, target_price, condition, is_active, is_triggered,
          trade_type, trade_amount, created_at, updated_at
        ) VALUES (?, ?, ?, ?, 1, 0, ?, ?, ?, ?)
        """
        params = (
            user_id,
            crypto_id,
            target_price,
            condition.value,
            trade_type.value,
            trade_amount,
            created_at,
            created_at,
        )
        cursor = await self._conn.execute(sql, params)
        return int(cursor.lastrowid)

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        row = await self.fetchone(_ALERT_SELECT + " WHERE a.id=?", (alert_id,))
        return alert_from_row(row) if row is not None else None


class Database:
    def __init__(self, sqlite_path: str, busy_timeout_ms: int = 5000) -> None:
        self._sqlite_path = sqlite_path
        self._busy_timeout_s = busy_timeout_ms / 1000.0
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def path(self) -> str:
        return self._sqlite_path

    async def connect(self) -> None:
        if self._conn is not None:
            return
        Path(self._sqlite_path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._sqlite_path, timeout=self._busy_timeout_s)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA foreign_keys=ON")
        logger.info("DB connected: %s", self._sqlite_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("DB closed")

    async def init_schema(self) -> None:
        await self.connect()
        schema_path = Path(__file__).resolve().parent / "schema.sql"
        sql = schema_path.read_text(encoding="utf-8")
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(sql)
        await self._conn.commit()
        logger.info("DB schema initialized from %s", schema_path)

    async def execute(self, sql: str, params: Params = ()) -> None:
        await self.connect()
        try:
            await self._conn.execute(sql, params)
        except sqlite3.Error:
            await self._conn.rollback()
            raise
        await self._conn.commit()

    async def fetchone(self, sql: str, params: Params = ()) -> Optional[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: Params = ()) -> List[aiosqlite.Row]:
        await self.connect()
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchall()

    @asynccontextmanager
    async def transaction(self, operation: str = "transaction") -> AsyncIterator[Transaction]:
        """Run a unit of work: commit on normal exit, roll back on any exception.

        The connection is always closed. ``sqlite3.Error`` raised inside the block
        (or by BEGIN/COMMIT) surfaces as ``StorageError``; every other exception
        propagates unchanged after the rollback.
        """
        try:
            conn = await aiosqlite.connect(
                self._sqlite_path, timeout=self._busy_timeout_s, isolation_level=None
            )
        except sqlite3.Error as exc:
            logger.error("Open transaction failed (%s): %s", operation, exc)
            raise StorageError(operation, str(exc)) from exc
        conn.row_factory = aiosqlite.Row
        try:
            try:
                await conn.execute("PRAGMA foreign_keys=ON")
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                logger.error("Begin transaction failed (%s): %s", operation, exc)
                raise StorageError(operation, str(exc)) from exc

            try:
                yield Transaction(conn)
            except sqlite3.Error as exc:
                await self._rollback(conn, operation)
                logger.error("Transaction failed (%s): %s", operation, exc)
                raise StorageError(operation, str(exc)) from exc
            except BaseException:
                await self._rollback(conn, operation)
                raise

            try:
                await conn.execute("COMMIT")
            except sqlite3.Error as exc:
                await self._rollback(conn, operation)
                logger.error("Commit failed (%s): %s", operation, exc)
                raise StorageError(operation, str(exc)) from exc
        finally:
            await conn.close()

    @staticmethod
    async def _rollback(conn: aiosqlite.Connection, operation: str) -> None:
        if not conn.in_transaction:
            return
        try:
            await conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed (%s)", operation)

    # ------------------------------------------------------------- seeding

    async def seed_cryptocurrencies(self, seeds: Iterable[Tuple[str, str]]) -> None:
        sql = """
        INSERT INTO cryptocurrencies (symbol, name, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(symbol) DO NOTHING
        """
        ts = now_ms()
        for symbol, name in seeds:
            await self.execute(sql, (symbol.upper(), name, ts))

    async def insert_user(self, username: str, email: str, password_hash: str) -> int:
        await self.connect()
        cursor = await self._conn.execute(
            "INSERT INTO users (username, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (username, email, password_hash, now_ms()),
        )
        await self._conn.commit()
        return int(cursor.lastrowid)

    # --------------------------------------------------------------- reads

    async def get_cryptocurrency(self, symbol: str) -> Optional[Cryptocurrency]:
        row = await self.fetchone(
            "SELECT id, symbol, name FROM cryptocurrencies WHERE symbol=?",
            (symbol.upper(),),
        )
        if row is None:
            return None
        return Cryptocurrency(id=int(row["id"]), symbol=row["symbol"], name=row["name"])

    async def user_exists(self, user_id: int) -> bool:
        row = await self.fetchone("SELECT 1 FROM users WHERE id=?", (user_id,))
        return row is not None

    async def get_wallets(self, user_id: int, positive_only: bool = True) -> List[aiosqlite.Row]:
        sql = """
        SELECT w.balance, w.updated_at, c.id AS crypto_id, c.symbol, c.name
        FROM wallets w
        JOIN cryptocurrencies c ON w.crypto_id = c.id
        WHERE w.user_id = ?
        """
        if positive_only:
            sql += " AND w.balance > 0"
        sql += " ORDER BY c.symbol"
        return await self.fetchall(sql, (user_id,))

    async def get_wallet_balance(self, user_id: int, symbol: str) -> Optional[float]:
        row = await self.fetchone(
            """
            SELECT w.balance FROM wallets w
            JOIN cryptocurrencies c ON w.crypto_id = c.id
            WHERE w.user_id=? AND c.symbol=?
            """,
            (user_id, symbol.upper()),
        )
        if row is None:
            return None
        return float(row["balance"])

    async def get_signed_trade_sum(self, user_id: int, symbol: str) -> Tuple[float, int]:
        row = await self.fetchone(
            """
            SELECT
              COALESCE(SUM(CASE WHEN t.trade_type='buy' THEN t.amount ELSE -t.amount END), 0) AS total,
              COUNT(*) AS n
            FROM trades t
            JOIN cryptocurrencies c ON t.crypto_id = c.id
            WHERE t.user_id=? AND c.symbol=?
            """,
            (user_id, symbol.upper()),
        )
        return float(row["total"]), int(row["n"])

    async def get_trade(self, trade_id: int) -> Optional[Trade]:
        row = await self.fetchone(_TRADE_SELECT + " WHERE t.id=?", (trade_id,))
        return trade_from_row(row) if row is not None else None

    async def get_trades(
        self,
        user_id: int,
        limit: Optional[int] = 100,
        offset: int = 0,
        since: Optional[int] = None,
        alert_id: Optional[int] = None,
        ascending: bool = False,
    ) -> List[Trade]:
        sql = _TRADE_SELECT + " WHERE t.user_id = ?"
        params: List[Any] = [user_id]
        if since is not None:
            sql += " AND t.created_at >= ?"
            params.append(since)
        if alert_id is not None:
            sql += " AND t.alert_id = ?"
            params.append(alert_id)
        order = "ASC" if ascending else "DESC"
        sql += f" ORDER BY t.created_at {order}, t.id {order} LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset])
        rows = await self.fetchall(sql, params)
        return [trade_from_row(r) for r in rows]

    async def count_trades_for_alert(self, alert_id: int) -> int:
        row = await self.fetchone("SELECT COUNT(*) AS n FROM trades WHERE alert_id=?", (alert_id,))
        return int(row["n"])

    async def get_alert(self, alert_id: int) -> Optional[Alert]:
        row = await self.fetchone(_ALERT_SELECT + " WHERE a.id=?", (alert_id,))
        return alert_from_row(row) if row is not None else None

    async def get_alerts(self, user_id: int, active_only: bool = False) -> List[Alert]:
        sql = _ALERT_SELECT + " WHERE a.user_id = ?"
        if active_only:
            sql += " AND a.is_active = 1"
        sql += " ORDER BY a.created_at DESC, a.id DESC"
        rows = await self.fetchall(sql, (user_id,))
        return [alert_from_row(r) for r in rows]

    async def get_pending_alerts(self) -> List[Alert]:
        rows = await self.fetchall(
            _ALERT_SELECT + " WHERE a.is_active = 1 AND a.is_triggered = 0 ORDER BY a.id"
        )
        return [alert_from_row(r) for r in rows]
