"""Ledger stores: account balances plus an append-only entry log.

Every balance mutation goes through ``try_debit``, a single conditional
transaction keyed on action_id uniqueness. Two backends:

- ``MemoryLedgerStore``: process-local, guarded by one asyncio lock.
- ``SQLiteLedgerStore``: durable; uniqueness of successful entries is
  enforced by a partial unique index, so duplicate action_ids are rejected
  even across processes sharing the database file.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from docsearch_mcp.errors import LedgerError, LedgerUnavailable
from docsearch_mcp.ledger import DebitMetadata, DebitOutcome, LedgerEntry

logger = logging.getLogger(__name__)


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount}")


class LedgerStore(ABC):
    """Operations the metering pipeline needs from balance storage."""

    @abstractmethod
    async def read_balance(self, user_id: str) -> int:
        """Current balance; a missing account reads as 0."""

    @abstractmethod
    async def try_debit(
        self,
        user_id: str,
        amount: int,
        action_id: str,
        metadata: DebitMetadata,
    ) -> DebitOutcome:
        """Atomically debit ``amount`` and append a successful entry.

        Returns ``already_applied`` instead of debiting when a successful
        entry for ``action_id`` exists. Raises LedgerUnavailable on
        transient store failures.
        """

    @abstractmethod
    async def append_entry(self, entry: LedgerEntry) -> None:
        """Append an audit entry without touching the balance.

        Only failed entries go through here; successful ones are written by
        ``try_debit``.
        """

    @abstractmethod
    async def list_entries(self, user_id: str, limit: int = 20) -> list[LedgerEntry]:
        """Most recent entries for a user, newest first."""

    @abstractmethod
    async def open_account(self, user_id: str, opening_balance: int) -> bool:
        """Create an account with an opening balance if it does not exist.

        Returns True when the account was created. Existing accounts are
        left untouched, so re-seeding on restart never adds credits twice.
        """

    async def close(self) -> None:
        """Release store resources."""


# ---------------------------------------------------------------------------
# MemoryLedgerStore
# ---------------------------------------------------------------------------


class MemoryLedgerStore(LedgerStore):
    """In-process store. Suitable for local development and tests."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = {}
        self._entries: list[LedgerEntry] = []
        self._applied: set[str] = set()
        self._lock = asyncio.Lock()

    async def read_balance(self, user_id: str) -> int:
        return self._balances.get(user_id, 0)

    async def try_debit(
        self,
        user_id: str,
        amount: int,
        action_id: str,
        metadata: DebitMetadata,
    ) -> DebitOutcome:
        _require_positive(amount)
        async with self._lock:
            balance = self._balances.get(user_id, 0)
            if action_id in self._applied:
                return DebitOutcome(applied=False, already_applied=True, balance=balance)
            if balance < amount:
                return DebitOutcome(applied=False, balance=balance)

            self._balances[user_id] = balance - amount
            self._entries.append(
                LedgerEntry.create(user_id, amount, action_id, metadata, success=True)
            )
            self._applied.add(action_id)
            return DebitOutcome(applied=True, balance=balance - amount)

    async def append_entry(self, entry: LedgerEntry) -> None:
        if entry.success:
            raise ValueError("Successful entries are only written by try_debit.")
        async with self._lock:
            self._entries.append(entry)

    async def list_entries(self, user_id: str, limit: int = 20) -> list[LedgerEntry]:
        mine = [e for e in self._entries if e.user_id == user_id]
        return list(reversed(mine))[:limit]

    async def open_account(self, user_id: str, opening_balance: int) -> bool:
        if opening_balance < 0:
            raise ValueError("opening_balance must not be negative")
        async with self._lock:
            if user_id in self._balances:
                return False
            self._balances[user_id] = opening_balance
            return True


# ---------------------------------------------------------------------------
# SQLiteLedgerStore
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0)
);
CREATE TABLE IF NOT EXISTS ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    tool_name TEXT NOT NULL,
    server_name TEXT NOT NULL DEFAULT '',
    request_summary TEXT NOT NULL DEFAULT '',
    result_summary TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    success INTEGER NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_ledger_entries_success_action
    ON ledger_entries (action_id) WHERE success = 1;
CREATE INDEX IF NOT EXISTS ix_ledger_entries_user
    ON ledger_entries (user_id, id);
"""

_ENTRY_COLUMNS = (
    "action_id, user_id, amount, tool_name, server_name, "
    "request_summary, result_summary, created_at, success"
)


class SQLiteLedgerStore(LedgerStore):
    """SQLite-backed store. Blocking calls run in a worker thread.

    Each operation opens its own connection so concurrent tasks never
    share a cursor. ``BEGIN IMMEDIATE`` serializes writers; lock timeouts
    surface as LedgerUnavailable so the debit executor can retry.
    """

    def __init__(self, path: str | Path, timeout_secs: float = 5.0) -> None:
        self._path = str(path)
        self._timeout = timeout_secs
        self._schema_ready = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        if not self._schema_ready:
            conn.executescript(_SCHEMA)
            self._schema_ready = True
        return conn

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.OperationalError as e:
            raise LedgerUnavailable(f"Ledger database unavailable: {e}") from e
        except sqlite3.DatabaseError as e:
            raise LedgerError(f"Ledger database error: {e}") from e

    # -- sync implementations (worker thread) --------------------------------

    @staticmethod
    def _balance(conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT balance FROM accounts WHERE user_id = ?", (user_id,)
        ).fetchone()
        return int(row[0]) if row else 0

    @staticmethod
    def _insert_entry(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            f"INSERT INTO ledger_entries ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                entry.action_id,
                entry.user_id,
                entry.amount,
                entry.tool_name,
                entry.server_name,
                entry.request_summary,
                entry.result_summary,
                entry.timestamp,
                1 if entry.success else 0,
            ),
        )

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _read_balance_sync(self, user_id: str) -> int:
        conn = self._connect()
        try:
            return self._balance(conn, user_id)
        finally:
            conn.close()

    def _try_debit_sync(
        self,
        user_id: str,
        amount: int,
        action_id: str,
        metadata: DebitMetadata,
    ) -> DebitOutcome:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT 1 FROM ledger_entries WHERE action_id = ? AND success = 1",
                (action_id,),
            ).fetchone()
            balance = self._balance(conn, user_id)
            if existing:
                self._rollback(conn)
                return DebitOutcome(applied=False, already_applied=True, balance=balance)
            if balance < amount:
                self._rollback(conn)
                return DebitOutcome(applied=False, balance=balance)

            conn.execute(
                "UPDATE accounts SET balance = balance - ? WHERE user_id = ? AND balance >= ?",
                (amount, user_id, amount),
            )
            self._insert_entry(
                conn, LedgerEntry.create(user_id, amount, action_id, metadata, success=True)
            )
            conn.execute("COMMIT")
            return DebitOutcome(applied=True, balance=balance - amount)
        except sqlite3.IntegrityError:
            # Another connection committed the same action_id first
            self._rollback(conn)
            return DebitOutcome(
                applied=False, already_applied=True, balance=self._balance(conn, user_id)
            )
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    def _append_entry_sync(self, entry: LedgerEntry) -> None:
        conn = self._connect()
        try:
            self._insert_entry(conn, entry)
        finally:
            conn.close()

    def _list_entries_sync(self, user_id: str, limit: int) -> list[LedgerEntry]:
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries "
                "WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [
            LedgerEntry(
                action_id=row[0],
                user_id=row[1],
                amount=int(row[2]),
                tool_name=row[3],
                server_name=row[4],
                request_summary=row[5],
                result_summary=row[6],
                timestamp=row[7],
                success=bool(row[8]),
            )
            for row in rows
        ]

    def _open_account_sync(self, user_id: str, opening_balance: int) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO accounts (user_id, balance) VALUES (?, ?)",
                (user_id, opening_balance),
            )
            return cursor.rowcount == 1
        finally:
            conn.close()

    # -- async API -----------------------------------------------------------

    async def read_balance(self, user_id: str) -> int:
        return await self._run(self._read_balance_sync, user_id)

    async def try_debit(
        self,
        user_id: str,
        amount: int,
        action_id: str,
        metadata: DebitMetadata,
    ) -> DebitOutcome:
        _require_positive(amount)
        return await self._run(self._try_debit_sync, user_id, amount, action_id, metadata)

    async def append_entry(self, entry: LedgerEntry) -> None:
        if entry.success:
            raise ValueError("Successful entries are only written by try_debit.")
        await self._run(self._append_entry_sync, entry)

    async def list_entries(self, user_id: str, limit: int = 20) -> list[LedgerEntry]:
        return await self._run(self._list_entries_sync, user_id, limit)

    async def open_account(self, user_id: str, opening_balance: int) -> bool:
        if opening_balance < 0:
            raise ValueError("opening_balance must not be negative")
        return await self._run(self._open_account_sync, user_id, opening_balance)


async def seed_store(store: LedgerStore, seeds: dict[str, int]) -> int:
    """Open accounts listed in the ``seed_balances`` setting.

    Returns the number of accounts created.
    """
    created = 0
    for user_id, amount in seeds.items():
        if await store.open_account(user_id, amount):
            created += 1
            logger.info("Opened account %s with %d credits.", user_id, amount)
    return created
