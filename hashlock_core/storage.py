"""
SQLite-based persistence for Hashlock escrows.

Stores escrow records, the order-id index, and the token balances that
escrows move, so that a node can recover every live and historical escrow
and every holder's funds after restart.  256-bit quantities (amount,
order id, balances) are kept as decimal TEXT since SQLite integers are
64-bit.

The connection may be used from any thread.  Every statement runs under a
re-entrant store lock, and ``transaction()`` holds that lock for the whole
block, so no other thread sees a half-applied transaction.

Usage:
    store = SQLiteEscrowStore("data/hashlock.db")
    with store.transaction():
        store.put(escrow_id, escrow)
        store.reserve_order(escrow.order_id, escrow_id)
    escrow = store.get(escrow_id)
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterator

from hashlock_core.errors import Conflict
from hashlock_core.escrow import HTLCEscrow

logger = logging.getLogger("hashlock_storage")


class SQLiteEscrowStore:
    """``EscrowStore`` backed by a single SQLite database file.

    ``created`` is True when this instance initialised a fresh database;
    the node applies genesis balances only in that case.
    """

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/hashlock.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transaction() issues BEGIN / COMMIT itself
        self._conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._depth = 0
        self.created = False
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}{' (new)' if self.created else ''}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                escrow_id     TEXT PRIMARY KEY,
                sender        TEXT NOT NULL,
                receiver      TEXT NOT NULL,
                amount        TEXT NOT NULL,
                secret_hash   TEXT NOT NULL,
                timelock      INTEGER NOT NULL,
                token_address TEXT NOT NULL,
                order_id      TEXT NOT NULL,
                created_at    INTEGER NOT NULL,
                withdrawn     INTEGER NOT NULL DEFAULT 0,
                cancelled     INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS order_index (
                order_id  TEXT PRIMARY KEY,
                escrow_id TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                token_address TEXT NOT NULL,
                address       TEXT NOT NULL,
                amount        TEXT NOT NULL,
                PRIMARY KEY (token_address, address)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self.created = True
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            self._conn.close()
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade Hashlock."
            )

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ── escrows ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_escrow(row: sqlite3.Row) -> HTLCEscrow:
        return HTLCEscrow(
            escrow_id=row["escrow_id"],
            sender=row["sender"],
            receiver=row["receiver"],
            amount=int(row["amount"]),
            secret_hash=row["secret_hash"],
            timelock=row["timelock"],
            token_address=row["token_address"],
            order_id=int(row["order_id"]),
            created_at=row["created_at"],
            withdrawn=bool(row["withdrawn"]),
            cancelled=bool(row["cancelled"]),
        )

    def get(self, escrow_id: str) -> HTLCEscrow | None:
        row = self._fetchone("SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,))
        return self._row_to_escrow(row) if row else None

    def put(self, escrow_id: str, escrow: HTLCEscrow) -> None:
        self._execute(
            """INSERT OR REPLACE INTO escrows
               (escrow_id, sender, receiver, amount, secret_hash, timelock,
                token_address, order_id, created_at, withdrawn, cancelled)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                escrow_id, escrow.sender, escrow.receiver, str(escrow.amount),
                escrow.secret_hash, escrow.timelock, escrow.token_address,
                str(escrow.order_id), escrow.created_at,
                int(escrow.withdrawn), int(escrow.cancelled),
            ),
        )

    def exists(self, escrow_id: str) -> bool:
        row = self._fetchone("SELECT 1 FROM escrows WHERE escrow_id = ?", (escrow_id,))
        return row is not None

    def iter_escrows(self) -> Iterator[HTLCEscrow]:
        rows = self._fetchall("SELECT * FROM escrows ORDER BY created_at, escrow_id")
        for row in rows:
            yield self._row_to_escrow(row)

    def count(self) -> int:
        return self._fetchone("SELECT COUNT(*) FROM escrows")[0]

    # ── order index ──────────────────────────────────────────────

    def get_by_order(self, order_id: int) -> str | None:
        row = self._fetchone(
            "SELECT escrow_id FROM order_index WHERE order_id = ?", (str(order_id),)
        )
        return row["escrow_id"] if row else None

    def reserve_order(self, order_id: int, escrow_id: str) -> None:
        try:
            self._execute(
                "INSERT INTO order_index (order_id, escrow_id) VALUES (?, ?)",
                (str(order_id), escrow_id),
            )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Order {order_id} already registered") from exc

    # ── balances ─────────────────────────────────────────────────

    def save_balance(self, token_address: str, address: str, amount: int) -> None:
        """Record one holder's balance.  Usable as a ``BalanceJournal``."""
        self._execute(
            """INSERT OR REPLACE INTO balances (token_address, address, amount)
               VALUES (?, ?, ?)""",
            (token_address, address, str(amount)),
        )

    def load_balances(self) -> list[dict[str, Any]]:
        rows = self._fetchall("SELECT * FROM balances ORDER BY token_address, address")
        return [
            {"token_address": r["token_address"], "address": r["address"], "amount": int(r["amount"])}
            for r in rows
        ]

    # ── transactions ─────────────────────────────────────────────

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block in one SQLite transaction; roll back if it raises."""
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
