#!/usr/bin/env python3
"""
Hashlock Node Runner — starts an escrow node with:
  - An EscrowService over an in-memory or SQLite escrow store
  - In-process token balance books seeded from the [tokens] config
  - The REST API

Token balances are seeded from [tokens] when the store is new.  With
--db they are kept in the same SQLite file as the escrows, so a restart
resumes every holder's balance exactly.

Usage:
    python run_node.py --config hashlock.toml --port 8080 --db data/hashlock.db

Environment variables (alternative to flags): see hashlock_core.config.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from hashlock_core.api import APIServer  # noqa: E402
from hashlock_core.config import HashlockConfig, load_config  # noqa: E402
from hashlock_core.escrow import MemoryEscrowStore  # noqa: E402
from hashlock_core.logging_config import setup_logging  # noqa: E402
from hashlock_core.service import EscrowService  # noqa: E402
from hashlock_core.storage import SQLiteEscrowStore  # noqa: E402
from hashlock_core.token import TokenRegistry  # noqa: E402

logger = logging.getLogger("hashlock_node")


# ===================================================================
#  Hashlock Node
# ===================================================================

class HashlockNode:
    """Wires configuration, storage, token books, service and API.

    With persistent storage, every balance change is journaled into the
    same SQLite database as the escrows (inside the escrow's transaction),
    and genesis balances are minted only when that database is new.  On a
    restart the books are loaded back exactly as they were left.
    """

    def __init__(self, config: HashlockConfig):
        self.config = config

        self.store: SQLiteEscrowStore | MemoryEscrowStore
        if config.storage.enabled:
            self.store = SQLiteEscrowStore(config.storage.path)
            journal = self.store.save_balance
            fresh = self.store.created
        else:
            self.store = MemoryEscrowStore()
            journal = None
            fresh = True

        self.tokens = TokenRegistry(config.service.custody_address, journal=journal)
        for token_address in config.tokens:
            self.tokens.add_book(token_address)
        if fresh:
            self._apply_genesis()
        else:
            self._load_balances()

        self.service = EscrowService(self.tokens, store=self.store, config=config.service)
        self._api: APIServer | None = None

    def _apply_genesis(self) -> None:
        """Mint the configured genesis balances (fresh store only)."""
        with self.store.transaction():
            for token_address, holders in self.config.tokens.items():
                book = self.tokens.add_book(token_address)
                for address, amount in holders.items():
                    book.mint(address, amount)
                logger.info(f"Token {token_address}: {len(holders)} genesis holders")

    def _load_balances(self) -> None:
        """Load the balances recorded by a previous run."""
        rows = self.store.load_balances()
        for row in rows:
            self.tokens.add_book(row["token_address"]).restore(row["address"], row["amount"])
        logger.info(f"Loaded {len(rows)} balances from {self.config.storage.path}")

    async def start(self) -> None:
        if self.config.api.enabled:
            self._api = APIServer(
                self.service,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
            )
            await self._api.start()
        else:
            logger.warning("API disabled; node is idle. Set [api] enabled = true.")

    async def stop(self) -> None:
        if self._api:
            await self._api.stop()
        if isinstance(self.store, SQLiteEscrowStore):
            self.store.close()

    def status(self) -> dict:
        return {
            "custody": self.tokens.custody,
            "tokens": self.tokens.tokens(),
            "pending_escrows": self.service.get_pending_count(),
            "events": self.service.events.last_seq,
        }


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="Hashlock Escrow Node")
    p.add_argument("--config", default=None, help="Path to hashlock.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port (enables the API)")
    p.add_argument("--db", default=None, help="SQLite database path (enables storage)")
    p.add_argument("--custody", default=None, help="Custody address")
    return p.parse_args(argv)


def apply_args(cfg: HashlockConfig, args) -> HashlockConfig:
    """CLI flags override config file and environment."""
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
        cfg.api.enabled = True
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.custody:
        cfg.service.custody_address = args.custody
    return cfg


async def main(argv: list[str] | None = None):
    args = parse_args(argv)
    cfg = apply_args(load_config(args.config), args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file, cfg.logging.levels)

    node = HashlockNode(cfg)
    await node.start()
    logger.info(f"Node up: {node.status()}")
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await node.stop()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
