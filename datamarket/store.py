"""
DataMarket - State Store
SQLite-backed aggregate state of one marketplace deployment.

Every table of protocol state (users, the seller chain, shops and their
catalogs, escrow records, subscriptions, balances and the event log)
lives in one database. A transition opens one connection, takes the
write lock up front and either commits everything or nothing.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aiosqlite

logger = logging.getLogger("datamarket.store")


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        address TEXT PRIMARY KEY,
        external_id TEXT NOT NULL,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sellers (
        address TEXT PRIMARY KEY,
        next_address TEXT NOT NULL,
        shop TEXT,
        info TEXT NOT NULL DEFAULT '',
        registered_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shops (
        address TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        single_price INTEGER NOT NULL DEFAULT 0,
        subscription_rate INTEGER NOT NULL DEFAULT 0,
        purchases_open INTEGER NOT NULL DEFAULT 0,
        listed INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS data_items (
        shop TEXT NOT NULL,
        idx INTEGER NOT NULL,
        pointer TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '',
        available INTEGER NOT NULL DEFAULT 1,
        created_at INTEGER NOT NULL,
        PRIMARY KEY (shop, idx),
        UNIQUE (shop, pointer)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS escrows (
        script_hash TEXT PRIMARY KEY,
        buyer TEXT NOT NULL,
        seller TEXT NOT NULL,
        shop TEXT NOT NULL,
        pointer TEXT NOT NULL,
        amount INTEGER NOT NULL,
        state TEXT NOT NULL,
        seller_signature TEXT,
        delivery_ref TEXT,
        resolution TEXT,
        created_at INTEGER NOT NULL,
        finalized_at INTEGER,
        closed_at INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_escrows_buyer ON escrows(buyer)",
    "CREATE INDEX IF NOT EXISTS idx_escrows_seller ON escrows(seller)",
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        buyer TEXT NOT NULL,
        seller TEXT NOT NULL,
        expires_at INTEGER NOT NULL,
        paid INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        PRIMARY KEY (buyer, seller)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balances (
        address TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0,
        total_credited INTEGER NOT NULL DEFAULT 0,
        total_spent INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL,
        amount INTEGER NOT NULL,
        type TEXT NOT NULL,
        description TEXT,
        timestamp INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_address ON ledger_entries(address)",
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        script_hash TEXT,
        buyer TEXT,
        seller TEXT,
        payload TEXT NOT NULL,
        timestamp INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_name ON events(name)",
    "CREATE INDEX IF NOT EXISTS idx_events_script_hash ON events(script_hash)",
    "CREATE INDEX IF NOT EXISTS idx_events_buyer ON events(buyer)",
    "CREATE INDEX IF NOT EXISTS idx_events_seller ON events(seller)",
]


class MarketStore:
    """
    Owns the SQLite file holding all protocol state.

    Example:
        store = MarketStore("datamarket.db")
        await store.init_db()

        async with store.transaction() as db:
            await db.execute("UPDATE shops SET ...")
        # committed here, or rolled back if the block raised
    """

    def __init__(self, db_path: str = "datamarket.db"):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialized = False

    async def init_db(self):
        """Initialize database schema."""
        if self._initialized:
            return

        async with aiosqlite.connect(self.db_path) as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()

        self._initialized = True
        logger.info(f"State store initialized: {self.db_path}")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Open a write transaction.

        All statements executed on the yielded connection commit together
        when the block exits normally and are discarded if it raises.
        """
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            else:
                await db.commit()

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a read-only view of committed state."""
        await self.init_db()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def get_meta(self, db: aiosqlite.Connection, key: str) -> Optional[str]:
        cursor = await db.execute("SELECT value FROM meta WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def set_meta(self, db: aiosqlite.Connection, key: str, value: str):
        await db.execute("""
            INSERT INTO meta (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """, (key, value))

    async def next_counter(self, db: aiosqlite.Connection, key: str) -> int:
        """Increment and return a monotonically increasing counter."""
        current = await self.get_meta(db, key)
        value = int(current or 0) + 1
        await self.set_meta(db, key, str(value))
        return value
