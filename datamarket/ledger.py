"""
DataMarket - Balance Ledger
Native account balances and the journal of every value movement.

Escrowed purchase funds are held in the marketplace's own account and
leave it only through settlement, refund or dispute resolution.
"""

import logging
from typing import Optional

import aiosqlite

from .errors import InsufficientFunds, InvalidAmount

logger = logging.getLogger("datamarket.ledger")


class Ledger:
    """
    Manages account balances inside a marketplace transition.

    Every method takes the transition's open connection, so balance
    changes commit or roll back together with the protocol state that
    caused them.

    Example:
        async with store.transaction() as db:
            await ledger.credit(db, "0xabc...", 500, now)
            await ledger.transfer(db, buyer, market, 50, now, "escrow")
    """

    async def get_balance(self, db: aiosqlite.Connection, address: str) -> int:
        """
        Get current balance for an address.

        Returns:
            Current balance (0 if the account has never been touched)
        """
        cursor = await db.execute(
            "SELECT balance FROM balances WHERE address = ?",
            (address,)
        )
        row = await cursor.fetchone()

        return row[0] if row else 0

    async def credit(
        self,
        db: aiosqlite.Connection,
        address: str,
        amount: int,
        now: int,
        description: str = "Credit"
    ) -> int:
        """
        Add funds to an account.

        Returns:
            New balance after credit
        """
        if amount <= 0:
            raise InvalidAmount(f"Credit amount must be positive, got {amount}")

        await db.execute("""
            INSERT INTO balances (address, balance, total_credited, total_spent, updated_at)
            VALUES (?, ?, ?, 0, ?)
            ON CONFLICT(address) DO UPDATE SET
                balance = balance + ?,
                total_credited = total_credited + ?,
                updated_at = ?
        """, (address, amount, amount, now, amount, amount, now))

        await db.execute("""
            INSERT INTO ledger_entries (address, amount, type, description, timestamp)
            VALUES (?, ?, 'credit', ?, ?)
        """, (address, amount, description, now))

        return await self.get_balance(db, address)

    async def charge(
        self,
        db: aiosqlite.Connection,
        address: str,
        amount: int,
        now: int,
        description: str = "Charge"
    ) -> int:
        """
        Deduct funds from an account.

        Returns:
            New balance after the charge

        Raises:
            InsufficientFunds: if the balance does not cover amount
        """
        if amount <= 0:
            raise InvalidAmount(f"Charge amount must be positive, got {amount}")

        balance = await self.get_balance(db, address)
        if balance < amount:
            raise InsufficientFunds(
                f"Balance {balance} of {address[:10]}... does not cover {amount}"
            )

        await db.execute("""
            UPDATE balances SET
                balance = balance - ?,
                total_spent = total_spent + ?,
                updated_at = ?
            WHERE address = ?
        """, (amount, amount, now, address))

        await db.execute("""
            INSERT INTO ledger_entries (address, amount, type, description, timestamp)
            VALUES (?, ?, 'charge', ?, ?)
        """, (address, -amount, description, now))

        return balance - amount

    async def transfer(
        self,
        db: aiosqlite.Connection,
        source: str,
        destination: str,
        amount: int,
        now: int,
        description: str = "Transfer"
    ):
        """Move amount from source to destination."""
        await self.charge(db, source, amount, now, description)
        await self.credit(db, destination, amount, now, description)
        logger.info(f"Transferred {amount} {source[:10]}... -> {destination[:10]}... ({description})")

    async def get_account_stats(self, db: aiosqlite.Connection, address: str) -> Optional[dict]:
        """
        Get detailed stats for an account.

        Returns:
            Dict with balance, totals, and journal entry count
        """
        cursor = await db.execute(
            "SELECT * FROM balances WHERE address = ?",
            (address,)
        )
        row = await cursor.fetchone()

        if not row:
            return None

        cursor = await db.execute(
            "SELECT COUNT(*) FROM ledger_entries WHERE address = ?",
            (address,)
        )
        entry_count = (await cursor.fetchone())[0]

        return {
            "address": row["address"],
            "balance": row["balance"],
            "total_credited": row["total_credited"],
            "total_spent": row["total_spent"],
            "entry_count": entry_count,
            "updated_at": row["updated_at"]
        }

    async def get_recent_entries(
        self,
        db: aiosqlite.Connection,
        address: str,
        limit: int = 20
    ) -> list:
        """
        Get recent journal entries for an account.

        Returns:
            List of entry dicts, newest first
        """
        cursor = await db.execute("""
            SELECT * FROM ledger_entries
            WHERE address = ?
            ORDER BY id DESC
            LIMIT ?
        """, (address, limit))

        rows = await cursor.fetchall()

        return [
            {
                "id": row["id"],
                "amount": row["amount"],
                "type": row["type"],
                "description": row["description"],
                "timestamp": row["timestamp"]
            }
            for row in rows
        ]
