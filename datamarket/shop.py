"""
DataMarket - Shop Catalog
One seller's data items, pricing and purchase gate.
"""

import logging
from typing import List, Optional
from dataclasses import dataclass, asdict

import aiosqlite

from .errors import AlreadyExists, InvalidAmount, NotFound, Unauthorized
from .events import EventName
from .security import address_bytes, derive_address
from .transition import Transition

logger = logging.getLogger("datamarket.shop")


@dataclass
class ShopHandle:
    """Reference to a shop allocated for a seller."""
    address: str
    owner: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Shop:
    """
    Pricing and gate state of a shop.

    Attributes:
        address: Shop address
        owner: Seller owning the shop
        single_price: Exact price of one per-item purchase (0 = unset)
        subscription_rate: Price per subscription time unit (0 = not offered)
        purchases_open: Whether new per-item purchases are accepted
        listed: False once the seller was removed from the registry
        created_at: Ledger time of allocation
    """
    address: str
    owner: str
    single_price: int
    subscription_rate: int
    purchases_open: bool
    listed: bool
    created_at: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DataItem:
    """A catalog entry pointing at data stored off-ledger."""
    index: int
    pointer: str
    metadata: str
    available: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_shop(row) -> Shop:
    return Shop(
        address=row["address"],
        owner=row["owner"],
        single_price=row["single_price"],
        subscription_rate=row["subscription_rate"],
        purchases_open=bool(row["purchases_open"]),
        listed=bool(row["listed"]),
        created_at=row["created_at"]
    )


def _row_to_item(row) -> DataItem:
    return DataItem(
        index=row["idx"],
        pointer=row["pointer"],
        metadata=row["metadata"],
        available=bool(row["available"])
    )


class ShopCatalog:
    """
    Shop state operations.

    Mutations are owner-only and run inside a Transition; reads take any
    connection. The catalog is append-mostly: items are only ever added
    or withdrawn, never reordered, so an index stays valid forever.
    """

    async def create(self, tx: Transition, owner: str, allocation: int) -> ShopHandle:
        """Allocate a new, closed, unpriced shop owned by owner."""
        address = derive_address(
            b"datamarket.shop",
            address_bytes(tx.marketplace),
            address_bytes(owner),
            allocation.to_bytes(32, "big")
        )

        await tx.db.execute("""
            INSERT INTO shops (address, owner, single_price, subscription_rate,
                               purchases_open, listed, created_at)
            VALUES (?, ?, 0, 0, 0, 1, ?)
        """, (address, owner, tx.now))

        logger.info(f"Allocated shop {address[:10]}... for {owner[:10]}...")
        return ShopHandle(address=address, owner=owner)

    async def delist(self, tx: Transition, shop: str):
        """Detach a shop from the registry; it accepts nothing afterwards."""
        await tx.db.execute(
            "UPDATE shops SET listed = 0, purchases_open = 0 WHERE address = ?",
            (shop,)
        )

    async def get_shop(self, db: aiosqlite.Connection, shop: str) -> Optional[Shop]:
        cursor = await db.execute("SELECT * FROM shops WHERE address = ?", (shop,))
        row = await cursor.fetchone()
        return _row_to_shop(row) if row else None

    async def require_shop(self, db: aiosqlite.Connection, shop: str) -> Shop:
        """
        Load a listed shop.

        Raises:
            NotFound: unknown or delisted shop
        """
        record = await self.get_shop(db, shop)
        if record is None or not record.listed:
            raise NotFound(f"Shop not found: {shop}")
        return record

    async def _require_owner(self, tx: Transition, shop: str, caller: str) -> Shop:
        record = await self.require_shop(tx.db, shop)
        if record.owner != caller:
            raise Unauthorized(f"{caller[:10]}... is not the owner of shop {shop[:10]}...")
        return record

    async def set_price(self, tx: Transition, shop: str, value: int, caller: str):
        await self._require_owner(tx, shop, caller)
        if not isinstance(value, int) or value <= 0:
            raise InvalidAmount(f"Price must be a positive integer, got {value!r}")

        await tx.db.execute("UPDATE shops SET single_price = ? WHERE address = ?", (value, shop))
        logger.info(f"Shop {shop[:10]}... price set to {value}")

    async def set_subscription_rate(self, tx: Transition, shop: str, value: int, caller: str):
        await self._require_owner(tx, shop, caller)
        if not isinstance(value, int) or value <= 0:
            raise InvalidAmount(f"Subscription rate must be a positive integer, got {value!r}")

        await tx.db.execute("UPDATE shops SET subscription_rate = ? WHERE address = ?", (value, shop))
        logger.info(f"Shop {shop[:10]}... subscription rate set to {value}")

    async def set_purchase_open(self, tx: Transition, shop: str, caller: str, is_open: bool = True):
        """Toggle acceptance of new per-item purchases. Existing escrows are unaffected."""
        await self._require_owner(tx, shop, caller)
        await tx.db.execute(
            "UPDATE shops SET purchases_open = ? WHERE address = ?",
            (1 if is_open else 0, shop)
        )
        logger.info(f"Shop {shop[:10]}... purchases {'opened' if is_open else 'closed'}")

    async def update_data(self, tx: Transition, shop: str, pointer: str, metadata: str, caller: str) -> int:
        """
        Append an item to the catalog.

        Returns:
            Index of the new item

        Raises:
            AlreadyExists: pointer already listed in this shop
        """
        record = await self._require_owner(tx, shop, caller)
        if not pointer:
            raise ValueError("Data pointer cannot be empty")

        if await self.find_item(tx.db, shop, pointer) is not None:
            raise AlreadyExists(f"Pointer already listed: {pointer[:16]}...")

        index = await self.get_data_list_size(tx.db, shop)
        await tx.db.execute("""
            INSERT INTO data_items (shop, idx, pointer, metadata, available, created_at)
            VALUES (?, ?, ?, ?, 1, ?)
        """, (shop, index, pointer, metadata or "", tx.now))

        tx.emit(EventName.DATA_ADDED, seller=record.owner, shop=shop, index=index, pointer=pointer)
        return index

    async def withdraw_data(self, tx: Transition, shop: str, pointer: str, caller: str):
        """Mark an item unavailable. Withdrawing twice is a no-op."""
        record = await self._require_owner(tx, shop, caller)

        item = await self.find_item(tx.db, shop, pointer)
        if item is None:
            raise NotFound(f"Pointer not listed: {pointer[:16]}...")
        if not item.available:
            return

        await tx.db.execute(
            "UPDATE data_items SET available = 0 WHERE shop = ? AND pointer = ?",
            (shop, pointer)
        )
        tx.emit(EventName.DATA_WITHDRAWN, seller=record.owner, shop=shop, index=item.index, pointer=pointer)

    async def get_data(self, db: aiosqlite.Connection, shop: str, index: int) -> DataItem:
        cursor = await db.execute(
            "SELECT * FROM data_items WHERE shop = ? AND idx = ?",
            (shop, index)
        )
        row = await cursor.fetchone()
        if not row:
            raise NotFound(f"No data at index {index} in shop {shop[:10]}...")
        return _row_to_item(row)

    async def get_data_list_size(self, db: aiosqlite.Connection, shop: str) -> int:
        cursor = await db.execute("SELECT COUNT(*) FROM data_items WHERE shop = ?", (shop,))
        return (await cursor.fetchone())[0]

    async def find_item(self, db: aiosqlite.Connection, shop: str, pointer: str) -> Optional[DataItem]:
        cursor = await db.execute(
            "SELECT * FROM data_items WHERE shop = ? AND pointer = ?",
            (shop, pointer)
        )
        row = await cursor.fetchone()
        return _row_to_item(row) if row else None

    async def get_data_availability(self, db: aiosqlite.Connection, shop: str, pointer: str) -> bool:
        """Soft check: unknown pointers are simply unavailable."""
        item = await self.find_item(db, shop, pointer)
        return bool(item and item.available)

    async def require_available(self, db: aiosqlite.Connection, shop: str, pointer: str) -> DataItem:
        item = await self.find_item(db, shop, pointer)
        if item is None or not item.available:
            raise NotFound(f"Data not available: {pointer[:16]}...")
        return item

    async def list_data(self, db: aiosqlite.Connection, shop: str, available_only: bool = True) -> List[DataItem]:
        query = "SELECT * FROM data_items WHERE shop = ?"
        if available_only:
            query += " AND available = 1"
        cursor = await db.execute(query + " ORDER BY idx ASC", (shop,))
        return [_row_to_item(row) for row in await cursor.fetchall()]
