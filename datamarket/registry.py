"""
DataMarket - Seller Registry
Registered identities and the chain of active sellers.

Sellers form a singly linked chain stored as rows keyed by address,
each holding the address of the next seller. The chain starts and ends
at the ZERO_ADDRESS sentinel row:

    ZERO -> newest -> ... -> oldest -> ZERO

Insertion happens at the head. Removal walks from the sentinel to find
the predecessor and relinks it to the successor in one update.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional
from dataclasses import dataclass, asdict

import aiosqlite

from .errors import AlreadyExists, InvalidState, NotFound
from .events import EventName
from .security import ZERO_ADDRESS
from .shop import ShopCatalog, ShopHandle
from .store import MarketStore
from .transition import Transition

logger = logging.getLogger("datamarket.registry")


@dataclass(frozen=True)
class UserRecord:
    """A registered participant; immutable once created."""
    address: str
    external_id: str
    created_at: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SellerNode:
    """
    One link of the seller chain.

    Attributes:
        address: Seller address
        shop: Address of the seller's shop
        next_address: Following seller (ZERO_ADDRESS at the tail)
        info: Public profile data supplied at registration
        registered_at: Ledger time of registration
    """
    address: str
    shop: str
    next_address: str
    info: str
    registered_at: int

    def to_dict(self) -> dict:
        return asdict(self)


class SellerRegistry:
    """
    Users and the seller chain.

    Example:
        registry = SellerRegistry(store, shops)
        handle = await registry.register_shop(tx, seller, "weather feeds")
        async for address in registry.iter_sellers():
            ...
    """

    def __init__(self, store: MarketStore, shops: ShopCatalog):
        self.store = store
        self.shops = shops

    async def init_chain(self, db: aiosqlite.Connection, now: int):
        """Create the sentinel row if the chain is empty."""
        await db.execute("""
            INSERT OR IGNORE INTO sellers (address, next_address, shop, info, registered_at)
            VALUES (?, ?, NULL, '', ?)
        """, (ZERO_ADDRESS, ZERO_ADDRESS, now))

    # === USERS ===

    async def register_user(self, tx: Transition, address: str, external_id: str) -> UserRecord:
        if address == ZERO_ADDRESS:
            raise InvalidState("The zero address cannot be registered")
        if not external_id:
            raise ValueError("External id cannot be empty")

        if await self.get_user(tx.db, address) is not None:
            raise AlreadyExists(f"User already registered: {address}")

        await tx.db.execute(
            "INSERT INTO users (address, external_id, created_at) VALUES (?, ?, ?)",
            (address, external_id, tx.now)
        )

        tx.emit(EventName.USER_REGISTERED, address=address, external_id=external_id)
        logger.info(f"Registered user {address[:10]}... ({external_id})")
        return UserRecord(address=address, external_id=external_id, created_at=tx.now)

    async def get_user(self, db: aiosqlite.Connection, address: str) -> Optional[UserRecord]:
        cursor = await db.execute("SELECT * FROM users WHERE address = ?", (address,))
        row = await cursor.fetchone()
        if not row:
            return None
        return UserRecord(address=row["address"], external_id=row["external_id"], created_at=row["created_at"])

    # === SELLERS ===

    async def register_shop(self, tx: Transition, seller: str, info: str) -> ShopHandle:
        """
        Allocate a shop for a registered user and link it at the head.

        Raises:
            AlreadyExists: seller is already in the chain
            NotFound: seller is not a registered user
        """
        if await self._get_link(tx.db, seller) is not None:
            raise AlreadyExists(f"Seller already registered: {seller}")

        if seller == ZERO_ADDRESS or await self.get_user(tx.db, seller) is None:
            raise NotFound(f"Seller is not a registered user: {seller}")

        allocation = await self.store.next_counter(tx.db, "shop_allocations")
        handle = await self.shops.create(tx, seller, allocation)

        head = await self._get_link(tx.db, ZERO_ADDRESS)
        await tx.db.execute("""
            INSERT INTO sellers (address, next_address, shop, info, registered_at)
            VALUES (?, ?, ?, ?, ?)
        """, (seller, head, handle.address, info or "", tx.now))
        await self._set_link(tx.db, ZERO_ADDRESS, seller)

        tx.emit(EventName.SELLER_REGISTERED, seller=seller, shop=handle.address, info=info or "")
        logger.info(f"Registered seller {seller[:10]}... with shop {handle.address[:10]}...")
        return handle

    async def remove_shop(self, tx: Transition, seller: str) -> SellerNode:
        """
        Unlink a seller from the chain and delist its shop.

        Raises:
            NotFound: seller is not in the chain
        """
        if seller == ZERO_ADDRESS:
            raise NotFound("The sentinel cannot be removed")

        links = await self._load_links(tx.db)

        previous = ZERO_ADDRESS
        for current in self._walk(links):
            if current == seller:
                break
            previous = current
        else:
            raise NotFound(f"Seller not registered: {seller}")

        node = await self.get_seller(tx.db, seller)

        await self._set_link(tx.db, previous, links[seller])
        await tx.db.execute("DELETE FROM sellers WHERE address = ?", (seller,))
        await self.shops.delist(tx, node.shop)

        tx.emit(EventName.SELLER_REMOVED, seller=seller, shop=node.shop)
        logger.info(f"Removed seller {seller[:10]}... (predecessor {previous[:10]}...)")
        return node

    async def get_seller(self, db: aiosqlite.Connection, address: str) -> Optional[SellerNode]:
        if address == ZERO_ADDRESS:
            return None

        cursor = await db.execute("SELECT * FROM sellers WHERE address = ?", (address,))
        row = await cursor.fetchone()
        if not row:
            return None

        return SellerNode(
            address=row["address"],
            shop=row["shop"],
            next_address=row["next_address"],
            info=row["info"],
            registered_at=row["registered_at"]
        )

    async def require_seller(self, db: aiosqlite.Connection, address: str) -> SellerNode:
        node = await self.get_seller(db, address)
        if node is None:
            raise NotFound(f"Seller not registered: {address}")
        return node

    async def next_seller(self, db: aiosqlite.Connection, address: str) -> str:
        """
        Discovery step: the seller following address in the chain.

        Starting from ZERO_ADDRESS yields the newest seller; reaching
        ZERO_ADDRESS again means the walk is complete.
        """
        following = await self._get_link(db, address)
        if following is None:
            raise NotFound(f"Address is not in the seller chain: {address}")
        return following

    async def list_sellers(self, db: aiosqlite.Connection) -> List[str]:
        """Snapshot of the chain, newest first."""
        links = await self._load_links(db)
        return list(self._walk(links))

    async def iter_sellers(self) -> AsyncIterator[str]:
        """
        Lazily yield seller addresses from a consistent snapshot.
        Each call re-walks the chain from the sentinel.
        """
        async with self.store.reader() as db:
            sellers = await self.list_sellers(db)

        for address in sellers:
            yield address

    # === CHAIN HELPERS ===

    async def _get_link(self, db: aiosqlite.Connection, address: str) -> Optional[str]:
        cursor = await db.execute("SELECT next_address FROM sellers WHERE address = ?", (address,))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def _set_link(self, db: aiosqlite.Connection, address: str, next_address: str):
        await db.execute(
            "UPDATE sellers SET next_address = ? WHERE address = ?",
            (next_address, address)
        )

    async def _load_links(self, db: aiosqlite.Connection) -> Dict[str, str]:
        cursor = await db.execute("SELECT address, next_address FROM sellers")
        return {row[0]: row[1] for row in await cursor.fetchall()}

    @staticmethod
    def _walk(links: Dict[str, str]):
        """Follow next pointers from the sentinel until it comes back around."""
        seen = set()
        current = links.get(ZERO_ADDRESS, ZERO_ADDRESS)

        while current != ZERO_ADDRESS:
            if current in seen or current not in links:
                raise InvalidState(f"Seller chain corrupted at {current}")
            seen.add(current)
            yield current
            current = links[current]
