"""
DataMarket - Subscription Ledger
Time-bounded entitlements that substitute for per-item payment.

A subscription is bought once for a number of time units at the shop's
posted rate and checked on every subsequent access. Renewing replaces
the previous entitlement: the new expiry counts from now and any time
left on the old one is discarded.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass, asdict
from enum import Enum

import aiosqlite

from .errors import InvalidAmount, InvalidState, SubscriptionInvalid, Unauthorized
from .events import EventName
from .ledger import Ledger
from .registry import SellerRegistry
from .shop import DataItem, ShopCatalog
from .transition import Transition

logger = logging.getLogger("datamarket.subscriptions")


class SubscriptionStatus(Enum):
    """Entitlement state at a given moment."""
    ACTIVE = "active"
    EXPIRED = "expired"
    NONE = "none"


@dataclass
class SubscriptionEntry:
    """
    Entitlement of a buyer to a seller's catalog.

    Attributes:
        buyer: Subscriber address
        seller: Seller whose data may be accessed
        expires_at: Ledger time at which access ends (exclusive)
        paid: Amount paid for the current entitlement
        updated_at: Ledger time of the last (re)subscription
    """
    buyer: str
    seller: str
    expires_at: int
    paid: int
    updated_at: int

    def is_valid(self, now: int) -> bool:
        return now < self.expires_at

    def status(self, now: int) -> SubscriptionStatus:
        return SubscriptionStatus.ACTIVE if self.is_valid(now) else SubscriptionStatus.EXPIRED

    def to_dict(self) -> dict:
        return asdict(self)


class SubscriptionLedger:
    """
    Maps (buyer, seller) pairs to entitlement expiry.

    Subscriptions are not affected by the shop's per-item purchase gate;
    a closed shop still sells and honours subscriptions.
    """

    def __init__(
        self,
        registry: SellerRegistry,
        shops: ShopCatalog,
        ledger: Ledger,
        time_unit: int = None
    ):
        self.registry = registry
        self.shops = shops
        self.ledger = ledger
        self.time_unit = time_unit if time_unit is not None else int(
            os.getenv("SUBSCRIPTION_TIME_UNIT_SECONDS", "1")
        )
        if self.time_unit <= 0:
            raise ValueError("Subscription time unit must be positive")

    async def subscribe(
        self,
        tx: Transition,
        buyer: str,
        seller: str,
        duration_units: int,
        paid: int
    ) -> SubscriptionEntry:
        """
        Buy an entitlement, replacing any existing one.

        Raises:
            NotFound: seller not registered
            Unauthorized: buyer not a registered user
            InvalidState: shop does not offer subscriptions
            InvalidAmount: paid != duration_units * rate
        """
        node = await self.registry.require_seller(tx.db, seller)
        shop = await self.shops.require_shop(tx.db, node.shop)

        if await self.registry.get_user(tx.db, buyer) is None:
            raise Unauthorized(f"Buyer is not a registered user: {buyer}")
        if buyer == seller:
            raise Unauthorized("Sellers cannot subscribe to their own shop")

        if shop.subscription_rate <= 0:
            raise InvalidState(f"Shop {shop.address[:10]}... does not offer subscriptions")

        if not isinstance(duration_units, int) or duration_units <= 0:
            raise InvalidAmount(f"Duration must be a positive integer, got {duration_units!r}")

        required = duration_units * shop.subscription_rate
        if paid != required:
            raise InvalidAmount(f"Subscription requires exactly {required}, got {paid}")

        await self.ledger.transfer(tx.db, buyer, seller, paid, tx.now, "subscription")

        expires_at = tx.now + duration_units * self.time_unit
        await tx.db.execute("""
            INSERT INTO subscriptions (buyer, seller, expires_at, paid, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(buyer, seller) DO UPDATE SET
                expires_at = excluded.expires_at,
                paid = excluded.paid,
                updated_at = excluded.updated_at
        """, (buyer, seller, expires_at, paid, tx.now))

        tx.emit(
            EventName.SUBSCRIBED,
            buyer=buyer,
            seller=seller,
            value=paid,
            duration_units=duration_units,
            expires_at=expires_at
        )
        logger.info(f"Subscription {buyer[:10]}... -> {seller[:10]}... until {expires_at}")

        return SubscriptionEntry(
            buyer=buyer,
            seller=seller,
            expires_at=expires_at,
            paid=paid,
            updated_at=tx.now
        )

    async def get_entry(self, db: aiosqlite.Connection, buyer: str, seller: str) -> Optional[SubscriptionEntry]:
        cursor = await db.execute(
            "SELECT * FROM subscriptions WHERE buyer = ? AND seller = ?",
            (buyer, seller)
        )
        row = await cursor.fetchone()
        if not row:
            return None

        return SubscriptionEntry(
            buyer=row["buyer"],
            seller=row["seller"],
            expires_at=row["expires_at"],
            paid=row["paid"],
            updated_at=row["updated_at"]
        )

    async def is_valid(self, db: aiosqlite.Connection, buyer: str, seller: str, now: int) -> bool:
        """True strictly while now < expires_at."""
        entry = await self.get_entry(db, buyer, seller)
        return bool(entry and entry.is_valid(now))

    async def purchase_by_subscription(
        self,
        tx: Transition,
        buyer: str,
        seller: str,
        pointer: str
    ) -> DataItem:
        """
        Grant access to one item under an active entitlement.
        No payment moves and no escrow record is created.

        Raises:
            SubscriptionInvalid: no active entitlement
            NotFound: seller or item unknown, or item withdrawn
        """
        if not await self.is_valid(tx.db, buyer, seller, tx.now):
            raise SubscriptionInvalid(f"Subscription invalid for {buyer[:10]}... at {seller[:10]}...")

        node = await self.registry.require_seller(tx.db, seller)
        item = await self.shops.require_available(tx.db, node.shop, pointer)

        tx.emit(
            EventName.SUBSCRIPTION_ACCESS,
            buyer=buyer,
            seller=seller,
            pointer=pointer,
            index=item.index
        )
        return item
