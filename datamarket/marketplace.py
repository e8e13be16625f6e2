"""
DataMarket - Marketplace
The single state object of one marketplace deployment.

All protocol state is owned by one Marketplace. It is initialised once
(the supervisor and the marketplace's own address are fixed at first
start and never reset) and mutated only through the operations below.
Each operation is one atomic transition:

- calls are serialised by an asyncio lock, one transition at a time
- all writes share one SQLite transaction
- any failure rolls back every effect, events included
- committed events are published after the lock is released, so
  listeners may submit follow-up calls

Operations that act on behalf of someone take that identity as the
keyword argument ``caller``; payments are always the explicit ``value``.
"""

import os
import time
import asyncio
import secrets
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from dotenv import load_dotenv

from .errors import NotFound, Unauthorized
from .escrow import EscrowRecord, EscrowSettlement, EscrowState
from .events import Event, EventBus, EventLog
from .ledger import Ledger
from .registry import SellerNode, SellerRegistry, UserRecord
from .security import (
    Signature,
    address_bytes,
    derive_address,
    normalize_address,
    normalize_hash,
    settlement_digest,
)
from .shop import DataItem, Shop, ShopCatalog, ShopHandle
from .store import MarketStore
from .subscriptions import SubscriptionEntry, SubscriptionLedger
from .transition import Transition

load_dotenv()

logger = logging.getLogger("datamarket.marketplace")


class Marketplace:
    """
    Decentralized data marketplace settlement protocol.

    Args:
        owner: Supervising identity allowed to register users and shops
        db_path: SQLite file holding the protocol state
        clock: Callable returning ledger time in seconds
        subscription_time_unit: Seconds per subscription time unit
        settlement_timeout: Seconds before refund/dispute paths open
        event_bus: Bus used to publish committed events

    Example:
        market = Marketplace(owner=supervisor, db_path="market.db")
        await market.start()

        await market.register_user(seller, "SELLER-1", caller=supervisor)
        shop = await market.register_shop(seller, "air quality", caller=supervisor)
        await market.set_price(shop.address, 50, caller=seller)
        await market.update_data(shop.address, mam_root, "{}", caller=seller)
        await market.set_purchase_open(shop.address, caller=seller)

        record = await market.purchase_data(seller, mam_root, caller=buyer, value=50)
    """

    def __init__(
        self,
        owner: str = None,
        db_path: str = None,
        clock: Optional[Callable[[], int]] = None,
        subscription_time_unit: int = None,
        settlement_timeout: int = None,
        event_bus: Optional[EventBus] = None
    ):
        self.owner = normalize_address(owner or os.getenv("SUPERVISOR_ADDRESS", ""))
        self.store = MarketStore(db_path or os.getenv("DATAMARKET_DB_PATH", "datamarket.db"))
        self.clock = clock or (lambda: int(time.time()))

        self.ledger = Ledger()
        self.shops = ShopCatalog()
        self.registry = SellerRegistry(self.store, self.shops)
        self.subscriptions = SubscriptionLedger(
            self.registry, self.shops, self.ledger,
            time_unit=subscription_time_unit
        )
        self.escrow = EscrowSettlement(
            self.registry, self.shops, self.ledger, self.store,
            settlement_timeout=settlement_timeout
        )

        self.event_log = EventLog()
        self.events = event_bus or EventBus()

        self.address: Optional[str] = None
        self._lock = asyncio.Lock()

    # === LIFECYCLE ===

    async def init_db(self):
        """
        Create the schema and fix the deployment identity on first run.

        Raises:
            Unauthorized: the store was deployed by another supervisor
        """
        if self.address:
            return

        await self.store.init_db()

        async with self.store.transaction() as db:
            deployed_owner = await self.store.get_meta(db, "owner")

            if deployed_owner is None:
                now = self.clock()
                address = derive_address(
                    b"datamarket.marketplace",
                    address_bytes(self.owner),
                    now.to_bytes(8, "big"),
                    secrets.token_bytes(16)
                )
                await self.store.set_meta(db, "owner", self.owner)
                await self.store.set_meta(db, "address", address)
                await self.store.set_meta(db, "deployed_at", str(now))
                await self.registry.init_chain(db, now)
                logger.info(f"Deployed marketplace {address} (supervisor {self.owner[:10]}...)")

            elif deployed_owner != self.owner:
                raise Unauthorized(f"Store {self.store.db_path} belongs to supervisor {deployed_owner}")

            self.address = await self.store.get_meta(db, "address")

        logger.info(f"Marketplace ready: {self.address} ({self.store.db_path})")

    async def start(self):
        """Initialise state and open event delivery."""
        await self.init_db()
        await self.events.start()

    async def close(self):
        await self.events.stop()

    @asynccontextmanager
    async def _transition(self) -> AsyncIterator[Transition]:
        await self.init_db()

        async with self._lock:
            async with self.store.transaction() as db:
                tx = Transition(db=db, now=self.clock(), marketplace=self.address, owner=self.owner)
                yield tx
                for event in tx.events:
                    await self.event_log.append(db, event)

        await self.events.publish(tx.events)

    def _require_supervisor(self, caller: str):
        if caller != self.owner:
            raise Unauthorized(f"{caller[:10]}... is not the marketplace supervisor")

    # === REGISTRATION (supervisor) ===

    async def register_user(self, address: str, external_id: str, *, caller: str) -> UserRecord:
        caller, address = normalize_address(caller), normalize_address(address)
        self._require_supervisor(caller)

        async with self._transition() as tx:
            return await self.registry.register_user(tx, address, external_id)

    async def register_shop(self, seller: str, info: str = "", *, caller: str) -> ShopHandle:
        caller, seller = normalize_address(caller), normalize_address(seller)
        self._require_supervisor(caller)

        async with self._transition() as tx:
            return await self.registry.register_shop(tx, seller, info)

    async def remove_shop(self, seller: str, *, caller: str) -> SellerNode:
        """Unlink a seller. Allowed for the supervisor and the seller itself."""
        caller, seller = normalize_address(caller), normalize_address(seller)
        if caller not in (self.owner, seller):
            raise Unauthorized(f"{caller[:10]}... cannot remove seller {seller[:10]}...")

        async with self._transition() as tx:
            return await self.registry.remove_shop(tx, seller)

    async def deposit(self, address: str, amount: int, *, caller: str) -> int:
        """Credit native funds to an account (supervisor faucet)."""
        caller, address = normalize_address(caller), normalize_address(address)
        self._require_supervisor(caller)

        async with self._transition() as tx:
            return await self.ledger.credit(tx.db, address, amount, tx.now, "deposit")

    # === DISCOVERY ===

    async def get_user(self, address: str) -> Optional[UserRecord]:
        async with self.store.reader() as db:
            return await self.registry.get_user(db, normalize_address(address))

    async def get_seller(self, address: str) -> Optional[SellerNode]:
        async with self.store.reader() as db:
            return await self.registry.get_seller(db, normalize_address(address))

    async def next_seller(self, address: str) -> str:
        await self.init_db()
        async with self.store.reader() as db:
            return await self.registry.next_seller(db, normalize_address(address))

    async def list_sellers(self) -> List[str]:
        await self.init_db()
        async with self.store.reader() as db:
            return await self.registry.list_sellers(db)

    async def iter_sellers(self) -> AsyncIterator[str]:
        await self.init_db()
        async for address in self.registry.iter_sellers():
            yield address

    # === SHOP (owner only) ===

    async def set_price(self, shop: str, value: int, *, caller: str):
        async with self._transition() as tx:
            await self.shops.set_price(tx, normalize_address(shop), value, normalize_address(caller))

    async def set_subscription_rate(self, shop: str, value: int, *, caller: str):
        async with self._transition() as tx:
            await self.shops.set_subscription_rate(tx, normalize_address(shop), value, normalize_address(caller))

    async def set_purchase_open(self, shop: str, *, caller: str):
        async with self._transition() as tx:
            await self.shops.set_purchase_open(tx, normalize_address(shop), normalize_address(caller), True)

    async def set_purchase_close(self, shop: str, *, caller: str):
        async with self._transition() as tx:
            await self.shops.set_purchase_open(tx, normalize_address(shop), normalize_address(caller), False)

    async def update_data(self, shop: str, pointer: str, metadata: str = "", *, caller: str) -> int:
        async with self._transition() as tx:
            return await self.shops.update_data(
                tx, normalize_address(shop), pointer, metadata, normalize_address(caller)
            )

    async def withdraw_data(self, shop: str, pointer: str, *, caller: str):
        async with self._transition() as tx:
            await self.shops.withdraw_data(tx, normalize_address(shop), pointer, normalize_address(caller))

    async def get_shop(self, shop: str) -> Shop:
        async with self.store.reader() as db:
            record = await self.shops.get_shop(db, normalize_address(shop))
        if record is None:
            raise NotFound(f"Shop not found: {shop}")
        return record

    async def get_data(self, shop: str, index: int) -> DataItem:
        async with self.store.reader() as db:
            return await self.shops.get_data(db, normalize_address(shop), index)

    async def get_data_list_size(self, shop: str) -> int:
        async with self.store.reader() as db:
            return await self.shops.get_data_list_size(db, normalize_address(shop))

    async def get_data_availability(self, shop: str, pointer: str) -> bool:
        async with self.store.reader() as db:
            return await self.shops.get_data_availability(db, normalize_address(shop), pointer)

    async def list_data(self, shop: str, available_only: bool = True) -> List[DataItem]:
        async with self.store.reader() as db:
            return await self.shops.list_data(db, normalize_address(shop), available_only)

    # === ESCROW ===

    async def purchase_data(self, seller: str, pointer: str, *, caller: str, value: int) -> EscrowRecord:
        async with self._transition() as tx:
            return await self.escrow.purchase_data(
                tx, normalize_address(caller), normalize_address(seller), pointer, value
            )

    async def finalize(
        self,
        script_hash: str,
        signature: Signature,
        *,
        caller: str,
        delivery_ref: Optional[str] = None
    ) -> EscrowRecord:
        """
        Submit the seller's delivery attestation. The signature is the
        authority; caller is only recorded, so a relayer may submit it.
        """
        caller, script_hash = normalize_address(caller), normalize_hash(script_hash)
        async with self._transition() as tx:
            record = await self.escrow.finalize(tx, script_hash, signature, delivery_ref)
        logger.debug(f"Finalize of {script_hash[:10]}... submitted by {caller[:10]}...")
        return record

    async def execute(self, script_hash: str, signature: Signature, *, caller: str) -> EscrowRecord:
        """
        Submit the buyer's confirmation and release escrow. May be
        submitted by the buyer or an agent holding the buyer's signature.
        """
        caller, script_hash = normalize_address(caller), normalize_hash(script_hash)
        async with self._transition() as tx:
            record = await self.escrow.execute(tx, script_hash, signature)
        logger.debug(f"Execute of {script_hash[:10]}... submitted by {caller[:10]}...")
        return record

    async def refund(self, script_hash: str, *, caller: str) -> EscrowRecord:
        async with self._transition() as tx:
            return await self.escrow.refund(tx, normalize_hash(script_hash), normalize_address(caller))

    async def dispute(self, script_hash: str, *, caller: str) -> EscrowRecord:
        async with self._transition() as tx:
            return await self.escrow.dispute(tx, normalize_hash(script_hash), normalize_address(caller))

    async def resolve_dispute(self, script_hash: str, award_to_seller: bool, *, caller: str) -> EscrowRecord:
        self._require_supervisor(normalize_address(caller))
        async with self._transition() as tx:
            return await self.escrow.resolve_dispute(tx, normalize_hash(script_hash), award_to_seller)

    async def get_escrow(self, script_hash: str) -> EscrowRecord:
        async with self.store.reader() as db:
            return await self.escrow.require_record(db, normalize_hash(script_hash))

    async def list_escrows(
        self,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        state: Optional[EscrowState] = None
    ) -> List[EscrowRecord]:
        async with self.store.reader() as db:
            return await self.escrow.list_records(
                db,
                buyer=normalize_address(buyer) if buyer else None,
                seller=normalize_address(seller) if seller else None,
                state=state
            )

    async def settlement_digest(self, script_hash: str) -> bytes:
        """Digest both parties must sign to release the given escrow."""
        record = await self.get_escrow(script_hash)
        return settlement_digest(self.address, record.script_hash, record.seller, record.amount)

    # === SUBSCRIPTIONS ===

    async def subscribe(self, seller: str, duration_units: int, *, caller: str, value: int) -> SubscriptionEntry:
        async with self._transition() as tx:
            return await self.subscriptions.subscribe(
                tx, normalize_address(caller), normalize_address(seller), duration_units, value
            )

    async def is_subscription_valid(self, buyer: str, seller: str) -> bool:
        async with self.store.reader() as db:
            return await self.subscriptions.is_valid(
                db, normalize_address(buyer), normalize_address(seller), self.clock()
            )

    async def get_subscription(self, buyer: str, seller: str) -> Optional[SubscriptionEntry]:
        async with self.store.reader() as db:
            return await self.subscriptions.get_entry(db, normalize_address(buyer), normalize_address(seller))

    async def purchase_by_subscription(self, seller: str, pointer: str, *, caller: str) -> DataItem:
        async with self._transition() as tx:
            return await self.subscriptions.purchase_by_subscription(
                tx, normalize_address(caller), normalize_address(seller), pointer
            )

    # === BALANCES & EVENTS ===

    async def get_balance(self, address: str) -> int:
        async with self.store.reader() as db:
            return await self.ledger.get_balance(db, normalize_address(address))

    async def get_account(self, address: str, limit: int = 20) -> Dict:
        """Balance totals and recent journal entries of an account."""
        address = normalize_address(address)
        async with self.store.reader() as db:
            stats = await self.ledger.get_account_stats(db, address)
            entries = await self.ledger.get_recent_entries(db, address, limit)

        return {
            "address": address,
            "stats": stats,
            "entries": entries
        }

    async def get_events(
        self,
        name: Optional[str] = None,
        script_hash: Optional[str] = None,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        limit: int = 100
    ) -> List[Event]:
        async with self.store.reader() as db:
            return await self.event_log.query(
                db,
                name=name,
                script_hash=normalize_hash(script_hash) if script_hash else None,
                buyer=normalize_address(buyer) if buyer else None,
                seller=normalize_address(seller) if seller else None,
                limit=limit
            )
