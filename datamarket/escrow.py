"""
DataMarket - Escrow Settlement
Per-purchase escrow released only by two-party signed authorization.

State machine of one purchase, keyed by its scriptHash:

    Funded --(seller signs delivery attestation)--> Finalized
    Finalized --(buyer signs confirmation)--> Executed

    Funded --(buyer, after settlement timeout)--> Expired    (refund)
    Finalized --(either party, after timeout)--> Disputed   (supervisor pays out)

Every transition checks the stored state first, so a scriptHash can
pass through each state at most once and a replayed signature hits
InvalidState. Both signatures cover the same digest (see
security.settlement_digest); at execution the verifier runs once per
expected signer.
"""

import os
import hashlib
import logging
from typing import List, Optional
from dataclasses import dataclass, asdict
from enum import Enum

import aiosqlite

from .errors import (
    InsufficientFunds,
    InvalidAmount,
    InvalidState,
    NotFound,
    SignatureInvalid,
    Unauthorized,
)
from .events import EventName
from .ledger import Ledger
from .registry import SellerRegistry
from .security import Signature, SignatureVerifier, address_bytes, settlement_digest
from .shop import ShopCatalog
from .store import MarketStore
from .transition import Transition

logger = logging.getLogger("datamarket.escrow")


PURCHASE_DOMAIN = b"datamarket.purchase"


class EscrowState(Enum):
    """Escrow record lifecycle states."""
    FUNDED = "funded"
    FINALIZED = "finalized"
    EXECUTED = "executed"
    EXPIRED = "expired"
    DISPUTED = "disputed"


@dataclass
class EscrowRecord:
    """
    Escrowed value of one purchase.

    Attributes:
        script_hash: Unique purchase id and replay-guard key
        buyer: Paying party
        seller: Party paid on execution
        shop: Shop the item was bought from
        pointer: Purchased item locator
        amount: Escrowed value
        state: Current EscrowState value
        seller_signature: Delivery attestation (hex), once finalized
        delivery_ref: Off-ledger delivery receipt supplied by the seller
        resolution: Party paid out of a dispute ("seller"/"buyer")
        created_at: Ledger time of funding
        finalized_at: Ledger time of finalization
        closed_at: Ledger time the funds left escrow
    """
    script_hash: str
    buyer: str
    seller: str
    shop: str
    pointer: str
    amount: int
    state: str
    seller_signature: Optional[str] = None
    delivery_ref: Optional[str] = None
    resolution: Optional[str] = None
    created_at: int = 0
    finalized_at: Optional[int] = None
    closed_at: Optional[int] = None

    @property
    def escrow_state(self) -> EscrowState:
        return EscrowState(self.state)

    def to_dict(self) -> dict:
        return asdict(self)


def compute_script_hash(marketplace: str, buyer: str, seller: str, nonce: int, pointer: str) -> str:
    """
    Derive the unique id of a purchase.

    The nonce is the marketplace's global purchase counter, so two
    purchases never share an id even for the same buyer, seller and item.
    """
    material = (
        PURCHASE_DOMAIN
        + address_bytes(marketplace)
        + address_bytes(buyer)
        + address_bytes(seller)
        + nonce.to_bytes(32, "big")
        + pointer.encode("utf-8")
    )
    return "0x" + hashlib.sha3_256(material).hexdigest()


def _row_to_record(row) -> EscrowRecord:
    return EscrowRecord(
        script_hash=row["script_hash"],
        buyer=row["buyer"],
        seller=row["seller"],
        shop=row["shop"],
        pointer=row["pointer"],
        amount=row["amount"],
        state=row["state"],
        seller_signature=row["seller_signature"],
        delivery_ref=row["delivery_ref"],
        resolution=row["resolution"],
        created_at=row["created_at"],
        finalized_at=row["finalized_at"],
        closed_at=row["closed_at"]
    )


class EscrowSettlement:
    """
    Accepts payment into escrow and releases it under 2-of-2 authorization.

    The marketplace never judges delivery quality on the common path: it
    only checks that the seller attested delivery and the buyer confirmed
    receipt, each with a signature over the record's settlement digest.

    Example:
        record = await escrow.purchase_data(tx, buyer, seller, pointer, 50)
        ...
        await escrow.finalize(tx, record.script_hash, seller_sig, delivery_ref)
        ...
        await escrow.execute(tx, record.script_hash, buyer_sig)
    """

    def __init__(
        self,
        registry: SellerRegistry,
        shops: ShopCatalog,
        ledger: Ledger,
        store: MarketStore,
        settlement_timeout: int = None
    ):
        self.registry = registry
        self.shops = shops
        self.ledger = ledger
        self.store = store
        self.settlement_timeout = settlement_timeout if settlement_timeout is not None else int(
            os.getenv("SETTLEMENT_TIMEOUT_SECONDS", str(7 * 24 * 3600))
        )

    # === PURCHASE ===

    async def purchase_data(
        self,
        tx: Transition,
        buyer: str,
        seller: str,
        pointer: str,
        paid: int
    ) -> EscrowRecord:
        """
        Pay the exact item price into escrow.

        Raises:
            NotFound: seller unknown or item not available
            Unauthorized: buyer not registered, or buying from themselves
            InvalidState: purchases closed or price unset
            InvalidAmount: paid != price
            InsufficientFunds: buyer cannot cover paid
        """
        node = await self.registry.require_seller(tx.db, seller)
        shop = await self.shops.require_shop(tx.db, node.shop)

        if await self.registry.get_user(tx.db, buyer) is None:
            raise Unauthorized(f"Buyer is not a registered user: {buyer}")
        if buyer == seller:
            raise Unauthorized("Sellers cannot buy from their own shop")

        if not shop.purchases_open:
            raise InvalidState(f"Shop {shop.address[:10]}... is not accepting purchases")
        if shop.single_price <= 0:
            raise InvalidState(f"Shop {shop.address[:10]}... has no price set")

        if paid != shop.single_price:
            raise InvalidAmount(f"Purchase requires exactly {shop.single_price}, got {paid}")

        await self.shops.require_available(tx.db, shop.address, pointer)

        nonce = await self.store.next_counter(tx.db, "purchase_nonce")
        script_hash = compute_script_hash(tx.marketplace, buyer, seller, nonce, pointer)

        if await self.get_record(tx.db, script_hash) is not None:
            raise InvalidState(f"Script hash collision: {script_hash}")

        try:
            await self.ledger.transfer(tx.db, buyer, tx.marketplace, paid, tx.now, f"escrow {script_hash[:10]}")
        except InsufficientFunds:
            logger.warning(f"Purchase rejected, buyer {buyer[:10]}... cannot cover {paid}")
            raise

        await tx.db.execute("""
            INSERT INTO escrows (script_hash, buyer, seller, shop, pointer, amount, state, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (script_hash, buyer, seller, shop.address, pointer, paid, EscrowState.FUNDED.value, tx.now))

        tx.emit(
            EventName.FUNDED,
            script_hash=script_hash,
            buyer=buyer,
            seller=seller,
            value=paid,
            pointer=pointer
        )
        logger.info(f"Funded {script_hash[:10]}...: {buyer[:10]}... -> {seller[:10]}... ({paid})")

        return await self.require_record(tx.db, script_hash)

    # === SETTLEMENT ===

    async def finalize(
        self,
        tx: Transition,
        script_hash: str,
        signature: Signature,
        delivery_ref: Optional[str] = None
    ) -> EscrowRecord:
        """
        Record the seller's signed delivery attestation.

        Raises:
            NotFound: unknown scriptHash
            InvalidState: record not Funded
            SignatureInvalid: signature does not recover to the seller
        """
        record = await self.require_record(tx.db, script_hash)
        self._require_state(record, EscrowState.FUNDED)

        digest = settlement_digest(tx.marketplace, record.script_hash, record.seller, record.amount)
        if not SignatureVerifier.verify(record.seller, digest, signature):
            raise SignatureInvalid(f"Delivery attestation for {script_hash[:10]}... is not signed by the seller")

        await self._transition(
            tx, record, EscrowState.FUNDED, EscrowState.FINALIZED,
            seller_signature=signature.to_hex(),
            delivery_ref=delivery_ref,
            finalized_at=tx.now
        )

        tx.emit(
            EventName.FULFILLED,
            script_hash=script_hash,
            buyer=record.buyer,
            seller=record.seller,
            to=record.buyer,
            delivery_ref=delivery_ref
        )
        logger.info(f"Finalized {script_hash[:10]}... by seller {record.seller[:10]}...")

        return await self.require_record(tx.db, script_hash)

    async def execute(self, tx: Transition, script_hash: str, signature: Signature) -> EscrowRecord:
        """
        Release escrow to the seller on the buyer's signed confirmation.

        Raises:
            NotFound: unknown scriptHash
            InvalidState: record not Finalized (including replays)
            SignatureInvalid: either signature fails to recover to its party
        """
        record = await self.require_record(tx.db, script_hash)
        self._require_state(record, EscrowState.FINALIZED)

        digest = settlement_digest(tx.marketplace, record.script_hash, record.seller, record.amount)
        seller_signature = Signature.from_hex(record.seller_signature)

        if not SignatureVerifier.verify(record.seller, digest, seller_signature):
            raise SignatureInvalid(f"Stored attestation for {script_hash[:10]}... no longer verifies")
        if not SignatureVerifier.verify(record.buyer, digest, signature):
            raise SignatureInvalid(f"Confirmation for {script_hash[:10]}... is not signed by the buyer")

        await self.ledger.transfer(tx.db, tx.marketplace, record.seller, record.amount, tx.now, f"release {script_hash[:10]}")
        await self._transition(tx, record, EscrowState.FINALIZED, EscrowState.EXECUTED, closed_at=tx.now)

        tx.emit(
            EventName.EXECUTED,
            script_hash=script_hash,
            buyer=record.buyer,
            seller=record.seller,
            value=record.amount
        )
        logger.info(f"Executed {script_hash[:10]}...: released {record.amount} to {record.seller[:10]}...")

        return await self.require_record(tx.db, script_hash)

    # === PARTIAL FAILURE PATHS ===

    async def refund(self, tx: Transition, script_hash: str, caller: str) -> EscrowRecord:
        """
        Return funds to the buyer when the seller never finalized.

        Raises:
            Unauthorized: caller is not the buyer
            InvalidState: record not Funded or timeout not yet reached
        """
        record = await self.require_record(tx.db, script_hash)
        if caller != record.buyer:
            raise Unauthorized("Only the buyer can reclaim an unfinalized escrow")

        self._require_state(record, EscrowState.FUNDED)
        self._require_timed_out(record.created_at, tx.now)

        await self.ledger.transfer(tx.db, tx.marketplace, record.buyer, record.amount, tx.now, f"refund {script_hash[:10]}")
        await self._transition(tx, record, EscrowState.FUNDED, EscrowState.EXPIRED, closed_at=tx.now)

        tx.emit(
            EventName.REFUNDED,
            script_hash=script_hash,
            buyer=record.buyer,
            seller=record.seller,
            value=record.amount
        )
        logger.info(f"Refunded {script_hash[:10]}... to buyer {record.buyer[:10]}...")

        return await self.require_record(tx.db, script_hash)

    async def dispute(self, tx: Transition, script_hash: str, caller: str) -> EscrowRecord:
        """
        Freeze a finalized record the buyer never confirmed.

        Raises:
            Unauthorized: caller is neither buyer nor seller
            InvalidState: record not Finalized or timeout not yet reached
        """
        record = await self.require_record(tx.db, script_hash)
        if caller not in (record.buyer, record.seller):
            raise Unauthorized("Only the purchase parties can open a dispute")

        self._require_state(record, EscrowState.FINALIZED)
        self._require_timed_out(record.finalized_at, tx.now)

        await self._transition(tx, record, EscrowState.FINALIZED, EscrowState.DISPUTED)

        tx.emit(
            EventName.DISPUTED,
            script_hash=script_hash,
            buyer=record.buyer,
            seller=record.seller,
            value=record.amount,
            raised_by=caller
        )
        logger.warning(f"Dispute opened on {script_hash[:10]}... by {caller[:10]}...")

        return await self.require_record(tx.db, script_hash)

    async def resolve_dispute(self, tx: Transition, script_hash: str, award_to_seller: bool) -> EscrowRecord:
        """
        Pay a disputed escrow out to one party, exactly once.
        The caller must already have been checked as the supervisor.
        """
        record = await self.require_record(tx.db, script_hash)
        self._require_state(record, EscrowState.DISPUTED)
        if record.resolution is not None:
            raise InvalidState(f"Dispute on {script_hash[:10]}... already resolved")

        recipient = record.seller if award_to_seller else record.buyer
        resolution = "seller" if award_to_seller else "buyer"

        await self.ledger.transfer(tx.db, tx.marketplace, recipient, record.amount, tx.now, f"dispute {script_hash[:10]}")
        cursor = await tx.db.execute("""
            UPDATE escrows SET resolution = ?, closed_at = ?
            WHERE script_hash = ? AND state = ? AND resolution IS NULL
        """, (resolution, tx.now, script_hash, EscrowState.DISPUTED.value))
        if cursor.rowcount != 1:
            raise InvalidState(f"Dispute on {script_hash[:10]}... changed concurrently")

        tx.emit(
            EventName.DISPUTE_RESOLVED,
            script_hash=script_hash,
            buyer=record.buyer,
            seller=record.seller,
            value=record.amount,
            resolution=resolution
        )
        logger.info(f"Dispute on {script_hash[:10]}... resolved in favour of {resolution}")

        return await self.require_record(tx.db, script_hash)

    # === READS ===

    async def get_record(self, db: aiosqlite.Connection, script_hash: str) -> Optional[EscrowRecord]:
        cursor = await db.execute("SELECT * FROM escrows WHERE script_hash = ?", (script_hash,))
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def require_record(self, db: aiosqlite.Connection, script_hash: str) -> EscrowRecord:
        record = await self.get_record(db, script_hash)
        if record is None:
            raise NotFound(f"Unknown script hash: {script_hash}")
        return record

    async def list_records(
        self,
        db: aiosqlite.Connection,
        buyer: Optional[str] = None,
        seller: Optional[str] = None,
        state: Optional[EscrowState] = None
    ) -> List[EscrowRecord]:
        clauses = []
        params = []
        if buyer:
            clauses.append("buyer = ?")
            params.append(buyer)
        if seller:
            clauses.append("seller = ?")
            params.append(seller)
        if state:
            clauses.append("state = ?")
            params.append(state.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await db.execute(f"SELECT * FROM escrows {where} ORDER BY created_at ASC, rowid ASC", params)
        return [_row_to_record(row) for row in await cursor.fetchall()]

    # === HELPERS ===

    @staticmethod
    def _require_state(record: EscrowRecord, expected: EscrowState):
        if record.state != expected.value:
            raise InvalidState(
                f"Escrow {record.script_hash[:10]}... is {record.state}, expected {expected.value}"
            )

    def _require_timed_out(self, since: Optional[int], now: int):
        if since is None or now < since + self.settlement_timeout:
            raise InvalidState("Settlement timeout has not elapsed")

    async def _transition(
        self,
        tx: Transition,
        record: EscrowRecord,
        expected: EscrowState,
        target: EscrowState,
        **columns
    ):
        """Compare-and-set the record state, updating extra columns with it."""
        assignments = ", ".join(["state = ?"] + [f"{column} = ?" for column in columns])
        params = [target.value] + list(columns.values()) + [record.script_hash, expected.value]

        cursor = await tx.db.execute(
            f"UPDATE escrows SET {assignments} WHERE script_hash = ? AND state = ?",
            params
        )
        if cursor.rowcount != 1:
            raise InvalidState(f"Escrow {record.script_hash[:10]}... left {expected.value} concurrently")
