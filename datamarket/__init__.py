"""
DataMarket - Decentralized Data Marketplace Settlement Protocol

Sellers publish catalogs of addressable data items; buyers pay per item
through escrow or subscribe for a time window. Escrowed funds are
released to the seller only when both the seller's delivery attestation
and the buyer's confirmation are signed over the purchase's settlement
digest.

Usage:
    from datamarket import Marketplace, AccountSigner

    market = Marketplace(owner=supervisor.address, db_path="market.db")
    await market.start()

    record = await market.purchase_data(seller, mam_root, caller=buyer, value=50)

    sig = seller_key.sign_settlement(market.address, record.script_hash, seller, 50)
    await market.finalize(record.script_hash, sig, caller=seller)

    sig = buyer_key.sign_settlement(market.address, record.script_hash, seller, 50)
    await market.execute(record.script_hash, sig, caller=buyer)
"""

# Core
from .marketplace import Marketplace
from .store import MarketStore
from .ledger import Ledger

# Protocol components
from .registry import SellerRegistry, SellerNode, UserRecord
from .shop import ShopCatalog, Shop, ShopHandle, DataItem
from .subscriptions import SubscriptionLedger, SubscriptionEntry, SubscriptionStatus
from .escrow import EscrowSettlement, EscrowRecord, EscrowState, compute_script_hash

# Signatures
from .security import (
    AccountSigner,
    Signature,
    SignatureVerifier,
    ZERO_ADDRESS,
    normalize_address,
    normalize_hash,
    request_digest,
    settlement_digest
)

# Events
from .events import Event, EventBus, EventName, Webhook

# Errors
from .errors import (
    ErrorCode,
    MarketplaceError,
    Unauthorized,
    SignatureInvalid,
    InvalidAmount,
    InsufficientFunds,
    NotFound,
    AlreadyExists,
    InvalidState,
    SubscriptionInvalid,
    InvalidAddress,
    InvalidHash
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Marketplace",
    "MarketStore",
    "Ledger",

    # Protocol components
    "SellerRegistry",
    "SellerNode",
    "UserRecord",
    "ShopCatalog",
    "Shop",
    "ShopHandle",
    "DataItem",
    "SubscriptionLedger",
    "SubscriptionEntry",
    "SubscriptionStatus",
    "EscrowSettlement",
    "EscrowRecord",
    "EscrowState",
    "compute_script_hash",

    # Signatures
    "AccountSigner",
    "Signature",
    "SignatureVerifier",
    "ZERO_ADDRESS",
    "normalize_address",
    "normalize_hash",
    "request_digest",
    "settlement_digest",

    # Events
    "Event",
    "EventBus",
    "EventName",
    "Webhook",

    # Errors
    "ErrorCode",
    "MarketplaceError",
    "Unauthorized",
    "SignatureInvalid",
    "InvalidAmount",
    "InsufficientFunds",
    "NotFound",
    "AlreadyExists",
    "InvalidState",
    "SubscriptionInvalid",
    "InvalidAddress",
    "InvalidHash",

    # Metadata
    "__version__",
]
