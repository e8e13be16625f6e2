"""
DataMarket - Protocol Errors
Failure taxonomy shared by every marketplace operation.

Any of these raised inside a transition aborts the whole call: the
underlying SQLite transaction is rolled back and no partial write is
ever observed.
"""

from enum import Enum


class ErrorCode(Enum):
    """Enumeration of protocol failures."""
    UNAUTHORIZED = "unauthorized"
    SIGNATURE_INVALID = "signature_invalid"
    INVALID_AMOUNT = "invalid_amount"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    INVALID_STATE = "invalid_state"
    SUBSCRIPTION_INVALID = "subscription_invalid"
    INVALID_ADDRESS = "invalid_address"
    INVALID_HASH = "invalid_hash"


class MarketplaceError(Exception):
    """Base class for all protocol failures."""

    code = ErrorCode.INVALID_STATE

    def __init__(self, message: str = ""):
        super().__init__(message or self.code.value)
        self.message = message or self.code.value

    def to_dict(self) -> dict:
        return {"error": self.code.value, "message": self.message}


class Unauthorized(MarketplaceError):
    """Caller is not the expected owner or party for the operation."""
    code = ErrorCode.UNAUTHORIZED


class SignatureInvalid(Unauthorized):
    """Recovered signer does not match the expected party."""
    code = ErrorCode.SIGNATURE_INVALID


class InvalidAmount(MarketplaceError):
    """Payment does not exactly match the required price or rate."""
    code = ErrorCode.INVALID_AMOUNT


class InsufficientFunds(InvalidAmount):
    code = ErrorCode.INSUFFICIENT_FUNDS


class NotFound(MarketplaceError):
    """Unknown seller, shop, record or index."""
    code = ErrorCode.NOT_FOUND


class AlreadyExists(MarketplaceError):
    code = ErrorCode.ALREADY_EXISTS


class InvalidState(MarketplaceError):
    """Record is not in the state the operation requires."""
    code = ErrorCode.INVALID_STATE


class SubscriptionInvalid(MarketplaceError):
    code = ErrorCode.SUBSCRIPTION_INVALID


class InvalidAddress(MarketplaceError):
    code = ErrorCode.INVALID_ADDRESS


class InvalidHash(MarketplaceError):
    code = ErrorCode.INVALID_HASH
