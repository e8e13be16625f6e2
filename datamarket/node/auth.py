"""
DataMarket Node - Request Authentication
Binds the X-Caller-Address of each state-changing request to a signature.

Headers:
- X-Caller-Address:   account acting on the marketplace
- X-Caller-Signature: 65-byte hex r|s|v over request_digest()
- X-Caller-Timestamp: unix seconds the request was signed at
- X-Caller-Nonce:     single-use value chosen by the client

A request is accepted once per (address, nonce) within the allowed
clock skew; anything older than the skew window is refused outright,
so the nonce cache only has to remember that window.
"""

import os
import logging
from typing import Dict, Optional, Tuple

from fastapi import HTTPException, Request

from datamarket import (
    InvalidAddress,
    Marketplace,
    Signature,
    SignatureInvalid,
    SignatureVerifier,
    normalize_address,
    request_digest,
)

logger = logging.getLogger("datamarket.node.auth")


AUTH_HEADERS = ("X-Caller-Address", "X-Caller-Signature", "X-Caller-Timestamp", "X-Caller-Nonce")

MAX_NONCE_LENGTH = 128


class RequestAuthenticator:
    """
    FastAPI dependency resolving the authenticated caller of a request.

    Example:
        auth = RequestAuthenticator(market)

        @app.post("/deposits")
        async def deposit(body: DepositRequest, caller: str = Depends(auth)):
            ...
    """

    def __init__(self, market: Marketplace, max_skew: Optional[int] = None):
        self.market = market
        self.max_skew = max_skew or int(os.getenv("REQUEST_MAX_SKEW_SECONDS", "300"))

        # (address, nonce) -> expiry
        self._seen: Dict[Tuple[str, str], int] = {}

    async def __call__(self, request: Request) -> str:
        missing = [name for name in AUTH_HEADERS if not request.headers.get(name)]
        if missing:
            raise HTTPException(
                status_code=401,
                detail={
                    "error": "authentication_required",
                    "message": f"Missing headers: {', '.join(missing)}"
                }
            )

        headers = request.headers
        nonce = headers["X-Caller-Nonce"]

        try:
            caller = normalize_address(headers["X-Caller-Address"])
            timestamp = int(headers["X-Caller-Timestamp"])
            signature = Signature.from_hex(headers["X-Caller-Signature"])
        except (InvalidAddress, ValueError):
            raise SignatureInvalid("Malformed authentication headers") from None

        if len(nonce) > MAX_NONCE_LENGTH:
            raise SignatureInvalid("Nonce too long")

        now = self.market.clock()
        if abs(now - timestamp) > self.max_skew:
            raise SignatureInvalid(f"Request timestamp outside {self.max_skew}s window")

        body = await request.body()
        digest = request_digest(
            self.market.address,
            request.method,
            request.url.path,
            body,
            timestamp,
            nonce
        )
        if not SignatureVerifier.verify(caller, digest, signature):
            raise SignatureInvalid("Request signature does not match X-Caller-Address")

        self._remember(caller, nonce, now)
        return caller

    def _remember(self, caller: str, nonce: str, now: int):
        """Record a nonce as used, refusing one already seen."""
        self._seen = {key: expiry for key, expiry in self._seen.items() if expiry >= now}

        key = (caller, nonce)
        if key in self._seen:
            logger.warning(f"Replayed request nonce from {caller[:10]}...")
            raise SignatureInvalid("Request nonce already used")

        # Timestamps up to max_skew ahead stay valid for up to 2 * max_skew
        self._seen[key] = now + 2 * self.max_skew
