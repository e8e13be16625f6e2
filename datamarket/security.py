"""
DataMarket - Cryptographic Security Module
Recoverable secp256k1 signatures gating escrow release.

Settlement requires two independently signed messages over the same
digest: the seller's delivery attestation and the buyer's confirmation.
The digest is reconstructable by anyone from public call parameters:

    SHA3-256( 0x19 0x00 | marketplace(20) | scriptHash(32) | seller(20) | value(32) )

The fixed 0x19 0x00 prefix and the marketplace's own address keep a
signature made for one purchase, or for one marketplace deployment,
from being accepted anywhere else.
"""

import os
import time
import hashlib
import secrets
import logging
from typing import Any, Dict, Optional
from dataclasses import dataclass

from ecdsa import SECP256k1, SigningKey, VerifyingKey, util

from .errors import InvalidAddress, InvalidHash

logger = logging.getLogger("datamarket.security")


ZERO_ADDRESS = "0x" + "00" * 20

SETTLEMENT_PREFIX = b"\x19\x00"
REQUEST_PREFIX = b"\x19\x01"

SECP256K1_N = SECP256k1.order
HALF_N = SECP256K1_N // 2


def normalize_address(value: Any) -> str:
    """
    Validate and canonicalize an account address.

    Returns:
        Lowercase 0x-prefixed 40 hex digit string

    Raises:
        InvalidAddress: if value is not a 20-byte hex address
    """
    if not isinstance(value, str):
        raise InvalidAddress(f"Address must be a string, got {type(value).__name__}")

    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]

    if len(text) != 40:
        raise InvalidAddress(f"Invalid address length: {value!r}")
    try:
        bytes.fromhex(text)
    except ValueError:
        raise InvalidAddress(f"Invalid address: {value!r}") from None

    return "0x" + text


def normalize_hash(value: Any) -> str:
    """
    Validate and canonicalize a 32-byte hash such as a scriptHash.

    Returns:
        Lowercase 0x-prefixed 64 hex digit string

    Raises:
        InvalidHash: if value is not 32 bytes of hex
    """
    if not isinstance(value, str):
        raise InvalidHash(f"Hash must be a string, got {type(value).__name__}")

    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]

    if len(text) != 64:
        raise InvalidHash(f"Invalid hash length: {value!r}")
    try:
        bytes.fromhex(text)
    except ValueError:
        raise InvalidHash(f"Invalid hash: {value!r}") from None

    return "0x" + text


def address_bytes(address: str) -> bytes:
    """20-byte form of an address."""
    return bytes.fromhex(normalize_address(address)[2:])


def hash_bytes(value: str) -> bytes:
    """32-byte form of a 0x-prefixed hash string."""
    text = value[2:] if value.startswith("0x") else value
    raw = bytes.fromhex(text)
    if len(raw) != 32:
        raise ValueError(f"Expected 32-byte hash, got {len(raw)} bytes")
    return raw


def address_from_public_key(raw_public_key: bytes) -> str:
    """
    Derive an account address from a 64-byte uncompressed public key.
    The address is the last 20 bytes of its SHA3-256 hash.
    """
    return "0x" + hashlib.sha3_256(raw_public_key).digest()[-20:].hex()


def derive_address(*parts: bytes) -> str:
    """Derive a deterministic address (marketplace, shop) from seed material."""
    return "0x" + hashlib.sha3_256(b"".join(parts)).digest()[-20:].hex()


def settlement_digest(marketplace: str, script_hash: str, seller: str, value: int) -> bytes:
    """
    Build the digest both parties sign to release an escrow.

    Args:
        marketplace: Address of the marketplace deployment
        script_hash: Unique purchase identifier (0x + 64 hex)
        seller: Seller address receiving the funds
        value: Escrowed amount
    """
    if value < 0:
        raise ValueError("Settlement value cannot be negative")

    message = (
        SETTLEMENT_PREFIX
        + address_bytes(marketplace)
        + hash_bytes(script_hash)
        + address_bytes(seller)
        + int(value).to_bytes(32, "big")
    )
    return hashlib.sha3_256(message).digest()


def request_digest(
    marketplace: str,
    method: str,
    path: str,
    body: bytes,
    timestamp: int,
    nonce: str
) -> bytes:
    """
    Build the digest a client signs to authenticate one HTTP request.

        SHA3-256( 0x19 0x01 | marketplace(20) | timestamp(8) | SHA3-256(METHOD \\n path \\n nonce) | SHA3-256(body) )

    The 0x01 version byte keeps request signatures apart from
    settlement signatures made by the same key.
    """
    head = "\n".join([method.upper(), path, nonce]).encode("utf-8")
    message = (
        REQUEST_PREFIX
        + address_bytes(marketplace)
        + int(timestamp).to_bytes(8, "big")
        + hashlib.sha3_256(head).digest()
        + hashlib.sha3_256(body or b"").digest()
    )
    return hashlib.sha3_256(message).digest()


@dataclass(frozen=True)
class Signature:
    """
    Recoverable signature as transmitted at the boundary.

    Attributes:
        v: Recovery indicator (27 or 28)
        r: First scalar component
        s: Second scalar component (canonical low-s form)
    """
    v: int
    r: int
    s: int

    def to_bytes(self) -> bytes:
        return self.r.to_bytes(32, "big") + self.s.to_bytes(32, "big") + bytes([self.v])

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()

    @classmethod
    def from_hex(cls, value: str) -> "Signature":
        text = value[2:] if value.startswith("0x") else value
        raw = bytes.fromhex(text)
        if len(raw) != 65:
            raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")
        return cls(
            v=raw[64],
            r=int.from_bytes(raw[:32], "big"),
            s=int.from_bytes(raw[32:64], "big")
        )

    def to_dict(self) -> Dict[str, Any]:
        """Three hex components, fixed width."""
        return {
            "v": self.v,
            "r": "0x" + self.r.to_bytes(32, "big").hex(),
            "s": "0x" + self.s.to_bytes(32, "big").hex()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signature":
        def scalar(x):
            return int(x, 16) if isinstance(x, str) else int(x)

        return cls(v=int(data["v"]), r=scalar(data["r"]), s=scalar(data["s"]))


class SignatureVerifier:
    """
    Recovers and checks the signer of a settlement digest.

    Verification is a plain function of (expected signer, digest,
    signature). Malformed input is a failed verification, never an
    exception, so callers can treat the result as a boolean gate.

    Example:
        digest = settlement_digest(market, script_hash, seller, 50)
        if not SignatureVerifier.verify(seller, digest, sig):
            raise SignatureInvalid(...)
    """

    @staticmethod
    def recover(digest: bytes, signature: Signature) -> Optional[str]:
        """
        Recover the signer address of a digest.

        Returns:
            Signer address, or None if the signature is malformed,
            non-canonical or unrecoverable
        """
        if len(digest) != 32:
            logger.warning(f"Refusing to recover over {len(digest)}-byte digest")
            return None

        if signature.v not in (27, 28):
            logger.warning(f"Invalid recovery indicator: {signature.v}")
            return None

        if not (0 < signature.r < SECP256K1_N) or not (0 < signature.s <= HALF_N):
            logger.warning("Signature scalars out of range or non-canonical")
            return None

        try:
            candidates = VerifyingKey.from_public_key_recovery_with_digest(
                signature.to_bytes()[:64],
                digest,
                curve=SECP256k1,
                hashfunc=hashlib.sha256,
                sigdecode=util.sigdecode_string
            )
        except Exception as e:
            logger.warning(f"Signature recovery failed: {e}")
            return None

        index = signature.v - 27
        if index >= len(candidates):
            return None

        return address_from_public_key(candidates[index].to_string())

    @classmethod
    def verify(cls, expected_signer: str, digest: bytes, signature: Signature) -> bool:
        """
        Check that expected_signer produced signature over digest.

        Returns:
            True only if the recovered address equals expected_signer
        """
        try:
            expected = normalize_address(expected_signer)
        except InvalidAddress:
            return False

        recovered = cls.recover(digest, signature)
        if recovered is None:
            return False

        if recovered != expected:
            logger.warning(f"Signer mismatch: expected {expected[:10]}..., got {recovered[:10]}...")
            return False

        return True


class AccountSigner:
    """
    secp256k1 account able to produce settlement signatures.

    The signing key is loaded from the given hex seed, from an
    environment variable, or generated fresh.

    Example:
        seller = AccountSigner()
        sig = seller.sign_settlement(market, script_hash, seller.address, 50)
        await marketplace.finalize(script_hash, sig, caller=seller.address)
    """

    def __init__(self, private_key_hex: Optional[str] = None, env_var: Optional[str] = None):
        key_hex = private_key_hex or (os.getenv(env_var, "") if env_var else "")

        if key_hex:
            key_hex = key_hex[2:] if key_hex.startswith("0x") else key_hex
            self._signing_key = SigningKey.from_string(bytes.fromhex(key_hex), curve=SECP256k1)
        else:
            self._signing_key = SigningKey.generate(curve=SECP256k1)

        self._verifying_key = self._signing_key.get_verifying_key()
        self._address = address_from_public_key(self._verifying_key.to_string())

    @property
    def address(self) -> str:
        return self._address

    def export_private_key(self) -> str:
        """
        Export private key in hex format.

        WARNING: Keep this secret! Only use for backup/migration.
        """
        return self._signing_key.to_string().hex()

    def sign_digest(self, digest: bytes) -> Signature:
        """Sign a 32-byte digest, returning a canonical recoverable signature."""
        encoded = self._signing_key.sign_digest_deterministic(
            digest,
            hashfunc=hashlib.sha256,
            sigencode=util.sigencode_string_canonize
        )

        candidates = VerifyingKey.from_public_key_recovery_with_digest(
            encoded,
            digest,
            curve=SECP256k1,
            hashfunc=hashlib.sha256,
            sigdecode=util.sigdecode_string
        )
        own = self._verifying_key.to_string()
        index = next(i for i, vk in enumerate(candidates) if vk.to_string() == own)

        return Signature(
            v=27 + index,
            r=int.from_bytes(encoded[:32], "big"),
            s=int.from_bytes(encoded[32:], "big")
        )

    def sign_settlement(self, marketplace: str, script_hash: str, seller: str, value: int) -> Signature:
        """Sign the settlement digest for one escrow record."""
        return self.sign_digest(settlement_digest(marketplace, script_hash, seller, value))

    def sign_request(
        self,
        marketplace: str,
        method: str,
        path: str,
        body: bytes = b"",
        timestamp: Optional[int] = None,
        nonce: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Produce the authentication headers for one node request.

        Example:
            raw = json.dumps({"address": user, "amount": 100}).encode()
            headers = supervisor.sign_request(market, "POST", "/deposits", raw)
            httpx.post(url + "/deposits", content=raw, headers=headers)
        """
        timestamp = int(time.time()) if timestamp is None else timestamp
        nonce = nonce or secrets.token_hex(16)

        sig = self.sign_digest(request_digest(marketplace, method, path, body, timestamp, nonce))
        return {
            "X-Caller-Address": self._address,
            "X-Caller-Signature": sig.to_hex(),
            "X-Caller-Timestamp": str(timestamp),
            "X-Caller-Nonce": nonce
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self._address, "public_key": self._verifying_key.to_string().hex()}

