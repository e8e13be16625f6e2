import random

import pytest

from datamarket.errors import InvalidAddress, InvalidHash
from datamarket.security import (
    HALF_N,
    SECP256K1_N,
    ZERO_ADDRESS,
    AccountSigner,
    Signature,
    SignatureVerifier,
    normalize_address,
    normalize_hash,
    request_digest,
    settlement_digest,
)


MARKET = "0x" + "11" * 20
OTHER_MARKET = "0x" + "22" * 20
SCRIPT_HASH = "0x" + "ab" * 32


def test_signer_recovers_to_own_address():
    signer = AccountSigner()
    digest = settlement_digest(MARKET, SCRIPT_HASH, signer.address, 50)

    sig = signer.sign_digest(digest)

    assert sig.v in (27, 28)
    assert 0 < sig.s <= HALF_N
    assert SignatureVerifier.recover(digest, sig) == signer.address
    assert SignatureVerifier.verify(signer.address, digest, sig)


def test_signer_loaded_from_exported_key_keeps_address():
    signer = AccountSigner()
    restored = AccountSigner(private_key_hex=signer.export_private_key())

    assert restored.address == signer.address


def test_signer_loaded_from_environment(monkeypatch):
    signer = AccountSigner()
    monkeypatch.setenv("TEST_SIGNER_KEY", "0x" + signer.export_private_key())

    assert AccountSigner(env_var="TEST_SIGNER_KEY").address == signer.address


def test_verify_rejects_other_signer():
    seller, buyer = AccountSigner(), AccountSigner()
    digest = settlement_digest(MARKET, SCRIPT_HASH, seller.address, 50)

    sig = buyer.sign_digest(digest)

    assert not SignatureVerifier.verify(seller.address, digest, sig)
    assert SignatureVerifier.verify(buyer.address, digest, sig)


@pytest.mark.parametrize("field, value", [
    ("marketplace", OTHER_MARKET),
    ("script_hash", "0x" + "cd" * 32),
    ("seller", "0x" + "33" * 20),
    ("value", 51),
])
def test_signature_does_not_transfer_to_other_digest(field, value):
    seller = AccountSigner()
    params = {"marketplace": MARKET, "script_hash": SCRIPT_HASH, "seller": seller.address, "value": 50}
    sig = seller.sign_digest(settlement_digest(**params))

    params[field] = value
    other = settlement_digest(**params)

    assert not SignatureVerifier.verify(seller.address, other, sig)


def test_high_s_form_is_rejected():
    signer = AccountSigner()
    digest = settlement_digest(MARKET, SCRIPT_HASH, signer.address, 50)
    sig = signer.sign_digest(digest)

    malleated = Signature(v=55 - sig.v, r=sig.r, s=SECP256K1_N - sig.s)

    assert SignatureVerifier.recover(digest, malleated) is None


@pytest.mark.parametrize("sig", [
    Signature(v=26, r=1, s=1),
    Signature(v=29, r=1, s=1),
    Signature(v=27, r=0, s=1),
    Signature(v=27, r=1, s=0),
    Signature(v=27, r=SECP256K1_N, s=1),
])
def test_malformed_signatures_fail_without_raising(sig):
    digest = settlement_digest(MARKET, SCRIPT_HASH, ZERO_ADDRESS, 1)

    assert SignatureVerifier.recover(digest, sig) is None
    assert not SignatureVerifier.verify(ZERO_ADDRESS, digest, sig)


def test_random_signatures_never_verify():
    rng = random.Random(1234)
    seller = AccountSigner()
    digest = settlement_digest(MARKET, SCRIPT_HASH, seller.address, 50)

    for _ in range(25):
        sig = Signature(
            v=rng.choice((27, 28)),
            r=rng.randrange(1, SECP256K1_N),
            s=rng.randrange(1, HALF_N)
        )
        assert not SignatureVerifier.verify(seller.address, digest, sig)


def test_verify_with_malformed_expected_address_is_false():
    signer = AccountSigner()
    digest = settlement_digest(MARKET, SCRIPT_HASH, signer.address, 50)

    assert not SignatureVerifier.verify("not-an-address", digest, signer.sign_digest(digest))


def test_signature_transport_encodings():
    signer = AccountSigner()
    sig = signer.sign_digest(settlement_digest(MARKET, SCRIPT_HASH, signer.address, 7))

    assert Signature.from_hex(sig.to_hex()) == sig
    assert Signature.from_dict(sig.to_dict()) == sig
    assert len(sig.to_dict()["r"]) == 66


def test_normalize_address():
    assert normalize_address("0x" + "AB" * 20) == "0x" + "ab" * 20
    assert normalize_address("cd" * 20) == "0x" + "cd" * 20

    for bad in ("0x1234", "0x" + "zz" * 20, None, 42):
        with pytest.raises(InvalidAddress):
            normalize_address(bad)


def test_normalize_hash():
    assert normalize_hash("0x" + "AB" * 32) == SCRIPT_HASH
    assert normalize_hash("0X" + "aB" * 32) == SCRIPT_HASH
    assert normalize_hash("ab" * 32) == SCRIPT_HASH

    for bad in ("0x1234", "0x" + "zz" * 32, "0x" + "ab" * 20, None, 42):
        with pytest.raises(InvalidHash):
            normalize_hash(bad)


def test_settlement_digest_rejects_negative_value():
    with pytest.raises(ValueError):
        settlement_digest(MARKET, SCRIPT_HASH, ZERO_ADDRESS, -1)


def test_request_signature_binds_method_path_body_and_nonce():
    signer = AccountSigner()
    headers = signer.sign_request(MARKET, "POST", "/deposits", b'{"amount": 5}', timestamp=1000, nonce="n1")

    assert headers["X-Caller-Address"] == signer.address
    sig = Signature.from_hex(headers["X-Caller-Signature"])

    digest = request_digest(MARKET, "POST", "/deposits", b'{"amount": 5}', 1000, "n1")
    assert SignatureVerifier.verify(signer.address, digest, sig)

    for other in (
        request_digest(MARKET, "POST", "/deposits", b'{"amount": 6}', 1000, "n1"),
        request_digest(MARKET, "POST", "/users", b'{"amount": 5}', 1000, "n1"),
        request_digest(MARKET, "DELETE", "/deposits", b'{"amount": 5}', 1000, "n1"),
        request_digest(MARKET, "POST", "/deposits", b'{"amount": 5}', 1001, "n1"),
        request_digest(MARKET, "POST", "/deposits", b'{"amount": 5}', 1000, "n2"),
        request_digest(OTHER_MARKET, "POST", "/deposits", b'{"amount": 5}', 1000, "n1"),
    ):
        assert not SignatureVerifier.verify(signer.address, other, sig)


def test_request_signature_is_not_a_settlement_signature():
    signer = AccountSigner()
    headers = signer.sign_request(MARKET, "POST", "/deposits", b"", timestamp=1000, nonce="n1")
    sig = Signature.from_hex(headers["X-Caller-Signature"])

    assert not SignatureVerifier.verify(signer.address, settlement_digest(MARKET, SCRIPT_HASH, signer.address, 0), sig)
