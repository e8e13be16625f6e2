import json

import pytest
from fastapi.testclient import TestClient

from datamarket import EscrowState, Marketplace, settlement_digest
from datamarket.node.main import create_app

from conftest import MAM_ROOT, PRICE


def call(client, signer, method, path, body=None, **signing):
    """Send a request signed by signer over its exact method, path and body."""
    market = client.app.state.marketplace
    raw = json.dumps(body).encode() if body is not None else b""

    signing.setdefault("timestamp", market.clock())
    headers = signer.sign_request(market.address, method, path, raw, **signing)
    if body is not None:
        headers["Content-Type"] = "application/json"

    return client.request(method, path, content=raw, headers=headers)


@pytest.fixture
def client(tmp_path, supervisor, clock):
    market = Marketplace(
        owner=supervisor.address,
        db_path=str(tmp_path / "node.db"),
        clock=clock,
        subscription_time_unit=1,
        settlement_timeout=3600
    )
    with TestClient(create_app(market)) as test_client:
        yield test_client


@pytest.fixture
def listed(client, supervisor, seller, buyer):
    """Seller shop with one item and a funded buyer, set up over HTTP."""
    for signer, name in ((seller, "SELLER"), (buyer, "BUYER")):
        response = call(client, supervisor, "POST", "/users", {"address": signer.address, "external_id": name})
        assert response.status_code == 200

    response = call(client, supervisor, "POST", "/sellers", {"seller": seller.address, "info": "air"})
    assert response.status_code == 200
    shop = response.json()["address"]

    call(client, supervisor, "POST", "/deposits", {"address": buyer.address, "amount": 1000})
    call(client, seller, "POST", f"/shops/{shop}/price", {"value": PRICE})
    call(client, seller, "POST", f"/shops/{shop}/data", {"pointer": MAM_ROOT, "metadata": "{}"})

    response = call(client, seller, "POST", f"/shops/{shop}/open")
    assert response.json()["purchases_open"] is True
    return shop


@pytest.fixture
def purchased(client, listed, seller, buyer):
    response = call(client, buyer, "POST", "/purchases", {"seller": seller.address, "pointer": MAM_ROOT, "value": PRICE})
    assert response.status_code == 200
    return response.json()["script_hash"]


def test_health(client, supervisor):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"

    info = client.get("/marketplace").json()
    assert info["supervisor"] == supervisor.address
    assert info["settlement_timeout"] == 3600


def test_purchase_flow_over_http(client, listed, seller, buyer):
    market_address = client.get("/marketplace").json()["address"]

    response = client.get("/sellers")
    assert response.json()["sellers"] == [seller.address]
    assert client.get(f"/shops/{listed}/data").json()["count"] == 1

    response = call(client, buyer, "POST", "/purchases", {"seller": seller.address, "pointer": MAM_ROOT, "value": PRICE})
    assert response.status_code == 200
    script_hash = response.json()["script_hash"]
    assert response.json()["state"] == "funded"

    digest = client.get(f"/escrows/{script_hash}/digest").json()["digest"]
    assert digest == "0x" + settlement_digest(market_address, script_hash, seller.address, PRICE).hex()

    seller_sig = seller.sign_settlement(market_address, script_hash, seller.address, PRICE)
    response = call(
        client, seller, "POST", f"/escrows/{script_hash}/finalize",
        {"signature": seller_sig.to_dict(), "delivery_ref": "ref-1"}
    )
    assert response.status_code == 200
    assert response.json()["state"] == "finalized"

    buyer_sig = buyer.sign_settlement(market_address, script_hash, seller.address, PRICE)
    response = call(client, buyer, "POST", f"/escrows/{script_hash}/execute", {"signature": buyer_sig.to_dict()})
    assert response.status_code == 200
    assert response.json()["state"] == "executed"

    assert client.get(f"/balances/{seller.address}").json()["balance"] == PRICE
    assert client.get(f"/balances/{buyer.address}").json()["balance"] == 1000 - PRICE

    replay = call(client, buyer, "POST", f"/escrows/{script_hash}/execute", {"signature": buyer_sig.to_dict()})
    assert replay.status_code == 409
    assert replay.json()["error"] == "invalid_state"

    events = client.get("/events", params={"script_hash": script_hash}).json()["events"]
    assert [e["name"] for e in events] == ["Funded", "Fulfilled", "Executed"]


def test_missing_caller_headers(client, buyer):
    response = client.post("/users", json={"address": buyer.address, "external_id": "X"})
    assert response.status_code == 401


def test_non_supervisor_registration_forbidden(client, buyer):
    response = call(client, buyer, "POST", "/users", {"address": buyer.address, "external_id": "X"})
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"


# === REQUEST AUTHENTICATION ===


def test_bare_supervisor_address_cannot_mint(client, listed, supervisor, buyer):
    response = client.post(
        "/deposits",
        json={"address": buyer.address, "amount": 10 ** 9},
        headers={"X-Caller-Address": supervisor.address}
    )

    assert response.status_code == 401
    assert client.get(f"/balances/{buyer.address}").json()["balance"] == 1000


def test_supervisor_address_signed_by_other_key_is_rejected(client, listed, supervisor, buyer, stranger):
    market = client.app.state.marketplace
    raw = json.dumps({"address": stranger.address, "amount": 10 ** 9}).encode()
    headers = stranger.sign_request(market.address, "POST", "/deposits", raw, timestamp=market.clock())
    headers["X-Caller-Address"] = supervisor.address
    headers["Content-Type"] = "application/json"

    response = client.post("/deposits", content=raw, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"] == "signature_invalid"
    assert client.get(f"/balances/{stranger.address}").json()["balance"] == 0


def test_forged_supervisor_cannot_resolve_dispute(client, purchased, supervisor, seller, buyer, stranger, clock):
    market_address = client.get("/marketplace").json()["address"]
    sig = seller.sign_settlement(market_address, purchased, seller.address, PRICE)
    assert call(client, seller, "POST", f"/escrows/{purchased}/finalize", {"signature": sig.to_dict()}).status_code == 200

    clock.advance(3600)
    assert call(client, buyer, "POST", f"/escrows/{purchased}/dispute").status_code == 200

    path = f"/escrows/{purchased}/resolve"
    raw = json.dumps({"award_to_seller": False}).encode()
    market = client.app.state.marketplace

    response = client.post(
        path, content=raw,
        headers={"X-Caller-Address": supervisor.address, "Content-Type": "application/json"}
    )
    assert response.status_code == 401

    headers = stranger.sign_request(market.address, "POST", path, raw, timestamp=market.clock())
    headers["X-Caller-Address"] = supervisor.address
    headers["Content-Type"] = "application/json"
    response = client.post(path, content=raw, headers=headers)
    assert response.status_code == 401

    record = client.get(f"/escrows/{purchased}").json()
    assert record["state"] == EscrowState.DISPUTED.value
    assert record["resolution"] is None
    assert client.get(f"/balances/{stranger.address}").json()["balance"] == 0

    response = call(client, supervisor, "POST", path, {"award_to_seller": False})
    assert response.status_code == 200
    assert response.json()["resolution"] == "buyer"
    assert client.get(f"/balances/{buyer.address}").json()["balance"] == 1000


def test_signed_body_cannot_be_swapped(client, listed, supervisor, buyer):
    market = client.app.state.marketplace
    signed = json.dumps({"address": buyer.address, "amount": 1}).encode()
    sent = json.dumps({"address": buyer.address, "amount": 10 ** 9}).encode()
    headers = supervisor.sign_request(market.address, "POST", "/deposits", signed, timestamp=market.clock())
    headers["Content-Type"] = "application/json"

    response = client.post("/deposits", content=sent, headers=headers)

    assert response.status_code == 401
    assert client.get(f"/balances/{buyer.address}").json()["balance"] == 1000


def test_replayed_request_is_rejected(client, listed, supervisor, buyer):
    body = {"address": buyer.address, "amount": 5}

    assert call(client, supervisor, "POST", "/deposits", body, nonce="once").status_code == 200
    replay = call(client, supervisor, "POST", "/deposits", body, nonce="once")

    assert replay.status_code == 401
    assert replay.json()["error"] == "signature_invalid"
    assert client.get(f"/balances/{buyer.address}").json()["balance"] == 1005


def test_stale_request_is_rejected(client, listed, supervisor, buyer, clock):
    body = {"address": buyer.address, "amount": 5}

    stale = call(client, supervisor, "POST", "/deposits", body, timestamp=clock.now - 301)
    future = call(client, supervisor, "POST", "/deposits", body, timestamp=clock.now + 301)

    assert stale.status_code == 401
    assert future.status_code == 401
    assert call(client, supervisor, "POST", "/deposits", body, timestamp=clock.now - 300).status_code == 200


def test_malformed_auth_headers_are_rejected(client, supervisor, buyer):
    for override in (
        {"X-Caller-Address": "0x1234"},
        {"X-Caller-Signature": "0xdeadbeef"},
        {"X-Caller-Timestamp": "yesterday"},
        {"X-Caller-Nonce": "n" * 200},
    ):
        market = client.app.state.marketplace
        raw = json.dumps({"address": buyer.address, "external_id": "X"}).encode()
        headers = supervisor.sign_request(market.address, "POST", "/users", raw, timestamp=market.clock())
        headers.update(override)
        headers["Content-Type"] = "application/json"

        response = client.post("/users", content=raw, headers=headers)
        assert response.status_code == 401

    assert client.get(f"/users/{buyer.address}").status_code == 404


# === PROTOCOL ERRORS ===


def test_bad_signature_rejected(client, purchased, seller, stranger):
    market_address = client.get("/marketplace").json()["address"]

    forged = stranger.sign_settlement(market_address, purchased, seller.address, PRICE)
    response = call(client, seller, "POST", f"/escrows/{purchased}/finalize", {"signature": forged.to_dict()})

    assert response.status_code == 401
    assert response.json()["error"] == "signature_invalid"


def test_insufficient_funds(client, listed, supervisor, seller, stranger):
    call(client, supervisor, "POST", "/users", {"address": stranger.address, "external_id": "POOR"})

    response = call(client, stranger, "POST", "/purchases", {"seller": seller.address, "pointer": MAM_ROOT, "value": PRICE})

    assert response.status_code == 402
    assert response.json()["error"] == "insufficient_funds"


def test_unknown_records_are_404(client, stranger):
    assert client.get(f"/escrows/0x{'ab' * 32}").status_code == 404
    assert client.get(f"/sellers/{stranger.address}").status_code == 404
    assert client.get(f"/shops/{stranger.address}").status_code == 404


def test_script_hash_case_does_not_matter(client, purchased, seller):
    shouted = "0x" + purchased[2:].upper()

    response = client.get(f"/escrows/{shouted}")
    assert response.status_code == 200
    assert response.json()["script_hash"] == purchased

    market_address = client.get("/marketplace").json()["address"]
    sig = seller.sign_settlement(market_address, purchased, seller.address, PRICE)
    response = call(client, seller, "POST", f"/escrows/{shouted}/finalize", {"signature": sig.to_dict()})
    assert response.status_code == 200
    assert response.json()["state"] == "finalized"

    response = client.get("/escrows/0xnot-a-hash")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_hash"


def test_subscription_over_http(client, listed, supervisor, seller, buyer):
    call(client, seller, "POST", f"/shops/{listed}/rate", {"value": 3})

    response = call(client, buyer, "POST", "/subscriptions", {"seller": seller.address, "duration_units": 4, "value": 12})
    assert response.status_code == 200

    status = client.get(f"/subscriptions/{buyer.address}/{seller.address}").json()
    assert status["valid"] is True
    assert status["status"] == "active"

    response = call(client, buyer, "POST", "/access", {"seller": seller.address, "pointer": MAM_ROOT})
    assert response.status_code == 200
    assert response.json()["pointer"] == MAM_ROOT


# === WEBHOOKS ===


def test_webhook_registration(client, supervisor, seller):
    response = call(client, seller, "POST", "/webhooks", {"url": "https://example.com/hook", "name": "Executed"})
    assert response.status_code == 200
    assert response.json()["owner"] == seller.address
    hook_id = response.json()["id"]

    assert call(client, seller, "POST", "/webhooks", {"url": "not-a-url"}).status_code == 400
    assert call(client, seller, "DELETE", f"/webhooks/{hook_id}").status_code == 200
    assert call(client, seller, "DELETE", f"/webhooks/{hook_id}").status_code == 404


def test_webhook_requires_authenticated_caller(client):
    response = client.post("/webhooks", json={"url": "https://example.com/hook"})
    assert response.status_code == 401
    assert client.get("/health").json()["webhooks"] == 0


def test_webhook_removal_limited_to_owner_and_supervisor(client, supervisor, seller, stranger):
    first = call(client, seller, "POST", "/webhooks", {"url": "https://example.com/a"}).json()["id"]
    second = call(client, seller, "POST", "/webhooks", {"url": "https://example.com/b"}).json()["id"]

    response = call(client, stranger, "DELETE", f"/webhooks/{first}")
    assert response.status_code == 403
    assert response.json()["error"] == "unauthorized"

    assert call(client, seller, "DELETE", f"/webhooks/{first}").status_code == 200
    assert call(client, supervisor, "DELETE", f"/webhooks/{second}").status_code == 200


def test_webhook_filters_are_validated(client, seller):
    for filters in ({"name": "Funded"}, {"url": "https://other.example"}, {"bogus": 1}):
        response = call(
            client, seller, "POST", "/webhooks",
            {"url": "https://example.com/hook", "filters": filters}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "bad_request"

    response = call(
        client, seller, "POST", "/webhooks",
        {"url": "https://example.com/hook", "name": "Funded", "filters": {"seller": seller.address}}
    )
    assert response.status_code == 200
    assert response.json()["filters"] == {"seller": seller.address}
