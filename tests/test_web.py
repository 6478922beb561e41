import json
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("LEDGER_BACKEND", "memory")

import settings as app_settings
import web
from auth import mint_token
from ledger import LedgerStorage
from marketplace import MarketplaceStorage
from payments.stripe_checkout import CheckoutSession
from payments.stripe_signature import sign_payload

WEBHOOK_SECRET = "whsec_web"


@pytest.fixture()
def stores():
    ledger = LedgerStorage(None, backend="memory")
    marketplace = MarketplaceStorage(None, backend="memory")
    marketplace.upsert_influencer("inf-1", display_name="Ava", followers=2_500_000)
    return ledger, marketplace


@pytest.fixture()
def client(monkeypatch, stores):
    ledger, marketplace = stores
    monkeypatch.setattr(app_settings, "AUTH_JWT_SECRET", "jwt-test-secret")
    monkeypatch.setattr(app_settings, "AUTH_JWT_ISSUER", None)
    monkeypatch.setattr(app_settings, "AUTH_JWT_AUDIENCE", None)
    monkeypatch.setattr(web, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    web.app.dependency_overrides[web.get_ledger] = lambda: ledger
    web.app.dependency_overrides[web.get_marketplace] = lambda: marketplace
    try:
        yield TestClient(web.app)
    finally:
        web.app.dependency_overrides.clear()


def _auth(account_id: str = "biz-1", **claims) -> dict:
    claims.setdefault("role", "business")
    return {"Authorization": f"Bearer {mint_token(account_id, claims)}"}


def _fund(ledger: LedgerStorage, account_id: str, tokens: int) -> None:
    ledger.credit_purchase(account_id, tokens, payment_intent_id=f"pi_fund_{account_id}", package_id="small")


def test_tokens_requires_bearer_token(client):
    response = client.get("/api/user/tokens")
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_tokens_rejects_bad_token(client):
    response = client.get("/api/user/tokens", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_tokens_returns_balance(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 1000)

    response = client.get("/api/user/tokens", headers=_auth())

    assert response.status_code == 200
    assert response.json() == {"token_balance": 1000, "account_id": "biz-1"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"


def test_tokens_for_new_account_is_zero(client):
    response = client.get("/api/user/tokens", headers=_auth("fresh"))
    assert response.json()["token_balance"] == 0


def test_contact_cost_endpoint(client):
    response = client.get("/api/influencers/inf-1/contact-cost")
    assert response.status_code == 200
    assert response.json() == {"influencer_id": "inf-1", "followers": 2_500_000, "cost": 350}


def test_contact_success(client, stores):
    ledger, marketplace = stores
    _fund(ledger, "biz-1", 1000)

    response = client.post("/api/influencers/inf-1/contact", headers=_auth(name="Acme"))

    assert response.status_code == 200
    body = response.json()
    assert {key: body[key] for key in ("status", "cost", "balance", "duplicate")} == {
        "status": "contacted",
        "cost": 350,
        "balance": 650,
        "duplicate": False,
    }
    assert body["message"] == "Contact request sent. 350 tokens spent, 650 remaining."
    note = marketplace.list_notifications("inf-1")[0]
    assert note.message.startswith("Acme has contacted you")


def test_contact_insufficient_tokens_is_402(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 100)

    response = client.post("/api/influencers/inf-1/contact", headers=_auth())

    assert response.status_code == 402
    body = response.json()
    assert body["error"] == "insufficient_tokens"
    assert body["required"] == 350
    assert body["balance"] == 100
    assert body["shortfall"] == 250
    assert ledger.get_balance("biz-1") == 100


def test_contact_unknown_influencer_is_404(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 1000)
    response = client.post("/api/influencers/missing/contact", headers=_auth())
    assert response.status_code == 404
    assert ledger.get_balance("biz-1") == 1000


def test_contact_idempotency_key_prevents_double_charge(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 1000)
    headers = {**_auth(), "Idempotency-Key": "req-42"}

    first = client.post("/api/influencers/inf-1/contact", headers=headers)
    second = client.post("/api/influencers/inf-1/contact", headers=headers)

    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True
    assert ledger.get_balance("biz-1") == 650


def test_boost_purchase(client, stores):
    ledger, _ = stores
    _fund(ledger, "creator", 200)

    response = client.post("/api/boosts/boost-profile-influencer/purchase", headers=_auth("creator", role="influencer"))

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "boosted"
    assert body["cost"] == 50
    assert body["balance"] == 150
    assert body["expires_at"]
    assert body["message"].startswith("Profile Boost activated for 7 days.")


def test_boost_for_other_audience_is_403(client, stores):
    ledger, _ = stores
    _fund(ledger, "creator", 200)
    response = client.post("/api/boosts/boost-campaign-business/purchase", headers=_auth("creator", role="influencer"))
    assert response.status_code == 403
    assert ledger.get_balance("creator") == 200


def test_transactions_listing(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 1000)
    client.post("/api/influencers/inf-1/contact", headers=_auth())

    response = client.get("/api/user/transactions", params={"limit": 1}, headers=_auth())

    body = response.json()
    assert body["total"] == 2
    assert body["limit"] == 1
    assert len(body["transactions"]) == 1
    assert body["transactions"][0]["amount"] == -350


def test_create_payment_intent(client, stores, monkeypatch):
    ledger, _ = stores

    def fake_checkout(account_id, package_id):
        return CheckoutSession(
            session_id="cs_1",
            url="https://checkout.stripe.test/cs_1",
            amount=9900,
            tokens=1000,
            package_id=package_id,
            package_name="Small Package",
            account_id=account_id,
            idempotency_key="k",
            created_at=0.0,
        )

    monkeypatch.setattr(web, "create_checkout_session", fake_checkout)

    response = client.post(
        "/api/payments/create-payment-intent", json={"packageId": "small"}, headers=_auth(email="b@example.com")
    )

    assert response.status_code == 200
    assert response.json()["sessionId"] == "cs_1"
    assert response.json()["tokens"] == 1000
    assert ledger.get_balance("biz-1") == 0


def test_create_payment_intent_invalid_package(client):
    response = client.post("/api/payments/create-payment-intent", json={"packageId": "gold"}, headers=_auth())
    assert response.status_code == 400
    assert "small, medium, large" in response.json()["error"]


def test_webhook_missing_signature(client):
    response = client.post("/api/payments/webhook", content=b"{}")
    assert response.status_code == 400
    assert response.json() == {"error": "Missing stripe-signature header"}


def test_webhook_invalid_signature(client, stores):
    ledger, _ = stores
    body = b'{"id":"evt_x","type":"checkout.session.completed","data":{"object":{}}}'
    response = client.post(
        "/api/payments/webhook",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, "whsec_other")},
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid signature"}


def test_webhook_credits_balance(client, stores):
    ledger, _ = stores
    event = {
        "id": "evt_web",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_web",
                "payment_intent": "pi_web",
                "payment_status": "paid",
                "metadata": {"userId": "biz-9", "packageId": "large", "tokenCount": "5000"},
            }
        },
    }
    body = json.dumps(event).encode("utf-8")
    headers = {"Stripe-Signature": sign_payload(body, WEBHOOK_SECRET)}

    first = client.post("/api/payments/webhook", content=body, headers=headers)
    second = client.post("/api/payments/webhook", content=body, headers=headers)

    assert first.json() == {"received": True, "status": "success"}
    assert second.json() == {"received": True, "status": "duplicate"}
    assert ledger.get_balance("biz-9") == 5000


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["ledger"] is True


def test_metrics_endpoint(client, stores):
    ledger, _ = stores
    _fund(ledger, "biz-1", 1000)
    client.post("/api/influencers/inf-1/contact", headers=_auth())

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "http_spend_total" in response.text
    assert "ledger_operations_total" in response.text


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"

    generated = client.get("/healthz")
    assert generated.headers["X-Request-ID"]


def test_package_and_boost_catalogs(client):
    packages = client.get("/api/payments/packages").json()["packages"]
    assert [(pack["id"], pack["tokens"], pack["price"]) for pack in packages] == [
        ("small", 1000, 9900),
        ("medium", 2500, 19900),
        ("large", 5000, 34900),
    ]

    boosts = client.get("/api/boosts", params={"audience": "business"}).json()["boosts"]
    assert {boost["id"] for boost in boosts} == {"boost-campaign-business", "boost-urgent-business"}
    assert all(boost["audience"] == "business" for boost in boosts)


def test_idempotency_key_reused_for_other_influencer_is_409(client, stores):
    ledger, marketplace = stores
    marketplace.upsert_influencer("inf-2", display_name="Bo", followers=10_000)
    _fund(ledger, "biz-1", 1000)
    headers = {**_auth(), "Idempotency-Key": "req-7"}

    first = client.post("/api/influencers/inf-1/contact", headers=headers)
    second = client.post("/api/influencers/inf-2/contact", headers=headers)

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"] == "idempotency_conflict"
    assert ledger.get_balance("biz-1") == 650
    assert marketplace.list_notifications("inf-2") == []


def test_idempotency_key_retry_after_failed_contact_is_charged(client, stores, monkeypatch):
    ledger, marketplace = stores
    _fund(ledger, "biz-1", 1000)
    real_record = marketplace._impl.record_contact
    calls = []

    def flaky_record(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RuntimeError("connection reset")
        return real_record(*args, **kwargs)

    monkeypatch.setattr(marketplace._impl, "record_contact", flaky_record)
    headers = {**_auth(), "Idempotency-Key": "req-8"}

    failed = client.post("/api/influencers/inf-1/contact", headers=headers)
    assert failed.status_code == 503
    assert ledger.get_balance("biz-1") == 1000

    retried = client.post("/api/influencers/inf-1/contact", headers=headers)

    assert retried.status_code == 200
    assert retried.json()["duplicate"] is False
    assert retried.json()["balance"] == 650
    assert ledger.get_balance("biz-1") == 650
