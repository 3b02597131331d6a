import uuid
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from billing_ledger.db.models import TokenBalance, utcnow

from tests.conftest import CRON_SECRET, INTERNAL_API_KEY, add_package, add_pending

pytestmark = pytest.mark.asyncio


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


async def test_health(client):
    r = await client.get("/api/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["service"] == "billing-ledger"
    assert "timestamp" in body and "version" in body


async def test_ready(client):
    r = await client.get("/api/ready")
    assert r.status_code == 200
    body = r.json()
    assert body["dependencies"]["database"] == {"ok": True, "error": None}
    assert body["dependencies"]["providers"] == ["LEMON_SQUEEZY", "PAYOS", "SEPAY"]


async def test_ready_reports_database_down(client, services, monkeypatch):
    def broken_factory():
        raise ConnectionRefusedError("db down")

    monkeypatch.setattr(services, "session_factory", broken_factory)
    r = await client.get("/api/ready")
    assert r.status_code == 503
    assert r.json()["dependencies"]["database"] == {"ok": False, "error": "ConnectionRefusedError"}


async def test_sepay_deposit_and_status(client, user_id):
    r = await client.post("/api/payment/deposit", json={"amount": 50000, "provider": "SEPAY"},
                          headers=as_user(user_id))
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["status"] == "pending"
    assert data["currency"] == "VND"
    assert data["paymentCode"].startswith(f"OCR-{user_id}-")
    assert data["qrUrl"].startswith("https://qr.sepay.vn/img?")
    assert data["accountNumber"] == "0123456789"

    r = await client.get(f"/api/payment/status/{data['transactionId']}", headers=as_user(user_id))
    assert r.status_code == 200
    assert r.json()["data"] == {"id": data["transactionId"], "status": "pending", "amount": 50000,
                                "currency": "VND", "provider": "SEPAY", "completedAt": None}


@respx.mock
async def test_lemon_deposit_returns_checkout_url(client, user_id):
    respx.post("https://api.lemonsqueezy.com/v1/checkouts").mock(return_value=httpx.Response(201, json={
        "data": {"id": "chk_42", "attributes": {"url": "https://store.lemonsqueezy.com/checkout/chk_42"}},
    }))
    r = await client.post("/api/payment/deposit", json={"amount": 1000, "provider": "LEMON_SQUEEZY"},
                          headers=as_user(user_id))
    assert r.status_code == 200
    assert r.json()["data"]["checkoutUrl"] == "https://store.lemonsqueezy.com/checkout/chk_42"
    assert r.json()["data"]["currency"] == "USD"


@respx.mock
async def test_provider_outage_is_502(client, user_id):
    respx.post("https://api-merchant.payos.vn/v2/payment-requests").mock(side_effect=httpx.ConnectTimeout("slow"))
    r = await client.post("/api/payment/deposit", json={"amount": 50000, "provider": "PAYOS"},
                          headers=as_user(user_id))
    assert r.status_code == 502
    assert r.json()["error"]["code"] == "provider_error"


async def test_deposit_validation_errors(client, user_id):
    r = await client.post("/api/payment/deposit", json={"amount": 0, "provider": "SEPAY"}, headers=as_user(user_id))
    assert r.status_code == 400
    assert r.json()["error"]["field"] == "amount"

    r = await client.post("/api/payment/deposit", json={"amount": 500, "provider": "SEPAY"},
                          headers=as_user(user_id))
    assert r.status_code == 400
    assert r.json()["error"] == {"code": "validation_error", "message": "minimum amount for SEPAY is 2000 VND",
                                 "field": "amount"}

    r = await client.post("/api/payment/deposit", json={"amount": 50000, "provider": "PAYPAL"},
                          headers=as_user(user_id))
    assert r.status_code == 400
    assert r.json()["error"]["field"] == "provider"


async def test_identity_required(client):
    r = await client.post("/api/payment/deposit", json={"amount": 50000, "provider": "SEPAY"})
    assert r.status_code == 401
    r = await client.get("/api/billing/wallet", headers={"X-User-Id": "not-a-uuid"})
    assert r.status_code == 401


async def test_status_of_someone_elses_transaction_is_404(client, session_factory, user_id):
    txn = await add_pending(session_factory, user_id)
    r = await client.get(f"/api/payment/status/{txn.id}", headers=as_user(uuid.uuid4()))
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": {"code": "not_found", "message": "transaction not found"}}


async def test_wallet_and_history(client, services, session_factory, user_id):
    txn = await add_pending(session_factory, user_id, amount=75000)
    await services.ledger.settle(txn.id, None)

    r = await client.get("/api/billing/wallet", headers=as_user(user_id))
    assert r.status_code == 200
    wallets = r.json()["data"]["wallets"]
    assert [(w["currency"], w["balance"]) for w in wallets] == [("VND", 75000)]

    r = await client.get("/api/billing/transactions", params={"limit": 5}, headers=as_user(user_id))
    items = r.json()["data"]
    assert len(items) == 1
    assert items[0]["status"] == "paid"
    assert items[0]["completedAt"] is not None


async def test_packages_and_purchase(client, session_factory, user_id):
    await add_package(session_factory, slug="starter", price_cents=500)

    r = await client.get("/api/billing/packages")
    assert r.status_code == 200
    assert [p["slug"] for p in r.json()["data"]] == ["starter"]

    with respx.mock:
        respx.post("https://api.lemonsqueezy.com/v1/checkouts").mock(return_value=httpx.Response(201, json={
            "data": {"id": "chk_pkg", "attributes": {"url": "https://store.lemonsqueezy.com/checkout/chk_pkg"}},
        }))
        r = await client.post("/api/billing/purchase", json={"package_slug": "starter", "provider": "LEMON_SQUEEZY"},
                              headers=as_user(user_id))
    assert r.status_code == 200
    assert r.json()["data"]["amount"] == 500

    r = await client.post("/api/billing/purchase", json={"package_slug": "gold", "provider": "LEMON_SQUEEZY"},
                          headers=as_user(user_id))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "package_not_found"


async def test_consume_requires_internal_key(client, user_id):
    body = {"user_id": str(user_id), "feature": "ocr", "input_tokens": 10, "output_tokens": 10}
    r = await client.post("/api/usage/consume", json=body)
    assert r.status_code == 401
    r = await client.post("/api/usage/consume", json=body, headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401

    r = await client.post("/api/usage/consume", json=body, headers={"Authorization": f"Bearer {INTERNAL_API_KEY}"})
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "insufficient_balance"


async def test_consume_and_usage_history(client, session_factory, user_id):
    package = await add_package(session_factory)
    async with session_factory() as session:
        async with session.begin():
            session.add(TokenBalance(user_id=user_id, package_id=package.id, input_tokens_remaining=1000,
                                     output_tokens_remaining=1000, created_at=utcnow()))

    body = {"user_id": str(user_id), "feature": "ocr", "input_tokens": 10, "output_tokens": 20,
            "input_meta": {"file": "scan.pdf"}}
    r = await client.post("/api/usage/consume", json=body, headers={"Authorization": f"Bearer {INTERNAL_API_KEY}"})
    assert r.status_code == 200
    assert r.json()["data"]["source"] == "package"
    assert r.json()["data"]["costCents"] == 0

    r = await client.get("/api/billing/usage", headers=as_user(user_id))
    assert [(u["feature"], u["inputTokens"], u["outputTokens"]) for u in r.json()["data"]] == [("ocr", 10, 20)]


async def test_payg_toggle(client, user_id):
    r = await client.put("/api/billing/payg", json={"enabled": True}, headers=as_user(user_id))
    assert r.status_code == 200
    assert r.json()["data"] == {"paygEnabled": True}


async def test_cron_endpoints_require_secret(client, services, monkeypatch):
    r = await client.post("/api/cron/expire-pending")
    assert r.status_code == 401

    r = await client.post("/api/cron/expire-pending", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert r.status_code == 200
    assert r.json()["data"] == {"expired": 0}

    monkeypatch.setattr(services.converter, "refresh", AsyncMock(return_value=3))
    r = await client.post("/api/cron/sync-rates", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert r.status_code == 200
    assert r.json()["data"] == {"updated": 3}


async def test_cron_fails_closed_without_secret(client, services, monkeypatch):
    monkeypatch.setattr(services.config, "CRON_SECRET", None)
    r = await client.post("/api/cron/expire-pending", headers={"Authorization": "Bearer anything"})
    assert r.status_code == 500
    assert r.json()["error"]["code"] == "misconfigured"
