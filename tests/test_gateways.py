import hashlib
import hmac
import json
import uuid

import httpx
import pytest
import respx

from billing_ledger.core.errors import (
    AuthenticationFailure,
    ProviderError,
    ProviderMisconfigured,
    VerificationFailed,
)
from billing_ledger.gateways.base import InboundWebhook, parse_int_amount
from billing_ledger.gateways.lemon_squeezy import LemonSqueezyGateway
from billing_ledger.gateways.payos import PayOSGateway
from billing_ledger.gateways.sepay import SePayGateway
from billing_ledger.gateways.signing import sign_sorted_data

PAYOS_BASE = "https://payos.test"
LEMON_BASE = "https://lemon.test/v1"


def payos(http, checksum_key="ck"):
    return PayOSGateway(http, client_id="cid", api_key="key", checksum_key=checksum_key, api_base=PAYOS_BASE,
                        return_url="https://app.test/ok", cancel_url="https://app.test/cancel")


def lemon(http, secret="whsec"):
    return LemonSqueezyGateway(http, api_key="lk", store_id="1111", variant_id="2222", webhook_secret=secret,
                               api_base=LEMON_BASE, redirect_url="https://app.test/ok")


def sepay(http, key="sk", account="0123456789"):
    return SePayGateway(http, webhook_key=key, account_number=account, bank_name="MBBank")


@pytest.fixture
def http():
    # never opens a connection: outbound calls are served by respx
    return httpx.AsyncClient(timeout=5)


def test_parse_int_amount():
    assert parse_int_amount(50000) == 50000
    assert parse_int_amount("50000") == 50000
    assert parse_int_amount(50000.0) == 50000
    assert parse_int_amount(50000.5) is None
    assert parse_int_amount("12.5") is None
    assert parse_int_amount(None) is None
    assert parse_int_amount(True) is None


@respx.mock
async def test_payos_checkout_signs_request(http, user_id):
    route = respx.post(f"{PAYOS_BASE}/v2/payment-requests").mock(return_value=httpx.Response(200, json={
        "code": "00", "desc": "success",
        "data": {"checkoutUrl": "https://pay.payos.vn/web/abc", "qrCode": "000201..."},
    }))
    result = await payos(http).create_checkout(user_id, 50000, {"description": "Deposit 50000 VND via PAYOS"})

    sent = json.loads(route.calls.last.request.content)
    assert route.calls.last.request.headers["x-client-id"] == "cid"
    assert len(sent["description"]) <= 25
    assert 10_000_000 <= sent["orderCode"] <= 99_999_999
    signed = {k: sent[k] for k in ("amount", "cancelUrl", "description", "orderCode", "returnUrl")}
    assert sent["signature"] == sign_sorted_data(signed, "ck")
    assert result.correlation_key == str(sent["orderCode"])
    assert result.checkout_url == "https://pay.payos.vn/web/abc"


@respx.mock
async def test_payos_checkout_upstream_failure_is_provider_error(http, user_id):
    respx.post(f"{PAYOS_BASE}/v2/payment-requests").mock(return_value=httpx.Response(503))
    with pytest.raises(ProviderError):
        await payos(http).create_checkout(user_id, 50000, {})


async def test_payos_checkout_without_keys_is_misconfigured(http, user_id):
    gw = PayOSGateway(http, client_id=None, api_key=None, checksum_key=None, api_base=PAYOS_BASE,
                      return_url="r", cancel_url="c")
    with pytest.raises(ProviderMisconfigured) as exc:
        await gw.create_checkout(user_id, 50000, {})
    assert "PAYOS_CLIENT_ID" in exc.value.message


def test_payos_verify(http):
    data = {"orderCode": 12345678, "amount": 50000, "description": "Nap tien", "code": "00",
            "reference": "FT123", "accountNumber": "0123"}
    body = {"code": "00", "desc": "success", "data": data, "signature": sign_sorted_data(data, "ck")}
    n = payos(http).verify(InboundWebhook(body=json.dumps(body).encode(), headers={}))
    assert n.correlation_key == "12345678"
    assert n.amount == 50000
    assert n.succeeded is True
    assert n.gateway_txn_id == "FT123"


def test_payos_verify_failed_code_and_bad_signature(http):
    data = {"orderCode": 12345678, "amount": 50000, "code": "01"}
    body = {"data": data, "signature": sign_sorted_data(data, "ck")}
    n = payos(http).verify(InboundWebhook(body=json.dumps(body).encode(), headers={}))
    assert n.succeeded is False

    body["signature"] = sign_sorted_data(data, "wrong")
    with pytest.raises(VerificationFailed):
        payos(http).verify(InboundWebhook(body=json.dumps(body).encode(), headers={}))


def test_payos_verify_without_checksum_key(http):
    with pytest.raises(ProviderMisconfigured):
        payos(http, checksum_key=None).verify(InboundWebhook(body=b"{}", headers={}))


async def test_sepay_checkout_builds_qr(http, user_id):
    result = await sepay(http).create_checkout(user_id, 50000, {})
    assert result.correlation_key.startswith(f"OCR-{user_id}-")
    assert result.checkout_url.startswith("https://qr.sepay.vn/img?acc=0123456789&bank=MBBank&amount=50000&des=OCR-")
    assert result.artifacts["paymentCode"] == result.correlation_key
    assert result.artifacts["accountNumber"] == "0123456789"


async def test_sepay_checkout_without_account_is_misconfigured(http, user_id):
    with pytest.raises(ProviderMisconfigured):
        await sepay(http, account=None).create_checkout(user_id, 50000, {})


@pytest.mark.parametrize("header", ["Bearer sk", "Apikey sk", "apikey sk", "sk"])
def test_sepay_accepts_key_forms(http, header):
    body = {"id": 1, "transferType": "in", "content": "OCR-a-b", "transferAmount": 50000}
    n = sepay(http).verify(InboundWebhook(body=json.dumps(body).encode(), headers={"Authorization": header}))
    assert n.correlation_key == "OCRAB"
    assert n.amount == 50000
    assert n.ignore_reason is None and n.invalid_reason is None


@pytest.mark.parametrize("header", [None, "", "Bearer nope", "Bearer sk-extra"])
def test_sepay_rejects_bad_keys(http, header):
    headers = {"Authorization": header} if header is not None else {}
    with pytest.raises(AuthenticationFailure):
        sepay(http).verify(InboundWebhook(body=b"{}", headers=headers))


def test_sepay_outgoing_transfer_is_ignored(http):
    body = {"transferType": "out", "content": "OCR-a-b", "transferAmount": 50000}
    n = sepay(http).verify(InboundWebhook(body=json.dumps(body).encode(), headers={"Authorization": "sk"}))
    assert n.ignore_reason


@respx.mock
async def test_lemon_checkout_carries_custom_data(http, user_id):
    route = respx.post(f"{LEMON_BASE}/checkouts").mock(return_value=httpx.Response(201, json={
        "data": {"id": "chk_1", "attributes": {"url": "https://store.lemonsqueezy.com/checkout/chk_1"}},
    }))
    txn_id = uuid.uuid4()
    result = await lemon(http).create_checkout(user_id, 1000, {"transaction_id": txn_id, "email": "a@b.test"})
    sent = json.loads(route.calls.last.request.content)
    attributes = sent["data"]["attributes"]
    assert attributes["custom_price"] == 1000
    assert attributes["checkout_data"]["custom"] == {"user_id": str(user_id), "transaction_id": str(txn_id)}
    assert route.calls.last.request.headers["Authorization"] == "Bearer lk"
    assert result.correlation_key == "chk_1"


def lemon_body(event="order_created", status="paid", subtotal=1000, total=1100, user_id=None, txn_id=None):
    return json.dumps({
        "meta": {"event_name": event,
                 "custom_data": {"user_id": str(user_id or uuid.uuid4()), "transaction_id": str(txn_id or uuid.uuid4())}},
        "data": {"id": "9001", "attributes": {"status": status, "subtotal": subtotal, "total": total}},
    }).encode()


def signed(body: bytes, secret="whsec") -> dict:
    return {"X-Signature": hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()}


def test_lemon_verify(http):
    body = lemon_body()
    n = lemon(http).verify(InboundWebhook(body=body, headers=signed(body)))
    assert n.succeeded is True
    assert n.amount == 1000
    assert n.correlation_key == "9001"
    assert n.ignore_reason is None


def test_lemon_verify_rejects_tampered_body(http):
    body = lemon_body()
    headers = signed(body)
    with pytest.raises(VerificationFailed):
        lemon(http).verify(InboundWebhook(body=body.replace(b"1000", b"9999"), headers=headers))
    with pytest.raises(VerificationFailed):
        lemon(http).verify(InboundWebhook(body=body, headers={"X-Signature": "zz-not-hex"}))


def test_lemon_other_events_and_statuses_are_ignored(http):
    for body in (lemon_body(event="subscription_created"), lemon_body(status="pending")):
        n = lemon(http).verify(InboundWebhook(body=body, headers=signed(body)))
        assert n.ignore_reason


def test_event_type_is_read_without_verifying(http):
    assert sepay(http).peek_event_type(InboundWebhook(body=b'{"transferType": "in"}', headers={})) == "in"
    assert sepay(http).peek_event_type(InboundWebhook(body=b"not json", headers={})) is None
    assert lemon(http).peek_event_type(InboundWebhook(body=lemon_body(event="order_refunded"), headers={})) \
        == "order_refunded"
    assert lemon(http).peek_event_type(InboundWebhook(body=b'{"meta": "x"}', headers={})) is None
    assert payos(http).peek_event_type(InboundWebhook(body=b"", headers={})) == "payment"
