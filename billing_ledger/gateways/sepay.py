"""
SePay adapter - VietQR bank transfer matched on the transfer memo.

There is no per-request signature: SePay authenticates with a static API key
in the Authorization header. The payer types the memo into their banking app
and banks strip punctuation from it, so both sides of the match go through
normalize_memo() and the amount has to match exactly before crediting.
"""
import hmac
import logging
import re
import secrets
import uuid
from urllib.parse import urlencode

import httpx

from billing_ledger.core.errors import AuthenticationFailure, ProviderMisconfigured
from billing_ledger.gateways.base import (
    CheckoutResult,
    GatewayAdapter,
    InboundWebhook,
    Provider,
    VerifiedNotification,
    parse_int_amount,
)

logger = logging.getLogger("billing_ledger.gateways.sepay")

MEMO_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
MEMO_SUFFIX_LENGTH = 8
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_AUTH_SCHEME = re.compile(r"^(Bearer|Apikey)\s+", re.IGNORECASE)


def normalize_memo(memo: str) -> str:
    """Uppercase and drop every character outside [A-Za-z0-9]."""
    return _NON_ALNUM.sub("", memo or "").upper()


def generate_payment_code(prefix: str, user_id: uuid.UUID) -> str:
    suffix = "".join(secrets.choice(MEMO_ALPHABET) for _ in range(MEMO_SUFFIX_LENGTH))
    return f"{prefix}-{user_id}-{suffix}"


class SePayGateway(GatewayAdapter):
    provider = Provider.SEPAY
    currency = "VND"
    requires_amount_match = True

    def __init__(self, http_client: httpx.AsyncClient, *, webhook_key: str | None, account_number: str | None,
                 bank_name: str, memo_prefix: str = "OCR", qr_base: str = "https://qr.sepay.vn/img",
                 min_amount: int = 2000):
        super().__init__(http_client, min_amount)
        self.webhook_key = webhook_key
        self.account_number = account_number
        self.bank_name = bank_name
        self.memo_prefix = memo_prefix
        self.qr_base = qr_base

    @property
    def normalized_prefix(self) -> str:
        return normalize_memo(self.memo_prefix)

    def match_key_for(self, correlation_key: str) -> str:
        return normalize_memo(correlation_key)

    def build_qr_url(self, amount: int, payment_code: str) -> str:
        query = urlencode({"acc": self.account_number, "bank": self.bank_name, "amount": amount, "des": payment_code})
        return f"{self.qr_base}?{query}"

    async def create_checkout(self, user_id: uuid.UUID, amount: int, meta: dict) -> CheckoutResult:
        # no provider API call: the QR image is rendered by qr.sepay.vn from the query string
        if not self.account_number:
            raise ProviderMisconfigured(self.provider.value, "SEPAY_ACCOUNT_NUMBER")
        payment_code = generate_payment_code(self.memo_prefix, user_id)
        qr_url = self.build_qr_url(amount, payment_code)
        return CheckoutResult(
            checkout_url=qr_url,
            correlation_key=payment_code,
            artifacts={
                "qrUrl": qr_url,
                "paymentCode": payment_code,
                "amount": amount,
                "bankName": self.bank_name,
                "accountNumber": self.account_number,
            },
        )

    def authenticate(self, request: InboundWebhook) -> None:
        if not self.webhook_key:
            raise ProviderMisconfigured(self.provider.value, "SEPAY_WEBHOOK_KEY")
        header = request.header("Authorization") or ""
        received = _AUTH_SCHEME.sub("", header).strip()
        if not received or not hmac.compare_digest(received.encode("utf-8"), self.webhook_key.encode("utf-8")):
            logger.warning("SePay webhook unauthorized, key prefix=%r ip=%s", received[:4], request.ip_address)
            raise AuthenticationFailure("invalid SePay API key")

    def peek_event_type(self, request: InboundWebhook) -> str | None:
        transfer_type = request.loggable_payload().get("transferType")
        return str(transfer_type) if transfer_type is not None else None

    def verify(self, request: InboundWebhook) -> VerifiedNotification:
        self.authenticate(request)
        body = request.json()
        transfer_type = body.get("transferType")
        content = body.get("content")
        sepay_id = body.get("id")
        notification = VerifiedNotification(
            provider=self.provider,
            event_type=str(transfer_type or "unknown"),
            payload=body,
            correlation_key=normalize_memo(content) if content else None,
            amount=parse_int_amount(body.get("transferAmount")),
            gateway_txn_id=str(sepay_id or body.get("referenceCode") or "") or None,
        )
        if transfer_type != "in":
            notification.ignore_reason = f"transferType={transfer_type}"
        elif not notification.correlation_key or not notification.amount:
            notification.invalid_reason = "missing content or transferAmount"
        return notification
