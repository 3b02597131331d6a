"""
PayOS adapter - VietQR checkout links and checksum-signed webhooks.

- correlation key: server generated 8 digit orderCode, echoed back by PayOS
- checkout: POST /v2/payment-requests signed over the sorted request fields
- webhook: {code, desc, success, data: {...}, signature}; signature is the
  HMAC SHA256 of the sorted `data` fields under the checksum key
- data.code "00" means paid; any other code is a failed payment
"""
import logging
import secrets
import uuid

import httpx

from billing_ledger.core.errors import ProviderError, ProviderMisconfigured, VerificationFailed
from billing_ledger.gateways.base import (
    CheckoutResult,
    GatewayAdapter,
    InboundWebhook,
    Provider,
    VerifiedNotification,
    parse_int_amount,
)
from billing_ledger.gateways.signing import constant_time_hex_equals, sign_sorted_data

logger = logging.getLogger("billing_ledger.gateways.payos")

SUCCESS_CODE = "00"
ORDER_CODE_MIN = 10_000_000
ORDER_CODE_MAX = 99_999_999
MAX_DESCRIPTION_LENGTH = 25


def generate_order_code() -> int:
    return ORDER_CODE_MIN + secrets.randbelow(ORDER_CODE_MAX - ORDER_CODE_MIN + 1)


class PayOSGateway(GatewayAdapter):
    provider = Provider.PAYOS
    currency = "VND"

    def __init__(self, http_client: httpx.AsyncClient, *, client_id: str | None, api_key: str | None,
                 checksum_key: str | None, api_base: str, return_url: str, cancel_url: str,
                 min_amount: int = 2000):
        super().__init__(http_client, min_amount)
        self.client_id = client_id
        self.api_key = api_key
        self.checksum_key = checksum_key
        self.api_base = api_base.rstrip("/")
        self.return_url = return_url
        self.cancel_url = cancel_url

    def _require_checksum_key(self) -> str:
        if not self.checksum_key:
            raise ProviderMisconfigured(self.provider.value, "PAYOS_CHECKSUM_KEY")
        return self.checksum_key

    async def create_checkout(self, user_id: uuid.UUID, amount: int, meta: dict) -> CheckoutResult:
        if not self.client_id:
            raise ProviderMisconfigured(self.provider.value, "PAYOS_CLIENT_ID")
        if not self.api_key:
            raise ProviderMisconfigured(self.provider.value, "PAYOS_API_KEY")
        checksum_key = self._require_checksum_key()

        order_code = generate_order_code()
        description = (meta.get("description") or "Nap tien OCR")[:MAX_DESCRIPTION_LENGTH]
        signed_fields = {
            "amount": amount,
            "cancelUrl": self.cancel_url,
            "description": description,
            "orderCode": order_code,
            "returnUrl": self.return_url,
        }
        body = dict(signed_fields, signature=sign_sorted_data(signed_fields, checksum_key))
        headers = {"x-client-id": self.client_id, "x-api-key": self.api_key}

        data = await self._request_json("POST", f"{self.api_base}/v2/payment-requests", json=body, headers=headers)
        if str(data.get("code")) != SUCCESS_CODE or not isinstance(data.get("data"), dict):
            logger.warning("PayOS rejected payment request orderCode=%s code=%s desc=%s",
                           order_code, data.get("code"), data.get("desc"))
            raise ProviderError(f"PayOS rejected payment request: {data.get('desc') or data.get('code')}")

        link = data["data"]
        checkout_url = link.get("checkoutUrl")
        if not checkout_url:
            raise ProviderError("PayOS did not return a checkout URL")
        logger.info("Created PayOS payment link orderCode=%s user=%s amount=%s", order_code, user_id, amount)
        return CheckoutResult(
            checkout_url=checkout_url,
            correlation_key=str(order_code),
            artifacts={"checkoutUrl": checkout_url, "orderCode": order_code, "qrCode": link.get("qrCode")},
            raw=link,
        )

    def peek_event_type(self, request: InboundWebhook) -> str | None:
        return "payment"

    def verify(self, request: InboundWebhook) -> VerifiedNotification:
        checksum_key = self._require_checksum_key()
        body = request.json()
        data = body.get("data")
        signature = body.get("signature")
        if not isinstance(data, dict) or not signature:
            raise VerificationFailed("PayOS webhook missing data or signature")
        if not constant_time_hex_equals(sign_sorted_data(data, checksum_key), str(signature)):
            raise VerificationFailed("PayOS checksum mismatch")

        code = data.get("code") or body.get("code")
        order_code = data.get("orderCode")
        notification = VerifiedNotification(
            provider=self.provider,
            event_type="payment",
            payload=body,
            correlation_key=str(order_code) if order_code is not None else None,
            amount=parse_int_amount(data.get("amount")),
            succeeded=str(code) == SUCCESS_CODE,
            gateway_txn_id=data.get("reference") or data.get("paymentLinkId"),
        )
        if notification.correlation_key is None:
            notification.invalid_reason = "missing orderCode"
        return notification
