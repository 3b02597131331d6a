"""
Lemon Squeezy adapter - hosted card checkout, HMAC-signed webhooks.

The checkout carries {user_id, transaction_id} as custom data; Lemon Squeezy
echoes it in meta.custom_data of every order webhook. The webhook may arrive
before our own deposit request has finished, in which case the ingester
creates the transaction from the webhook itself.
"""
import logging
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
    parse_uuid,
)
from billing_ledger.gateways.signing import verify_body_signature

logger = logging.getLogger("billing_ledger.gateways.lemon_squeezy")

HANDLED_EVENTS = ("order_created", "order_paid")
JSONAPI = "application/vnd.api+json"


class LemonSqueezyGateway(GatewayAdapter):
    provider = Provider.LEMON_SQUEEZY
    currency = "USD"

    def __init__(self, http_client: httpx.AsyncClient, *, api_key: str | None, store_id: str | None,
                 variant_id: str | None, webhook_secret: str | None, api_base: str, redirect_url: str,
                 min_amount: int = 100):
        super().__init__(http_client, min_amount)
        self.api_key = api_key
        self.store_id = store_id
        self.variant_id = variant_id
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.redirect_url = redirect_url

    async def create_checkout(self, user_id: uuid.UUID, amount: int, meta: dict) -> CheckoutResult:
        for setting, value in (("LEMON_API_KEY", self.api_key), ("LEMON_STORE_ID", self.store_id),
                               ("LEMON_VARIANT_ID", self.variant_id)):
            if not value:
                raise ProviderMisconfigured(self.provider.value, setting)

        checkout_data = {"custom": {"user_id": str(user_id), "transaction_id": str(meta["transaction_id"])}}
        if meta.get("email"):
            checkout_data["email"] = meta["email"]
        body = {
            "data": {
                "type": "checkouts",
                "attributes": {
                    "custom_price": amount,
                    "checkout_data": checkout_data,
                    "checkout_options": {"embed": False, "media": True, "logo": True},
                    "product_options": {
                        "enabled_variants": [int(self.variant_id)],
                        "redirect_url": self.redirect_url,
                    },
                },
                "relationships": {
                    "store": {"data": {"type": "stores", "id": str(self.store_id)}},
                    "variant": {"data": {"type": "variants", "id": str(self.variant_id)}},
                },
            }
        }
        headers = {"Accept": JSONAPI, "Content-Type": JSONAPI, "Authorization": f"Bearer {self.api_key}"}
        result = await self._request_json("POST", f"{self.api_base}/checkouts", json=body, headers=headers)

        data = result.get("data") or {}
        checkout_url = (data.get("attributes") or {}).get("url")
        checkout_id = data.get("id")
        if not checkout_url or not checkout_id:
            raise ProviderError("Lemon Squeezy did not return a checkout URL")
        logger.info("Created Lemon Squeezy checkout id=%s user=%s amount=%s", checkout_id, user_id, amount)
        return CheckoutResult(
            checkout_url=checkout_url,
            correlation_key=str(checkout_id),
            artifacts={"checkoutUrl": checkout_url},
            raw=data,
        )

    def peek_event_type(self, request: InboundWebhook) -> str | None:
        meta = request.loggable_payload().get("meta")
        event_name = meta.get("event_name") if isinstance(meta, dict) else None
        return str(event_name) if event_name else None

    def verify(self, request: InboundWebhook) -> VerifiedNotification:
        if not self.webhook_secret:
            raise ProviderMisconfigured(self.provider.value, "LEMON_WEBHOOK_SECRET")
        signature = request.header("X-Signature")
        if not signature or not request.body:
            raise VerificationFailed("missing signature or body")
        if not verify_body_signature(request.body, self.webhook_secret, signature):
            raise VerificationFailed("Lemon Squeezy signature mismatch")

        body = request.json()
        meta = body.get("meta") or {}
        custom = meta.get("custom_data") or {}
        data = body.get("data") or {}
        attributes = data.get("attributes") or {}
        event_name = meta.get("event_name") or ""
        status = attributes.get("status")
        order_id = data.get("id")
        amount = attributes.get("subtotal")
        if amount is None:
            amount = attributes.get("total")

        notification = VerifiedNotification(
            provider=self.provider,
            event_type=event_name or "unknown",
            payload=body,
            correlation_key=str(order_id) if order_id is not None else None,
            amount=parse_int_amount(amount),
            succeeded=status == "paid",
            gateway_txn_id=str(order_id) if order_id is not None else None,
            user_id=parse_uuid(custom.get("user_id")),
            transaction_id=parse_uuid(custom.get("transaction_id")),
        )
        if event_name not in HANDLED_EVENTS:
            notification.ignore_reason = f"event {event_name}"
        elif status not in ("paid", "failed"):
            notification.ignore_reason = f"order status {status}"
        elif notification.correlation_key is None or notification.user_id is None:
            notification.invalid_reason = "missing order id or custom user_id"
        return notification
