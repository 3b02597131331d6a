"""
Gateway adapters, selected once at startup from configuration.
"""
import logging

import httpx

from billing_ledger.core.config import Settings
from billing_ledger.gateways.base import (
    CheckoutResult,
    GatewayAdapter,
    InboundWebhook,
    Provider,
    VerifiedNotification,
)
from billing_ledger.gateways.lemon_squeezy import LemonSqueezyGateway
from billing_ledger.gateways.payos import PayOSGateway
from billing_ledger.gateways.sepay import SePayGateway, normalize_memo

logger = logging.getLogger("billing_ledger.gateways")

__all__ = [
    "CheckoutResult",
    "GatewayAdapter",
    "InboundWebhook",
    "LemonSqueezyGateway",
    "PayOSGateway",
    "Provider",
    "SePayGateway",
    "VerifiedNotification",
    "build_gateways",
    "normalize_memo",
]


def build_gateways(settings: Settings, http_client: httpx.AsyncClient) -> dict[Provider, GatewayAdapter]:
    """Instantiate the adapters listed in ENABLED_PROVIDERS."""
    factories = {
        Provider.PAYOS: lambda: PayOSGateway(
            http_client,
            client_id=settings.PAYOS_CLIENT_ID,
            api_key=settings.PAYOS_API_KEY,
            checksum_key=settings.PAYOS_CHECKSUM_KEY,
            api_base=settings.PAYOS_API_BASE,
            return_url=settings.PAYMENT_RETURN_URL,
            cancel_url=settings.PAYMENT_CANCEL_URL,
            min_amount=settings.PAYOS_MIN_AMOUNT,
        ),
        Provider.SEPAY: lambda: SePayGateway(
            http_client,
            webhook_key=settings.SEPAY_WEBHOOK_KEY,
            account_number=settings.SEPAY_ACCOUNT_NUMBER,
            bank_name=settings.SEPAY_BANK_NAME,
            memo_prefix=settings.SEPAY_MEMO_PREFIX,
            qr_base=settings.SEPAY_QR_BASE,
            min_amount=settings.SEPAY_MIN_AMOUNT,
        ),
        Provider.LEMON_SQUEEZY: lambda: LemonSqueezyGateway(
            http_client,
            api_key=settings.LEMON_API_KEY,
            store_id=settings.LEMON_STORE_ID,
            variant_id=settings.LEMON_VARIANT_ID,
            webhook_secret=settings.LEMON_WEBHOOK_SECRET,
            api_base=settings.LEMON_API_BASE,
            redirect_url=settings.PAYMENT_RETURN_URL,
            min_amount=settings.LEMON_MIN_AMOUNT,
        ),
    }
    gateways = {}
    for name in settings.ENABLED_PROVIDERS:
        try:
            provider = Provider(name.upper())
        except ValueError:
            logger.warning("Ignoring unknown provider in ENABLED_PROVIDERS: %s", name)
            continue
        gateways[provider] = factories[provider]()
    logger.info("Payment gateways enabled: %s", ", ".join(p.value for p in gateways))
    return gateways
