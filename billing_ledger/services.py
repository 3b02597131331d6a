"""
Process-wide components: one shared httpx client, the gateway adapters and the
ledger components built on top of them. Built lazily on first use and closed
on shutdown; the API injects it through get_services().
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_ledger.core.config import Settings, settings
from billing_ledger.db.session import AsyncSessionLocal
from billing_ledger.gateways import build_gateways
from billing_ledger.jobs.expiry import ExpiryScanner
from billing_ledger.jobs.rates import RateRefreshJob
from billing_ledger.ledger.transactions import TransactionLedger
from billing_ledger.rates.client import ExchangeRateClient
from billing_ledger.rates.converter import CurrencyConverter
from billing_ledger.usage.consumption import TokenConsumptionEngine
from billing_ledger.webhooks.ingester import WebhookIngester

logger = logging.getLogger("billing_ledger.services")


class Services:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None,
                 http_client: Optional[httpx.AsyncClient] = None, config: Settings = settings):
        self.config = config
        self.session_factory = session_factory or AsyncSessionLocal
        self.http = http_client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT_SECONDS)
        self.gateways = build_gateways(config, self.http)
        self.rate_client = ExchangeRateClient(self.http, config.CURRENCY_API_KEY, config.CURRENCY_API_BASE)
        self.converter = CurrencyConverter(self.session_factory, self.rate_client)
        self.ledger = TransactionLedger(self.session_factory, self.gateways, self.converter,
                                        max_attempts=config.CHECKOUT_CREATION_MAX_ATTEMPTS)
        self.ingester = WebhookIngester(self.session_factory, self.gateways, self.ledger)
        self.consumption = TokenConsumptionEngine(
            self.session_factory,
            feature_rates=config.FEATURE_RATES,
            payg_currency=config.PAYG_CURRENCY,
            payg_default_enabled=config.PAYG_DEFAULT_ENABLED,
        )
        self.expiry = ExpiryScanner(self.session_factory, config.PENDING_EXPIRE_TTL_MINUTES,
                                    config.PENDING_EXPIRE_SCAN_MINUTES)
        self.rate_job = RateRefreshJob(self.converter, config.RATE_REFRESH_INTERVAL_SECONDS)

    async def aclose(self):
        self.expiry.running = False
        self.rate_job.running = False
        await self.http.aclose()


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
    return _services


async def shutdown_services():
    global _services
    if _services is not None:
        await _services.aclose()
        _services = None
