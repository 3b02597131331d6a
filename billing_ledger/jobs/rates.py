"""
RateRefreshJob - keeps the USD rate table current.

Refreshes once at start, then every RATE_REFRESH_INTERVAL_SECONDS. A failed
refresh is logged and the previous rates stay in force until the next tick.
"""
import asyncio
import logging

from billing_ledger.core.config import settings
from billing_ledger.rates.converter import CurrencyConverter

logger = logging.getLogger("billing_ledger.jobs.rates")


class RateRefreshJob:
    def __init__(self, converter: CurrencyConverter, interval_seconds: int = settings.RATE_REFRESH_INTERVAL_SECONDS):
        self.converter = converter
        self.interval = interval_seconds
        self.running = False

    async def run_once(self) -> int:
        try:
            return await self.converter.refresh()
        except Exception:
            logger.exception("Exchange rate refresh failed; keeping previous rates")
            return 0

    async def run(self):
        self.running = True
        while self.running:
            await self.run_once()
            await asyncio.sleep(self.interval)
