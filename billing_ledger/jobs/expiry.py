"""
ExpiryScanner - ages out unpaid checkouts.

A single conditional UPDATE per scan; a transaction settled between the scan
and the update keeps its status because the WHERE clause requires 'pending'.

Metrics:
- billing_expired_transactions_total
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_ledger.core.config import settings
from billing_ledger.db.models import STATUS_EXPIRED, STATUS_PENDING, Transaction, utcnow

logger = logging.getLogger("billing_ledger.jobs.expiry")

MET_EXPIRED = Counter("billing_expired_transactions_total", "Pending transactions moved to expired")


class ExpiryScanner:
    def __init__(self, session_factory: async_sessionmaker, ttl_minutes: int = settings.PENDING_EXPIRE_TTL_MINUTES,
                 scan_interval_minutes: int = settings.PENDING_EXPIRE_SCAN_MINUTES):
        self.session_factory = session_factory
        self.ttl = timedelta(minutes=ttl_minutes)
        self.scan_interval = scan_interval_minutes * 60
        self.running = False

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        cutoff = now - self.ttl
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(Transaction)
                    .where(Transaction.status == STATUS_PENDING, Transaction.created_at < cutoff)
                    .values(status=STATUS_EXPIRED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        expired = res.rowcount or 0
        if expired:
            MET_EXPIRED.inc(expired)
            logger.info("Expired %s pending transactions older than %s", expired, cutoff.isoformat())
        return expired

    async def run(self):
        self.running = True
        consecutive_errors = 0
        while self.running:
            try:
                await self.expire_stale()
                consecutive_errors = 0
                await asyncio.sleep(self.scan_interval)
            except Exception:
                logger.exception("Expiry scan failed")
                consecutive_errors += 1
                backoff = min(300, (2 ** min(consecutive_errors, 6)))
                await asyncio.sleep(backoff)
