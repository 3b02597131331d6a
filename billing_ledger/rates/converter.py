"""
CurrencyConverter - conversions over the stored USD rate table.

Only USD -> X rows are stored; any other pair is bridged through USD:
    USD -> X : amount * r(X)
    X -> USD : amount / r(X)
    X -> Y   : (amount / r(X)) * r(Y)
All arithmetic is Decimal. Rates are append-only history; the partial unique
index on (to_code) WHERE is_latest keeps exactly one current row per code.
"""
import logging
import time
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from prometheus_client import Gauge
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_ledger.core.errors import RateNotFound
from billing_ledger.db.models import ConversionRate, Currency, Wallet, utcnow
from billing_ledger.rates.client import RATE_SOURCE, ExchangeRateClient

logger = logging.getLogger("billing_ledger.rates.converter")

BASE_CURRENCY = "USD"

MET_RATE_REFRESH_LAST_SUCCESS = Gauge(
    "billing_rate_refresh_last_success_unixtime", "Unix time of the last successful rate refresh"
)


class CurrencyConverter:
    def __init__(self, session_factory: async_sessionmaker, client: Optional[ExchangeRateClient] = None):
        self.session_factory = session_factory
        self.client = client

    async def _latest_rate(self, session: AsyncSession, code: str) -> Decimal:
        if code == BASE_CURRENCY:
            return Decimal(1)
        rate = (await session.execute(
            select(ConversionRate.rate).where(
                ConversionRate.from_code == BASE_CURRENCY,
                ConversionRate.to_code == code,
                ConversionRate.is_latest.is_(True),
            )
        )).scalar_one_or_none()
        if rate is None:
            raise RateNotFound(f"no current rate for {BASE_CURRENCY} -> {code}")
        rate = Decimal(rate)
        if rate <= 0:
            raise RateNotFound(f"current rate for {BASE_CURRENCY} -> {code} is not positive")
        return rate

    async def _convert(self, session: AsyncSession, amount: Decimal, from_code: str, to_code: str) -> Decimal:
        if from_code == to_code:
            return amount
        if from_code == BASE_CURRENCY:
            return amount * await self._latest_rate(session, to_code)
        if to_code == BASE_CURRENCY:
            return amount / await self._latest_rate(session, from_code)
        rate_from = await self._latest_rate(session, from_code)
        rate_to = await self._latest_rate(session, to_code)
        return (amount / rate_from) * rate_to

    async def get_rate(self, from_code: str, to_code: str) -> Decimal:
        """Units of `to_code` per one unit of `from_code`."""
        async with self.session_factory() as session:
            return await self._convert(session, Decimal(1), from_code.upper(), to_code.upper())

    async def convert(self, amount, from_code: str, to_code: str) -> Decimal:
        async with self.session_factory() as session:
            return await self._convert(session, Decimal(str(amount)), from_code.upper(), to_code.upper())

    async def convert_minor(self, amount_minor: int, from_code: str, to_code: str) -> int:
        """
        Convert integer minor units of one currency into integer minor units of
        another, using each currency's minor_unit and rounding half-up.
        e.g. 499 USD cents at 25000 VND/USD -> 124750 VND.
        """
        from_code, to_code = from_code.upper(), to_code.upper()
        if from_code == to_code:
            return int(amount_minor)
        async with self.session_factory() as session:
            minor_units = dict((await session.execute(
                select(Currency.code, Currency.minor_unit).where(Currency.code.in_([from_code, to_code]))
            )).all())
            for code in (from_code, to_code):
                if code not in minor_units:
                    raise RateNotFound(f"unknown currency {code}")
            major = Decimal(int(amount_minor)).scaleb(-minor_units[from_code])
            converted = await self._convert(session, major, from_code, to_code)
        return int(converted.scaleb(minor_units[to_code]).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    async def aggregate_balance_usd(self, user_id: uuid.UUID) -> Decimal:
        """
        Sum of all the user's wallets in USD major units. A wallet whose
        currency has no current (or a zero) rate contributes nothing.
        """
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(Wallet.balance, Currency.code, Currency.minor_unit, ConversionRate.rate)
                .join(Currency, Currency.id == Wallet.currency_id)
                .outerjoin(ConversionRate, (ConversionRate.from_code == BASE_CURRENCY)
                           & (ConversionRate.to_code == Currency.code)
                           & ConversionRate.is_latest.is_(True))
                .where(Wallet.user_id == user_id)
            )).all()

        total = Decimal(0)
        for balance, code, minor_unit, rate in rows:
            major = Decimal(int(balance)).scaleb(-int(minor_unit))
            if code == BASE_CURRENCY:
                total += major
            elif rate:
                total += major / Decimal(rate)
        return total

    async def refresh(self) -> int:
        """
        Fetch the latest USD table and append it as the new current rates.
        Demote + insert for every code happens in one unit of work: a failed
        fetch or write leaves the previous rates in force.
        """
        if self.client is None:
            raise RuntimeError("CurrencyConverter.refresh needs an ExchangeRateClient")
        rates = await self.client.fetch_latest()
        now = utcnow()
        count = 0
        async with self.session_factory() as session:
            async with session.begin():
                for code, rate in sorted(rates.items()):
                    if code == BASE_CURRENCY:
                        continue
                    await session.execute(
                        update(ConversionRate)
                        .where(ConversionRate.from_code == BASE_CURRENCY,
                               ConversionRate.to_code == code,
                               ConversionRate.is_latest.is_(True))
                        .values(is_latest=False)
                        .execution_options(synchronize_session=False)
                    )
                    session.add(ConversionRate(from_code=BASE_CURRENCY, to_code=code, rate=rate,
                                               source=RATE_SOURCE, is_latest=True, created_at=now))
                    # flush per code so the demote lands before the next insert hits the partial index
                    await session.flush()
                    count += 1
        MET_RATE_REFRESH_LAST_SUCCESS.set(int(time.time()))
        logger.info("Refreshed %s exchange rates", count)
        return count
