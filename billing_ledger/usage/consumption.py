"""
TokenConsumptionEngine - charge one metered OCR/AI call.

Order of sources:
1. package balances, oldest first: conditional decrement, first rowcount==1 wins
2. pay-as-you-go wallet debit, if the user has it enabled
3. otherwise InsufficientBalance

Everything (decrement or debit, consume transaction, usage log) is one unit of
work. The conditional UPDATEs are the only guard needed under concurrency: a
balance is never driven below zero and a concurrent winner simply makes our
UPDATE match zero rows.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_ledger.core.config import settings
from billing_ledger.core.errors import InsufficientBalance, ValidationError
from billing_ledger.db.models import (
    STATUS_SUCCESS,
    TXN_CONSUME,
    BillingAccount,
    Currency,
    TokenBalance,
    Transaction,
    UsageLog,
    Wallet,
    utcnow,
)
from billing_ledger.ledger.transactions import dialect_insert

logger = logging.getLogger("billing_ledger.usage.consumption")

MET_CONSUMPTION = Counter("billing_token_consumption_total", "Successful token consumptions", ["source"])

SOURCE_PACKAGE = "package"
SOURCE_PAYG = "payg"
TOKENS_PER_RATE_UNIT = 1000


@dataclass
class ConsumptionResult:
    success: bool
    source: str
    balance_id: Optional[uuid.UUID] = None
    cost_cents: int = 0
    usage_log_id: Optional[uuid.UUID] = None


def payg_cost(input_tokens: int, output_tokens: int, rates: tuple[int, int]) -> int:
    """ceil((in * rate_in + out * rate_out) / 1000), in minor units."""
    rate_in, rate_out = rates
    return -(-(input_tokens * rate_in + output_tokens * rate_out) // TOKENS_PER_RATE_UNIT)


class TokenConsumptionEngine:
    def __init__(self, session_factory: async_sessionmaker, feature_rates: Optional[dict] = None,
                 payg_currency: str = settings.PAYG_CURRENCY, payg_default_enabled: bool = settings.PAYG_DEFAULT_ENABLED):
        self.session_factory = session_factory
        self.feature_rates = {k: tuple(v) for k, v in (feature_rates or settings.FEATURE_RATES).items()}
        self.payg_currency = payg_currency
        self.payg_default_enabled = payg_default_enabled

    def _validate(self, feature: str, input_tokens: int, output_tokens: int):
        if feature not in self.feature_rates:
            raise ValidationError(f"unknown feature {feature}", field="feature")
        for name, value in (("input_tokens", input_tokens), ("output_tokens", output_tokens)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer", field=name)

    async def consume(self, user_id: uuid.UUID, feature: str, input_tokens: int, output_tokens: int,
                      meta: Optional[dict] = None, *, ip_address: Optional[str] = None,
                      user_agent: Optional[str] = None) -> ConsumptionResult:
        self._validate(feature, input_tokens, output_tokens)
        meta = meta or {}
        async with self.session_factory() as session:
            async with session.begin():
                result = await self._consume_package(session, user_id, input_tokens, output_tokens)
                if result is None and await self._payg_enabled(session, user_id):
                    result = await self._consume_payg(session, user_id, feature, input_tokens, output_tokens)
                if result is None:
                    logger.info("Insufficient balance user=%s feature=%s in=%s out=%s",
                                user_id, feature, input_tokens, output_tokens)
                    raise InsufficientBalance("no package balance or pay-as-you-go funds left")

                usage = UsageLog(
                    user_id=user_id,
                    feature=feature,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    source=result.source,
                    balance_id=result.balance_id,
                    cost_cents=result.cost_cents,
                    input_meta=meta.get("input"),
                    output_meta=meta.get("output"),
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                session.add(usage)
                await session.flush()
                result.usage_log_id = usage.id

        MET_CONSUMPTION.labels(source=result.source).inc()
        logger.info("Consumed %s/%s tokens for %s user=%s source=%s cost=%s",
                    input_tokens, output_tokens, feature, user_id, result.source, result.cost_cents)
        return result

    async def _consume_package(self, session: AsyncSession, user_id: uuid.UUID, input_tokens: int,
                               output_tokens: int) -> Optional[ConsumptionResult]:
        now = utcnow()
        candidates = (await session.execute(
            select(TokenBalance.id).where(
                TokenBalance.user_id == user_id,
                TokenBalance.is_exhausted.is_(False),
                or_(TokenBalance.expires_at.is_(None), TokenBalance.expires_at > now),
                TokenBalance.input_tokens_remaining >= input_tokens,
                TokenBalance.output_tokens_remaining >= output_tokens,
            ).order_by(TokenBalance.created_at, TokenBalance.id)
        )).scalars().all()

        for balance_id in candidates:
            # SET expressions see the pre-update row
            res = await session.execute(
                update(TokenBalance)
                .where(
                    TokenBalance.id == balance_id,
                    TokenBalance.is_exhausted.is_(False),
                    TokenBalance.input_tokens_remaining >= input_tokens,
                    TokenBalance.output_tokens_remaining >= output_tokens,
                )
                .values(
                    input_tokens_remaining=TokenBalance.input_tokens_remaining - input_tokens,
                    output_tokens_remaining=TokenBalance.output_tokens_remaining - output_tokens,
                    is_exhausted=case(
                        (and_(TokenBalance.input_tokens_remaining - input_tokens <= 0,
                              TokenBalance.output_tokens_remaining - output_tokens <= 0), True),
                        else_=False,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                return ConsumptionResult(success=True, source=SOURCE_PACKAGE, balance_id=balance_id)
        return None

    async def _payg_enabled(self, session: AsyncSession, user_id: uuid.UUID) -> bool:
        account = await session.get(BillingAccount, user_id)
        if account is None:
            return self.payg_default_enabled
        return account.payg_enabled

    async def _consume_payg(self, session: AsyncSession, user_id: uuid.UUID, feature: str, input_tokens: int,
                            output_tokens: int) -> Optional[ConsumptionResult]:
        cost = payg_cost(input_tokens, output_tokens, self.feature_rates[feature])
        currency_id = (await session.execute(
            select(Currency.id).where(Currency.code == self.payg_currency)
        )).scalar_one_or_none()
        if currency_id is None:
            logger.error("Pay-as-you-go currency %s is not in the currencies table", self.payg_currency)
            return None

        now = utcnow()
        res = await session.execute(
            update(Wallet)
            .where(Wallet.user_id == user_id, Wallet.currency_id == currency_id, Wallet.balance >= cost)
            .values(balance=Wallet.balance - cost, total_spent=Wallet.total_spent + cost, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return None

        session.add(Transaction(
            user_id=user_id,
            type=TXN_CONSUME,
            status=STATUS_SUCCESS,
            amount=cost,
            currency=self.payg_currency,
            description=f"{feature}: {input_tokens} in / {output_tokens} out tokens",
            completed_at=now,
        ))
        return ConsumptionResult(success=True, source=SOURCE_PAYG, cost_cents=cost)

    async def set_payg_enabled(self, user_id: uuid.UUID, enabled: bool) -> bool:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, BillingAccount).values(
                    user_id=user_id, payg_enabled=enabled, updated_at=now
                )
                await session.execute(stmt.on_conflict_do_update(
                    index_elements=[BillingAccount.user_id],
                    set_={"payg_enabled": enabled, "updated_at": now},
                ))
        logger.info("Pay-as-you-go %s for user=%s", "enabled" if enabled else "disabled", user_id)
        return enabled
