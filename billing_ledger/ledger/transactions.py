"""
TransactionLedger - pending transactions, settlement and the wallet/package credits.

Guarantees:
- a transaction moves pending -> paid|failed|expired exactly once; the move is
  a conditional UPDATE (WHERE status='pending') checked by rowcount
- settle() credits the wallet (deposit) or grants the package balance
  (package_purchase) in the same unit of work as the status change, and marks
  the webhook log processed there too; nothing is credited if any step fails
- wallets are created lazily by an upsert on (user_id, currency_id)

Metrics:
- billing_settlements_total{provider}
- billing_settlement_errors_total
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_ledger.core.config import settings
from billing_ledger.core.errors import AmountMismatch, Duplicate, NotFound, PackageNotFound, ValidationError
from billing_ledger.db.models import (
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PENDING,
    TXN_DEPOSIT,
    TXN_PACKAGE_PURCHASE,
    Currency,
    PromoCode,
    TokenBalance,
    TokenPackage,
    Transaction,
    UsageLog,
    Wallet,
    WebhookLog,
    utcnow,
)
from billing_ledger.gateways.base import GatewayAdapter, Provider
from billing_ledger.rates.converter import BASE_CURRENCY, CurrencyConverter

logger = logging.getLogger("billing_ledger.ledger.transactions")

MET_SETTLEMENTS = Counter("billing_settlements_total", "Transactions settled (credited)", ["provider"])
MET_SETTLEMENT_ERRORS = Counter("billing_settlement_errors_total", "Settlements rolled back on error")

MAX_CHECKOUT_CREATION_ATTEMPTS = settings.CHECKOUT_CREATION_MAX_ATTEMPTS


def dialect_insert(session: AsyncSession, model):
    """INSERT construct of the bound dialect, for on_conflict_do_update upserts."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


class TransactionLedger:
    def __init__(self, session_factory: async_sessionmaker, gateways: dict[Provider, GatewayAdapter],
                 converter: Optional[CurrencyConverter] = None,
                 max_attempts: int = MAX_CHECKOUT_CREATION_ATTEMPTS):
        self.session_factory = session_factory
        self.gateways = gateways
        self.converter = converter
        self.max_attempts = max_attempts

    def adapter_for(self, provider) -> GatewayAdapter:
        try:
            key = Provider(str(getattr(provider, "value", provider)).upper())
        except ValueError:
            raise ValidationError(f"unknown provider {provider}", field="provider")
        adapter = self.gateways.get(key)
        if adapter is None:
            raise ValidationError(f"provider {key.value} is not enabled", field="provider")
        return adapter

    # ---------------------------------------------------------------- create

    async def create_pending_deposit(self, user_id: uuid.UUID, amount: int, currency: Optional[str], provider, *,
                                     ip_address: Optional[str] = None, email: Optional[str] = None) -> Transaction:
        adapter = self.adapter_for(provider)
        currency = (currency or adapter.currency).upper()
        if currency != adapter.currency:
            raise ValidationError(f"{adapter.provider.value} only accepts {adapter.currency}", field="currency")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("amount must be a positive integer of minor units", field="amount")
        if amount < adapter.min_amount:
            raise ValidationError(f"minimum amount for {adapter.provider.value} is {adapter.min_amount} {currency}",
                                  field="amount")
        return await self._create_pending(
            user_id, TXN_DEPOSIT, amount, adapter,
            description=f"Deposit {amount} {currency} via {adapter.provider.value}",
            ip_address=ip_address, email=email,
        )

    async def create_pending_package_purchase(self, user_id: uuid.UUID, package_slug: str, provider,
                                              promo_code: Optional[str] = None, *,
                                              ip_address: Optional[str] = None,
                                              email: Optional[str] = None) -> Transaction:
        adapter = self.adapter_for(provider)
        async with self.session_factory() as session:
            package = (await session.execute(
                select(TokenPackage).where(TokenPackage.slug == package_slug, TokenPackage.is_active.is_(True))
            )).scalar_one_or_none()
            if package is None:
                raise PackageNotFound(f"package '{package_slug}' not found", field="package_slug")
            promo = None
            if promo_code:
                promo = (await session.execute(
                    select(PromoCode).where(
                        PromoCode.code == promo_code.strip().upper(),
                        PromoCode.is_active.is_(True),
                        or_(PromoCode.expires_at.is_(None), PromoCode.expires_at > utcnow()),
                    )
                )).scalar_one_or_none()
                if promo is None:
                    raise ValidationError("promo code is invalid or expired", field="promo_code")

        price_cents = package.price_cents
        if promo is not None:
            price_cents = int((Decimal(price_cents) * (100 - promo.discount_percent) / 100)
                              .quantize(Decimal(1), rounding=ROUND_HALF_UP))
        if adapter.currency == BASE_CURRENCY:
            amount = price_cents
        else:
            if self.converter is None:
                raise RuntimeError("package purchases in non-USD currencies need a CurrencyConverter")
            amount = await self.converter.convert_minor(price_cents, BASE_CURRENCY, adapter.currency)
        if amount < adapter.min_amount:
            raise ValidationError(f"price is below the {adapter.provider.value} minimum", field="package_slug")

        return await self._create_pending(
            user_id, TXN_PACKAGE_PURCHASE, amount, adapter,
            description=f"Buy {package.name} (${Decimal(price_cents).scaleb(-2)})",
            ip_address=ip_address, email=email,
            package_id=package.id, promo_code_id=promo.id if promo else None,
        )

    async def _create_pending(self, user_id: uuid.UUID, txn_type: str, amount: int, adapter: GatewayAdapter, *,
                              description: str, ip_address: Optional[str], email: Optional[str],
                              package_id: Optional[uuid.UUID] = None,
                              promo_code_id: Optional[uuid.UUID] = None) -> Transaction:
        """
        Open a checkout and record the pending transaction.
        The id is allocated before the provider call so it can travel in the
        provider's custom data. A correlation key collision retries with a fresh
        checkout; a row that already carries our id was recovered from an early
        webhook and is returned as is.
        """
        for attempt in range(self.max_attempts):
            txn_id = uuid.uuid4()
            checkout = await adapter.create_checkout(
                user_id, amount, {"transaction_id": txn_id, "email": email, "description": description}
            )
            txn = Transaction(
                id=txn_id,
                user_id=user_id,
                type=txn_type,
                status=STATUS_PENDING,
                amount=amount,
                currency=adapter.currency,
                provider=adapter.provider.value,
                provider_ref=checkout.correlation_key,
                match_key=adapter.match_key_for(checkout.correlation_key),
                payment_url=checkout.checkout_url,
                gateway_response={"checkout": checkout.raw} if checkout.raw else None,
                package_id=package_id,
                promo_code_id=promo_code_id,
                description=description,
                ip_address=ip_address,
            )
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        session.add(txn)
                        await session.flush()
                except IntegrityError as ie:
                    await session.rollback()
                    existing = await session.get(Transaction, txn_id)
                    if existing is not None:
                        logger.info("Transaction %s was already recorded from a provider webhook", txn_id)
                        existing.checkout_artifacts = checkout.artifacts
                        return existing
                    logger.warning("Checkout correlation collision provider=%s attempt=%s key=%s err=%s",
                                   adapter.provider.value, attempt, checkout.correlation_key, ie.orig)
                    continue
            txn.checkout_artifacts = checkout.artifacts
            logger.info("Created pending %s %s user=%s amount=%s %s provider=%s",
                        txn_type, txn.id, user_id, amount, adapter.currency, adapter.provider.value)
            return txn
        raise Duplicate("could not allocate a unique checkout reference")

    async def record_external_deposit(self, *, user_id: uuid.UUID, provider: Provider, amount: int, currency: str,
                                      provider_ref: str, gateway_response: dict,
                                      transaction_id: Optional[uuid.UUID] = None,
                                      gateway_txn_id: Optional[str] = None) -> Transaction:
        """
        Create the pending deposit for a paid order we have no record of (the
        webhook beat our own deposit request, or that request failed after the
        checkout was opened). A concurrent creation loses on the unique keys
        and re-reads the winner.
        """
        txn = Transaction(
            id=transaction_id or uuid.uuid4(),
            user_id=user_id,
            type=TXN_DEPOSIT,
            status=STATUS_PENDING,
            amount=amount,
            currency=currency,
            provider=provider.value,
            provider_ref=provider_ref,
            gateway_txn_id=gateway_txn_id,
            gateway_response=gateway_response,
            description=f"Deposit {amount} {currency} via {provider.value} (recovered from webhook)",
        )
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(txn)
                    await session.flush()
                logger.warning("Recovered missing %s transaction %s from webhook ref=%s user=%s amount=%s",
                               provider.value, txn.id, provider_ref, user_id, amount)
                return txn
            except IntegrityError as ie:
                await session.rollback()
                conditions = [Transaction.provider_ref == provider_ref]
                if transaction_id is not None:
                    conditions.append(Transaction.id == transaction_id)
                existing = (await session.execute(
                    select(Transaction).where(Transaction.provider == provider.value, or_(*conditions))
                )).scalars().first()
                if existing is None:
                    # the id is taken by another provider's transaction
                    raise Duplicate(f"transaction {transaction_id} is not a {provider.value} transaction") from ie
                return existing

    # ---------------------------------------------------------------- settle

    async def settle(self, transaction_id: uuid.UUID, gateway_response: Optional[dict], *,
                     gateway_txn_id: Optional[str] = None, webhook_log_id: Optional[uuid.UUID] = None,
                     received_amount: Optional[int] = None) -> bool:
        """
        Mark the transaction paid and credit it, atomically.
        Returns False (and changes nothing) if the transaction was already terminal
        or a concurrent settle won the conditional update.
        With received_amount, anything but the stored amount raises AmountMismatch
        before any write.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    txn = (await session.execute(
                        select(Transaction).where(Transaction.id == transaction_id).with_for_update()
                    )).scalar_one_or_none()
                    if txn is None:
                        raise NotFound(f"transaction {transaction_id} not found")
                    if txn.status != STATUS_PENDING:
                        logger.info("Settle skipped for %s: already %s", transaction_id, txn.status)
                        return False
                    if received_amount is not None and received_amount != txn.amount:
                        raise AmountMismatch(f"transaction {txn.id} expects {txn.amount} {txn.currency}, "
                                             f"received {received_amount}")

                    now = utcnow()
                    values = {"status": STATUS_PAID, "gateway_response": gateway_response,
                              "completed_at": now, "updated_at": now}
                    if gateway_txn_id:
                        values["gateway_txn_id"] = gateway_txn_id
                    res = await session.execute(
                        update(Transaction)
                        .where(Transaction.id == transaction_id, Transaction.status == STATUS_PENDING)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        logger.info("Settle lost the race for %s", transaction_id)
                        return False

                    if txn.type == TXN_DEPOSIT:
                        await self._credit_wallet(session, txn.user_id, txn.currency, txn.amount)
                    elif txn.type == TXN_PACKAGE_PURCHASE:
                        await self._grant_package(session, txn)

                    if webhook_log_id is not None:
                        await session.execute(
                            update(WebhookLog)
                            .where(WebhookLog.id == webhook_log_id)
                            .values(status="processed", matched_transaction_id=txn.id)
                            .execution_options(synchronize_session=False)
                        )
        except (NotFound, AmountMismatch):
            raise
        except Exception:
            MET_SETTLEMENT_ERRORS.inc()
            logger.exception("Settlement rolled back for transaction %s", transaction_id)
            raise

        MET_SETTLEMENTS.labels(provider=txn.provider or "none").inc()
        logger.info("Settled %s %s user=%s amount=%s %s", txn.type, txn.id, txn.user_id, txn.amount, txn.currency)
        return True

    async def _credit_wallet(self, session: AsyncSession, user_id: uuid.UUID, currency_code: str, amount: int):
        currency_id = (await session.execute(
            select(Currency.id).where(Currency.code == currency_code)
        )).scalar_one_or_none()
        if currency_id is None:
            raise ValidationError(f"unknown currency {currency_code}", field="currency")
        now = utcnow()
        stmt = dialect_insert(session, Wallet).values(
            id=uuid.uuid4(),
            user_id=user_id,
            currency_id=currency_id,
            balance=amount,
            total_deposited=amount,
            total_spent=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Wallet.user_id, Wallet.currency_id],
            set_={
                "balance": Wallet.balance + amount,
                "total_deposited": Wallet.total_deposited + amount,
                "updated_at": now,
            },
        )
        await session.execute(stmt)

    async def _grant_package(self, session: AsyncSession, txn: Transaction):
        package = await session.get(TokenPackage, txn.package_id) if txn.package_id else None
        if package is None:
            raise NotFound(f"package for transaction {txn.id} not found")
        now = utcnow()
        session.add(TokenBalance(
            user_id=txn.user_id,
            package_id=package.id,
            transaction_id=txn.id,
            input_tokens_remaining=package.input_tokens,
            output_tokens_remaining=package.output_tokens,
            expires_at=now + timedelta(days=package.validity_days) if package.validity_days else None,
            created_at=now,
        ))
        await session.flush()

    async def fail(self, transaction_id: uuid.UUID, gateway_response: Optional[dict]) -> bool:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id, Transaction.status == STATUS_PENDING)
                    .values(status=STATUS_FAILED, gateway_response=gateway_response,
                            completed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        if res.rowcount == 1:
            logger.info("Transaction %s marked failed", transaction_id)
            return True
        return False

    # ---------------------------------------------------------------- reads

    async def get_status(self, transaction_id: uuid.UUID, user_id: uuid.UUID) -> Transaction:
        async with self.session_factory() as session:
            txn = (await session.execute(
                select(Transaction).where(Transaction.id == transaction_id, Transaction.user_id == user_id)
            )).scalar_one_or_none()
        if txn is None:
            raise NotFound("transaction not found")
        return txn

    async def list_transactions(self, user_id: uuid.UUID, limit: int = 20, offset: int = 0) -> list[Transaction]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(Transaction).where(Transaction.user_id == user_id)
                .order_by(Transaction.created_at.desc()).limit(limit).offset(offset)
            )
            return list(res.scalars().all())

    async def list_usage(self, user_id: uuid.UUID, limit: int = 20, offset: int = 0) -> list[UsageLog]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(UsageLog).where(UsageLog.user_id == user_id)
                .order_by(UsageLog.created_at.desc()).limit(limit).offset(offset)
            )
            return list(res.scalars().all())

    async def list_packages(self) -> list[TokenPackage]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(TokenPackage).where(TokenPackage.is_active.is_(True)).order_by(TokenPackage.sort_order)
            )
            return list(res.scalars().all())

    async def wallet_summary(self, user_id: uuid.UUID) -> dict:
        """All wallets, their aggregate USD value and the live package balances."""
        async with self.session_factory() as session:
            wallets = (await session.execute(
                select(Wallet, Currency).join(Currency, Currency.id == Wallet.currency_id)
                .where(Wallet.user_id == user_id).order_by(Wallet.created_at)
            )).all()
            balances = (await session.execute(
                select(TokenBalance, TokenPackage).join(TokenPackage, TokenPackage.id == TokenBalance.package_id)
                .where(
                    TokenBalance.user_id == user_id,
                    TokenBalance.is_exhausted.is_(False),
                    or_(TokenBalance.expires_at.is_(None), TokenBalance.expires_at > utcnow()),
                )
                .order_by(TokenBalance.created_at)
            )).all()

        total_usd = Decimal(0)
        if self.converter is not None and wallets:
            total_usd = await self.converter.aggregate_balance_usd(user_id)
        return {
            "wallets": [
                {
                    "id": str(wallet.id),
                    "currency": currency.code,
                    "currencyName": currency.description,
                    "minorUnit": currency.minor_unit,
                    "balance": wallet.balance,
                    "totalDeposited": wallet.total_deposited,
                    "totalSpent": wallet.total_spent,
                }
                for wallet, currency in wallets
            ],
            "totalBalanceUsd": str(total_usd.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)),
            "tokenBalances": [
                {
                    "id": str(balance.id),
                    "packageSlug": package.slug,
                    "packageName": package.name,
                    "inputTokensRemaining": balance.input_tokens_remaining,
                    "outputTokensRemaining": balance.output_tokens_remaining,
                    "expiresAt": balance.expires_at.isoformat() if balance.expires_at else None,
                }
                for balance, package in balances
            ],
        }
