"""
Async SQLAlchemy models for the billing ledger.
No ORM-side business logic. DB is the source-of-truth: the uniqueness and
balance constraints below are what the ledger relies on under concurrency.
"""
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# transaction types
TXN_DEPOSIT = "deposit"
TXN_PACKAGE_PURCHASE = "package_purchase"
TXN_CONSUME = "consume"

# transaction statuses
STATUS_PENDING = "pending"
STATUS_PAID = "paid"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_EXPIRED = "expired"
TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_SUCCESS, STATUS_FAILED, STATUS_EXPIRED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# currencies (static reference)
class Currency(Base):
    __tablename__ = "currencies"
    id = sa.Column(sa.Integer(), primary_key=True, autoincrement=True)
    code = sa.Column(sa.String(8), nullable=False, unique=True)
    description = sa.Column(sa.Text(), nullable=True)
    # decimal places of the minor unit: USD=2, VND=0
    minor_unit = sa.Column(sa.Integer(), nullable=False, server_default=sa.text("2"), default=2)


# conversion_rates (append-only history, USD -> X)
class ConversionRate(Base):
    __tablename__ = "conversion_rates"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    from_code = sa.Column(sa.String(8), nullable=False, server_default=sa.text("'USD'"), default="USD")
    to_code = sa.Column(sa.String(8), nullable=False)
    rate = sa.Column(sa.Numeric(24, 10), nullable=False)
    source = sa.Column(sa.Text(), nullable=True)
    is_latest = sa.Column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.Index("ix_conversion_rates_to_code_created", "to_code", "created_at"),
        sa.Index("ux_conversion_rates_latest", "to_code", unique=True,
                 postgresql_where=sa.text("is_latest"), sqlite_where=sa.text("is_latest")),
    )


# wallets (one per user and currency)
class Wallet(Base):
    __tablename__ = "wallets"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid(as_uuid=True), nullable=False)
    currency_id = sa.Column(sa.Integer(), sa.ForeignKey("currencies.id"), nullable=False)
    balance = sa.Column(sa.BigInteger(), nullable=False, server_default=sa.text("0"), default=0)
    total_deposited = sa.Column(sa.BigInteger(), nullable=False, server_default=sa.text("0"), default=0)
    total_spent = sa.Column(sa.BigInteger(), nullable=False, server_default=sa.text("0"), default=0)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)
    updated_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.UniqueConstraint("user_id", "currency_id", name="uq_wallets_user_currency"),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
    )


# token_packages
class TokenPackage(Base):
    __tablename__ = "token_packages"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = sa.Column(sa.String(64), nullable=False, unique=True)
    name = sa.Column(sa.Text(), nullable=False)
    price_cents = sa.Column(sa.BigInteger(), nullable=False)  # USD
    input_tokens = sa.Column(sa.BigInteger(), nullable=False)
    output_tokens = sa.Column(sa.BigInteger(), nullable=False)
    validity_days = sa.Column(sa.Integer(), nullable=True)
    is_active = sa.Column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    sort_order = sa.Column(sa.Integer(), nullable=False, server_default=sa.text("0"), default=0)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)


# promo_codes
class PromoCode(Base):
    __tablename__ = "promo_codes"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = sa.Column(sa.String(64), nullable=False, unique=True)
    discount_percent = sa.Column(sa.Integer(), nullable=False)
    is_active = sa.Column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.CheckConstraint("discount_percent BETWEEN 0 AND 100", name="ck_promo_codes_discount"),
    )


# transactions
class Transaction(Base):
    __tablename__ = "transactions"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid(as_uuid=True), nullable=False)
    type = sa.Column(sa.String(32), nullable=False)
    status = sa.Column(sa.String(16), nullable=False, server_default=sa.text("'pending'"), default=STATUS_PENDING)
    amount = sa.Column(sa.BigInteger(), nullable=False)  # minor units of `currency`
    currency = sa.Column(sa.String(8), nullable=False)
    provider = sa.Column(sa.String(32), nullable=True)
    provider_ref = sa.Column(sa.Text(), nullable=True)
    match_key = sa.Column(sa.Text(), nullable=True)
    gateway_txn_id = sa.Column(sa.Text(), nullable=True)
    payment_url = sa.Column(sa.Text(), nullable=True)
    gateway_response = sa.Column(sa.JSON(), nullable=True)
    package_id = sa.Column(sa.Uuid(as_uuid=True), sa.ForeignKey("token_packages.id"), nullable=True)
    promo_code_id = sa.Column(sa.Uuid(as_uuid=True), sa.ForeignKey("promo_codes.id"), nullable=True)
    description = sa.Column(sa.Text(), nullable=True)
    ip_address = sa.Column(sa.String(64), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)
    updated_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)
    completed_at = sa.Column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("provider", "provider_ref", name="uq_transactions_provider_ref"),
        sa.Index("idx_transactions_user_created", "user_id", "created_at"),
        sa.Index("idx_transactions_status_created", "status", "created_at"),
        sa.Index("idx_transactions_match_key", "match_key"),
    )

    # not persisted: provider artifacts (QR url, memo...) of a freshly opened checkout
    checkout_artifacts = None


# user_token_balances
class TokenBalance(Base):
    __tablename__ = "user_token_balances"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid(as_uuid=True), nullable=False)
    package_id = sa.Column(sa.Uuid(as_uuid=True), sa.ForeignKey("token_packages.id"), nullable=False)
    transaction_id = sa.Column(sa.Uuid(as_uuid=True), sa.ForeignKey("transactions.id"), nullable=True, unique=True)
    input_tokens_remaining = sa.Column(sa.BigInteger(), nullable=False)
    output_tokens_remaining = sa.Column(sa.BigInteger(), nullable=False)
    is_exhausted = sa.Column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    expires_at = sa.Column(sa.DateTime(timezone=True), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.CheckConstraint("input_tokens_remaining >= 0 AND output_tokens_remaining >= 0",
                           name="ck_token_balances_non_negative"),
        sa.Index("idx_token_balances_user_created", "user_id", "created_at"),
    )


# billing_accounts (per-user billing preferences)
class BillingAccount(Base):
    __tablename__ = "billing_accounts"
    user_id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True)
    payg_enabled = sa.Column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    updated_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)


# usage_logs (append-only)
class UsageLog(Base):
    __tablename__ = "usage_logs"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid(as_uuid=True), nullable=False)
    feature = sa.Column(sa.String(32), nullable=False)
    input_tokens = sa.Column(sa.BigInteger(), nullable=False)
    output_tokens = sa.Column(sa.BigInteger(), nullable=False)
    source = sa.Column(sa.String(16), nullable=False)
    balance_id = sa.Column(sa.Uuid(as_uuid=True), nullable=True)
    cost_cents = sa.Column(sa.BigInteger(), nullable=False, server_default=sa.text("0"), default=0)
    input_meta = sa.Column(sa.JSON(), nullable=True)
    output_meta = sa.Column(sa.JSON(), nullable=True)
    ip_address = sa.Column(sa.String(64), nullable=True)
    user_agent = sa.Column(sa.Text(), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.Index("idx_usage_logs_user_created", "user_id", "created_at"),
    )


# webhook_logs (append-only apart from final status / matched transaction)
class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = sa.Column(sa.Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = sa.Column(sa.String(32), nullable=False)
    event_type = sa.Column(sa.Text(), nullable=True)
    payload = sa.Column(sa.JSON(), nullable=True)
    status = sa.Column(sa.String(32), nullable=False, server_default=sa.text("'received'"), default="received")
    matched_transaction_id = sa.Column(sa.Uuid(as_uuid=True), nullable=True)
    ip_address = sa.Column(sa.String(64), nullable=True)
    created_at = sa.Column(sa.DateTime(timezone=True), nullable=False, server_default=func.now(), default=utcnow)

    __table_args__ = (
        sa.Index("idx_webhook_logs_provider_created", "provider", "created_at"),
        sa.Index("idx_webhook_logs_status", "status"),
    )
