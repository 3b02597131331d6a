from datetime import datetime
from typing import Optional

from billing_ledger.db.models import TokenPackage, Transaction, UsageLog


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def transaction_to_dict(txn: Transaction) -> dict:
    return {
        "id": str(txn.id),
        "type": txn.type,
        "status": txn.status,
        "amount": txn.amount,
        "currency": txn.currency,
        "provider": txn.provider,
        "description": txn.description,
        "paymentUrl": txn.payment_url,
        "createdAt": _iso(txn.created_at),
        "completedAt": _iso(txn.completed_at),
    }


def transaction_status(txn: Transaction) -> dict:
    return {
        "id": str(txn.id),
        "status": txn.status,
        "amount": txn.amount,
        "currency": txn.currency,
        "provider": txn.provider,
        "completedAt": _iso(txn.completed_at),
    }


def package_to_dict(package: TokenPackage) -> dict:
    return {
        "id": str(package.id),
        "slug": package.slug,
        "name": package.name,
        "priceCents": package.price_cents,
        "inputTokens": package.input_tokens,
        "outputTokens": package.output_tokens,
        "validityDays": package.validity_days,
    }


def usage_to_dict(usage: UsageLog) -> dict:
    return {
        "id": str(usage.id),
        "feature": usage.feature,
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "source": usage.source,
        "costCents": usage.cost_cents,
        "createdAt": _iso(usage.created_at),
    }
