from datetime import timedelta

import pytest
from sqlalchemy import select

from billing_ledger.core.errors import InsufficientBalance, ValidationError
from billing_ledger.db.models import TokenBalance, Transaction, UsageLog, Wallet, utcnow
from billing_ledger.usage.consumption import payg_cost

from tests.conftest import add_package, add_pending


async def grant(session_factory, user_id, package, input_tokens=None, output_tokens=None, created_at=None,
                expires_at=None):
    balance = TokenBalance(
        user_id=user_id,
        package_id=package.id,
        input_tokens_remaining=package.input_tokens if input_tokens is None else input_tokens,
        output_tokens_remaining=package.output_tokens if output_tokens is None else output_tokens,
        expires_at=expires_at,
        created_at=created_at or utcnow(),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(balance)
    return balance


async def fund_usd(services, session_factory, user_id, cents):
    txn = await add_pending(session_factory, user_id, provider="LEMON_SQUEEZY", amount=cents, currency="USD")
    await services.ledger.settle(txn.id, None)


def test_payg_cost_rounds_up():
    assert payg_cost(1000, 1000, (30, 60)) == 90
    assert payg_cost(1, 0, (30, 60)) == 1
    assert payg_cost(1500, 500, (10, 10)) == 20
    assert payg_cost(0, 0, (30, 60)) == 0


async def test_consume_from_oldest_package(services, session_factory, user_id):
    package = await add_package(session_factory)
    older = await grant(session_factory, user_id, package, created_at=utcnow() - timedelta(days=2))
    newer = await grant(session_factory, user_id, package)

    result = await services.consumption.consume(user_id, "ocr", 1000, 200, {"input": {"pages": 2}},
                                                ip_address="10.0.0.2", user_agent="ocr-worker/1.0")
    assert result.source == "package"
    assert result.balance_id == older.id
    assert result.cost_cents == 0

    async with session_factory() as session:
        stored = await session.get(TokenBalance, older.id)
        untouched = await session.get(TokenBalance, newer.id)
        usage = await session.get(UsageLog, result.usage_log_id)
    assert (stored.input_tokens_remaining, stored.output_tokens_remaining) == (9000, 4800)
    assert stored.is_exhausted is False
    assert untouched.input_tokens_remaining == 10000
    assert usage.source == "package"
    assert usage.balance_id == older.id
    assert usage.input_meta == {"pages": 2}
    assert usage.output_meta is None
    assert usage.user_agent == "ocr-worker/1.0"


async def test_consume_marks_package_exhausted(services, session_factory, user_id):
    package = await add_package(session_factory)
    balance = await grant(session_factory, user_id, package, input_tokens=100, output_tokens=50)

    await services.consumption.consume(user_id, "ocr", 100, 50)
    async with session_factory() as session:
        stored = await session.get(TokenBalance, balance.id)
    assert stored.is_exhausted is True

    # exhausted, and pay-as-you-go is off by default
    with pytest.raises(InsufficientBalance):
        await services.consumption.consume(user_id, "ocr", 1, 0)


async def test_expired_or_too_small_packages_are_skipped(services, session_factory, user_id):
    package = await add_package(session_factory)
    await grant(session_factory, user_id, package, expires_at=utcnow() - timedelta(days=1))
    await grant(session_factory, user_id, package, input_tokens=10, output_tokens=10)

    with pytest.raises(InsufficientBalance):
        await services.consumption.consume(user_id, "ocr", 500, 0)


async def test_payg_debits_usd_wallet(services, session_factory, user_id):
    await fund_usd(services, session_factory, user_id, 100)
    assert await services.consumption.set_payg_enabled(user_id, True) is True

    result = await services.consumption.consume(user_id, "ai_translate", 1000, 1000)
    assert result.source == "payg"
    assert result.cost_cents == 90
    assert result.balance_id is None

    async with session_factory() as session:
        wallet = (await session.execute(select(Wallet).where(Wallet.user_id == user_id))).scalar_one()
        consume_txn = (await session.execute(
            select(Transaction).where(Transaction.user_id == user_id, Transaction.type == "consume")
        )).scalar_one()
    assert wallet.balance == 10
    assert wallet.total_spent == 90
    assert consume_txn.status == "success"
    assert consume_txn.amount == 90

    # 10 cents left, another 90 cent call is refused and nothing changes
    with pytest.raises(InsufficientBalance):
        await services.consumption.consume(user_id, "ai_translate", 1000, 1000)
    async with session_factory() as session:
        wallet = (await session.execute(select(Wallet).where(Wallet.user_id == user_id))).scalar_one()
        usage_count = len((await session.execute(select(UsageLog))).scalars().all())
    assert wallet.balance == 10
    assert usage_count == 1


async def test_payg_disabled_leaves_wallet_alone(services, session_factory, user_id):
    await fund_usd(services, session_factory, user_id, 1000)
    await services.consumption.set_payg_enabled(user_id, True)
    await services.consumption.set_payg_enabled(user_id, False)

    with pytest.raises(InsufficientBalance):
        await services.consumption.consume(user_id, "ocr", 10, 10)


async def test_package_is_used_before_wallet(services, session_factory, user_id):
    await fund_usd(services, session_factory, user_id, 1000)
    await services.consumption.set_payg_enabled(user_id, True)
    package = await add_package(session_factory)
    await grant(session_factory, user_id, package)

    result = await services.consumption.consume(user_id, "ocr", 10, 10)
    assert result.source == "package"


@pytest.mark.parametrize("feature, input_tokens, output_tokens, field", [
    ("unknown_feature", 1, 1, "feature"),
    ("ocr", -1, 0, "input_tokens"),
    ("ocr", 0, 1.5, "output_tokens"),
])
async def test_consume_validation(services, user_id, feature, input_tokens, output_tokens, field):
    with pytest.raises(ValidationError) as exc:
        await services.consumption.consume(user_id, feature, input_tokens, output_tokens)
    assert exc.value.field == field
