import os

# the module-level engine in billing_ledger.db.session is built at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from billing_ledger.core.config import Settings
from billing_ledger.db.models import Base, ConversionRate, Currency, TokenPackage, Transaction, utcnow
from billing_ledger.services import Services, get_services

PAYOS_CHECKSUM_KEY = "payos-checksum-test-key"
SEPAY_WEBHOOK_KEY = "sepay-webhook-test-key"
LEMON_WEBHOOK_SECRET = "lemon-webhook-test-secret"
CRON_SECRET = "cron-test-secret"
INTERNAL_API_KEY = "internal-test-key"


@pytest.fixture
def test_settings():
    return Settings(
        PAYOS_CLIENT_ID="payos-client",
        PAYOS_API_KEY="payos-api-key",
        PAYOS_CHECKSUM_KEY=PAYOS_CHECKSUM_KEY,
        SEPAY_WEBHOOK_KEY=SEPAY_WEBHOOK_KEY,
        SEPAY_ACCOUNT_NUMBER="0123456789",
        LEMON_API_KEY="lemon-api-key",
        LEMON_STORE_ID="1111",
        LEMON_VARIANT_ID="2222",
        LEMON_WEBHOOK_SECRET=LEMON_WEBHOOK_SECRET,
        CURRENCY_API_KEY="rates-key",
        CRON_SECRET=CRON_SECRET,
        INTERNAL_API_KEY=INTERNAL_API_KEY,
        PAYG_DEFAULT_ENABLED=False,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        async with session.begin():
            session.add_all([
                Currency(code="USD", description="US Dollar", minor_unit=2),
                Currency(code="VND", description="Vietnamese Dong", minor_unit=0),
                Currency(code="EUR", description="Euro", minor_unit=2),
            ])
    return factory


@pytest.fixture
async def services(session_factory, test_settings):
    services = Services(session_factory=session_factory, http_client=httpx.AsyncClient(timeout=5),
                        config=test_settings)
    yield services
    await services.aclose()


@pytest.fixture
async def client(services):
    from billing_ledger.main import app
    app.dependency_overrides[get_services] = lambda: services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def user_id():
    return uuid.uuid4()


async def add_pending(session_factory, user_id, *, provider="SEPAY", amount=50000, currency="VND",
                      provider_ref=None, match_key=None, created_at=None, txn_type="deposit", package_id=None):
    txn = Transaction(
        user_id=user_id,
        type=txn_type,
        status="pending",
        amount=amount,
        currency=currency,
        provider=provider,
        provider_ref=provider_ref or uuid.uuid4().hex,
        match_key=match_key,
        package_id=package_id,
        created_at=created_at or utcnow(),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(txn)
    return txn


async def add_rates(session_factory, rates: dict):
    async with session_factory() as session:
        async with session.begin():
            for code, rate in rates.items():
                session.add(ConversionRate(from_code="USD", to_code=code, rate=Decimal(str(rate)),
                                           source="test", is_latest=True))


async def add_package(session_factory, *, slug="starter", price_cents=500, input_tokens=10000,
                      output_tokens=5000, validity_days=30):
    package = TokenPackage(slug=slug, name=slug.title(), price_cents=price_cents, input_tokens=input_tokens,
                           output_tokens=output_tokens, validity_days=validity_days)
    async with session_factory() as session:
        async with session.begin():
            session.add(package)
    return package
