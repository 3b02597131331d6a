from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from billing_ledger.core.config import settings

# One pool per process; DATABASE_URL uses asyncpg (postgresql+asyncpg://) in production
async_engine = create_async_engine(settings.DATABASE_URL, future=True, echo=settings.DB_ECHO)
AsyncSessionLocal = async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)
