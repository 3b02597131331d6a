"""
DB healthcheck for Kubernetes exec probes.

Usage: python -m billing_ledger.bin.healthcheck
Exits 0 if the database answers; non-zero otherwise. Never prints the URL.
"""
import asyncio
import sys

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from billing_ledger.core.config import settings


async def main():
    db_url = settings.DATABASE_URL
    if not db_url:
        print("DATABASE_URL not set", file=sys.stderr)
        return 2
    engine = create_async_engine(db_url, echo=False)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return 0
    except Exception as exc:
        print(f"DB connection failed: {exc.__class__.__name__}", file=sys.stderr)
        return 3
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
