"""
CI helper: schema drift between the SQLAlchemy models and the live database.

Exit code:
 - 0: no drift
 - 2: drift detected (prints differences)
 - 3: connection/config error
"""
import asyncio
import sys

from alembic.autogenerate import compare_metadata
from alembic.migration import MigrationContext
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from billing_ledger.core.config import settings
from billing_ledger.db.models import Base


def _diff(sync_conn):
    mc = MigrationContext.configure(sync_conn)
    return compare_metadata(mc, Base.metadata)


async def main():
    db_url = settings.DATABASE_URL
    if not db_url:
        print("DATABASE_URL not set", file=sys.stderr)
        return 3
    engine = create_async_engine(db_url)
    try:
        async with engine.connect() as conn:
            diffs = await conn.run_sync(_diff)
    except (SQLAlchemyError, OSError) as exc:
        print(f"DB connection failed: {exc.__class__.__name__}", file=sys.stderr)
        return 3
    finally:
        await engine.dispose()

    if not diffs:
        print("No schema drift detected")
        return 0
    print("Schema drift detected. Diff items:")
    for d in diffs:
        print(d)
    return 2


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
