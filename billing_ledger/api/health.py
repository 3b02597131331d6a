from datetime import datetime, timezone

from fastapi import APIRouter

from billing_ledger import __version__
from billing_ledger.core.config import settings

router = APIRouter()


@router.get("/health")
async def health():
    """
    Liveness: always 200, no DB dependency.
    """
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }
