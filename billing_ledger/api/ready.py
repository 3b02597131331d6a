from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from billing_ledger.services import Services, get_services

router = APIRouter()


async def check_db(services: Services):
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True, None
    except Exception as e:
        return False, e.__class__.__name__


@router.get("/ready")
async def ready(services: Services = Depends(get_services)):
    """
    Readiness: the database must answer; 503 otherwise.
    """
    db_ok, db_err = await check_db(services)
    body = {
        "status": "ok" if db_ok else "degraded",
        "dependencies": {
            "database": {"ok": db_ok, "error": db_err},
            "providers": sorted(p.value for p in services.gateways),
        },
    }
    status_code = status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(body, status_code=status_code)
