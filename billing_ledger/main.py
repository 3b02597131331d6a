import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from billing_ledger import __version__
from billing_ledger.api import billing, cron, health, payments, ready, usage, webhooks
from billing_ledger.core.config import settings
from billing_ledger.core.errors import LedgerError
from billing_ledger.core.sentry import init_sentry
from billing_ledger.services import get_services, shutdown_services

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("billing_ledger")
app = FastAPI(title="Billing Ledger", version=__version__)

for module in (health, ready, payments, webhooks, billing, usage, cron):
    app.include_router(module.router, prefix="/api")

app.mount("/metrics", make_asgi_app())


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header")]
    error = {"code": "validation_error", "message": first.get("msg", "invalid request")}
    if loc:
        error["field"] = ".".join(loc)
    return JSONResponse(status_code=400, content={"success": False, "error": error})


@app.on_event("startup")
async def startup_event():
    init_sentry()
    logger.info("Starting billing ledger")
    app.state.job_tasks = []
    if settings.RUN_JOBS_IN_PROCESS:
        services = get_services()
        app.state.job_tasks = [
            asyncio.create_task(services.rate_job.run()),
            asyncio.create_task(services.expiry.run()),
        ]
        logger.info("Rate refresh and expiry jobs running in-process")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down billing ledger")
    for task in getattr(app.state, "job_tasks", []):
        task.cancel()
    await shutdown_services()
