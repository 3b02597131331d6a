"""
Jobs worker: exchange rate refresh + pending transaction expiry.

- Runs as a separate container (python -m billing_ledger.jobs.worker)
- Serves Prometheus metrics on JOBS_METRICS_PORT
"""
import asyncio
import logging

from prometheus_client import start_http_server

from billing_ledger.core.config import settings
from billing_ledger.core.sentry import init_sentry
from billing_ledger.services import get_services, shutdown_services

logger = logging.getLogger("billing_ledger.jobs.worker")


async def worker_loop():
    try:
        start_http_server(settings.JOBS_METRICS_PORT)
        logger.info("Prometheus metrics server started on port %s", settings.JOBS_METRICS_PORT)
    except OSError as exc:
        logger.warning("Failed to start metrics server: %s", exc)

    services = get_services()
    try:
        await asyncio.gather(services.rate_job.run(), services.expiry.run())
    finally:
        await shutdown_services()


def run_worker():
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    init_sentry()
    logger.info("Starting billing jobs worker")
    asyncio.run(worker_loop())


if __name__ == "__main__":
    run_worker()
