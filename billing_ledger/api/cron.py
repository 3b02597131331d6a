"""
Hooks for an external scheduler, as an alternative to the jobs worker.
"""
from fastapi import APIRouter, Depends

from billing_ledger.api.deps import require_cron_secret
from billing_ledger.services import Services, get_services

router = APIRouter(dependencies=[Depends(require_cron_secret)])


@router.post("/cron/sync-rates")
async def sync_rates(services: Services = Depends(get_services)):
    updated = await services.converter.refresh()
    return {"success": True, "data": {"updated": updated}}


@router.post("/cron/expire-pending")
async def expire_pending(services: Services = Depends(get_services)):
    expired = await services.expiry.expire_stale()
    return {"success": True, "data": {"expired": expired}}
