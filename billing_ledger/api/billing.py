import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from billing_ledger.api.deps import client_ip, get_current_user_id
from billing_ledger.api.serializers import package_to_dict, transaction_to_dict, usage_to_dict
from billing_ledger.gateways.base import Provider
from billing_ledger.services import Services, get_services

router = APIRouter()


class PurchaseReq(BaseModel):
    package_slug: str
    provider: Provider
    promo_code: Optional[str] = None


class PaygReq(BaseModel):
    enabled: bool


@router.get("/billing/wallet")
async def wallet(user_id: uuid.UUID = Depends(get_current_user_id), services: Services = Depends(get_services)):
    return {"success": True, "data": await services.ledger.wallet_summary(user_id)}


@router.get("/billing/packages")
async def packages(services: Services = Depends(get_services)):
    items = await services.ledger.list_packages()
    return {"success": True, "data": [package_to_dict(p) for p in items]}


@router.get("/billing/transactions")
async def transactions(limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                       user_id: uuid.UUID = Depends(get_current_user_id),
                       services: Services = Depends(get_services)):
    items = await services.ledger.list_transactions(user_id, limit, offset)
    return {"success": True, "data": [transaction_to_dict(t) for t in items]}


@router.get("/billing/usage")
async def usage(limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                user_id: uuid.UUID = Depends(get_current_user_id), services: Services = Depends(get_services)):
    items = await services.ledger.list_usage(user_id, limit, offset)
    return {"success": True, "data": [usage_to_dict(u) for u in items]}


@router.post("/billing/purchase")
async def purchase(req: PurchaseReq, request: Request, user_id: uuid.UUID = Depends(get_current_user_id),
                   services: Services = Depends(get_services)):
    txn = await services.ledger.create_pending_package_purchase(
        user_id, req.package_slug, req.provider, req.promo_code,
        ip_address=client_ip(request), email=request.headers.get("X-User-Email"),
    )
    data = {"transactionId": str(txn.id), "provider": txn.provider, "status": txn.status,
            "amount": txn.amount, "currency": txn.currency}
    data.update(txn.checkout_artifacts or {})
    return {"success": True, "data": data}


@router.put("/billing/payg")
async def set_payg(req: PaygReq, user_id: uuid.UUID = Depends(get_current_user_id),
                   services: Services = Depends(get_services)):
    enabled = await services.consumption.set_payg_enabled(user_id, req.enabled)
    return {"success": True, "data": {"paygEnabled": enabled}}
