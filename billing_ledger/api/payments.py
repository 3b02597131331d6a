import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from billing_ledger.api.deps import client_ip, get_current_user_id
from billing_ledger.api.serializers import transaction_status
from billing_ledger.gateways.base import Provider
from billing_ledger.services import Services, get_services

logger = logging.getLogger("billing_ledger.api.payments")
router = APIRouter()


class DepositReq(BaseModel):
    # integer minor units of the provider currency (VND for PAYOS/SEPAY, USD cents for LEMON_SQUEEZY)
    amount: int = Field(gt=0)
    provider: Provider
    currency: Optional[str] = None


@router.post("/payment/deposit")
async def create_deposit(req: DepositReq, request: Request, user_id: uuid.UUID = Depends(get_current_user_id),
                         services: Services = Depends(get_services)):
    txn = await services.ledger.create_pending_deposit(
        user_id, req.amount, req.currency, req.provider,
        ip_address=client_ip(request), email=request.headers.get("X-User-Email"),
    )
    data = {
        "transactionId": str(txn.id),
        "provider": txn.provider,
        "status": txn.status,
        "amount": txn.amount,
        "currency": txn.currency,
    }
    data.update(txn.checkout_artifacts or {})
    return {"success": True, "data": data}


@router.get("/payment/status/{transaction_id}")
async def payment_status(transaction_id: uuid.UUID, user_id: uuid.UUID = Depends(get_current_user_id),
                         services: Services = Depends(get_services)):
    txn = await services.ledger.get_status(transaction_id, user_id)
    return {"success": True, "data": transaction_status(txn)}
