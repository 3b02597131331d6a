"""
Metering endpoint for the OCR/AI services. Not user facing: callers
authenticate with the internal API key and name the user explicitly.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from billing_ledger.api.deps import client_ip, require_internal_key
from billing_ledger.services import Services, get_services

router = APIRouter()


class ConsumeReq(BaseModel):
    user_id: uuid.UUID
    feature: str
    input_tokens: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    input_meta: Optional[dict] = None
    output_meta: Optional[dict] = None
    user_agent: Optional[str] = None


@router.post("/usage/consume", dependencies=[Depends(require_internal_key)])
async def consume(req: ConsumeReq, request: Request, services: Services = Depends(get_services)):
    result = await services.consumption.consume(
        req.user_id, req.feature, req.input_tokens, req.output_tokens,
        {"input": req.input_meta, "output": req.output_meta},
        ip_address=client_ip(request), user_agent=req.user_agent,
    )
    return {
        "success": True,
        "data": {
            "source": result.source,
            "balanceId": str(result.balance_id) if result.balance_id else None,
            "costCents": result.cost_cents,
        },
    }
