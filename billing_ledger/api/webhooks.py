"""
Provider webhook endpoints.

Authenticated by each provider's own scheme, never by a user session. Every
authentic call gets 200 so the provider stops retrying; only authentication
failures (401) and a missing provider secret (500) are surfaced.
"""
from fastapi import APIRouter, Depends, Request

from billing_ledger.api.deps import client_ip
from billing_ledger.gateways.base import InboundWebhook, Provider
from billing_ledger.services import Services, get_services

router = APIRouter()


async def _ingest(provider: Provider, request: Request, services: Services) -> dict:
    inbound = InboundWebhook(body=await request.body(), headers=request.headers, ip_address=client_ip(request))
    await services.ingester.ingest(provider, inbound)
    return {"success": True}


@router.post("/payment/webhook/payos")
async def payos_webhook(request: Request, services: Services = Depends(get_services)):
    return await _ingest(Provider.PAYOS, request, services)


@router.post("/payment/webhook/sepay")
async def sepay_webhook(request: Request, services: Services = Depends(get_services)):
    return await _ingest(Provider.SEPAY, request, services)


@router.post("/payment/webhook/lemon-squeezy")
async def lemon_squeezy_webhook(request: Request, services: Services = Depends(get_services)):
    return await _ingest(Provider.LEMON_SQUEEZY, request, services)
