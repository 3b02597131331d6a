"""
Request dependencies: caller identity and the shared-secret checks.

User identity is established upstream (the auth gateway sets X-User-Id); this
service only parses it. Cron and internal endpoints use bearer secrets and
fail closed when the secret is not configured.
"""
import hmac
import uuid
from typing import Optional

from fastapi import Depends, Header, Request

from billing_ledger.core.errors import AuthenticationFailure, ProviderMisconfigured
from billing_ledger.services import Services, get_services


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> uuid.UUID:
    if not x_user_id:
        raise AuthenticationFailure("authentication required")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise AuthenticationFailure("invalid user identity")


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _check_bearer(authorization: Optional[str], secret: Optional[str], scope: str, setting: str):
    if not secret:
        raise ProviderMisconfigured(scope, setting)
    token = (authorization or "").removeprefix("Bearer ").strip()
    if not token or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise AuthenticationFailure("invalid bearer token")


async def require_cron_secret(authorization: Optional[str] = Header(None),
                              services: Services = Depends(get_services)):
    _check_bearer(authorization, services.config.CRON_SECRET, "cron", "CRON_SECRET")


async def require_internal_key(authorization: Optional[str] = Header(None),
                               services: Services = Depends(get_services)):
    _check_bearer(authorization, services.config.INTERNAL_API_KEY, "internal API", "INTERNAL_API_KEY")
