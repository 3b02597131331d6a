"""
Gateway adapter interface.

One adapter per external payment provider. An adapter knows how to open a
checkout with its provider and how to authenticate and parse that provider's
webhook calls; it never touches the database. Matching and settlement are the
ingester's and the ledger's job.
"""
import enum
import json
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import httpx

from billing_ledger.core.errors import ProviderError, VerificationFailed


class Provider(str, enum.Enum):
    PAYOS = "PAYOS"
    SEPAY = "SEPAY"
    LEMON_SQUEEZY = "LEMON_SQUEEZY"


@dataclass
class CheckoutResult:
    checkout_url: Optional[str]
    correlation_key: str
    # provider specific artifacts returned to the client (QR url, memo, bank...)
    artifacts: dict = field(default_factory=dict)
    raw: Optional[dict] = None


@dataclass
class InboundWebhook:
    body: bytes
    headers: Mapping[str, str]
    ip_address: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        # starlette headers are case-insensitive already, plain dicts are not
        value = self.headers.get(name)
        if value is None:
            value = self.headers.get(name.lower())
        return value

    def json(self) -> dict:
        try:
            payload = json.loads(self.body or b"{}")
        except (ValueError, UnicodeDecodeError):
            raise VerificationFailed("webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise VerificationFailed("webhook body must be a JSON object")
        return payload

    def loggable_payload(self) -> dict:
        try:
            payload = json.loads(self.body or b"{}")
            return payload if isinstance(payload, dict) else {"body": payload}
        except (ValueError, UnicodeDecodeError):
            return {"raw": self.body.decode("utf-8", errors="replace")[:4096]}


@dataclass
class VerifiedNotification:
    """Authenticated, parsed webhook call."""
    provider: Provider
    event_type: str
    payload: dict
    correlation_key: Optional[str] = None
    amount: Optional[int] = None
    succeeded: bool = True
    gateway_txn_id: Optional[str] = None
    # carried in provider custom data (Lemon Squeezy)
    user_id: Optional[uuid.UUID] = None
    transaction_id: Optional[uuid.UUID] = None
    # set when the call is authentic but not something we act on
    ignore_reason: Optional[str] = None
    # set when the call is authentic but lacks required fields
    invalid_reason: Optional[str] = None


class GatewayAdapter(ABC):
    provider: Provider
    currency: str
    requires_amount_match = False

    def __init__(self, http_client: httpx.AsyncClient, min_amount: int):
        self.http = http_client
        self.min_amount = min_amount

    @abstractmethod
    async def create_checkout(self, user_id: uuid.UUID, amount: int, meta: dict) -> CheckoutResult:
        ...

    @abstractmethod
    def verify(self, request: InboundWebhook) -> VerifiedNotification:
        ...

    def peek_event_type(self, request: InboundWebhook) -> Optional[str]:
        """Event type read from the unverified body, for the audit log only."""
        return None

    def match_key_for(self, correlation_key: str) -> Optional[str]:
        """Secondary lookup key stored with the pending transaction, if the provider needs one."""
        return None

    async def _request_json(self, method: str, url: str, **kwargs) -> dict:
        """
        Outbound provider call. Transport errors and non-2xx responses become
        ProviderError; the client timeout bounds the wait.
        """
        try:
            r = await self.http.request(method, url, **kwargs)
            r.raise_for_status()
            return r.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"{self.provider.value} returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.provider.value} request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise ProviderError(f"{self.provider.value} returned a non-JSON response") from exc


def parse_int_amount(value: Any) -> Optional[int]:
    """
    Parse a provider amount as an exact integer of minor units.
    Fractional or non-numeric values are rejected (None).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = str(value).strip()
    if not text.lstrip("-").isdigit():
        return None
    return int(text)


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
