"""
ExchangeRateClient - async client for the USD based rate table of exchangerate-api.com.

GET {base}/{api_key}/latest/USD ->
    {"result": "success", "base_code": "USD", "conversion_rates": {"VND": 25400.5, ...}}

The API key is part of the URL path, so URLs are never logged.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from billing_ledger.core.errors import ProviderError, ProviderMisconfigured

logger = logging.getLogger("billing_ledger.rates.client")

RATE_SOURCE = "exchangerate-api"


class ExchangeRateClient:
    def __init__(self, http_client: httpx.AsyncClient, api_key: Optional[str], api_base: str):
        self.http = http_client
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    async def fetch_latest(self) -> dict[str, Decimal]:
        """Return {code: rate} for 1 USD. Raises ProviderError on any upstream failure."""
        if not self.api_key:
            raise ProviderMisconfigured("EXCHANGE_RATE_API", "CURRENCY_API_KEY")
        try:
            r = await self.http.get(f"{self.api_base}/{self.api_key}/latest/USD")
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(f"rate API returned HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"rate API request failed: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise ProviderError("rate API returned a non-JSON response") from exc

        if data.get("result") != "success":
            logger.error("Rate API returned error-type=%s", data.get("error-type"))
            raise ProviderError(f"rate API error: {data.get('error-type') or 'unknown'}")

        rates = {}
        for code, value in (data.get("conversion_rates") or {}).items():
            try:
                # str() first so floats keep their printed value
                rate = Decimal(str(value))
            except InvalidOperation:
                logger.warning("Skipping non-numeric rate for %s", code)
                continue
            if not rate.is_finite() or rate <= 0:
                logger.warning("Skipping non-positive rate for %s: %s", code, value)
                continue
            rates[code.upper()] = rate
        if not rates:
            raise ProviderError("rate API returned no conversion rates")
        return rates
