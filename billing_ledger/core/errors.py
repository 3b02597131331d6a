"""
Error taxonomy shared by the ledger, the gateways and the HTTP layer.

Every error carries a stable machine code and the HTTP status it maps to.
User-facing endpoints render these through the handler in main.py; webhook
endpoints only let authentication and misconfiguration errors escape.
"""
from typing import Optional


class LedgerError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None):
        self.message = message or self.code
        self.field = field
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.field:
            body["field"] = self.field
        return body


class ValidationError(LedgerError):
    status_code = 400
    code = "validation_error"


class AuthenticationFailure(LedgerError):
    status_code = 401
    code = "unauthorized"


class VerificationFailed(AuthenticationFailure):
    code = "invalid_signature"


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"


class PackageNotFound(NotFound):
    code = "package_not_found"


class Duplicate(LedgerError):
    status_code = 409
    code = "duplicate"


class AmountMismatch(LedgerError):
    status_code = 200
    code = "amount_mismatch"


class InsufficientBalance(LedgerError):
    status_code = 402
    code = "insufficient_balance"


class RateNotFound(LedgerError):
    status_code = 503
    code = "rate_not_found"


class ProviderMisconfigured(LedgerError):
    status_code = 500
    code = "misconfigured"

    def __init__(self, provider: str, setting: str):
        # name the missing setting, never its value
        super().__init__(f"{provider} is not configured ({setting} missing)")
        self.provider = provider
        self.setting = setting


class ProviderError(LedgerError):
    status_code = 502
    code = "provider_error"
