"""
Sentry initialization for the API and the jobs worker. No-op without SENTRY_DSN.
"""
import logging

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from billing_ledger import __version__
from billing_ledger.core.config import settings


def init_sentry():
    dsn = settings.SENTRY_DSN
    if not dsn:
        return
    sentry_logging = LoggingIntegration(
        level=logging.INFO,        # breadcrumbs
        event_level=logging.ERROR  # settlement rollbacks and webhook processing failures
    )
    sentry_sdk.init(
        dsn,
        integrations=[sentry_logging],
        release=f"{settings.APP_NAME}@{__version__}",
        traces_sample_rate=0.0,
        send_default_pii=False,
    )
