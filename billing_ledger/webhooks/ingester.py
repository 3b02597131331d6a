"""
WebhookIngester - turns at-least-once provider webhooks into exactly-once credits.

Per call:
1. append a webhook_logs row (status=received, event type read from the raw body) in its own commit
2. adapter.verify(): auth failure -> rejected + re-raise, missing secret -> error + re-raise
3. ignored / invalid notifications stop here
4. match the pending transaction (PayOS: orderCode, SePay: normalized memo,
   Lemon Squeezy: custom transaction id of a Lemon Squeezy row, then order id, then recovery)
5. no match -> no_match, terminal match -> duplicate
6. paid -> ledger.settle (processed, or duplicate if a concurrent settle won); providers
   that need it get the amount checked under the row lock -> amount_mismatch (nothing credited)
7. failed -> ledger.fail (processed)
Anything raised after verification is logged as error and still acknowledged,
so the provider does not retry into the same failure; the log row keeps the payload.

Metrics:
- billing_webhooks_total{provider,status}
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from billing_ledger.core.errors import AmountMismatch, AuthenticationFailure, Duplicate, ProviderMisconfigured
from billing_ledger.db.models import STATUS_EXPIRED, TERMINAL_STATUSES, Transaction, WebhookLog
from billing_ledger.gateways.base import GatewayAdapter, InboundWebhook, Provider, VerifiedNotification
from billing_ledger.ledger.transactions import TransactionLedger

logger = logging.getLogger("billing_ledger.webhooks.ingester")

MET_WEBHOOKS = Counter("billing_webhooks_total", "Inbound provider webhooks by final status", ["provider", "status"])

RECEIVED = "received"
IGNORED = "ignored"
INVALID = "invalid"
NO_MATCH = "no_match"
DUPLICATE = "duplicate"
AMOUNT_MISMATCH = "amount_mismatch"
PROCESSED = "processed"
REJECTED = "rejected"
ERROR = "error"


@dataclass
class WebhookOutcome:
    status: str
    transaction_id: Optional[uuid.UUID] = None
    log_id: Optional[uuid.UUID] = None


class WebhookIngester:
    def __init__(self, session_factory: async_sessionmaker, gateways: dict[Provider, GatewayAdapter],
                 ledger: TransactionLedger):
        self.session_factory = session_factory
        self.gateways = gateways
        self.ledger = ledger

    async def ingest(self, provider: Provider, request: InboundWebhook) -> WebhookOutcome:
        adapter = self.gateways.get(provider)
        event_type = adapter.peek_event_type(request) if adapter else None
        log_id = await self._log_received(provider, request, event_type)
        try:
            if adapter is None:
                raise ProviderMisconfigured(provider.value, "ENABLED_PROVIDERS")
            notification = adapter.verify(request)
        except ProviderMisconfigured as exc:
            logger.error("%s webhook refused, provider misconfigured: %s", provider.value, exc.message)
            await self._finish(log_id, ERROR)
            MET_WEBHOOKS.labels(provider=provider.value, status=ERROR).inc()
            raise
        except AuthenticationFailure as exc:
            logger.warning("%s webhook rejected: %s ip=%s", provider.value, exc.message, request.ip_address)
            await self._finish(log_id, REJECTED)
            MET_WEBHOOKS.labels(provider=provider.value, status=REJECTED).inc()
            raise

        try:
            outcome = await self._process(adapter, notification, log_id)
        except Exception:
            logger.exception("%s webhook processing failed log=%s", provider.value, log_id)
            await self._finish(log_id, ERROR)
            outcome = WebhookOutcome(status=ERROR, log_id=log_id)

        MET_WEBHOOKS.labels(provider=provider.value, status=outcome.status).inc()
        return outcome

    async def _process(self, adapter: GatewayAdapter, notification: VerifiedNotification,
                       log_id: uuid.UUID) -> WebhookOutcome:
        provider = adapter.provider.value
        if notification.ignore_reason:
            logger.info("%s webhook ignored: %s", provider, notification.ignore_reason)
            return await self._conclude(log_id, IGNORED)
        if notification.invalid_reason:
            logger.warning("%s webhook invalid: %s", provider, notification.invalid_reason)
            return await self._conclude(log_id, INVALID)

        txn = await self._match(adapter, notification)
        if txn is None:
            logger.warning("%s webhook matched no transaction key=%s", provider, notification.correlation_key)
            return await self._conclude(log_id, NO_MATCH)

        if txn.status in TERMINAL_STATUSES:
            if txn.status == STATUS_EXPIRED and notification.succeeded:
                logger.warning("%s payment arrived for expired transaction %s amount=%s, needs manual review",
                               provider, txn.id, notification.amount)
            else:
                logger.info("%s webhook for already %s transaction %s", provider, txn.status, txn.id)
            return await self._conclude(log_id, DUPLICATE, txn.id)

        if notification.succeeded:
            try:
                settled = await self.ledger.settle(
                    txn.id, notification.payload,
                    gateway_txn_id=notification.gateway_txn_id, webhook_log_id=log_id,
                    received_amount=notification.amount if adapter.requires_amount_match else None,
                )
            except AmountMismatch as exc:
                logger.warning("%s amount mismatch: %s", provider, exc.message)
                return await self._conclude(log_id, AMOUNT_MISMATCH, txn.id)
            if settled:
                # settle() marked the log processed in its own unit of work
                return WebhookOutcome(status=PROCESSED, transaction_id=txn.id, log_id=log_id)
            return await self._conclude(log_id, DUPLICATE, txn.id)

        await self.ledger.fail(txn.id, notification.payload)
        logger.info("%s reported failed payment for %s", provider, txn.id)
        return await self._conclude(log_id, PROCESSED, txn.id)

    async def _match(self, adapter: GatewayAdapter, notification: VerifiedNotification) -> Optional[Transaction]:
        provider = adapter.provider
        key = notification.correlation_key
        async with self.session_factory() as session:
            if provider == Provider.SEPAY:
                if not key.startswith(adapter.normalized_prefix):
                    logger.info("SePay content does not carry our prefix: %s", key)
                    return None
                return (await session.execute(
                    select(Transaction).where(Transaction.provider == provider.value, Transaction.match_key == key)
                    .order_by(Transaction.created_at.desc())
                )).scalars().first()

            if provider == Provider.LEMON_SQUEEZY:
                txn = None
                if notification.transaction_id is not None:
                    txn = await session.get(Transaction, notification.transaction_id)
                    if txn is not None and txn.provider != provider.value:
                        logger.warning("Lemon Squeezy custom transaction id %s belongs to a %s transaction",
                                       txn.id, txn.provider)
                        return None
                if txn is None:
                    txn = (await session.execute(
                        select(Transaction).where(
                            Transaction.provider == provider.value,
                            or_(Transaction.provider_ref == key, Transaction.gateway_txn_id == key),
                        )
                    )).scalars().first()
                if txn is not None or not notification.succeeded or not notification.amount:
                    return txn
            else:
                return (await session.execute(
                    select(Transaction).where(Transaction.provider == provider.value, Transaction.provider_ref == key)
                )).scalar_one_or_none()

        try:
            return await self.ledger.record_external_deposit(
                user_id=notification.user_id,
                provider=provider,
                amount=notification.amount,
                currency=adapter.currency,
                provider_ref=key,
                gateway_response=notification.payload,
                transaction_id=notification.transaction_id,
                gateway_txn_id=notification.gateway_txn_id,
            )
        except Duplicate as exc:
            logger.warning("%s recovery refused: %s", provider.value, exc.message)
            return None

    async def _log_received(self, provider: Provider, request: InboundWebhook,
                            event_type: Optional[str]) -> uuid.UUID:
        log = WebhookLog(
            provider=provider.value,
            event_type=event_type,
            payload=request.loggable_payload(),
            status=RECEIVED,
            ip_address=request.ip_address,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(log)
                await session.flush()
        return log.id

    async def _finish(self, log_id: uuid.UUID, status: str, matched_transaction_id=None):
        # status and matched id are the only columns written after insert
        values = {"status": status}
        if matched_transaction_id is not None:
            values["matched_transaction_id"] = matched_transaction_id
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(WebhookLog).where(WebhookLog.id == log_id).values(**values)
                    .execution_options(synchronize_session=False)
                )

    async def _conclude(self, log_id: uuid.UUID, status: str,
                        transaction_id: Optional[uuid.UUID] = None) -> WebhookOutcome:
        await self._finish(log_id, status, transaction_id)
        return WebhookOutcome(status=status, transaction_id=transaction_id, log_id=log_id)
