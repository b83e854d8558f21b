"""
Payment Webhook Service - gateway push events

Deliveries are deduplicated on the ``webhook-id`` header through the
``webhook_events`` table: the row is inserted (and committed) before
processing and only marked ``completed`` after it, so a crashed delivery is
retried once it goes stale while a finished one is never replayed.

Completed-payment events reuse ``ReconciliationEngine.settle`` and do not
re-verify with the gateway: the event is the gateway's own assertion.
"""
import base64
import hashlib
import hmac
import time
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import InvalidWebhookSignatureError
from lms.core.logging import get_logger
from lms.db.models.payment_transaction import PaymentTransaction
from lms.db.models.webhook_event import WebhookEvent
from lms.domain.services.admin_notification_service import AdminNotificationService
from lms.domain.services.gateway import GatewayMetadata
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.reconciliation_service import ReconciliationEngine

logger = get_logger(__name__)

SUCCESS_EVENTS = frozenset({
    "payment.succeeded",
    "payment.completed",
    "payment_intent.succeeded",
    "checkout.completed",
})
FAILURE_EVENTS = frozenset({"payment.failed", "payment_intent.failed"})
REFUND_EVENTS = frozenset({"payment.refunded"})
CANCEL_EVENTS = frozenset({"payment.cancelled"})

_STALE_PROCESSING_SECONDS = 120
_SIGNATURE_TOLERANCE_SECONDS = 300


def verify_webhook_signature(
    body: bytes,
    headers: Mapping[str, str],
    secret: str,
    *,
    now: Optional[float] = None,
) -> None:
    """
    Check a Standard Webhooks signature.

    The gateway signs ``"{webhook-id}.{webhook-timestamp}.{body}"`` with
    HMAC-SHA256 and sends ``v1,<base64>`` entries (space separated) in the
    ``webhook-signature`` header. ``whsec_`` secrets carry a base64 key.

    Raises:
        InvalidWebhookSignatureError
    """
    webhook_id = headers.get("webhook-id")
    timestamp = headers.get("webhook-timestamp")
    signature_header = headers.get("webhook-signature")
    if not webhook_id or not timestamp or not signature_header:
        raise InvalidWebhookSignatureError("missing signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise InvalidWebhookSignatureError("invalid timestamp")
    current = time.time() if now is None else now
    if abs(current - sent_at) > _SIGNATURE_TOLERANCE_SECONDS:
        raise InvalidWebhookSignatureError("timestamp outside tolerance")

    if secret.startswith("whsec_"):
        key = base64.b64decode(secret[len("whsec_"):])
    else:
        key = secret.encode()

    signed = f"{webhook_id}.{timestamp}.".encode() + body
    expected = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()

    for entry in signature_header.split():
        version, _, signature = entry.partition(",")
        if version == "v1" and hmac.compare_digest(signature, expected):
            return
    raise InvalidWebhookSignatureError("signature mismatch")


def _reported_amount(data: dict[str, Any]) -> Optional[Decimal]:
    total = data.get("total_amount")
    if total is None:
        return None
    try:
        return (Decimal(str(total)) / 100).quantize(Decimal("0.01"))
    except ArithmeticError:
        return None


class PaymentWebhookService:
    def __init__(self, db: AsyncSession, notifier=AdminNotificationService):
        self.db = db
        self.notifier = notifier
        self.ledger = LedgerService(db)
        self.engine = ReconciliationEngine(db, gateway=None, notifier=notifier)

    # Delivery dedupe

    async def try_acquire_delivery(self, event_id: Optional[str], event_type: str) -> bool:
        """
        True when this delivery should be processed now.

        Optimistic INSERT first; an existing row is only taken over when it
        failed or has been stuck in ``processing`` past the stale threshold.
        """
        if not event_id:
            return True

        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    status="processing",
                    created_at=datetime.utcnow(),
                ))
            await self.db.commit()
            return True
        except IntegrityError:
            pass

        result = await self.db.execute(
            select(WebhookEvent.status, WebhookEvent.created_at).where(WebhookEvent.event_id == event_id)
        )
        row = result.one_or_none()
        if row is None:
            return False

        if row.status == "completed":
            logger.info("Skipping completed duplicate webhook", extra_data={"event_id": event_id})
            return False

        threshold = datetime.utcnow() - timedelta(seconds=_STALE_PROCESSING_SECONDS)
        retry = await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .where(
                or_(
                    WebhookEvent.status == "failed",
                    and_(WebhookEvent.status == "processing", WebhookEvent.created_at < threshold),
                )
            )
            .values(status="processing", error=None, created_at=datetime.utcnow())
        )
        if retry.rowcount > 0:
            await self.db.commit()
            logger.warning("Retrying webhook delivery", extra_data={"event_id": event_id})
            return True

        logger.info("Skipping in-progress webhook", extra_data={"event_id": event_id})
        return False

    async def finish_delivery(self, event_id: Optional[str], error: Optional[str] = None) -> None:
        if not event_id:
            return
        await self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(status="failed" if error else "completed", error=error)
        )
        await self.db.commit()

    async def cleanup_old_events(self, older_than_days: int = 7) -> int:
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(delete(WebhookEvent).where(WebhookEvent.created_at < cutoff))
        await self.db.commit()
        return result.rowcount

    # Event handling

    async def handle_event(self, event_type: Optional[str], payload: dict[str, Any]) -> str:
        """Dispatch one event. Returns a short outcome label for logs and tests."""
        data = payload.get("data")
        if not isinstance(data, dict):
            data = payload

        if event_type in SUCCESS_EVENTS:
            outcome = await self._handle_success(data, payload)
        elif event_type in FAILURE_EVENTS:
            outcome = await self._handle_failure(data, payload)
        elif event_type in REFUND_EVENTS:
            outcome = await self._handle_refund(data, payload)
        elif event_type in CANCEL_EVENTS:
            outcome = await self._handle_cancel(data, payload)
        else:
            logger.info("Ignoring unhandled webhook event", extra_data={"event_type": event_type})
            return "ignored"

        logger.info(
            "Webhook event handled",
            extra_data={
                "event_type": event_type,
                "payment_id": data.get("payment_id"),
                "outcome": outcome,
            },
        )
        return outcome

    async def _locate(self, data: dict[str, Any], metadata: GatewayMetadata) -> Optional[PaymentTransaction]:
        return await self.ledger.find(
            reference=metadata.transaction_ref,
            gateway_payment_id=data.get("payment_id"),
        )

    async def _handle_success(self, data: dict[str, Any], payload: dict[str, Any]) -> str:
        payment_id = data.get("payment_id")
        metadata = GatewayMetadata.from_dict(data.get("metadata"))

        transaction = await self._locate(data, metadata)
        if transaction is None and payment_id and metadata.user_id and metadata.course_slug:
            transaction = await self.engine.ledger_entry_from_metadata(
                payment_id,
                user_id=metadata.user_id,
                course_slug=metadata.course_slug,
                course_name=metadata.course_name,
                metadata=metadata,
                reported_amount=_reported_amount(data),
                reported_currency=data.get("currency"),
            )
        if transaction is not None:
            await self.ledger.record_webhook(transaction, payload)

        amount = self.engine.resolve_amount(transaction, metadata, _reported_amount(data))
        result = await self.engine.settle(
            transaction,
            user_id=metadata.user_id or (transaction.user_id if transaction else None),
            course_slug=metadata.course_slug or (transaction.course_slug if transaction else None),
            course_name=metadata.course_name or (transaction.course_name if transaction else None),
            amount=amount,
            gateway_payment_id=payment_id or (transaction.gateway_payment_id if transaction else None),
        )
        await self.db.commit()
        if result.enrollment_incomplete:
            return "enrollment_incomplete"
        return "granted" if result.grant and result.grant.changed else "already_enrolled"

    async def _handle_failure(self, data: dict[str, Any], payload: dict[str, Any]) -> str:
        transaction = await self._locate(data, GatewayMetadata.from_dict(data.get("metadata")))
        if transaction is None:
            logger.warning("Failure event for unknown transaction", extra_data={"payment_id": data.get("payment_id")})
            return "unknown_transaction"

        await self.ledger.record_webhook(transaction, payload)
        moved = await self.ledger.mark_failed(transaction, data.get("failure_reason") or "Payment failed")
        await self.db.commit()
        return "failed" if moved else "unchanged"

    async def _handle_refund(self, data: dict[str, Any], payload: dict[str, Any]) -> str:
        transaction = await self._locate(data, GatewayMetadata.from_dict(data.get("metadata")))
        if transaction is None:
            logger.warning("Refund event for unknown transaction", extra_data={"payment_id": data.get("payment_id")})
            return "unknown_transaction"

        await self.ledger.record_webhook(transaction, payload)
        moved = await self.ledger.mark_refunded(transaction)
        await self.db.commit()
        if moved:
            await self.notifier.notify_refund(
                transaction_ref=transaction.reference,
                gateway_payment_id=transaction.gateway_payment_id,
                user_id=transaction.user_id,
                course_slug=transaction.course_slug,
            )
        return "refunded" if moved else "unchanged"

    async def _handle_cancel(self, data: dict[str, Any], payload: dict[str, Any]) -> str:
        transaction = await self._locate(data, GatewayMetadata.from_dict(data.get("metadata")))
        if transaction is None:
            return "unknown_transaction"

        await self.ledger.record_webhook(transaction, payload)
        moved = await self.ledger.mark_cancelled(transaction, data.get("failure_reason") or "Cancelled at gateway")
        await self.db.commit()
        return "cancelled" if moved else "unchanged"
