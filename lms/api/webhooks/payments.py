"""
Dodo Payments Webhook Handler

Once the body parses, the gateway always gets ``{"received": true}``:
processing errors are logged (and the delivery marked failed for a later
retry) instead of being surfaced, so the gateway does not start a retry storm.
"""
import json

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.config import settings
from lms.core.exceptions import AppException, ErrorCode
from lms.core.logging import get_logger
from lms.db.database import get_db
from lms.domain.services.webhook_service import PaymentWebhookService, verify_webhook_signature

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/webhook",
    summary="Webhook - Dodo Payments",
    description=(
        "Receives payment events from the gateway. Deliveries are deduplicated on the "
        "webhook-id header and signed with the Standard Webhooks scheme."
    ),
    responses={
        200: {"description": "Event received"},
        401: {"description": "Invalid signature"},
        500: {"description": "Malformed payload"},
    },
)
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    body = await request.body()

    if settings.DODO_WEBHOOK_SECRET:
        verify_webhook_signature(body, request.headers, settings.DODO_WEBHOOK_SECRET)
    else:
        logger.warning("DODO_WEBHOOK_SECRET not configured - skipping signature verification")

    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.error("Malformed webhook payload", extra_data={"body_length": len(body)})
        raise AppException(
            message="Malformed webhook payload",
            error_code=ErrorCode.INTERNAL_ERROR,
            status_code=500,
        )

    event_type = payload.get("type") or payload.get("event")
    event_id = request.headers.get("webhook-id")
    service = PaymentWebhookService(db)

    # a broken dedupe table must not block payment processing
    try:
        if not await service.try_acquire_delivery(event_id, event_type or "unknown"):
            return {"received": True, "duplicate": True}
    except Exception:
        await db.rollback()
        logger.error(
            "Webhook idempotency check failed, processing anyway",
            extra_data={"event_id": event_id},
            exc_info=True,
        )

    error = None
    try:
        await service.handle_event(event_type, payload)
    except Exception as e:
        error = str(e)[:500]
        await db.rollback()
        logger.error(
            "Error processing payment webhook",
            extra_data={"event_id": event_id, "event_type": event_type, "error": str(e)},
            exc_info=True,
        )

    try:
        await service.finish_delivery(event_id, error)
    except Exception:
        logger.error(
            "Failed to record webhook delivery outcome",
            extra_data={"event_id": event_id},
            exc_info=True,
        )

    return {"received": True}
