"""
Celery Tasks - periodic payment housekeeping

The stale-transaction sweep is the safety net for a checkout whose browser
poll and webhook both went missing. It runs the same reconciliation engine
as the poll, so it may overlap with either without double-granting.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING, Optional

from lms.core.config import settings
from lms.core.logging import get_logger, set_correlation_id
from lms.db.database import get_task_session
from lms.domain.services.gateway import PaymentGateway, get_payment_gateway
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.reconciliation_service import (
    STATUS_FAILED,
    ReconcileRequest,
    ReconciliationEngine,
)
from lms.domain.services.webhook_service import PaymentWebhookService
from lms.workers.celery_app import celery_app

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed afterwards together with anything
    still scheduled on it.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; drop it before closing
            from lms.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at end of task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def reconcile_stale(
    db: AsyncSession,
    gateway: PaymentGateway,
    *,
    older_than_minutes: Optional[int] = None,
    limit: Optional[int] = None,
) -> dict[str, int]:
    """Re-run reconciliation for in-flight checkouts nobody came back for"""
    ledger = LedgerService(db)
    stale = await ledger.list_stale_in_flight(
        older_than_minutes if older_than_minutes is not None else settings.STALE_TRANSACTION_MINUTES,
        limit if limit is not None else settings.STALE_TRANSACTION_BATCH_SIZE,
    )

    # a rollback below expires every loaded row; keep plain identifiers
    targets = [(t.reference, t.gateway_payment_id) for t in stale]

    engine = ReconciliationEngine(db, gateway)
    counts = {"checked": 0, "settled": 0, "failed": 0, "errors": 0}
    for reference, gateway_payment_id in targets:
        counts["checked"] += 1
        try:
            result = await engine.reconcile(ReconcileRequest(
                gateway_payment_id=gateway_payment_id,
                transaction_ref=reference,
            ))
            if result.success:
                counts["settled"] += 1
            elif result.status == STATUS_FAILED:
                # the gateway said so explicitly; stop sweeping it
                transaction = await ledger.get_by_reference(reference)
                await ledger.mark_failed(transaction, "Reported failed by gateway")
                await db.commit()
                counts["failed"] += 1
        except Exception as e:
            await db.rollback()
            counts["errors"] += 1
            logger.error(
                "Stale transaction reconciliation failed",
                extra_data={"reference": reference, "error": str(e)},
                exc_info=True,
            )

    if counts["checked"]:
        logger.info("Stale transaction sweep finished", extra_data=counts)
    return counts


@celery_app.task(name="lms.workers.tasks.reconcile_stale_transactions")
def reconcile_stale_transactions():
    """Periodic sweep of pending/processing card payments"""

    async def _sweep():
        async with get_task_session() as db:
            return await reconcile_stale(db, get_payment_gateway())

    return run_async(_sweep())


@celery_app.task(name="lms.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int = 7):
    """Drop webhook delivery rows past the gateway's retry horizon"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await PaymentWebhookService(db).cleanup_old_events(days)
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
