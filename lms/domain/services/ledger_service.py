"""
Ledger Service - the local record of payment attempts

Status changes go through conditional UPDATEs (``WHERE status IN (...)``)
so two callers racing on the same transaction cannot both win a transition,
and nothing ever moves a transaction backwards. The service flushes but never
commits; the calling workflow owns the unit of work.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.logging import get_logger
from lms.db.models.payment_transaction import (
    PaymentMethod,
    PaymentTransaction,
    TransactionStatus,
    sources_for,
)

logger = get_logger(__name__)


class LedgerService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_transaction(
        self,
        *,
        reference: str,
        user_id: Optional[str],
        course_slug: Optional[str],
        course_name: Optional[str] = None,
        course_id: Optional[str] = None,
        user_email: Optional[str] = None,
        user_name: Optional[str] = None,
        original_price: Decimal = Decimal("0.00"),
        final_price: Decimal = Decimal("0.00"),
        discount_code: Optional[str] = None,
        discount_type: Optional[str] = None,
        discount_amount: Optional[Decimal] = None,
        discount_value: Decimal = Decimal("0.00"),
        currency: str = "LKR",
        payment_method: PaymentMethod = PaymentMethod.CARD,
        status: TransactionStatus = TransactionStatus.PENDING,
        gateway_payment_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            reference=reference,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            course_id=course_id,
            course_slug=course_slug,
            course_name=course_name,
            original_price=original_price,
            discount_code=discount_code,
            discount_type=discount_type,
            discount_amount=discount_amount,
            discount_value=discount_value,
            final_price=final_price,
            currency=currency,
            payment_method=payment_method,
            status=status,
            gateway_payment_id=gateway_payment_id,
            client_ip=client_ip,
            user_agent=(user_agent or "")[:500] or None,
            initiated_at=datetime.utcnow(),
        )
        self.db.add(transaction)
        await self.db.flush()

        logger.info(
            "Payment transaction created",
            extra_data={
                "reference": reference,
                "user_id": user_id,
                "course_slug": course_slug,
                "final_price": str(final_price),
                "currency": currency,
                "status": status.value,
            },
        )
        return transaction

    async def get_by_reference(self, reference: str) -> Optional[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find(
        self,
        *,
        reference: Optional[str] = None,
        gateway_payment_id: Optional[str] = None,
    ) -> Optional[PaymentTransaction]:
        """Look up by reference or gateway payment id, preferring the reference"""
        if reference:
            transaction = await self.get_by_reference(reference)
            if transaction is not None:
                return transaction
        if gateway_payment_id:
            result = await self.db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.gateway_payment_id == gateway_payment_id)
                .order_by(PaymentTransaction.id.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()
        return None

    async def _transition(
        self,
        transaction: PaymentTransaction,
        target: TransactionStatus,
        **values: Any,
    ) -> bool:
        """Move ``transaction`` to ``target`` if its current status allows it.

        Returns True only for the caller whose UPDATE matched.
        """
        result = await self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status.in_(sources_for(target)),
            )
            .values(status=target, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(transaction)
        moved = result.rowcount > 0

        log = logger.info if moved else logger.debug
        log(
            "Transaction transition applied" if moved else "Transaction transition skipped",
            extra_data={
                "reference": transaction.reference,
                "target": target.value,
                "current": TransactionStatus(transaction.status).value,
            },
        )
        return moved

    async def attach_gateway_payment(
        self,
        transaction: PaymentTransaction,
        *,
        gateway_payment_id: str,
        payment_link: Optional[str],
        gateway_product_id: Optional[str],
    ) -> bool:
        return await self._transition(
            transaction,
            TransactionStatus.PROCESSING,
            gateway_payment_id=gateway_payment_id,
            payment_link=payment_link,
            gateway_product_id=gateway_product_id,
        )

    async def mark_completed(
        self,
        transaction: PaymentTransaction,
        gateway_payment_id: Optional[str] = None,
    ) -> bool:
        """First entry into COMPLETED sets ``completed_at``; later calls are no-ops"""
        values: dict[str, Any] = {"completed_at": datetime.utcnow()}
        if gateway_payment_id and not transaction.gateway_payment_id:
            values["gateway_payment_id"] = gateway_payment_id
        return await self._transition(transaction, TransactionStatus.COMPLETED, **values)

    async def mark_failed(self, transaction: PaymentTransaction, error_message: Optional[str]) -> bool:
        return await self._transition(
            transaction,
            TransactionStatus.FAILED,
            error_message=error_message,
            retry_count=PaymentTransaction.retry_count + 1,
        )

    async def mark_refunded(self, transaction: PaymentTransaction) -> bool:
        return await self._transition(transaction, TransactionStatus.REFUNDED)

    async def mark_cancelled(self, transaction: PaymentTransaction, reason: Optional[str] = None) -> bool:
        return await self._transition(transaction, TransactionStatus.CANCELLED, error_message=reason)

    async def record_webhook(self, transaction: PaymentTransaction, payload: dict[str, Any]) -> None:
        transaction.webhook_received_at = datetime.utcnow()
        transaction.webhook_payload = payload
        await self.db.flush()

    async def list_transactions(
        self,
        *,
        reference: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[PaymentTransaction]:
        query = select(PaymentTransaction)
        if reference:
            query = query.where(PaymentTransaction.reference == reference)
        if user_id:
            query = query.where(PaymentTransaction.user_id == user_id)
        query = query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_stale_in_flight(self, older_than_minutes: int, limit: int) -> list[PaymentTransaction]:
        """Checkouts handed to the gateway that never came back to us"""
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.status.in_([TransactionStatus.PENDING, TransactionStatus.PROCESSING]),
                PaymentTransaction.gateway_payment_id.is_not(None),
                PaymentTransaction.initiated_at < cutoff,
                PaymentTransaction.payment_method != PaymentMethod.BANK_TRANSFER,
            )
            .order_by(PaymentTransaction.initiated_at)
            .limit(limit)
        )
        return list(result.scalars().all())
