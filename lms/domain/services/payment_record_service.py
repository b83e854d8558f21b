"""
Payment Record Service - admin-facing payment projection

At most one record per ``transaction_id``: an existence check first, and the
unique constraint (inside a savepoint) for callers that race past it.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import ManualPaymentNotFoundError
from lms.core.logging import get_logger
from lms.db.models.payment import PaymentRecord, PaymentRecordMethod, PaymentRecordStatus

logger = get_logger(__name__)


class PaymentRecordService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[PaymentRecord]:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, record_id: int) -> PaymentRecord:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.id == record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise ManualPaymentNotFoundError(record_id)
        return record

    async def record_once(
        self,
        *,
        transaction_id: str,
        user_id: str,
        course_slug: str,
        amount: Decimal,
        method: PaymentRecordMethod,
        payment_id: Optional[str] = None,
        status: PaymentRecordStatus = PaymentRecordStatus.COMPLETED,
        receipt_url: Optional[str] = None,
    ) -> tuple[PaymentRecord, bool]:
        """Insert the record unless one exists. Returns ``(record, created)``."""
        existing = await self.get_by_transaction_id(transaction_id)
        if existing is not None:
            return existing, False

        now = datetime.utcnow()
        record = PaymentRecord(
            transaction_id=transaction_id,
            user_id=user_id,
            course_slug=course_slug,
            amount=amount,
            method=method,
            payment_id=payment_id,
            status=status,
            receipt_url=receipt_url,
            submitted_at=now,
            processed_at=now if status == PaymentRecordStatus.COMPLETED else None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError:
            logger.info(
                "Payment record already projected by a concurrent request",
                extra_data={"transaction_id": transaction_id},
            )
            existing = await self.get_by_transaction_id(transaction_id)
            return existing, False

        logger.info(
            "Payment record created",
            extra_data={
                "transaction_id": transaction_id,
                "user_id": user_id,
                "course_slug": course_slug,
                "amount": str(amount),
                "method": method.value,
                "status": status.value,
            },
        )
        return record, True

    async def _close(self, record: PaymentRecord, target: PaymentRecordStatus, **values) -> bool:
        """pending -> ``target``; False if someone else already decided"""
        result = await self.db.execute(
            update(PaymentRecord)
            .where(PaymentRecord.id == record.id, PaymentRecord.status == PaymentRecordStatus.PENDING)
            .values(status=target, processed_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(record)
        return result.rowcount > 0

    async def mark_completed(self, record: PaymentRecord, processed_by: Optional[str] = None) -> bool:
        return await self._close(record, PaymentRecordStatus.COMPLETED, processed_by=processed_by)

    async def mark_rejected(
        self,
        record: PaymentRecord,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
    ) -> bool:
        return await self._close(
            record,
            PaymentRecordStatus.REJECTED,
            rejection_reason=reason,
            processed_by=processed_by,
        )

    async def list_records(
        self,
        *,
        status: Optional[PaymentRecordStatus] = None,
        user_id: Optional[str] = None,
        limit: int = 200,
    ) -> list[PaymentRecord]:
        query = select(PaymentRecord)
        if status is not None:
            query = query.where(PaymentRecord.status == status)
        if user_id:
            query = query.where(PaymentRecord.user_id == user_id)
        query = query.order_by(PaymentRecord.submitted_at.desc(), PaymentRecord.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())
