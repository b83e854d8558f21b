"""
Admin Payment Service - review queue for manual (bank transfer) payments

Approval settles the linked ledger entry through the reconciliation engine,
so an approved bank transfer grants access exactly like a gateway payment.
Approve and reject each run in a single database transaction.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import InvalidPaymentActionError, PaymentAlreadyProcessedError
from lms.core.logging import get_logger
from lms.db.models.course import Course
from lms.db.models.payment import PaymentRecord, PaymentRecordMethod, PaymentRecordStatus
from lms.db.models.user import User
from lms.domain.services.admin_notification_service import AdminNotificationService
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.payment_record_service import PaymentRecordService
from lms.domain.services.reconciliation_service import ReconciliationEngine

logger = get_logger(__name__)

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"

_METHOD_LABELS = {
    PaymentRecordMethod.MANUAL: "Bank Transfer",
    PaymentRecordMethod.ONLINE: "Online",
}


@dataclass
class AdminPaymentView:
    id: int
    user_id: str
    student_name: str
    student_email: str
    course_slug: str
    course_name: str
    amount: Decimal
    status: str
    payment_method: str
    transaction_id: str
    date: datetime
    processed_at: Optional[datetime] = None
    receipt_image: Optional[str] = None
    rejection_reason: Optional[str] = None


class AdminPaymentService:
    def __init__(self, db: AsyncSession, notifier=AdminNotificationService):
        self.db = db
        self.records = PaymentRecordService(db)
        self.ledger = LedgerService(db)
        self.engine = ReconciliationEngine(db, gateway=None, notifier=notifier)

    async def list_payments(
        self,
        status: Optional[PaymentRecordStatus] = None,
        limit: int = 200,
    ) -> list[AdminPaymentView]:
        """Newest first, with the student's name when the user still exists"""
        query = (
            select(PaymentRecord, User, Course.title)
            .outerjoin(User, User.id == PaymentRecord.user_id)
            .outerjoin(Course, Course.slug == PaymentRecord.course_slug)
        )
        if status is not None:
            query = query.where(PaymentRecord.status == status)
        query = query.order_by(PaymentRecord.submitted_at.desc(), PaymentRecord.id.desc()).limit(limit)

        result = await self.db.execute(query)
        views = []
        for record, user, course_title in result.all():
            views.append(AdminPaymentView(
                id=record.id,
                user_id=record.user_id,
                student_name=(user.full_name or user.email) if user else "Unknown Student",
                student_email=user.email if user else "Unknown Email",
                course_slug=record.course_slug,
                course_name=course_title or record.course_slug,
                amount=Decimal(record.amount),
                status=PaymentRecordStatus(record.status).value,
                payment_method=_METHOD_LABELS[PaymentRecordMethod(record.method)],
                transaction_id=record.transaction_id,
                date=record.submitted_at,
                processed_at=record.processed_at,
                receipt_image=record.receipt_url,
                rejection_reason=record.rejection_reason,
            ))
        return views

    async def process(
        self,
        record_id: int,
        action: str,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
    ) -> PaymentRecord:
        if action == ACTION_APPROVE:
            return await self.approve(record_id, processed_by=processed_by)
        if action == ACTION_REJECT:
            return await self.reject(record_id, reason=reason, processed_by=processed_by)
        raise InvalidPaymentActionError(action)

    async def approve(self, record_id: int, processed_by: Optional[str] = None) -> PaymentRecord:
        record = await self.records.get(record_id)
        if record.status == PaymentRecordStatus.COMPLETED:
            logger.info("Payment already approved", extra_data={"payment_id": record_id})
            return record
        if record.status != PaymentRecordStatus.PENDING:
            raise PaymentAlreadyProcessedError(record_id, PaymentRecordStatus(record.status).value)

        if not await self.records.mark_completed(record, processed_by=processed_by):
            # a concurrent approval got there first
            if record.status == PaymentRecordStatus.COMPLETED:
                return record
            raise PaymentAlreadyProcessedError(record_id, PaymentRecordStatus(record.status).value)

        transaction = await self.ledger.get_by_reference(record.transaction_id)
        amount = Decimal(transaction.final_price) if transaction is not None else Decimal(record.amount)

        result = await self.engine.settle(
            transaction,
            user_id=record.user_id,
            course_slug=record.course_slug,
            course_name=transaction.course_name if transaction is not None else None,
            amount=amount,
            gateway_payment_id=transaction.gateway_payment_id if transaction is not None else None,
            record_method=PaymentRecordMethod.MANUAL,
        )
        await self.db.commit()

        logger.info(
            "Manual payment approved",
            extra_data={
                "payment_id": record_id,
                "transaction_id": record.transaction_id,
                "user_id": record.user_id,
                "course_slug": record.course_slug,
                "amount": str(amount),
                "processed_by": processed_by,
                "enrollment": result.grant.value if result.grant else None,
            },
        )
        return record

    async def reject(
        self,
        record_id: int,
        reason: Optional[str] = None,
        processed_by: Optional[str] = None,
    ) -> PaymentRecord:
        record = await self.records.get(record_id)
        if record.status == PaymentRecordStatus.REJECTED:
            return record
        if record.status != PaymentRecordStatus.PENDING:
            raise PaymentAlreadyProcessedError(record_id, PaymentRecordStatus(record.status).value)

        if not await self.records.mark_rejected(record, reason=reason, processed_by=processed_by):
            if record.status == PaymentRecordStatus.REJECTED:
                return record
            raise PaymentAlreadyProcessedError(record_id, PaymentRecordStatus(record.status).value)

        transaction = await self.ledger.get_by_reference(record.transaction_id)
        if transaction is not None:
            await self.ledger.mark_cancelled(transaction, reason or "Rejected by admin")
        await self.db.commit()

        logger.info(
            "Manual payment rejected",
            extra_data={
                "payment_id": record_id,
                "transaction_id": record.transaction_id,
                "reason": reason,
                "processed_by": processed_by,
            },
        )
        return record
