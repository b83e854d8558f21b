"""
Student Enrollment Service - the student-facing side of enrollment

Registration-time course selection creates an unpaid enrollment (free
courses are granted straight away). Bank transfers do not enroll anyone:
they open a pending ledger entry plus a manual payment record that waits
for an admin decision.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import AlreadyEnrolledError, CourseNotFoundError, UserNotFoundError
from lms.core.logging import get_logger
from lms.db.models.course import Course
from lms.db.models.enrollment import Enrollment
from lms.db.models.payment import PaymentRecord, PaymentRecordMethod, PaymentRecordStatus
from lms.db.models.payment_transaction import PaymentMethod, PaymentTransaction, TransactionStatus
from lms.db.models.user import User
from lms.domain.services.admin_notification_service import AdminNotificationService
from lms.domain.services.enrollment_service import EnrollmentService
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.payment_record_service import PaymentRecordService
from lms.domain.services.pricing_service import PricingService

logger = get_logger(__name__)

_BANK_REFERENCE_ATTEMPTS = 5


def bank_reference(now_ms: Optional[int] = None) -> str:
    return f"bank_{now_ms if now_ms is not None else int(time.time() * 1000)}"


@dataclass
class StudentEnrollments:
    enrollments: list[Enrollment]
    pending: list[PaymentRecord] = field(default_factory=list)
    course_titles: dict[str, str] = field(default_factory=dict)

    @property
    def stats(self) -> dict[str, int]:
        # pending verifications are not counted
        return {
            "total_courses": len(self.enrollments),
            "completed_courses": sum(1 for e in self.enrollments if (e.progress or 0) >= 100),
            "in_progress_courses": sum(1 for e in self.enrollments if 0 < (e.progress or 0) < 100),
        }


class StudentEnrollmentService:
    def __init__(self, db: AsyncSession, notifier=AdminNotificationService):
        self.db = db
        self.notifier = notifier
        self.enrollments = EnrollmentService(db)
        self.ledger = LedgerService(db)
        self.records = PaymentRecordService(db)
        self.pricing = PricingService(db)

    async def _require_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def _find_course(self, course_slug: str) -> Optional[Course]:
        try:
            return await self.pricing.get_course(course_slug)
        except CourseNotFoundError:
            return None

    async def list_enrollments(self, user_id: str) -> StudentEnrollments:
        await self._require_user(user_id)
        enrollments = await self.enrollments.list_for_user(user_id)
        enrolled_slugs = {e.course_slug for e in enrollments}

        pending = [
            record
            for record in await self.records.list_records(status=PaymentRecordStatus.PENDING, user_id=user_id)
            if record.method == PaymentRecordMethod.MANUAL and record.course_slug not in enrolled_slugs
        ]

        slugs = enrolled_slugs | {record.course_slug for record in pending}
        titles: dict[str, str] = {}
        if slugs:
            result = await self.db.execute(select(Course.slug, Course.title).where(Course.slug.in_(slugs)))
            titles = {slug: title for slug, title in result.all()}

        return StudentEnrollments(enrollments=enrollments, pending=pending, course_titles=titles)

    async def enroll(
        self,
        user_id: str,
        course_slug: str,
        course_name: Optional[str] = None,
    ) -> Enrollment:
        """
        Raises:
            UserNotFoundError
            AlreadyEnrolledError
        """
        await self._require_user(user_id)
        course = await self._find_course(course_slug)
        name = course_name or (course.title if course else None)

        if course is not None and Decimal(course.price) == 0:
            if await self.enrollments.get_enrollment(user_id, course_slug) is not None:
                raise AlreadyEnrolledError(course_slug)
            await self.enrollments.grant_paid_access(
                user_id=user_id,
                course_slug=course_slug,
                course_name=name,
                amount=Decimal("0.00"),
                payment_id=None,
            )
            enrollment = await self.enrollments.get_enrollment(user_id, course_slug)
        else:
            enrollment = await self.enrollments.enroll_unpaid(user_id, course_slug, name)

        await self.db.commit()
        logger.info(
            "Student enrolled",
            extra_data={"user_id": user_id, "course_slug": course_slug, "paid": enrollment.paid},
        )
        return enrollment

    async def submit_bank_transfer(
        self,
        user_id: str,
        course_slug: str,
        *,
        course_name: Optional[str] = None,
        amount_paid: Optional[Decimal] = None,
        receipt_url: Optional[str] = None,
    ) -> PaymentTransaction:
        """Open a manual payment for admin review; nobody is enrolled yet

        Raises:
            UserNotFoundError
        """
        user = await self._require_user(user_id)
        course = await self._find_course(course_slug)

        if course is not None:
            price = Decimal(course.price)
            currency = course.currency or "LKR"
        else:
            price = Decimal(amount_paid or 0)
            currency = "LKR"

        transaction = await self._open_bank_entry(
            user_id=user_id,
            user_email=user.email,
            user_name=user.full_name,
            course_id=str(course.id) if course else None,
            course_slug=course_slug,
            course_name=course_name or (course.title if course else course_slug),
            original_price=price,
            final_price=price,
            currency=currency,
            payment_method=PaymentMethod.BANK_TRANSFER,
            status=TransactionStatus.PENDING,
        )
        reference = transaction.reference
        await self.records.record_once(
            transaction_id=reference,
            user_id=user_id,
            course_slug=course_slug,
            amount=Decimal(amount_paid) if amount_paid is not None else price,
            method=PaymentRecordMethod.MANUAL,
            status=PaymentRecordStatus.PENDING,
            receipt_url=receipt_url,
        )
        await self.db.commit()

        await self.notifier.notify_bank_transfer_submitted(
            transaction_ref=reference,
            user_id=user_id,
            course_slug=course_slug,
            amount=price,
        )
        return transaction

    async def _open_bank_entry(self, **fields) -> PaymentTransaction:
        """Pending ledger entry under a fresh ``bank_<ms>`` reference"""
        base = bank_reference()
        for attempt in range(_BANK_REFERENCE_ATTEMPTS):
            # two submissions in the same millisecond get suffixed references
            reference = base if attempt == 0 else f"{base}_{attempt}"
            try:
                async with self.db.begin_nested():
                    return await self.ledger.create_transaction(reference=reference, **fields)
            except IntegrityError:
                if attempt == _BANK_REFERENCE_ATTEMPTS - 1:
                    raise
                logger.info("Bank transfer reference taken, retrying", extra_data={"reference": reference})

    async def update_progress(
        self,
        user_id: str,
        course_slug: str,
        progress: Optional[int] = None,
        completed_lesson_id: Optional[str] = None,
    ) -> Enrollment:
        enrollment = await self.enrollments.update_progress(
            user_id, course_slug, progress=progress, completed_lesson_id=completed_lesson_id
        )
        await self.db.commit()
        return enrollment
