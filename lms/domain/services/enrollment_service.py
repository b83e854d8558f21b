"""
Enrollment Service - per-user, per-course access grants

``grant_paid_access`` is the only path that sets ``paid``. It is a
compare-and-set on (user_id, course_slug):

    UPDATE enrollments SET paid = true ... WHERE user_id = ? AND course_slug = ? AND paid = false

and falls back to an INSERT guarded by the unique constraint when no row
exists. A poll and a webhook racing on the same payment therefore produce one
paid enrollment, and exactly one of them sees CREATED/UPGRADED.

A paid row that was soft-unenrolled is switched back on by a new payment (a
different payment id); the payment it was suspended under does not bring it
back.
"""
import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import AlreadyEnrolledError, EnrollmentNotFoundError
from lms.core.logging import get_logger
from lms.db.models.course import Course
from lms.db.models.enrollment import Enrollment

logger = get_logger(__name__)


class GrantOutcome(str, enum.Enum):
    CREATED = "created"            # new paid enrollment row
    UPGRADED = "upgraded"          # existing unpaid row flipped to paid
    REACTIVATED = "reactivated"    # soft-unenrolled paid row switched back on by a new payment
    ALREADY_PAID = "already_paid"  # nothing to do
    SUSPENDED = "suspended"        # paid, but access is off for this payment

    @property
    def changed(self) -> bool:
        return self not in (GrantOutcome.ALREADY_PAID, GrantOutcome.SUSPENDED)


class EnrollmentService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_enrollment(self, user_id: str, course_slug: str) -> Optional[Enrollment]:
        result = await self.db.execute(
            select(Enrollment)
            .where(
                Enrollment.user_id == user_id,
                Enrollment.course_slug == course_slug,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _flip_paid(
        self,
        user_id: str,
        course_slug: str,
        *,
        course_name: Optional[str],
        amount: Optional[Decimal],
        payment_id: Optional[str],
    ) -> bool:
        now = datetime.utcnow()
        result = await self.db.execute(
            update(Enrollment)
            .where(
                Enrollment.user_id == user_id,
                Enrollment.course_slug == course_slug,
                Enrollment.paid.is_(False),
            )
            .values(
                paid=True,
                amount=amount,
                payment_id=payment_id,
                payment_date=now,
                is_enrolled=True,
                course_name=func.coalesce(Enrollment.course_name, course_name),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _reactivate(
        self,
        user_id: str,
        course_slug: str,
        *,
        course_name: Optional[str],
        amount: Optional[Decimal],
        payment_id: Optional[str],
    ) -> bool:
        now = datetime.utcnow()
        result = await self.db.execute(
            update(Enrollment)
            .where(
                Enrollment.user_id == user_id,
                Enrollment.course_slug == course_slug,
                Enrollment.paid.is_(True),
                Enrollment.is_enrolled.is_(False),
                or_(Enrollment.payment_id.is_(None), Enrollment.payment_id != payment_id),
            )
            .values(
                is_enrolled=True,
                amount=amount,
                payment_id=payment_id,
                payment_date=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def _bump_enrolled_count(self, course_slug: str) -> None:
        await self.db.execute(
            update(Course)
            .where(Course.slug == course_slug)
            .values(enrolled_count=Course.enrolled_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def _insert_paid(
        self,
        user_id: str,
        course_slug: str,
        *,
        course_name: Optional[str],
        amount: Optional[Decimal],
        payment_id: Optional[str],
    ) -> GrantOutcome:
        flip_kwargs = {"course_name": course_name, "amount": amount, "payment_id": payment_id}
        try:
            async with self.db.begin_nested():
                self.db.add(Enrollment(
                    user_id=user_id,
                    course_slug=course_slug,
                    course_name=course_name or course_slug,
                    enrolled_at=datetime.utcnow(),
                    progress=0,
                    completed_lessons=[],
                    paid=True,
                    amount=amount,
                    payment_id=payment_id,
                    payment_date=datetime.utcnow(),
                    is_enrolled=True,
                ))
        except IntegrityError:
            # Another request inserted the row between our UPDATE and INSERT
            logger.info(
                "Enrollment insert lost race, retrying conditional update",
                extra_data={"user_id": user_id, "course_slug": course_slug},
            )
            if await self._flip_paid(user_id, course_slug, **flip_kwargs):
                return GrantOutcome.UPGRADED
            return GrantOutcome.ALREADY_PAID

        await self._bump_enrolled_count(course_slug)
        return GrantOutcome.CREATED

    async def grant_paid_access(
        self,
        *,
        user_id: str,
        course_slug: str,
        course_name: Optional[str],
        amount: Optional[Decimal],
        payment_id: Optional[str],
    ) -> GrantOutcome:
        """Make sure (user_id, course_slug) is enrolled and paid, at most once"""
        flip_kwargs = {"course_name": course_name, "amount": amount, "payment_id": payment_id}

        if await self._flip_paid(user_id, course_slug, **flip_kwargs):
            outcome = GrantOutcome.UPGRADED
        elif await self._reactivate(user_id, course_slug, **flip_kwargs):
            outcome = GrantOutcome.REACTIVATED
        else:
            existing = await self.get_enrollment(user_id, course_slug)
            if existing is None:
                outcome = await self._insert_paid(user_id, course_slug, **flip_kwargs)
            elif existing.is_enrolled:
                outcome = GrantOutcome.ALREADY_PAID
            else:
                outcome = GrantOutcome.SUSPENDED

        logger.info(
            "Paid access grant evaluated",
            extra_data={
                "user_id": user_id,
                "course_slug": course_slug,
                "payment_id": payment_id,
                "amount": str(amount) if amount is not None else None,
                "outcome": outcome.value,
            },
        )
        return outcome

    async def enroll_unpaid(
        self,
        user_id: str,
        course_slug: str,
        course_name: Optional[str] = None,
    ) -> Enrollment:
        """Register interest in a course before payment.

        Raises:
            AlreadyEnrolledError: the pair is already enrolled
        """
        try:
            async with self.db.begin_nested():
                enrollment = Enrollment(
                    user_id=user_id,
                    course_slug=course_slug,
                    course_name=course_name or course_slug,
                    enrolled_at=datetime.utcnow(),
                    progress=0,
                    completed_lessons=[],
                    paid=False,
                    is_enrolled=True,
                )
                self.db.add(enrollment)
        except IntegrityError:
            raise AlreadyEnrolledError(course_slug)

        await self._bump_enrolled_count(course_slug)
        return enrollment

    async def is_enrolled(self, user_id: str, course_slug: str) -> bool:
        """Access check used by course content: paid and not unenrolled"""
        result = await self.db.execute(
            select(Enrollment.id).where(
                Enrollment.user_id == user_id,
                Enrollment.course_slug == course_slug,
                Enrollment.paid.is_(True),
                Enrollment.is_enrolled.is_(True),
            )
        )
        return result.first() is not None

    async def get_progress(self, user_id: str, course_slug: str) -> Optional[dict]:
        enrollment = await self.get_enrollment(user_id, course_slug)
        if enrollment is None:
            return None
        return {
            "progress": enrollment.progress,
            "completed_lessons": list(enrollment.completed_lessons or []),
        }

    async def update_progress(
        self,
        user_id: str,
        course_slug: str,
        progress: Optional[int] = None,
        completed_lesson_id: Optional[str] = None,
    ) -> Enrollment:
        enrollment = await self.get_enrollment(user_id, course_slug)
        if enrollment is None:
            raise EnrollmentNotFoundError(user_id, course_slug)

        if progress is not None:
            enrollment.progress = max(0, min(100, int(progress)))
        if completed_lesson_id:
            lessons = list(enrollment.completed_lessons or [])
            if completed_lesson_id not in lessons:
                # reassign so the JSON column is marked dirty
                enrollment.completed_lessons = lessons + [completed_lesson_id]

        await self.db.flush()
        return enrollment

    async def list_for_user(self, user_id: str) -> list[Enrollment]:
        result = await self.db.execute(
            select(Enrollment)
            .where(Enrollment.user_id == user_id)
            .order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
        )
        return list(result.scalars().all())
