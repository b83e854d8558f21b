"""
Student Enrollment Routes
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from lms.api.schemas import CamelModel
from lms.core.exceptions import ValidationException
from lms.db.database import get_db
from lms.domain.services.student_enrollment_service import StudentEnrollmentService

router = APIRouter()


class EnrollmentResponse(CamelModel):
    course_slug: str
    course_name: Optional[str] = None
    course_title: Optional[str] = None
    enrolled_at: datetime
    progress: int
    completed_lessons: list[str]
    paid: bool
    amount: Optional[float] = None
    is_enrolled: bool = True
    is_pending_verification: bool = False


class EnrollmentStats(CamelModel):
    total_courses: int
    completed_courses: int
    in_progress_courses: int


class EnrollmentListResponse(CamelModel):
    enrolled_courses: list[EnrollmentResponse]
    stats: EnrollmentStats


class EnrollRequest(CamelModel):
    user_id: Optional[str] = None
    course_slug: Optional[str] = None
    course_name: Optional[str] = None
    payment_method: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    receipt_image: Optional[str] = None


class ProgressRequest(CamelModel):
    user_id: Optional[str] = None
    course_slug: Optional[str] = None
    progress: Optional[int] = None
    completed_lesson_id: Optional[str] = None


def _require_ids(user_id: Optional[str], course_slug: Optional[str]) -> None:
    if not user_id or not course_slug:
        raise ValidationException("User ID and course slug are required")


@router.get(
    "/enrollments",
    response_model=EnrollmentListResponse,
    summary="A student's courses",
    description="Enrollments plus bank transfers still waiting for admin approval. Pending ones are not counted in stats.",
)
async def list_enrollments(
    user_id: Optional[str] = Query(None, alias="userId"),
    db: AsyncSession = Depends(get_db),
):
    if not user_id:
        raise ValidationException("User ID is required")

    view = await StudentEnrollmentService(db).list_enrollments(user_id)
    courses = [
        EnrollmentResponse(
            course_slug=e.course_slug,
            course_name=e.course_name,
            course_title=view.course_titles.get(e.course_slug),
            enrolled_at=e.enrolled_at,
            progress=e.progress or 0,
            completed_lessons=list(e.completed_lessons or []),
            paid=e.paid,
            amount=float(e.amount) if e.amount is not None else None,
            is_enrolled=e.is_enrolled,
        )
        for e in view.enrollments
    ]
    courses.extend(
        EnrollmentResponse(
            course_slug=record.course_slug,
            course_name=view.course_titles.get(record.course_slug, record.course_slug),
            course_title=view.course_titles.get(record.course_slug),
            enrolled_at=record.submitted_at,
            progress=0,
            completed_lessons=[],
            paid=False,
            amount=float(record.amount),
            is_pending_verification=True,
        )
        for record in view.pending
    )
    return EnrollmentListResponse(enrolled_courses=courses, stats=EnrollmentStats(**view.stats))


@router.post(
    "/enrollments",
    status_code=201,
    summary="Enroll in a course or submit a bank transfer",
    description=(
        "paymentMethod=bank records a transfer for admin review and does not enroll yet. "
        "Otherwise the course is selected (unpaid until payment; free courses are granted)."
    ),
)
async def enroll(payload: EnrollRequest, db: AsyncSession = Depends(get_db)):
    _require_ids(payload.user_id, payload.course_slug)
    service = StudentEnrollmentService(db)

    if payload.payment_method == "bank":
        transaction = await service.submit_bank_transfer(
            payload.user_id,
            payload.course_slug,
            course_name=payload.course_name,
            amount_paid=payload.amount_paid,
            receipt_url=payload.receipt_image,
        )
        return JSONResponse(
            status_code=201,
            content={
                "message": "Receipt submitted successfully",
                "enrollment": {
                    "courseSlug": payload.course_slug,
                    "status": "pending",
                    "transactionRef": transaction.reference,
                },
            },
        )

    enrollment = await service.enroll(payload.user_id, payload.course_slug, payload.course_name)
    return JSONResponse(
        status_code=201,
        content={
            "message": "Enrolled successfully",
            "enrollment": {
                "courseSlug": enrollment.course_slug,
                "courseName": enrollment.course_name,
                "paid": enrollment.paid,
                "progress": enrollment.progress,
            },
        },
    )


@router.put(
    "/enrollments",
    summary="Update course progress",
)
async def update_progress(payload: ProgressRequest, db: AsyncSession = Depends(get_db)):
    _require_ids(payload.user_id, payload.course_slug)
    enrollment = await StudentEnrollmentService(db).update_progress(
        payload.user_id,
        payload.course_slug,
        progress=payload.progress,
        completed_lesson_id=payload.completed_lesson_id,
    )
    return {
        "message": "Progress updated",
        "progress": enrollment.progress,
        "completedLessons": list(enrollment.completed_lessons or []),
    }
