"""
Admin Payment Routes - manual payment review queue
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from lms.api.dependencies.admin_auth import require_admin_api_key
from lms.api.schemas import CamelModel
from lms.db.database import get_db
from lms.db.models.payment import PaymentRecordStatus
from lms.domain.services.admin_payment_service import AdminPaymentService

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class AdminPaymentResponse(CamelModel):
    id: int
    user_id: str
    student_name: str
    student_email: str
    course_slug: str
    course_name: str
    amount: float
    status: str
    payment_method: str
    transaction_id: str
    date: datetime
    processed_at: Optional[datetime] = None
    receipt_image: Optional[str] = None
    rejection_reason: Optional[str] = None


class AdminPaymentListResponse(CamelModel):
    payments: list[AdminPaymentResponse]


class PaymentActionRequest(CamelModel):
    payment_id: int
    action: str
    reason: Optional[str] = None
    processed_by: Optional[str] = None


class PaymentActionResponse(CamelModel):
    success: bool = True
    message: str
    payment_id: int
    status: str


@router.get(
    "/payments",
    response_model=AdminPaymentListResponse,
    summary="List payments for review",
    description="All payment records, newest first. Filter with ?status=pending for the review queue.",
)
async def list_payments(
    status: Optional[PaymentRecordStatus] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    views = await AdminPaymentService(db).list_payments(status=status, limit=limit)
    return AdminPaymentListResponse(
        payments=[AdminPaymentResponse.model_validate(view) for view in views]
    )


@router.put(
    "/payments",
    response_model=PaymentActionResponse,
    summary="Approve or reject a manual payment",
    description=(
        "approve: completes the payment and grants paid course access. "
        "reject: marks it rejected and cancels the linked transaction."
    ),
)
async def update_payment(
    payload: PaymentActionRequest,
    db: AsyncSession = Depends(get_db),
):
    record = await AdminPaymentService(db).process(
        payload.payment_id,
        payload.action,
        reason=payload.reason,
        processed_by=payload.processed_by,
    )
    return PaymentActionResponse(
        message=f"Payment {payload.action}d",
        payment_id=record.id,
        status=PaymentRecordStatus(record.status).value,
    )
