"""
Payment API Routes - checkout, verification poll and ledger lookup
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lms.api.schemas import CamelModel
from lms.core.exceptions import ValidationException
from lms.db.database import get_db
from lms.domain.services.checkout_service import CheckoutService
from lms.domain.services.gateway import PaymentGateway, get_payment_gateway
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.reconciliation_service import ReconcileRequest, ReconciliationEngine

router = APIRouter()


class VerifyPaymentResponse(CamelModel):
    success: bool
    verified: bool
    status: str
    message: str
    course_slug: Optional[str] = None
    course_name: Optional[str] = None


class CreatePaymentRequest(CamelModel):
    user_id: Optional[str] = None
    course_slug: Optional[str] = None
    promo_code: Optional[str] = None
    success_url: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None


class PricingResponse(CamelModel):
    original_price: float
    final_price: float
    discount_applied: float
    currency: str


class CreatePaymentResponse(CamelModel):
    success: bool = True
    payment_url: str
    session_id: str
    transaction_ref: str
    pricing: PricingResponse


class TransactionResponse(CamelModel):
    reference: str
    user_id: Optional[str]
    course_slug: Optional[str]
    course_name: Optional[str]
    original_price: float
    discount_code: Optional[str]
    discount_value: float
    final_price: float
    currency: str
    status: str
    payment_method: str
    gateway_payment_id: Optional[str]
    payment_link: Optional[str]
    error_message: Optional[str]
    initiated_at: datetime
    completed_at: Optional[datetime]


class TransactionListResponse(CamelModel):
    success: bool = True
    transactions: list[TransactionResponse]


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.get(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment and grant course access",
    description=(
        "Reconciles the gateway's view of a payment with the local ledger. "
        "Safe to poll: repeated calls never enroll twice. Requires paymentId or ref."
    ),
)
async def verify_payment(
    payment_id: Optional[str] = Query(None, alias="paymentId"),
    ref: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    course_slug: Optional[str] = Query(None, alias="courseSlug"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    engine = ReconciliationEngine(db, gateway)
    result = await engine.reconcile(ReconcileRequest(
        gateway_payment_id=payment_id,
        transaction_ref=ref,
        user_id=user_id,
        course_slug=course_slug,
    ))
    return VerifyPaymentResponse(
        success=result.success,
        verified=result.verified,
        status=result.status,
        message=result.message,
        course_slug=result.course_slug,
        course_name=result.course_name,
    )


@router.post(
    "/create",
    response_model=CreatePaymentResponse,
    summary="Start a card checkout",
    description="Quotes the course price (with an optional promo code), records the attempt and returns the gateway payment link.",
)
async def create_payment(
    payload: CreatePaymentRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    service = CheckoutService(db, gateway)
    result = await service.create_checkout(
        user_id=payload.user_id,
        course_slug=payload.course_slug,
        promo_code=payload.promo_code,
        success_url=payload.success_url,
        user_email=payload.user_email,
        user_name=payload.user_name,
        client_ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    quote = result.quote
    return CreatePaymentResponse(
        payment_url=result.payment_url,
        session_id=result.session_id,
        transaction_ref=result.transaction_ref,
        pricing=PricingResponse(
            original_price=float(quote.original_price),
            final_price=float(quote.final_price),
            discount_applied=float(quote.discount_value),
            currency=quote.currency,
        ),
    )


@router.get(
    "/transactions",
    response_model=TransactionListResponse,
    summary="Look up ledger entries",
    description="Up to 50 transactions by reference and/or user, newest first.",
)
async def list_transactions(
    ref: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    db: AsyncSession = Depends(get_db),
):
    if not ref and not user_id:
        raise ValidationException("Transaction reference or User ID required")

    transactions = await LedgerService(db).list_transactions(reference=ref, user_id=user_id, limit=50)
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions]
    )
