"""
Course pricing routes - promo code check and admin promo management
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from lms.api.dependencies.admin_auth import require_admin_api_key
from lms.api.schemas import CamelModel
from lms.core.exceptions import NotFoundException, ValidationException
from lms.db.database import get_db
from lms.db.models.course import DiscountType
from lms.domain.services.pricing_service import PricingService

router = APIRouter()
admin_router = APIRouter(dependencies=[Depends(require_admin_api_key)])


class VerifyPromoRequest(CamelModel):
    slug: Optional[str] = None
    code: Optional[str] = None


class VerifyPromoResponse(CamelModel):
    is_valid: bool
    message: str
    discount_type: Optional[str] = None
    discount_amount: Optional[float] = None


class PromoCodeResponse(CamelModel):
    code: str
    discount_type: str
    discount_amount: float
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = None
    used_count: int


class PromoListResponse(CamelModel):
    course_id: int
    course_title: str
    promo_codes: list[PromoCodeResponse]


class CreatePromoRequest(CamelModel):
    slug: str
    code: str = Field(min_length=1, max_length=50)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_amount: Decimal = Field(gt=0)
    expires_at: Optional[datetime] = None
    max_uses: Optional[int] = Field(default=None, ge=0)


class PromoMutationResponse(CamelModel):
    message: str
    promo_codes: list[PromoCodeResponse]


@router.post(
    "/verify-promo",
    response_model=VerifyPromoResponse,
    summary="Check a promo code for a course",
    description="An unknown, expired or exhausted code is a normal 200 answer with isValid=false.",
)
async def verify_promo(payload: VerifyPromoRequest, db: AsyncSession = Depends(get_db)):
    if not payload.slug or not payload.code:
        raise ValidationException("Missing parameters")

    service = PricingService(db)
    course = await service.get_course(payload.slug)
    validation = await service.validate_promo(course, payload.code)
    if not validation.is_valid:
        return VerifyPromoResponse(is_valid=False, message=validation.message)

    promo = validation.promo
    return VerifyPromoResponse(
        is_valid=True,
        message=validation.message,
        discount_type=DiscountType(promo.discount_type).value,
        discount_amount=float(promo.discount_amount),
    )


@admin_router.get(
    "/courses/promo",
    response_model=PromoListResponse,
    summary="List a course's promo codes",
)
async def list_promo_codes(slug: str = Query(...), db: AsyncSession = Depends(get_db)):
    course, promos = await PricingService(db).list_promos(slug)
    return PromoListResponse(
        course_id=course.id,
        course_title=course.title,
        promo_codes=[PromoCodeResponse.model_validate(p) for p in promos],
    )


@admin_router.post(
    "/courses/promo",
    response_model=PromoMutationResponse,
    summary="Add a promo code to a course",
    description="Codes are stored upper-cased and must be unique per course.",
)
async def create_promo_code(payload: CreatePromoRequest, db: AsyncSession = Depends(get_db)):
    service = PricingService(db)
    await service.create_promo(
        payload.slug,
        code=payload.code,
        discount_type=payload.discount_type,
        discount_amount=payload.discount_amount,
        expires_at=payload.expires_at,
        max_uses=payload.max_uses,
    )
    await db.commit()
    _, promos = await service.list_promos(payload.slug)
    return PromoMutationResponse(
        message="Promo code added successfully",
        promo_codes=[PromoCodeResponse.model_validate(p) for p in promos],
    )


@admin_router.delete(
    "/courses/promo",
    response_model=PromoMutationResponse,
    summary="Remove a promo code from a course",
)
async def delete_promo_code(
    slug: str = Query(...),
    code: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    service = PricingService(db)
    if not await service.delete_promo(slug, code):
        raise NotFoundException("Promo code", code.upper())
    await db.commit()
    _, promos = await service.list_promos(slug)
    return PromoMutationResponse(
        message="Promo code removed successfully",
        promo_codes=[PromoCodeResponse.model_validate(p) for p in promos],
    )
