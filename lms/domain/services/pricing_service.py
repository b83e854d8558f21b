"""
Pricing Service - promo codes and the checkout price snapshot

Prices are computed once, at checkout initiation, and frozen onto the
transaction. Nothing downstream of checkout calls back into this module to
recompute a price.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import CourseNotFoundError, PromoCodeExistsError, PromoCodeInvalidError
from lms.core.logging import get_logger
from lms.db.models.course import Course, DiscountType, PromoCode

logger = get_logger(__name__)

_CENT = Decimal("0.01")
_WHOLE = Decimal("1")

MSG_PROMO_APPLIED = "Promo code applied!"
MSG_PROMO_UNKNOWN = "Invalid promo code"
MSG_PROMO_EXPIRED = "Promo code has expired"
MSG_PROMO_EXHAUSTED = "Promo code usage limit reached"


def calculate_discount(
    price: Decimal,
    discount_type: DiscountType,
    discount_amount: Decimal,
) -> tuple[Decimal, Decimal]:
    """Return ``(discount_value, final_price)``.

    Percentage discounts round half-up to a whole currency unit; the final
    price never drops below zero.
    """
    price = Decimal(price)
    if discount_type == DiscountType.PERCENTAGE:
        discount_value = (price * Decimal(discount_amount) / 100).quantize(_WHOLE, rounding=ROUND_HALF_UP)
    else:
        discount_value = Decimal(discount_amount)
    final_price = max(Decimal("0"), price - discount_value)
    return discount_value.quantize(_CENT), final_price.quantize(_CENT)


def to_smallest_unit(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(_WHOLE, rounding=ROUND_HALF_UP))


def convert_for_gateway(amount: Decimal, currency: str, lkr_to_usd_rate: Decimal) -> tuple[Decimal, str]:
    """The gateway does not settle LKR; LKR prices are charged in USD"""
    if currency.upper() == "LKR":
        usd = (Decimal(amount) * Decimal(lkr_to_usd_rate)).quantize(_CENT, rounding=ROUND_HALF_UP)
        return usd, "USD"
    return Decimal(amount).quantize(_CENT), currency.upper()


@dataclass
class PromoValidation:
    is_valid: bool
    message: str
    promo: Optional[PromoCode] = None


@dataclass
class PriceQuote:
    original_price: Decimal
    final_price: Decimal
    currency: str
    discount_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_amount: Optional[Decimal] = None
    discount_value: Decimal = Decimal("0.00")


class PricingService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_course(self, course_slug: str) -> Course:
        result = await self.db.execute(select(Course).where(Course.slug == course_slug))
        course = result.scalar_one_or_none()
        if course is None:
            raise CourseNotFoundError(course_slug)
        return course

    async def find_promo(self, course: Course, code: str) -> Optional[PromoCode]:
        result = await self.db.execute(
            select(PromoCode)
            .where(
                PromoCode.course_id == course.id,
                func.upper(PromoCode.code) == code.strip().upper(),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate_promo(
        self,
        course: Course,
        code: str,
        now: Optional[datetime] = None,
    ) -> PromoValidation:
        promo = await self.find_promo(course, code)
        if promo is None:
            return PromoValidation(False, MSG_PROMO_UNKNOWN)

        now = now or datetime.utcnow()
        if promo.expires_at is not None and promo.expires_at < now:
            return PromoValidation(False, MSG_PROMO_EXPIRED, promo)
        if promo.max_uses is not None and promo.used_count >= promo.max_uses:
            return PromoValidation(False, MSG_PROMO_EXHAUSTED, promo)
        return PromoValidation(True, MSG_PROMO_APPLIED, promo)

    async def quote(self, course: Course, promo_code: Optional[str]) -> PriceQuote:
        """Price snapshot for a checkout.

        Raises:
            PromoCodeInvalidError: a code was given and it does not apply
        """
        original_price = Decimal(course.price).quantize(_CENT)
        currency = course.currency or "LKR"

        if not promo_code or not promo_code.strip():
            return PriceQuote(original_price=original_price, final_price=original_price, currency=currency)

        validation = await self.validate_promo(course, promo_code)
        if not validation.is_valid:
            logger.info(
                "Promo code rejected at checkout",
                extra_data={"course_slug": course.slug, "code": promo_code, "reason": validation.message},
            )
            raise PromoCodeInvalidError(promo_code, validation.message)

        promo = validation.promo
        discount_value, final_price = calculate_discount(
            original_price, DiscountType(promo.discount_type), Decimal(promo.discount_amount)
        )
        return PriceQuote(
            original_price=original_price,
            final_price=final_price,
            currency=currency,
            discount_code=promo.code,
            discount_type=DiscountType(promo.discount_type).value,
            discount_amount=Decimal(promo.discount_amount),
            discount_value=discount_value,
        )

    async def increment_usage(self, course_slug: str, code: str) -> bool:
        """Count one redemption, never past ``max_uses``"""
        course_id = select(Course.id).where(Course.slug == course_slug).scalar_subquery()
        result = await self.db.execute(
            update(PromoCode)
            .where(
                PromoCode.course_id == course_id,
                func.upper(PromoCode.code) == code.strip().upper(),
                or_(PromoCode.max_uses.is_(None), PromoCode.used_count < PromoCode.max_uses),
            )
            .values(used_count=PromoCode.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        counted = result.rowcount > 0
        if not counted:
            logger.warning(
                "Promo usage not counted",
                extra_data={"course_slug": course_slug, "code": code},
            )
        return counted

    async def list_promos(self, course_slug: str) -> tuple[Course, list[PromoCode]]:
        course = await self.get_course(course_slug)
        result = await self.db.execute(
            select(PromoCode).where(PromoCode.course_id == course.id).order_by(PromoCode.id)
        )
        return course, list(result.scalars().all())

    async def create_promo(
        self,
        course_slug: str,
        *,
        code: str,
        discount_type: DiscountType,
        discount_amount: Decimal,
        expires_at: Optional[datetime] = None,
        max_uses: Optional[int] = None,
    ) -> PromoCode:
        course = await self.get_course(course_slug)
        if await self.find_promo(course, code) is not None:
            raise PromoCodeExistsError(code.upper())

        promo = PromoCode(
            course_id=course.id,
            code=code.strip().upper(),
            discount_type=discount_type,
            discount_amount=discount_amount,
            expires_at=expires_at,
            max_uses=max_uses or None,
            used_count=0,
        )
        self.db.add(promo)
        await self.db.flush()
        logger.info(
            "Promo code created",
            extra_data={"course_slug": course_slug, "code": promo.code, "discount_type": discount_type.value},
        )
        return promo

    async def delete_promo(self, course_slug: str, code: str) -> bool:
        course = await self.get_course(course_slug)
        promo = await self.find_promo(course, code)
        if promo is None:
            return False
        await self.db.delete(promo)
        await self.db.flush()
        return True
