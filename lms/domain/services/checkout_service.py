"""
Checkout Service - starts a card payment

The price is quoted and frozen into a ``pending`` ledger entry, which is
committed before the gateway is called: a checkout that dies half-way still
leaves a record to reconcile or to mark failed.
"""
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.config import settings
from lms.core.exceptions import ExternalServiceException, ProductNotConfiguredError, ValidationException
from lms.core.logging import get_logger
from lms.db.models.payment_transaction import PaymentMethod, TransactionStatus
from lms.domain.services.gateway import CheckoutRequest, PaymentGateway
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.pricing_service import PriceQuote, PricingService, convert_for_gateway, to_smallest_unit

logger = get_logger(__name__)

_REF_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_transaction_ref(course_slug: str, now_ms: Optional[int] = None) -> str:
    """``AI-<epoch ms>-<course initials>-<4 random chars>``"""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    prefix = "".join(word[:1].upper() for word in course_slug.split("-") if word)[:4]
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(4))
    return f"AI-{timestamp}-{prefix}-{suffix}"


@dataclass
class CheckoutResult:
    payment_url: str
    session_id: str
    transaction_ref: str
    quote: PriceQuote


class CheckoutService:
    def __init__(self, db: AsyncSession, gateway: PaymentGateway):
        self.db = db
        self.gateway = gateway
        self.ledger = LedgerService(db)
        self.pricing = PricingService(db)

    async def create_checkout(
        self,
        *,
        user_id: Optional[str],
        course_slug: Optional[str],
        promo_code: Optional[str] = None,
        success_url: Optional[str] = None,
        user_email: Optional[str] = None,
        user_name: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Raises:
            ValidationException: missing identifiers
            CourseNotFoundError
            ProductNotConfiguredError
            PromoCodeInvalidError: the promo code does not apply
            ExternalServiceException: the gateway could not create the payment
        """
        if not user_id or not course_slug:
            raise ValidationException("User ID and Course Slug are required")

        course = await self.pricing.get_course(course_slug)
        product_id = course.product_id or settings.DODO_DEFAULT_PRODUCT_ID
        if not product_id:
            raise ProductNotConfiguredError(course_slug)

        quote = await self.pricing.quote(course, promo_code)
        reference = generate_transaction_ref(course.slug)

        transaction = await self.ledger.create_transaction(
            reference=reference,
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            course_id=str(course.id),
            course_slug=course.slug,
            course_name=course.title,
            original_price=quote.original_price,
            final_price=quote.final_price,
            discount_code=quote.discount_code,
            discount_type=quote.discount_type,
            discount_amount=quote.discount_amount,
            discount_value=quote.discount_value,
            currency=quote.currency,
            payment_method=PaymentMethod.CARD,
            status=TransactionStatus.PENDING,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        await self.db.commit()

        gateway_amount, gateway_currency = convert_for_gateway(
            quote.final_price, quote.currency, settings.LKR_TO_USD_RATE
        )
        return_url = success_url or (
            f"{settings.PUBLIC_APP_URL}/portal/student/courses?enrolled=success&ref={reference}"
        )
        request = CheckoutRequest(
            product_id=product_id,
            amount_minor=to_smallest_unit(gateway_amount),
            currency=gateway_currency,
            return_url=return_url,
            customer_email=user_email or "student@aiinstitute.io",
            customer_name=user_name or "Student",
            metadata={
                "transactionRef": reference,
                "userId": user_id,
                "courseSlug": course.slug,
                "courseId": str(course.id),
                "courseName": course.title,
                "originalPrice": str(quote.original_price),
                "finalPrice": str(quote.final_price),
                "discountCode": quote.discount_code or "",
                "discountValue": str(quote.discount_value or Decimal("0")),
                "currency": quote.currency,
            },
        )

        try:
            session = await self.gateway.create_payment(request)
        except ExternalServiceException as e:
            logger.error(
                "Gateway checkout creation failed",
                extra_data={"reference": reference, "error_code": e.error_code.value, "error": e.message},
            )
            await self.ledger.mark_failed(transaction, e.message)
            await self.db.commit()
            raise

        await self.ledger.attach_gateway_payment(
            transaction,
            gateway_payment_id=session.payment_id,
            payment_link=session.payment_link,
            gateway_product_id=product_id,
        )
        await self.db.commit()

        logger.info(
            "Checkout created",
            extra_data={
                "reference": reference,
                "user_id": user_id,
                "course_slug": course.slug,
                "final_price": str(quote.final_price),
                "currency": quote.currency,
                "gateway_amount": str(gateway_amount),
                "gateway_currency": gateway_currency,
                "gateway_payment_id": session.payment_id,
            },
        )
        return CheckoutResult(
            payment_url=session.payment_link,
            session_id=session.payment_id,
            transaction_ref=reference,
            quote=quote,
        )
