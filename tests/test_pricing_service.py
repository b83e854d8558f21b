"""
Tests for PricingService and the price helpers used at checkout
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import decimals, integers, sampled_from

from lms.core.exceptions import CourseNotFoundError, PromoCodeExistsError, PromoCodeInvalidError
from lms.db.models.course import DiscountType
from lms.domain.services.pricing_service import (
    MSG_PROMO_APPLIED,
    MSG_PROMO_EXHAUSTED,
    MSG_PROMO_EXPIRED,
    MSG_PROMO_UNKNOWN,
    PricingService,
    calculate_discount,
    convert_for_gateway,
    to_smallest_unit,
)


PRICES = decimals(min_value=Decimal("0"), max_value=Decimal("1000000"), places=2, allow_nan=False, allow_infinity=False)


class TestCalculateDiscount:

    @pytest.mark.unit
    def test_percentage(self):
        assert calculate_discount(Decimal("5000"), DiscountType.PERCENTAGE, Decimal("10")) == (
            Decimal("500.00"),
            Decimal("4500.00"),
        )

    @pytest.mark.unit
    def test_percentage_rounds_half_up_to_whole_unit(self):
        # 999.99 * 15% = 149.9985
        discount_value, final_price = calculate_discount(
            Decimal("999.99"), DiscountType.PERCENTAGE, Decimal("15")
        )
        assert discount_value == Decimal("150.00")
        assert final_price == Decimal("849.99")

    @pytest.mark.unit
    def test_fixed(self):
        assert calculate_discount(Decimal("5000"), DiscountType.FIXED, Decimal("1250.50")) == (
            Decimal("1250.50"),
            Decimal("3749.50"),
        )

    @pytest.mark.unit
    def test_final_price_floors_at_zero(self):
        _, final_price = calculate_discount(Decimal("5000"), DiscountType.FIXED, Decimal("6000"))
        assert final_price == Decimal("0.00")

    @pytest.mark.unit
    @h_settings(max_examples=200)
    @given(
        price=PRICES,
        discount_type=sampled_from(list(DiscountType)),
        amount=integers(min_value=0, max_value=100),
    )
    def test_final_price_within_bounds(self, price, discount_type, amount):
        discount_value, final_price = calculate_discount(price, discount_type, Decimal(amount))

        assert Decimal("0") <= final_price <= price
        assert discount_value >= 0
        assert final_price == final_price.quantize(Decimal("0.01"))


class TestGatewayConversion:

    @pytest.mark.unit
    def test_lkr_charged_in_usd(self):
        assert convert_for_gateway(Decimal("4500"), "LKR", Decimal("0.0031")) == (Decimal("13.95"), "USD")

    @pytest.mark.unit
    def test_other_currencies_pass_through(self):
        assert convert_for_gateway(Decimal("19.9"), "usd", Decimal("0.0031")) == (Decimal("19.90"), "USD")

    @pytest.mark.unit
    def test_to_smallest_unit(self):
        assert to_smallest_unit(Decimal("13.95")) == 1395
        assert to_smallest_unit(Decimal("0.005")) == 1

    @pytest.mark.unit
    @given(amount=PRICES)
    def test_smallest_unit_is_cents(self, amount):
        assert to_smallest_unit(amount) == int(amount * 100)


class TestPromoValidation:

    @pytest.mark.unit
    async def test_valid_code_case_insensitive(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, code="SAVE10")

        validation = await PricingService(db_session).validate_promo(course, "  save10 ")

        assert validation.is_valid is True
        assert validation.message == MSG_PROMO_APPLIED
        assert validation.promo.code == "SAVE10"

    @pytest.mark.unit
    async def test_unknown_code(self, db_session, course_factory):
        course = await course_factory()

        validation = await PricingService(db_session).validate_promo(course, "NOPE")

        assert validation.is_valid is False
        assert validation.message == MSG_PROMO_UNKNOWN

    @pytest.mark.unit
    async def test_code_of_another_course(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        other = await course_factory(slug="ml-201", title="ML")
        await promo_factory(other, code="SAVE10")

        validation = await PricingService(db_session).validate_promo(course, "SAVE10")

        assert validation.is_valid is False

    @pytest.mark.unit
    async def test_expired_code(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, expires_at=datetime.utcnow() - timedelta(days=1))

        validation = await PricingService(db_session).validate_promo(course, "SAVE10")

        assert validation.is_valid is False
        assert validation.message == MSG_PROMO_EXPIRED

    @pytest.mark.unit
    async def test_exhausted_code(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, max_uses=1, used_count=1)

        validation = await PricingService(db_session).validate_promo(course, "SAVE10")

        assert validation.is_valid is False
        assert validation.message == MSG_PROMO_EXHAUSTED


class TestQuote:

    @pytest.mark.unit
    async def test_quote_without_code(self, db_session, course_factory):
        course = await course_factory(price=Decimal("5000"))

        quote = await PricingService(db_session).quote(course, None)

        assert quote.original_price == quote.final_price == Decimal("5000.00")
        assert quote.discount_code is None
        assert quote.currency == "LKR"

    @pytest.mark.unit
    async def test_quote_with_code(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, code="HALF", discount_amount=Decimal("50"))

        quote = await PricingService(db_session).quote(course, "half")

        assert quote.final_price == Decimal("2500.00")
        assert quote.discount_value == Decimal("2500.00")
        assert quote.discount_code == "HALF"
        assert quote.discount_type == "percentage"

    @pytest.mark.unit
    async def test_quote_rejects_invalid_code(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, max_uses=1, used_count=1)

        with pytest.raises(PromoCodeInvalidError) as exc_info:
            await PricingService(db_session).quote(course, "SAVE10")

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == MSG_PROMO_EXHAUSTED


class TestPromoUsage:

    @pytest.mark.unit
    async def test_increment_usage_respects_max_uses(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        promo = await promo_factory(course, max_uses=1)
        service = PricingService(db_session)

        assert await service.increment_usage("ai-101", "save10") is True
        assert await service.increment_usage("ai-101", "SAVE10") is False
        await db_session.commit()

        stored = await service.find_promo(course, "SAVE10")
        assert stored.id == promo.id
        assert stored.used_count == 1

    @pytest.mark.unit
    async def test_increment_usage_unlimited(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course)
        service = PricingService(db_session)

        for _ in range(3):
            assert await service.increment_usage("ai-101", "SAVE10") is True

        assert (await service.find_promo(course, "SAVE10")).used_count == 3


class TestPromoManagement:

    @pytest.mark.unit
    async def test_create_list_delete(self, db_session, course_factory):
        await course_factory()
        service = PricingService(db_session)

        promo = await service.create_promo(
            "ai-101", code="welcome", discount_type=DiscountType.FIXED, discount_amount=Decimal("500")
        )
        await db_session.commit()
        assert promo.code == "WELCOME"
        assert promo.max_uses is None

        course, promos = await service.list_promos("ai-101")
        assert [p.code for p in promos] == ["WELCOME"]

        assert await service.delete_promo("ai-101", "Welcome") is True
        assert await service.delete_promo("ai-101", "WELCOME") is False

    @pytest.mark.unit
    async def test_create_duplicate_code(self, db_session, course_factory, promo_factory):
        course = await course_factory()
        await promo_factory(course, code="SAVE10")

        with pytest.raises(PromoCodeExistsError):
            await PricingService(db_session).create_promo(
                "ai-101", code="save10", discount_type=DiscountType.PERCENTAGE, discount_amount=Decimal("5")
            )

    @pytest.mark.unit
    async def test_unknown_course(self, db_session):
        with pytest.raises(CourseNotFoundError):
            await PricingService(db_session).list_promos("missing")

