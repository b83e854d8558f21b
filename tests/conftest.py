"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A scriptable fake payment gateway
- Test data factories (users, courses, promo codes, transactions, enrollments)
"""
# The settings validator refuses an empty gateway key outside DEBUG; set one
# before anything imports lms.core.config
import os
os.environ.setdefault("DODO_PAYMENTS_API_KEY", "test-dodo-api-key")

import base64
import hashlib
import hmac

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from lms.core.config import settings
from lms.core.exceptions import GatewayPaymentNotFoundError
from lms.db.database import Base, get_db
from lms.db.models.course import Course, DiscountType, PromoCode
from lms.db.models.enrollment import Enrollment
from lms.db.models.payment import PaymentRecord
from lms.db.models.payment_transaction import PaymentMethod, PaymentTransaction, TransactionStatus
from lms.db.models.user import User
from lms.domain.services.gateway import (
    CheckoutRequest,
    CheckoutSession,
    GatewayMetadata,
    GatewayPayment,
    PaymentGateway,
    get_payment_gateway,
)
from lms.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-api-key"

WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test-webhook-signing-key").decode()


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fake payment gateway
# ============================================================================

class FakeGateway(PaymentGateway):
    """In-memory gateway: payments are scripted per test"""

    name = "fake_gateway"

    def __init__(self) -> None:
        self.payments: dict[str, GatewayPayment] = {}
        self.errors: dict[str, Exception] = {}
        self.fetch_calls: list[str] = []
        self.created: list[CheckoutRequest] = []
        self.create_error: Optional[Exception] = None
        self.healthy = True

    def set_payment(
        self,
        payment_id: str,
        status: str = "succeeded",
        metadata: Optional[dict[str, Any]] = None,
        total_amount: Optional[int] = None,
        currency: str = "USD",
    ) -> GatewayPayment:
        payment = GatewayPayment(
            payment_id=payment_id,
            raw_status=status,
            total_amount=total_amount,
            currency=currency,
            metadata=GatewayMetadata.from_dict(metadata),
        )
        self.payments[payment_id] = payment
        return payment

    def fail_with(self, payment_id: str, error: Exception) -> None:
        self.errors[payment_id] = error

    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment:
        self.fetch_calls.append(payment_id)
        if payment_id in self.errors:
            raise self.errors[payment_id]
        if payment_id not in self.payments:
            raise GatewayPaymentNotFoundError(payment_id)
        return self.payments[payment_id]

    async def create_payment(self, request: CheckoutRequest) -> CheckoutSession:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        payment_id = f"pay_fake_{len(self.created)}"
        return CheckoutSession(payment_id=payment_id, payment_link=f"https://checkout.test/{payment_id}")

    async def ping(self) -> bool:
        return self.healthy


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_gateway: FakeGateway):
    """Create test client with database and gateway overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        id: str = "u1",
        email: Optional[str] = None,
        first_name: str = "Test",
        last_name: str = "Student",
    ) -> User:
        user = User(
            id=id,
            email=email or f"{id}@example.com",
            first_name=first_name,
            last_name=last_name,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def course_factory(db_session: AsyncSession):
    """Factory for creating test courses"""
    async def _create_course(
        slug: str = "ai-101",
        title: str = "AI Fundamentals",
        price: Decimal = Decimal("5000.00"),
        currency: str = "LKR",
        product_id: Optional[str] = "prod_test",
    ) -> Course:
        course = Course(
            slug=slug,
            title=title,
            price=price,
            currency=currency,
            product_id=product_id,
            is_published=True,
            enrolled_count=0,
        )
        db_session.add(course)
        await db_session.commit()
        await db_session.refresh(course)
        return course

    return _create_course


@pytest.fixture
def promo_factory(db_session: AsyncSession):
    """Factory for creating promo codes"""
    async def _create_promo(
        course: Course,
        code: str = "SAVE10",
        discount_type: DiscountType = DiscountType.PERCENTAGE,
        discount_amount: Decimal = Decimal("10"),
        expires_at: Optional[datetime] = None,
        max_uses: Optional[int] = None,
        used_count: int = 0,
    ) -> PromoCode:
        promo = PromoCode(
            course_id=course.id,
            code=code.upper(),
            discount_type=discount_type,
            discount_amount=discount_amount,
            expires_at=expires_at,
            max_uses=max_uses,
            used_count=used_count,
        )
        db_session.add(promo)
        await db_session.commit()
        await db_session.refresh(promo)
        return promo

    return _create_promo


@pytest.fixture
def transaction_factory(db_session: AsyncSession):
    """Factory for creating ledger entries"""
    async def _create_transaction(
        reference: str = "AI-1000-A-TEST",
        user_id: Optional[str] = "u1",
        course_slug: Optional[str] = "ai-101",
        course_name: Optional[str] = "AI Fundamentals",
        final_price: Decimal = Decimal("5000.00"),
        original_price: Optional[Decimal] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
        gateway_payment_id: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        discount_code: Optional[str] = None,
        initiated_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            reference=reference,
            user_id=user_id,
            course_slug=course_slug,
            course_name=course_name,
            original_price=original_price if original_price is not None else final_price,
            final_price=final_price,
            discount_code=discount_code,
            currency="LKR",
            status=status,
            gateway_payment_id=gateway_payment_id,
            payment_method=payment_method,
            initiated_at=initiated_at or datetime.utcnow(),
            completed_at=completed_at,
        )
        db_session.add(transaction)
        await db_session.commit()
        await db_session.refresh(transaction)
        return transaction

    return _create_transaction


@pytest.fixture
def enrollment_factory(db_session: AsyncSession):
    """Factory for creating enrollments"""
    async def _create_enrollment(
        user_id: str = "u1",
        course_slug: str = "ai-101",
        course_name: Optional[str] = "AI Fundamentals",
        paid: bool = False,
        progress: int = 0,
        completed_lessons: Optional[list[str]] = None,
    ) -> Enrollment:
        enrollment = Enrollment(
            user_id=user_id,
            course_slug=course_slug,
            course_name=course_name,
            enrolled_at=datetime.utcnow(),
            progress=progress,
            completed_lessons=completed_lessons or [],
            paid=paid,
            is_enrolled=True,
        )
        db_session.add(enrollment)
        await db_session.commit()
        await db_session.refresh(enrollment)
        return enrollment

    return _create_enrollment


# ============================================================================
# Assertion helpers
# ============================================================================

async def count_enrollments(db: AsyncSession, user_id: str, course_slug: str) -> int:
    return await db.scalar(
        select(func.count(Enrollment.id)).where(
            Enrollment.user_id == user_id,
            Enrollment.course_slug == course_slug,
        )
    )


async def count_payment_records(db: AsyncSession, transaction_id: Optional[str] = None) -> int:
    query = select(func.count(PaymentRecord.id))
    if transaction_id is not None:
        query = query.where(PaymentRecord.transaction_id == transaction_id)
    return await db.scalar(query)


async def get_enrollment(db: AsyncSession, user_id: str, course_slug: str) -> Optional[Enrollment]:
    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.user_id == user_id, Enrollment.course_slug == course_slug)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_transaction(db: AsyncSession, reference: str) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# ============================================================================
# Global state reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from lms.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_gateway_singleton():
    from lms.domain.services.gateway import reset_payment_gateway
    reset_payment_gateway()
    yield
    reset_payment_gateway()


class FakeRedis:
    """In-memory stand-in for the Redis client used by health checks"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("lms.core.redis_client.get_redis", _get_fake_redis), \
         patch("lms.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture(autouse=True)
def test_settings():
    """Deterministic settings: admin key set, no Telegram, no webhook secret"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY), \
         patch.object(settings, "TELEGRAM_BOT_TOKEN", None), \
         patch.object(settings, "TELEGRAM_ADMIN_CHAT_ID", None), \
         patch.object(settings, "DODO_WEBHOOK_SECRET", ""), \
         patch.object(settings, "DODO_DEFAULT_PRODUCT_ID", ""):
        yield


def sign_webhook(
    body: bytes,
    webhook_id: str = "msg_1",
    timestamp: int = 1_700_000_000,
    secret: str = WEBHOOK_SECRET,
) -> dict[str, str]:
    """Standard Webhooks headers for ``body``, as the gateway sends them"""
    key = base64.b64decode(secret[len("whsec_"):])
    signed = f"{webhook_id}.{timestamp}.".encode() + body
    signature = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode()
    return {
        "webhook-id": webhook_id,
        "webhook-timestamp": str(timestamp),
        "webhook-signature": f"v1,{signature}",
    }
