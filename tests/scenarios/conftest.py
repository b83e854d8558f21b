"""
Fixtures and helpers for end-to-end payment scenarios.

Provides:
- payload builders for gateway webhooks
- short helpers for the poll, webhook and admin endpoints
- DB assertions (enrollment paid once, ledger status, payment records)
"""
from decimal import Decimal
from typing import Any, Optional

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lms.db.models.enrollment import Enrollment
from lms.db.models.payment import PaymentRecord, PaymentRecordMethod, PaymentRecordStatus
from lms.db.models.payment_transaction import PaymentMethod, TransactionStatus
from tests.conftest import TEST_ADMIN_API_KEY, count_payment_records, get_enrollment, get_transaction


# ============================================================================
# Payload builders
# ============================================================================

_webhook_counter = 0


def _next_webhook_id() -> str:
    """Unique webhook-id so deliveries are not treated as duplicates"""
    global _webhook_counter
    _webhook_counter += 1
    return f"msg_scenario_{_webhook_counter}"


def build_payment_event(
    event_type: str,
    payment_id: str,
    metadata: Optional[dict[str, Any]] = None,
    *,
    total_amount: Optional[int] = None,
) -> dict:
    data: dict[str, Any] = {"payment_id": payment_id, "metadata": metadata or {}}
    if total_amount is not None:
        data["total_amount"] = total_amount
        data["currency"] = "USD"
    return {"type": event_type, "data": data}


# ============================================================================
# Endpoint helpers
# ============================================================================

async def deliver_webhook(client: AsyncClient, payload: dict, webhook_id: Optional[str] = None) -> dict:
    response = await client.post(
        "/api/payments/webhook",
        json=payload,
        headers={"webhook-id": webhook_id or _next_webhook_id()},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def poll_verify(client: AsyncClient, **params: str) -> dict:
    query = {
        {"payment_id": "paymentId", "user_id": "userId", "course_slug": "courseSlug"}.get(k, k): v
        for k, v in params.items()
    }
    response = await client.get("/api/payments/verify", params=query)
    assert response.status_code == 200, response.text
    return response.json()


async def admin_decide(client: AsyncClient, payment_id: int, action: str, **extra: str) -> dict:
    response = await client.put(
        "/api/admin/payments",
        json={"paymentId": payment_id, "action": action, **extra},
        headers={"X-Admin-API-Key": TEST_ADMIN_API_KEY},
    )
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def manual_payment_factory(db_session: AsyncSession, transaction_factory):
    """Bank transfer as the student portal leaves it: pending ledger entry plus pending record"""
    async def _create(
        reference: str = "bank_1000",
        user_id: str = "u1",
        course_slug: str = "ai-101",
        amount: Decimal = Decimal("5000.00"),
    ) -> PaymentRecord:
        await transaction_factory(
            reference=reference,
            user_id=user_id,
            course_slug=course_slug,
            final_price=amount,
            status=TransactionStatus.PENDING,
            payment_method=PaymentMethod.BANK_TRANSFER,
        )
        record = PaymentRecord(
            user_id=user_id,
            course_slug=course_slug,
            amount=amount,
            method=PaymentRecordMethod.MANUAL,
            status=PaymentRecordStatus.PENDING,
            transaction_id=reference,
            receipt_url="https://receipts.test/slip.jpg",
        )
        db_session.add(record)
        await db_session.commit()
        await db_session.refresh(record)
        return record

    return _create


# ============================================================================
# DB assertions
# ============================================================================

async def assert_paid_once(
    db: AsyncSession,
    user_id: str,
    course_slug: str,
    amount: Optional[Decimal] = None,
) -> Enrollment:
    rows = await db.scalar(
        select(func.count(Enrollment.id)).where(
            Enrollment.user_id == user_id,
            Enrollment.course_slug == course_slug,
        )
    )
    assert rows == 1, f"expected exactly one enrollment, found {rows}"

    enrollment = await get_enrollment(db, user_id, course_slug)
    assert enrollment.paid is True
    if amount is not None:
        assert enrollment.amount == amount
    return enrollment


async def assert_transaction_status(db: AsyncSession, reference: str, expected: TransactionStatus) -> None:
    transaction = await get_transaction(db, reference)
    assert transaction is not None, f"no ledger entry for {reference}"
    assert transaction.status == expected, f"{reference}: {transaction.status} != {expected}"


async def assert_payment_records(db: AsyncSession, expected: int, transaction_id: Optional[str] = None) -> None:
    assert await count_payment_records(db, transaction_id) == expected
