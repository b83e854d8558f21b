"""
Poll and webhook settling the same payment at the same time

Runs on a file-backed SQLite database so the two flows get independent
connections and sessions. Transactions start with BEGIN IMMEDIATE: SQLite
serialises writers on the database lock, and the compare-and-set updates
decide which flow grants access.
"""
import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from lms.db.database import Base
from lms.db.models.course import Course
from lms.db.models.enrollment import Enrollment
from lms.db.models.payment import PaymentRecord
from lms.db.models.payment_transaction import PaymentTransaction, TransactionStatus
from lms.domain.services.reconciliation_service import ReconcileRequest, ReconciliationEngine
from lms.domain.services.webhook_service import PaymentWebhookService
from tests.conftest import get_transaction

REF = "AI-1700000000000-AF-K7QM"
METADATA = {"userId": "u1", "courseSlug": "ai-101", "finalPrice": "4500.00", "currency": "LKR"}


@pytest.fixture
async def async_engine(tmp_path):
    """File-backed engine; replaces the in-memory one for this module"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


async def _poll(session_maker, gateway):
    async with session_maker() as session:
        return await ReconciliationEngine(session, gateway).reconcile(
            ReconcileRequest(gateway_payment_id="pay_1")
        )


async def _webhook(session_maker, metadata):
    async with session_maker() as session:
        return await PaymentWebhookService(session).handle_event(
            "payment.succeeded",
            {"type": "payment.succeeded", "data": {"payment_id": "pay_1", "metadata": metadata, "total_amount": 1395}},
        )


async def _race(async_engine, gateway, metadata):
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    return await asyncio.gather(_poll(session_maker, gateway), _webhook(session_maker, metadata))


async def _assert_settled_once(db_session, poll_result, webhook_outcome):
    assert poll_result.success is True
    grants = int(poll_result.grant.changed) + int(webhook_outcome == "granted")
    assert grants == 1

    assert await db_session.scalar(
        select(func.count(Enrollment.id)).where(Enrollment.user_id == "u1", Enrollment.course_slug == "ai-101")
    ) == 1
    enrollment = (await db_session.execute(
        select(Enrollment).execution_options(populate_existing=True)
    )).scalar_one()
    assert enrollment.paid is True
    assert enrollment.amount == Decimal("4500.00")

    records = (await db_session.execute(select(PaymentRecord))).scalars().all()
    assert [r.transaction_id for r in records] == ["pay_1"]
    assert records[0].amount == Decimal("4500.00")

    enrolled_count = await db_session.scalar(
        select(Course.enrolled_count)
        .where(Course.slug == "ai-101")
        .execution_options(populate_existing=True)
    )
    assert enrolled_count == 1


@pytest.mark.integration
async def test_tracked_checkout_settles_once(
    async_engine, db_session, fake_gateway, user_factory, course_factory, transaction_factory
):
    await user_factory()
    await course_factory()
    await transaction_factory(
        reference=REF,
        final_price=Decimal("4500.00"),
        status=TransactionStatus.PROCESSING,
        gateway_payment_id="pay_1",
    )
    fake_gateway.set_payment("pay_1", "succeeded", {**METADATA, "transactionRef": REF}, total_amount=1395)
    # release the seeding session's write lock
    await db_session.commit()

    poll_result, webhook_outcome = await _race(async_engine, fake_gateway, {**METADATA, "transactionRef": REF})

    await _assert_settled_once(db_session, poll_result, webhook_outcome)
    transaction = await get_transaction(db_session, REF)
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.completed_at is not None


@pytest.mark.integration
async def test_untracked_payment_gets_one_ledger_entry(
    async_engine, db_session, fake_gateway, user_factory, course_factory
):
    await user_factory()
    await course_factory()
    fake_gateway.set_payment("pay_1", "succeeded", METADATA, total_amount=1395)
    await db_session.commit()

    poll_result, webhook_outcome = await _race(async_engine, fake_gateway, METADATA)

    await _assert_settled_once(db_session, poll_result, webhook_outcome)
    references = (await db_session.execute(select(PaymentTransaction.reference))).scalars().all()
    assert references == ["WH-pay_1"]
    assert (await get_transaction(db_session, "WH-pay_1")).status == TransactionStatus.COMPLETED
