"""
Payment Transaction Model - the local ledger of payment attempts

A row is created when checkout starts (or when a webhook reports a payment we
never saw start) and is only ever moved forward. The price columns are a
snapshot taken at initiation and are never recomputed.
"""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)

from lms.db.database import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


# Forward-only. COMPLETED can only move on to REFUNDED.
ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.FAILED: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
    }),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.REFUNDED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


def sources_for(target: TransactionStatus) -> list[TransactionStatus]:
    """Statuses from which ``target`` may be entered"""
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


_status_enum = SQLEnum(
    TransactionStatus,
    name="transaction_status",
    values_callable=lambda x: [e.value for e in x],
)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(100), unique=True, nullable=False, index=True)

    # Denormalized at initiation; verification never joins users/courses
    user_id = Column(String(64), nullable=True, index=True)
    user_email = Column(String(255), nullable=True)
    user_name = Column(String(200), nullable=True)
    course_id = Column(String(64), nullable=True)
    course_slug = Column(String(150), nullable=True, index=True)
    course_name = Column(String(255), nullable=True)

    # Price snapshot
    original_price = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_code = Column(String(50), nullable=True)
    discount_type = Column(String(20), nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    discount_value = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    final_price = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="LKR")

    # Gateway
    gateway_payment_id = Column(String(255), nullable=True, index=True)
    gateway_product_id = Column(String(100), nullable=True)
    payment_link = Column(Text, nullable=True)

    status = Column(_status_enum, nullable=False, default=TransactionStatus.PENDING)
    payment_method = Column(
        SQLEnum(PaymentMethod, name="payment_method", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentMethod.CARD,
    )

    initiated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    webhook_received_at = Column(DateTime, nullable=True)
    webhook_payload = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    client_ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_payment_transactions_status_initiated", "status", "initiated_at"),
    )

    def can_transition_to(self, target: TransactionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[TransactionStatus(self.status)]
