"""
Payment Record Model - admin-facing projection of payments

Reporting only: every row can be rebuilt from the ledger and the gateway.
``transaction_id`` is unique, so each payment is projected at most once.
Manual bank transfers start here as ``pending`` and wait for an admin.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, Numeric, String, Text

from lms.db.database import Base


class PaymentRecordMethod(str, enum.Enum):
    MANUAL = "manual"
    ONLINE = "online"


class PaymentRecordStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    course_slug = Column(String(150), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(
        SQLEnum(PaymentRecordMethod, name="payment_record_method", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    status = Column(
        SQLEnum(PaymentRecordStatus, name="payment_record_status", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentRecordStatus.PENDING,
    )

    transaction_id = Column(String(255), unique=True, nullable=False)
    payment_id = Column(String(255), nullable=True)
    receipt_url = Column(Text, nullable=True)

    submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String(100), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_payments_status_submitted", "status", "submitted_at"),
    )
