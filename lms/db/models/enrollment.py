"""
Enrollment Model - per-user, per-course access grant

One row per (user_id, course_slug). ``paid`` moves false -> true once, through
a conditional UPDATE in EnrollmentService; nothing in the payment flow moves
it back.
"""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from lms.db.database import Base


class Enrollment(Base):
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    course_slug = Column(String(150), nullable=False, index=True)
    course_name = Column(String(255), nullable=True)

    enrolled_at = Column(DateTime, default=datetime.utcnow)
    progress = Column(Integer, default=0, nullable=False)  # 0-100
    completed_lessons = Column(JSON, default=list, nullable=False)

    paid = Column(Boolean, default=False, nullable=False)
    amount = Column(Numeric(12, 2), nullable=True)
    payment_id = Column(String(255), nullable=True)
    payment_date = Column(DateTime, nullable=True)

    is_enrolled = Column(Boolean, default=True, nullable=False)  # soft unenroll

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "course_slug", name="uq_enrollment_user_course"),
    )
