"""
Course and Promo Code Models

Only the commercial side of a course lives here: price, currency, gateway
product and promo codes. Curriculum content is served elsewhere.
"""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from lms.db.database import Base


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(150), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = Column(String(3), nullable=False, default="LKR")
    product_id = Column(String(100), nullable=True)  # Dodo Payments product
    is_published = Column(Boolean, default=True)
    enrolled_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    promo_codes = relationship("PromoCode", back_populates="course", lazy="selectin")


class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(50), nullable=False)  # stored upper-case
    discount_type = Column(
        SQLEnum(DiscountType, name="discount_type", values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    discount_amount = Column(Numeric(12, 2), nullable=False)
    expires_at = Column(DateTime, nullable=True)
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    used_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    course = relationship("Course", back_populates="promo_codes")

    __table_args__ = (
        UniqueConstraint("course_id", "code", name="uq_promo_course_code"),
    )
