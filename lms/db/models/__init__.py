"""
Database Models
"""
from lms.db.models.user import User
from lms.db.models.course import Course, PromoCode
from lms.db.models.enrollment import Enrollment
from lms.db.models.payment_transaction import PaymentTransaction
from lms.db.models.payment import PaymentRecord
from lms.db.models.webhook_event import WebhookEvent

__all__ = [
    "User",
    "Course",
    "PromoCode",
    "Enrollment",
    "PaymentTransaction",
    "PaymentRecord",
    "WebhookEvent",
]
