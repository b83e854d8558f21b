"""
Domain Services
"""
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.enrollment_service import EnrollmentService, GrantOutcome
from lms.domain.services.payment_record_service import PaymentRecordService
from lms.domain.services.pricing_service import PricingService
from lms.domain.services.admin_notification_service import AdminNotificationService
from lms.domain.services.reconciliation_service import (
    ReconcileRequest,
    ReconcileResult,
    ReconciliationEngine,
)
from lms.domain.services.webhook_service import PaymentWebhookService
from lms.domain.services.admin_payment_service import AdminPaymentService
from lms.domain.services.checkout_service import CheckoutService
from lms.domain.services.student_enrollment_service import StudentEnrollmentService

__all__ = [
    "LedgerService",
    "EnrollmentService",
    "GrantOutcome",
    "PaymentRecordService",
    "PricingService",
    "AdminNotificationService",
    "ReconcileRequest",
    "ReconcileResult",
    "ReconciliationEngine",
    "PaymentWebhookService",
    "AdminPaymentService",
    "CheckoutService",
    "StudentEnrollmentService",
]
