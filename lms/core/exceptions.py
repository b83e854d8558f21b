"""
Custom Exception Hierarchy

Every error that crosses the API boundary is an AppException and renders as
``{"success": false, "error": {"code", "message", "details"}}``.
"""
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Payment errors (2xxx)
    INVALID_PAYMENT_REFERENCE = "ERR_2001"
    TRANSACTION_NOT_FOUND = "ERR_2002"
    MANUAL_PAYMENT_NOT_FOUND = "ERR_2003"
    INVALID_PAYMENT_ACTION = "ERR_2004"
    INVALID_WEBHOOK_SIGNATURE = "ERR_2005"
    PRODUCT_NOT_CONFIGURED = "ERR_2006"

    # Catalog errors (3xxx)
    COURSE_NOT_FOUND = "ERR_3001"
    USER_NOT_FOUND = "ERR_3002"
    PROMO_CODE_INVALID = "ERR_3003"
    PROMO_CODE_EXISTS = "ERR_3004"

    # Enrollment errors (4xxx)
    ENROLLMENT_NOT_FOUND = "ERR_4001"
    ALREADY_ENROLLED = "ERR_4002"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    GATEWAY_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    GATEWAY_PAYMENT_NOT_FOUND = "ERR_5005"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "success": False,
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class InvalidPaymentReferenceError(ValidationException):
    """Neither a gateway payment id nor a transaction reference was supplied"""

    def __init__(self) -> None:
        super().__init__(
            message="Missing paymentId or transaction reference",
            error_code=ErrorCode.INVALID_PAYMENT_REFERENCE,
        )


class ManualPaymentNotFoundError(NotFoundException):
    def __init__(self, payment_id: int):
        super().__init__("Payment", payment_id, ErrorCode.MANUAL_PAYMENT_NOT_FOUND)


class InvalidPaymentActionError(ValidationException):
    """Raised for an admin payment action other than approve/reject"""

    def __init__(self, action: str):
        super().__init__(
            message=f"Invalid action '{action}'. Use 'approve' or 'reject'",
            field="action",
            error_code=ErrorCode.INVALID_PAYMENT_ACTION,
        )


class PaymentAlreadyProcessedError(ValidationException):
    def __init__(self, payment_id: int, status: str):
        super().__init__(
            message=f"Payment already {status}",
            error_code=ErrorCode.INVALID_PAYMENT_ACTION,
            details={"payment_id": payment_id, "status": status},
        )


class InvalidWebhookSignatureError(AppException):
    def __init__(self, reason: str):
        super().__init__(
            message="Invalid webhook signature",
            error_code=ErrorCode.INVALID_WEBHOOK_SIGNATURE,
            status_code=401,
            details={"reason": reason},
        )


class ProductNotConfiguredError(ValidationException):
    """Course has no gateway product and no default product is configured"""

    def __init__(self, course_slug: str):
        super().__init__(
            message="Payment product not configured for this course",
            error_code=ErrorCode.PRODUCT_NOT_CONFIGURED,
            details={"course_slug": course_slug},
        )


# ---------------------------------------------------------------------------
# Catalog / enrollment
# ---------------------------------------------------------------------------

class CourseNotFoundError(NotFoundException):
    def __init__(self, course_slug: str):
        super().__init__("Course", course_slug, ErrorCode.COURSE_NOT_FOUND)


class UserNotFoundError(NotFoundException):
    def __init__(self, user_id: str):
        super().__init__("User", user_id, ErrorCode.USER_NOT_FOUND)


class EnrollmentNotFoundError(NotFoundException):
    def __init__(self, user_id: str, course_slug: str):
        super().__init__(
            "Enrollment", f"{user_id}/{course_slug}", ErrorCode.ENROLLMENT_NOT_FOUND
        )


class AlreadyEnrolledError(ValidationException):
    def __init__(self, course_slug: str):
        super().__init__(
            message="Already enrolled in this course",
            error_code=ErrorCode.ALREADY_ENROLLED,
            details={"course_slug": course_slug},
        )


class PromoCodeInvalidError(ValidationException):
    """Promo code is unknown, expired or exhausted"""

    def __init__(self, code: str, reason: str):
        super().__init__(
            message=reason,
            field="promoCode",
            error_code=ErrorCode.PROMO_CODE_INVALID,
            details={"code": code},
        )


class PromoCodeExistsError(ValidationException):
    def __init__(self, code: str):
        super().__init__(
            message="Promo code already exists",
            field="code",
            error_code=ErrorCode.PROMO_CODE_EXISTS,
            details={"code": code},
        )


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class GatewayUnavailableError(ExternalServiceException):
    """Transport failure or 5xx from the payment gateway"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="dodo_payments",
            message=f"Payment gateway error: {message}",
            error_code=ErrorCode.GATEWAY_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "GatewayUnavailableError":
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class GatewayPaymentNotFoundError(ExternalServiceException):
    """The gateway has no payment with the given id"""

    def __init__(self, payment_id: str):
        super().__init__(
            service_name="dodo_payments",
            message=f"Payment not found at gateway: {payment_id}",
            error_code=ErrorCode.GATEWAY_PAYMENT_NOT_FOUND,
            details={"payment_id": payment_id},
        )
        self.status_code = 404


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
