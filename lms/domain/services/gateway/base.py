"""
Payment gateway interface.

The reconciliation engine depends on this interface only; the Dodo Payments
client and the test fakes both implement it. Everything the gateway returns
is treated as possibly incomplete: every metadata field is optional.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional


class GatewayStatus(str, enum.Enum):
    """Gateway status mapped onto the local taxonomy"""

    COMPLETED = "completed"
    PROCESSING = "processing"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


_STATUS_MAP = {
    "succeeded": GatewayStatus.COMPLETED,
    "completed": GatewayStatus.COMPLETED,
    "pending": GatewayStatus.PROCESSING,
    "processing": GatewayStatus.PROCESSING,
    "requires_customer_action": GatewayStatus.PROCESSING,
    "requires_merchant_action": GatewayStatus.PROCESSING,
    "requires_payment_method": GatewayStatus.PROCESSING,
    "requires_confirmation": GatewayStatus.PROCESSING,
    "requires_capture": GatewayStatus.PROCESSING,
    "partially_captured": GatewayStatus.PROCESSING,
    "failed": GatewayStatus.FAILED,
    "cancelled": GatewayStatus.FAILED,
}


def map_gateway_status(raw_status: Optional[str]) -> GatewayStatus:
    """Unknown or missing statuses are unconfirmed, never failed"""
    if not raw_status:
        return GatewayStatus.UNCONFIRMED
    return _STATUS_MAP.get(raw_status.strip().lower(), GatewayStatus.UNCONFIRMED)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class GatewayMetadata:
    """Metadata attached to a payment at checkout"""

    user_id: Optional[str] = None
    course_slug: Optional[str] = None
    course_name: Optional[str] = None
    transaction_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    currency: Optional[str] = None
    discount_code: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> "GatewayMetadata":
        """Parse the camelCase metadata map our checkout writes"""
        if not isinstance(raw, dict):
            return cls()
        return cls(
            user_id=_to_str(raw.get("userId")),
            course_slug=_to_str(raw.get("courseSlug")),
            course_name=_to_str(raw.get("courseName")),
            transaction_ref=_to_str(raw.get("transactionRef")),
            amount=_to_decimal(raw.get("amount")),
            final_price=_to_decimal(raw.get("finalPrice")),
            currency=_to_str(raw.get("currency")),
            discount_code=_to_str(raw.get("discountCode")),
        )


@dataclass(frozen=True)
class GatewayPayment:
    """A payment as reported by the gateway"""

    payment_id: str
    raw_status: Optional[str] = None
    total_amount: Optional[int] = None  # smallest currency unit
    currency: Optional[str] = None
    metadata: GatewayMetadata = field(default_factory=GatewayMetadata)

    @property
    def status(self) -> GatewayStatus:
        return map_gateway_status(self.raw_status)

    @property
    def reported_amount(self) -> Optional[Decimal]:
        """``total_amount`` in major units"""
        if self.total_amount is None:
            return None
        return (Decimal(self.total_amount) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class CheckoutSession:
    payment_id: str
    payment_link: str


@dataclass
class CheckoutRequest:
    product_id: str
    amount_minor: int  # smallest unit of ``currency``
    currency: str
    return_url: str
    customer_email: str
    customer_name: str
    metadata: dict[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Narrow read interface plus checkout creation"""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway identifier used in logs"""

    @abstractmethod
    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment:
        """
        Retrieve a payment.

        Raises:
            GatewayPaymentNotFoundError: the gateway does not know the id.
            GatewayUnavailableError / ServiceTimeoutError / CircuitBreakerOpenError:
                transient failure; callers fall back to the ledger.
        """

    @abstractmethod
    async def create_payment(self, request: CheckoutRequest) -> CheckoutSession:
        """
        Create a hosted payment link.

        Raises:
            GatewayUnavailableError / ServiceTimeoutError / CircuitBreakerOpenError
        """

    async def ping(self) -> bool:
        """Readiness check; gateways without a cheap check report healthy"""
        return True
