"""
Payment gateway abstraction
"""
from lms.domain.services.gateway.base import (
    CheckoutRequest,
    CheckoutSession,
    GatewayMetadata,
    GatewayPayment,
    GatewayStatus,
    PaymentGateway,
    map_gateway_status,
)
from lms.domain.services.gateway.factory import get_payment_gateway, reset_payment_gateway

__all__ = [
    "CheckoutRequest",
    "CheckoutSession",
    "GatewayMetadata",
    "GatewayPayment",
    "GatewayStatus",
    "PaymentGateway",
    "map_gateway_status",
    "get_payment_gateway",
    "reset_payment_gateway",
]
