"""
Gateway factory - one process-wide gateway built from settings.

``get_payment_gateway`` doubles as the FastAPI dependency, so API tests swap
in a fake through ``app.dependency_overrides``.
"""
from __future__ import annotations

import threading

from lms.core.circuit_breaker import get_gateway_circuit_breaker
from lms.core.config import settings
from lms.core.logging import get_logger
from lms.domain.services.gateway.base import PaymentGateway

logger = get_logger(__name__)

_gateway: PaymentGateway | None = None
_lock = threading.Lock()


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        with _lock:
            if _gateway is None:
                from lms.domain.services.gateway.dodo_gateway import DodoPaymentsGateway

                _gateway = DodoPaymentsGateway(
                    api_key=settings.DODO_PAYMENTS_API_KEY,
                    base_url=settings.dodo_base_url,
                    timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
                    circuit_breaker=get_gateway_circuit_breaker(),
                )
                logger.info(
                    "Payment gateway initialized",
                    extra_data={"gateway": _gateway.name, "environment": settings.DODO_ENVIRONMENT},
                )
    return _gateway


def reset_payment_gateway() -> None:
    """Drop the cached gateway (tests, settings reload)"""
    global _gateway
    with _lock:
        _gateway = None
