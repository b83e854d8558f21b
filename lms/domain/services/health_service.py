"""
Health checks - dependencies behind the payment flow.

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: database, Redis and payment gateway reachability
"""
from typing import Any, Optional

from sqlalchemy import text

from lms.core.circuit_breaker import CircuitBreaker
from lms.core.logging import get_logger
from lms.core.redis_client import get_redis
from lms.db.database import AsyncSessionLocal
from lms.domain.services.gateway import PaymentGateway, get_payment_gateway

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# sanitized, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_GATEWAY = "error: gateway_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_gateway(gateway: Optional[PaymentGateway] = None) -> str:
    try:
        gateway = gateway or get_payment_gateway()
        if await gateway.ping():
            return _CHECK_OK
    except Exception as e:
        logger.warning("Payment gateway health check failed", extra_data={"error": str(e)})
    return _ERROR_GATEWAY


async def check_readiness(gateway: Optional[PaymentGateway] = None) -> dict[str, Any]:
    """
    ``status`` is "healthy" when every dependency answers, "degraded"
    otherwise; each dependency reports "ok" or "error: ...". Circuit breaker
    states are included for diagnosis but do not affect the status.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "payment_gateway": await _check_gateway(gateway),
    }

    all_ok = all(value == _CHECK_OK for value in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED
    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "circuit_breakers": CircuitBreaker.snapshot_all(),
    }
