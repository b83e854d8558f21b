"""
LMS Payments - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

import lms.db.models  # noqa: F401  register tables on Base.metadata
from lms.api.routes import router as api_router
from lms.core.config import settings
from lms.core.logging import get_logger, setup_logging
from lms.core.middleware import setup_exception_handlers, setup_middleware
from lms.db.database import Base, engine

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "payments", "description": "Checkout, payment verification and ledger lookup."},
    {"name": "webhooks", "description": "Payment gateway webhook deliveries."},
    {"name": "courses", "description": "Promo code checks."},
    {"name": "student", "description": "Student enrollments, bank transfer submission and progress."},
    {"name": "admin", "description": "Manual payment review and promo code management (X-Admin-API-Key)."},
    {"name": "Health", "description": "Liveness and readiness checks."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Payment verification and enrollment reconciliation for the LMS. "
        "Gateway polls, webhooks and admin approvals all settle through one idempotent engine."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, webhook rate limit)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info(
        "Starting application",
        extra_data={"app_name": settings.APP_NAME, "gateway_environment": settings.DODO_ENVIRONMENT},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from lms.core.redis_client import close_redis
    await close_redis()
    # release pooled connections
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness check",
    description="Cheap check that the process answers. Does not touch dependencies.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Checks the database, Redis and the payment gateway. "
        "Returns status=healthy, or status=degraded with 503 and the failing dependency."
    ),
    responses={
        200: {
            "description": "All dependencies reachable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "redis": "ok",
                        "payment_gateway": "ok",
                        "circuit_breakers": {},
                    }
                }
            },
        },
        503: {"description": "At least one dependency is unavailable"},
    },
    tags=["Health"],
)
async def readiness_check():
    from lms.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
