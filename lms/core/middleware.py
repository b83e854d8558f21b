"""
FastAPI Middleware

- Correlation ID injection
- Request logging (email addresses masked)
- Exception handlers (AppException and unhandled errors)
- Security headers
- Sliding-window rate limit for the payment webhook
"""
import re
import time
import traceback
from collections import defaultdict, deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from lms.core.exceptions import AppException, ErrorCode
from lms.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"([^@\s&=]{1,2})[^@\s&=]*@")


def mask_emails(value: str) -> str:
    """jane.doe@example.com -> ja****@example.com"""
    return _EMAIL_RE.sub(r"\1****@", value)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Correlation-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.time()
        path = request.url.path
        query = {k: mask_emails(v) for k, v in request.query_params.items()}

        logger.info(
            f"Request started: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "query_params": query,
                "client_host": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {path}",
                extra_data={
                    "method": request.method,
                    "path": path,
                    "duration_seconds": round(time.time() - started, 4),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"Request completed: {request.method} {path}",
            extra_data={
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_seconds": round(time.time() - started, 4),
            },
        )
        return response


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()},
    )


def build_generic_exception_handler(debug: bool):
    """Handler for anything that escaped the service layer.

    The stack trace goes to the log always and into the response body only
    in DEBUG.
    """
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {type(exc).__name__}",
            extra_data={
                "exception_type": type(exc).__name__,
                "message": str(exc),
                "path": request.url.path,
            },
            exc_info=exc,
        )
        details: dict = {}
        if debug:
            details["traceback"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {
                    "code": ErrorCode.INTERNAL_ERROR.value,
                    "message": "An unexpected error occurred",
                    "details": details,
                },
            },
            headers={"X-Correlation-ID": get_correlation_id()},
        )

    return generic_exception_handler


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff always; HSTS and upgrade-insecure-requests outside DEBUG"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP sliding window on paths containing ``/webhook``.

    Sits inside CorrelationIdMiddleware so 429 responses carry a correlation id.
    """

    def __init__(self, app: FastAPI, *, max_requests: int = 100, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _prune(self, ip: str, now: float) -> int:
        hits = self._hits[ip]
        cutoff = now - self._window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            del self._hits[ip]
            return 0
        return len(hits)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if "/webhook" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        if self._prune(client_ip, now) >= self._max_requests:
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many requests. Please try again later.",
                        "details": {},
                    },
                },
                headers={
                    "Retry-After": str(self._window_seconds),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        self._hits[client_ip].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Register middleware; the last one added is the outermost.

    Request path: SecurityHeaders -> CorrelationId -> RequestLogging -> RateLimit -> app
    """
    from lms.core.config import settings

    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    from lms.core.config import settings

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, build_generic_exception_handler(settings.DEBUG))
