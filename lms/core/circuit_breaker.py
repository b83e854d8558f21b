"""
Circuit Breaker

Guards calls to the payment gateway and the Telegram admin channel. While a
breaker is open, verification falls straight back to the local ledger instead
of waiting out the gateway timeout on every poll.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from lms.core.exceptions import CircuitBreakerOpenError, GatewayPaymentNotFoundError
from lms.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"          # calls pass through
    OPEN = "open"              # calls rejected
    HALF_OPEN = "half_open"    # probing for recovery


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    # Errors that mean "the service answered" and must not trip the breaker
    ignored_exceptions: tuple[type[BaseException], ...] = field(default_factory=tuple)


class CircuitBreaker:
    """
    One breaker per external service, shared process-wide.

    threading.Lock rather than asyncio.Lock: Celery tasks run each job on a
    fresh event loop and an asyncio lock is bound to the loop that created it.
    """

    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def reset_all(cls) -> None:
        """Forget every breaker (tests)"""
        with cls._instances_lock:
            cls._instances.clear()

    @classmethod
    def snapshot_all(cls) -> dict[str, dict[str, Any]]:
        with cls._instances_lock:
            return {name: cb.snapshot() for name, cb in cls._instances.items()}

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "retry_after_seconds": round(self.get_retry_after(), 1),
        }

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0
            self._success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._success_count = 0

        logger.info(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
            },
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()
            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            if (
                self._state == CircuitState.HALF_OPEN
                or self._failure_count >= self.config.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def can_execute(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                elapsed = time.time() - self._last_failure_time
                if elapsed < self.config.timeout_seconds:
                    return False
                self._transition(CircuitState.HALF_OPEN)
            if self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def get_retry_after(self) -> float:
        if self._state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.timeout_seconds - (time.time() - self._last_failure_time)
        return max(0.0, remaining)

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await ``func(*args, **kwargs)`` under breaker protection.

        Raises:
            CircuitBreakerOpenError: the breaker is open
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result):
                result = await result
        except self.config.ignored_exceptions:
            self.record_success()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


def get_gateway_circuit_breaker() -> CircuitBreaker:
    """Breaker for the Dodo Payments API"""
    return CircuitBreaker.get_instance(
        "dodo_payments",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0,
            ignored_exceptions=(GatewayPaymentNotFoundError,),
        ),
    )


def get_telegram_circuit_breaker() -> CircuitBreaker:
    """Breaker for the Telegram Bot API"""
    return CircuitBreaker.get_instance(
        "telegram",
        CircuitBreakerConfig(failure_threshold=5, success_threshold=2, timeout_seconds=30.0),
    )
