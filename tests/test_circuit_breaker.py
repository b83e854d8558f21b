"""
Tests for Circuit Breaker Pattern
"""
import asyncio

import pytest

from lms.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_gateway_circuit_breaker,
)
from lms.core.exceptions import CircuitBreakerOpenError, GatewayPaymentNotFoundError


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def config(self) -> CircuitBreakerConfig:
        """Create test configuration with fast timeouts"""
        return CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=2,
            timeout_seconds=0.1,  # Fast timeout for tests
            half_open_max_calls=2,
        )

    @pytest.fixture
    def breaker(self, config: CircuitBreakerConfig) -> CircuitBreaker:
        return CircuitBreaker("test-service", config)

    @staticmethod
    async def _fail():
        raise RuntimeError("Test failure")

    @staticmethod
    async def _succeed():
        return "success"

    async def _open(self, breaker: CircuitBreaker) -> None:
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.execute(self._fail)

    @pytest.mark.unit
    async def test_initial_state_is_closed(self, breaker: CircuitBreaker):
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.is_open

    @pytest.mark.unit
    async def test_successful_execution_keeps_closed(self, breaker: CircuitBreaker):
        result = await breaker.execute(self._succeed)

        assert result == "success"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_failures_open_circuit(self, breaker: CircuitBreaker):
        await self._open(breaker)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_open_circuit_blocks_requests(self, breaker: CircuitBreaker):
        await self._open(breaker)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(self._succeed)

        assert exc_info.value.details["service"] == "test-service"
        assert exc_info.value.details["retry_after_seconds"] > 0

    @pytest.mark.unit
    async def test_success_resets_failure_count(self, breaker: CircuitBreaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(self._fail)
        await breaker.execute(self._succeed)
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.execute(self._fail)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_half_open_recovers(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        await breaker.execute(self._succeed)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(self._succeed)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_half_open_failure_reopens(self, breaker: CircuitBreaker):
        await self._open(breaker)
        await asyncio.sleep(0.15)

        with pytest.raises(RuntimeError):
            await breaker.execute(self._fail)

        assert breaker.is_open

    @pytest.mark.unit
    async def test_ignored_exceptions_do_not_trip(self):
        breaker = CircuitBreaker(
            "ignoring",
            CircuitBreakerConfig(failure_threshold=1, ignored_exceptions=(GatewayPaymentNotFoundError,)),
        )

        async def _missing():
            raise GatewayPaymentNotFoundError("pay_x")

        for _ in range(3):
            with pytest.raises(GatewayPaymentNotFoundError):
                await breaker.execute(_missing)

        assert breaker.state == CircuitState.CLOSED


class TestRegistry:

    @pytest.mark.unit
    def test_get_instance_is_shared(self):
        assert get_gateway_circuit_breaker() is get_gateway_circuit_breaker()

    @pytest.mark.unit
    def test_snapshot_and_reset(self):
        breaker = get_gateway_circuit_breaker()
        breaker.record_failure(RuntimeError("boom"))

        snapshot = CircuitBreaker.snapshot_all()
        assert snapshot["dodo_payments"]["state"] == "closed"
        assert snapshot["dodo_payments"]["failure_count"] == 1

        CircuitBreaker.reset_all()
        assert CircuitBreaker.snapshot_all() == {}
        assert get_gateway_circuit_breaker() is not breaker
