"""
Resilience Layer Tests
Circuit breaker states, retry with linear backoff, fallbacks and health probes.
"""

import asyncio

import pytest

from services.api_resilience_service import ResilienceService
from services.circuit_breaker import CircuitBreaker, CircuitState
from services.retry_service import RetryPolicy
from utils.exception_handler import ExternalServiceError, ServiceUnavailable, ValidationError


class FlakyOperation:
    """Fails a set number of times, then returns a value"""

    def __init__(self, failures: int = 0, result: str = "ok", error: Exception = None):
        self.failures = failures
        self.result = result
        self.error = error or ConnectionError("connection reset")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures < 0 or self.calls <= self.failures:
            raise self.error
        return self.result


def always_failing():
    return FlakyOperation(failures=-1)


@pytest.fixture
def single_shot(monotonic, sleeps):
    """No retries, so every call is exactly one breaker verdict"""
    return ResilienceService(
        retry_policy=RetryPolicy(max_attempts=1, retry_delay=1.0),
        failure_threshold=3,
        open_duration=60,
        call_timeout=5,
        clock=monotonic,
        sleep=sleeps,
    )


class TestRetry:
    async def test_linear_backoff_between_attempts(self, resilience, sleeps):
        operation = always_failing()

        with pytest.raises(ExternalServiceError) as exc_info:
            await resilience.execute("chain_gateway", operation)

        assert operation.calls == 3
        assert sleeps.delays == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert "connection reset" in exc_info.value.message

    async def test_recovers_within_budget(self, resilience, sleeps):
        operation = FlakyOperation(failures=1)

        assert await resilience.execute("chain_gateway", operation) == "ok"
        assert sleeps.delays == [1.0]
        assert resilience.breakers["chain_gateway"].failure_count == 0

    async def test_domain_errors_pass_through_without_retry(self, resilience, sleeps):
        operation = FlakyOperation(failures=-1, error=ValidationError("amount too small"))

        with pytest.raises(ValidationError):
            await resilience.execute("chain_gateway", operation)

        assert operation.calls == 1
        assert sleeps.delays == []
        assert resilience.breakers["chain_gateway"].failure_count == 0

    async def test_timeout_counts_as_failure(self, resilience):
        async def hangs():
            await asyncio.sleep(10)

        with pytest.raises(ExternalServiceError) as exc_info:
            await resilience.execute("chain_gateway", hangs, timeout=0.01)

        assert "timed out" in exc_info.value.message
        assert resilience.breakers["chain_gateway"].failure_count == 3

    def test_policy_delays_and_bounds(self):
        policy = RetryPolicy(max_attempts=3, retry_delay=0.5)
        assert [policy.delay_for(n) for n in (1, 2)] == [0.5, 1.0]
        assert policy.has_attempts_left(2)
        assert not policy.has_attempts_left(3)
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(retry_delay=-1)


class TestCircuitBreaker:
    async def test_opens_at_threshold_and_short_circuits(self, single_shot):
        operation = always_failing()
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await single_shot.execute("strategy:aave-usdc", operation)
        with pytest.raises(ServiceUnavailable):
            await single_shot.execute("strategy:aave-usdc", operation)
        assert operation.calls == 3

        with pytest.raises(ServiceUnavailable) as exc_info:
            await single_shot.execute("strategy:aave-usdc", operation)

        assert operation.calls == 3
        assert exc_info.value.retry_after_seconds == 60
        assert single_shot.breakers["strategy:aave-usdc"].stats["blocked_calls"] == 1

    async def test_retries_stop_once_circuit_opens(self, resilience, sleeps):
        operation = always_failing()
        with pytest.raises(ExternalServiceError):
            await resilience.execute("bridge_settlement", operation)

        with pytest.raises(ServiceUnavailable):
            await resilience.execute("bridge_settlement", operation)

        # Threshold 5 is reached on the second attempt of the second call
        assert operation.calls == 5
        assert sleeps.delays == [1.0, 2.0, 1.0]

    async def test_single_probe_after_open_duration(self, single_shot, monotonic):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("chain_gateway", always_failing())
        monotonic.advance(60)

        gate = asyncio.Event()

        async def slow_probe():
            await gate.wait()
            return "recovered"

        probe = asyncio.create_task(single_shot.execute("chain_gateway", slow_probe))
        await asyncio.sleep(0)
        assert single_shot.breakers["chain_gateway"].state == CircuitState.HALF_OPEN

        second = FlakyOperation()
        with pytest.raises(ServiceUnavailable):
            await single_shot.execute("chain_gateway", second)
        assert second.calls == 0

        gate.set()
        assert await probe == "recovered"
        assert single_shot.breakers["chain_gateway"].state == CircuitState.CLOSED

    async def test_failed_probe_reopens(self, single_shot, monotonic):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("chain_gateway", always_failing())
        monotonic.advance(61)

        with pytest.raises(ServiceUnavailable) as exc_info:
            await single_shot.execute("chain_gateway", always_failing())

        assert single_shot.breakers["chain_gateway"].state == CircuitState.OPEN
        assert exc_info.value.retry_after_seconds == 60

    async def test_success_resets_failure_count(self, single_shot):
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await single_shot.execute("chain_gateway", always_failing())

        await single_shot.execute("chain_gateway", FlakyOperation())
        for _ in range(2):
            with pytest.raises(ExternalServiceError):
                await single_shot.execute("chain_gateway", always_failing())

        assert single_shot.breakers["chain_gateway"].state == CircuitState.CLOSED

    async def test_breakers_are_per_service(self, single_shot):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("strategy:comp-usdc", always_failing())

        assert await single_shot.execute("strategy:aave-usdc", FlakyOperation()) == "ok"

    def test_manual_reset(self, monotonic):
        breaker = CircuitBreaker("chain_gateway", failure_threshold=1, recovery_timeout=60, clock=monotonic)
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        breaker.reset()

        assert breaker.is_closed
        assert breaker.allow_request()
        assert breaker.get_state()["failure_count"] == 0

    async def test_force_reset_through_service(self, single_shot):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("chain_gateway", always_failing())

        assert single_shot.force_circuit_reset("chain_gateway")
        assert not single_shot.force_circuit_reset("unknown")
        assert await single_shot.execute("chain_gateway", FlakyOperation()) == "ok"


class TestFallback:
    async def test_plain_value(self, resilience):
        assert await resilience.execute_with_fallback("quotes", always_failing(), fallback="0.05") == "0.05"

    async def test_callable_and_coroutine(self, resilience):
        async def cached_quote():
            return "0.04"

        assert await resilience.execute_with_fallback("quotes", always_failing(), fallback=lambda: "0.03") == "0.03"
        assert await resilience.execute_with_fallback("quotes", always_failing(), fallback=cached_quote) == "0.04"

    async def test_fallback_used_when_circuit_open(self, single_shot):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("quotes", always_failing())
        operation = FlakyOperation()

        assert await single_shot.execute_with_fallback("quotes", operation, fallback="stale") == "stale"
        assert operation.calls == 0

    async def test_domain_error_is_not_masked(self, resilience):
        operation = FlakyOperation(failures=-1, error=ValidationError("bad request"))
        with pytest.raises(ValidationError):
            await resilience.execute_with_fallback("quotes", operation, fallback="0")


class TestHealth:
    async def test_probe_results_drive_status(self, resilience):
        healthy = {"value": True}

        async def probe():
            return healthy["value"]

        resilience.register_service("chain_gateway", health_check=probe)
        assert resilience.get_service_status("chain_gateway")["status"] == "unknown"

        await resilience.health_check()
        assert resilience.get_service_status("chain_gateway")["status"] == "healthy"

        healthy["value"] = False
        status = await resilience.health_check("chain_gateway")
        assert status["status"] == "unhealthy"
        assert status["circuit"]["failure_count"] == 1
        assert status["last_health_error"] == "health check reported unhealthy"

    async def test_probe_exception_is_recorded(self, resilience):
        async def broken():
            raise RuntimeError("dns failure")

        resilience.register_service("bridge_settlement", health_check=broken)
        status = await resilience.health_check("bridge_settlement")

        assert status["status"] == "unhealthy"
        assert "dns failure" in status["last_health_error"]

    async def test_open_circuit_reported(self, single_shot):
        for _ in range(3):
            with pytest.raises((ExternalServiceError, ServiceUnavailable)):
                await single_shot.execute("chain_gateway", always_failing())

        statuses = single_shot.get_all_service_status()

        assert statuses["chain_gateway"]["status"] == "circuit_open"
        assert statuses["chain_gateway"]["circuit"]["retry_after_seconds"] == 60

    def test_unmonitored_service(self, resilience):
        assert resilience.get_service_status("nope")["status"] == "unknown"

    async def test_monitoring_task_lifecycle(self, resilience):
        await resilience.start_monitoring()
        assert resilience.health_check_task is not None

        await resilience.stop_monitoring()
        assert resilience.health_check_task is None
