"""
API Resilience Service - retry, circuit breaker, fallback and health monitoring
for every outbound call to an external yield, bridge or chain protocol.

Business code never touches a breaker directly: it hands an operation to
execute() or execute_with_fallback() and gets either a result or one of the
resilience errors (ExternalServiceError, ServiceUnavailable).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from config import Config
from services.circuit_breaker import CircuitBreaker, CircuitState
from services.retry_service import RetryPolicy
from utils.datetime_helpers import get_naive_utc_now, isoformat_or_none
from utils.exception_handler import ExternalServiceError, ServiceUnavailable, is_domain_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
HealthCheck = Callable[[], Awaitable[bool]]


class ServiceStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"


@dataclass
class ServiceEndpoint:
    """Resilience settings and last health probe for one external service"""

    name: str
    health_check: Optional[HealthCheck] = None
    timeout_seconds: float = 10.0
    last_health_check: Optional[datetime] = None
    last_health_ok: Optional[bool] = None
    last_health_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ResilienceService:
    """Service providing retry, per-service circuit breaker and health monitoring"""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        failure_threshold: int = Config.CIRCUIT_FAILURE_THRESHOLD,
        open_duration: float = Config.CIRCUIT_OPEN_DURATION,
        call_timeout: float = Config.EXTERNAL_CALL_TIMEOUT,
        health_check_interval: float = Config.HEALTH_CHECK_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy.from_config()
        self.failure_threshold = failure_threshold
        self.open_duration = open_duration
        self.call_timeout = call_timeout
        self.health_check_interval = health_check_interval
        self._clock = clock
        self._sleep = sleep

        self.endpoints: Dict[str, ServiceEndpoint] = {}
        self.breakers: Dict[str, CircuitBreaker] = {}
        self.health_check_task: Optional[asyncio.Task] = None

    # Registration

    def register_service(
        self,
        name: str,
        health_check: Optional[HealthCheck] = None,
        timeout_seconds: Optional[float] = None,
        **metadata,
    ) -> ServiceEndpoint:
        endpoint = ServiceEndpoint(
            name=name,
            health_check=health_check,
            timeout_seconds=timeout_seconds or self.call_timeout,
            metadata=metadata,
        )
        self.endpoints[name] = endpoint
        self._breaker(name)
        logger.debug(f"Registered external service {name}")
        return endpoint

    def unregister_service(self, name: str):
        self.endpoints.pop(name, None)
        self.breakers.pop(name, None)

    def _breaker(self, name: str) -> CircuitBreaker:
        breaker = self.breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.open_duration,
                clock=self._clock,
            )
            self.breakers[name] = breaker
        return breaker

    def _timeout_for(self, name: str, timeout: Optional[float]) -> float:
        if timeout is not None:
            return timeout
        endpoint = self.endpoints.get(name)
        return endpoint.timeout_seconds if endpoint else self.call_timeout

    # Calls

    async def execute(
        self,
        service: str,
        operation: Operation,
        timeout: Optional[float] = None,
        description: str = "call",
    ) -> T:
        """
        Run operation against service with retry and circuit breaker protection.

        Domain errors raised by the operation (validation, state) are answers,
        not outages: they propagate unchanged and do not count as failures.

        Raises:
            ServiceUnavailable: the circuit is open (before or during the call)
            ExternalServiceError: every attempt failed
        """
        breaker = self._breaker(service)
        call_timeout = self._timeout_for(service, timeout)
        policy = self.retry_policy
        last_error: Optional[BaseException] = None
        attempt = 0
        attempts_made = 0

        while True:
            attempt += 1
            if attempt > 1 and not breaker.is_closed:
                break
            if not breaker.allow_request():
                logger.warning(f"{service} circuit is OPEN - {description} short-circuited")
                raise ServiceUnavailable(service, breaker.retry_after())

            attempts_made = attempt
            try:
                result = await asyncio.wait_for(operation(), timeout=call_timeout)
            except asyncio.CancelledError:
                breaker.release_probe()
                raise
            except Exception as e:
                if is_domain_error(e):
                    breaker.record_success()
                    raise
                breaker.record_failure()
                last_error = e
                if isinstance(e, asyncio.TimeoutError):
                    error_text = f"timed out after {call_timeout}s"
                else:
                    error_text = f"{type(e).__name__}: {e}"
                if not policy.has_attempts_left(attempt) or not breaker.is_closed:
                    logger.error(f"{service} {description} failed on attempt {attempt}: {error_text}")
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{service} {description} attempt {attempt}/{policy.max_attempts} failed: "
                    f"{error_text}. Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info(f"{service} {description} succeeded on attempt {attempt}")
            breaker.record_success()
            return result

        if breaker.state == CircuitState.OPEN:
            raise ServiceUnavailable(service, breaker.retry_after()) from last_error
        message = "timed out" if isinstance(last_error, asyncio.TimeoutError) else str(last_error)
        raise ExternalServiceError(service, message, attempts=attempts_made) from last_error

    async def execute_with_fallback(
        self,
        service: str,
        operation: Operation,
        fallback: Any,
        timeout: Optional[float] = None,
        description: str = "call",
    ) -> T:
        """
        Like execute(), but resilience failures return the fallback instead.

        fallback may be a plain value, a callable or a coroutine function.
        Only for read-style operations: never wrap a funds-moving call in this.
        """
        try:
            return await self.execute(service, operation, timeout=timeout, description=description)
        except (ExternalServiceError, ServiceUnavailable) as e:
            logger.warning(f"{service} {description} falling back: {e.message}")
            if callable(fallback):
                value = fallback()
                if asyncio.iscoroutine(value):
                    value = await value
                return value
            return fallback

    # Health monitoring

    async def start_monitoring(self):
        """Start background health monitoring"""
        if self.health_check_task is None:
            self.health_check_task = asyncio.create_task(self._monitor_health())
            logger.info(f"Resilience health monitoring started (every {self.health_check_interval}s)")

    async def stop_monitoring(self):
        """Stop monitoring and cleanup resources"""
        if self.health_check_task:
            self.health_check_task.cancel()
            try:
                await self.health_check_task
            except asyncio.CancelledError:
                pass
            self.health_check_task = None
        logger.info("Resilience health monitoring stopped")

    async def _monitor_health(self):
        while True:
            try:
                await self.health_check()
            except Exception as e:
                logger.error(f"Error in health monitoring: {e}")
            await asyncio.sleep(self.health_check_interval)

    async def health_check(self, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Probe registered services and record the outcome.

        A closed breaker counts a failed probe as a failure and a passing probe
        as a success. Open and half-open breakers are left to the request path
        so the single half-open probe stays a real request.
        """
        names = [name] if name else list(self.endpoints)
        for endpoint_name in names:
            endpoint = self.endpoints.get(endpoint_name)
            if endpoint is None or endpoint.health_check is None:
                continue
            await self._check_endpoint(endpoint)
        return self.get_all_service_status() if name is None else self.get_service_status(name)

    async def _check_endpoint(self, endpoint: ServiceEndpoint):
        breaker = self._breaker(endpoint.name)
        healthy = False
        error = None
        try:
            healthy = bool(await asyncio.wait_for(endpoint.health_check(), timeout=endpoint.timeout_seconds))
            if not healthy:
                error = "health check reported unhealthy"
        except asyncio.TimeoutError:
            error = f"health check timed out after {endpoint.timeout_seconds}s"
        except Exception as e:
            error = f"health check failed: {e}"

        endpoint.last_health_check = get_naive_utc_now()
        endpoint.last_health_ok = healthy
        endpoint.last_health_error = error

        if breaker.is_closed:
            if healthy:
                breaker.record_success()
            else:
                breaker.record_failure()
                logger.warning(f"Service {endpoint.name} {error}")

    # Status

    def get_service_status(self, name: str) -> Dict[str, Any]:
        """Get current status of service"""
        breaker = self.breakers.get(name)
        if breaker is None:
            return {"endpoint": name, "status": ServiceStatus.UNKNOWN.value, "error": "Service not monitored"}

        endpoint = self.endpoints.get(name)
        if breaker.state != CircuitState.CLOSED:
            status = ServiceStatus.CIRCUIT_OPEN
        elif endpoint and endpoint.last_health_ok is False:
            status = ServiceStatus.UNHEALTHY
        elif breaker.failure_count > 0:
            status = ServiceStatus.DEGRADED
        elif endpoint and endpoint.last_health_ok is None:
            status = ServiceStatus.UNKNOWN
        else:
            status = ServiceStatus.HEALTHY

        return {
            "endpoint": name,
            "status": status.value,
            "circuit": breaker.get_state(),
            "last_health_check": isoformat_or_none(endpoint.last_health_check) if endpoint else None,
            "last_health_error": endpoint.last_health_error if endpoint else None,
        }

    def get_all_service_status(self) -> Dict[str, Any]:
        """Get status of all monitored services"""
        return {name: self.get_service_status(name) for name in sorted(self.breakers)}

    def force_circuit_reset(self, name: str) -> bool:
        """Manually reset circuit breaker (admin function)"""
        breaker = self.breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True
