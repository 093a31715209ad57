"""
Circuit Breaker Pattern for External Protocol Calls
Prevents cascading failures when a yield, bridge or chain integration misbehaves
"""

import time
import logging
from typing import Callable, Dict, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # One probe call in flight


class CircuitBreaker:
    """
    In-memory circuit breaker for one external service.

    States:
    - CLOSED: requests pass through, consecutive failures are counted
    - OPEN: failure_threshold reached, requests blocked for recovery_timeout seconds
    - HALF_OPEN: recovery window elapsed, exactly one probe request is let through;
      its success closes the circuit, its failure reopens it and restarts the timer

    State is advisory and process-local; it is rebuilt empty on restart.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.opened_at: Optional[float] = None
        self.probe_in_flight = False
        self.stats = {"total_calls": 0, "successful_calls": 0, "failed_calls": 0, "blocked_calls": 0}

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def allow_request(self) -> bool:
        """Decide whether a call may proceed; claims the half-open probe slot when due"""
        self.stats["total_calls"] += 1

        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN and self._should_attempt_reset():
            self.state = CircuitState.HALF_OPEN
            self.probe_in_flight = True
            logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            return True

        self.stats["blocked_calls"] += 1
        return False

    def retry_after(self) -> int:
        """Seconds until the next probe will be allowed"""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0
        remaining = self.recovery_timeout - (self._clock() - self.opened_at)
        return max(0, int(remaining + 0.999))

    def _should_attempt_reset(self) -> bool:
        if self.opened_at is None:
            return True
        return self._clock() - self.opened_at >= self.recovery_timeout

    def record_success(self):
        self.stats["successful_calls"] += 1
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit {self.name} recovered - now CLOSED")
        elif self.failure_count:
            logger.debug(f"Circuit {self.name} failure count reset after success")
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at = None
        self.probe_in_flight = False

    def record_failure(self):
        self.stats["failed_calls"] += 1
        now = self._clock()
        self.failure_count += 1
        self.last_failure_time = now

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            self.opened_at = now
            self.probe_in_flight = False
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            self.opened_at = now
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} failures")

    def release_probe(self):
        """Give back the half-open slot without a verdict (call was cancelled)"""
        if self.state == CircuitState.HALF_OPEN and self.probe_in_flight:
            self.state = CircuitState.OPEN
            self.probe_in_flight = False

    def reset(self):
        """Manually reset the circuit breaker"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time = None
        self.opened_at = None
        self.probe_in_flight = False
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict:
        """Get current circuit breaker state and statistics"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_after_seconds": self.retry_after(),
            "stats": dict(self.stats),
        }
