"""
Retry policy with linear backoff for external protocol calls
"""

import logging
from dataclasses import dataclass

from config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Up to max_attempts tries; before attempt n+1 wait retry_delay * n seconds.

    With the defaults (3 attempts, 1s) a failing call waits 1s then 2s.
    """

    max_attempts: int = 3
    retry_delay: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt"""
        return self.retry_delay * attempt

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(max_attempts=Config.RESILIENCE_MAX_RETRIES, retry_delay=Config.RESILIENCE_RETRY_DELAY)


