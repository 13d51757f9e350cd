"""
Exponential backoff policy for database (re)connection.

``delay_ms(attempt) = min(base_ms * multiplier ** attempt, cap_ms)``; the delay
after attempt 1 is therefore 2s with the defaults, then 4s, 8s, 16s, capped at
30s. ``max_attempts`` bounds how many tries one sequence may make.
"""

from collections.abc import Callable
from dataclasses import dataclass

from tenacity import RetryCallState

from app.core.config import settings

MAX_ATTEMPTS = 5
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30000


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = BASE_DELAY_MS
    multiplier: int = 2
    cap_ms: int = MAX_DELAY_MS
    max_attempts: int = MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_ms <= 0 or self.cap_ms <= 0:
            raise ValueError("base_ms and cap_ms must be positive")

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_ms=settings.DB_RETRY_BASE_MS,
            cap_ms=settings.DB_RETRY_MAX_DELAY_MS,
            max_attempts=settings.DB_MAX_RECONNECT_ATTEMPTS,
        )

    def delay_ms(self, attempt: int) -> int:
        """Milliseconds to wait after *attempt* (1-based) failed."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.base_ms * self.multiplier**attempt, self.cap_ms)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def wait(self, first_attempt: int = 1) -> Callable[[RetryCallState], float]:
        """
        Tenacity ``wait`` callable (seconds).

        Tenacity numbers attempts from 1 within one ``AsyncRetrying`` run;
        *first_attempt* shifts that onto the absolute attempt number.
        """
        offset = first_attempt - 1

        def _wait(retry_state: RetryCallState) -> float:
            return self.delay_ms(retry_state.attempt_number + offset) / 1000

        return _wait

