"""
Retry policy and time-bounded retry budget.

RetryPolicy produces the backoff curve (exponential, capped, optional
jitter) and classifies errors. RetryBudget turns a retry duration into
"may I try again, and how long do I wait" decisions, clamping each wait to
the remaining budget so routing to backup never lands more than one backoff
step after the duration expires.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..errors import BackupStoreError, InvariantViolation, SinkRejectedError

# failures no later attempt can fix
_PERMANENT = (SinkRejectedError, InvariantViolation, BackupStoreError)


def default_retry_classifier(exc: BaseException) -> bool:
    """Return True unless ``exc`` is a permanent rejection.

    A sink failure of unknown type (a custom sink's RuntimeError, a proxy
    answering with non-JSON) is retried until the retry budget runs out.
    """
    return not isinstance(exc, _PERMANENT)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap.

    Attributes:
        initial_backoff_ms: Delay before the first retry
        max_backoff_ms: Upper bound on any single delay
        backoff_multiplier: Growth factor per attempt
        jitter: Randomize each delay to 50-100% of its nominal value
        classify_retryable: Decides whether an error is worth retrying
    """

    initial_backoff_ms: int = 500
    max_backoff_ms: int = 30_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    classify_retryable: Callable[[BaseException], bool] = field(
        default=default_retry_classifier, compare=False
    )

    def __post_init__(self) -> None:
        if self.initial_backoff_ms <= 0:
            raise ValueError("initial_backoff_ms must be > 0")
        if self.max_backoff_ms < self.initial_backoff_ms:
            raise ValueError("max_backoff_ms must be >= initial_backoff_ms")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            initial_backoff_ms=settings.retry_initial_backoff_ms,
            max_backoff_ms=settings.retry_max_backoff_ms,
        )

    def next_backoff_ms(self, attempt: int) -> int:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        attempt = max(1, attempt)
        nominal = min(
            self.max_backoff_ms,
            self.initial_backoff_ms * (self.backoff_multiplier ** (attempt - 1)),
        )
        if self.jitter:
            nominal = random.uniform(nominal / 2.0, nominal)
        return int(nominal)

    def next_backoff_sec(self, attempt: int) -> float:
        return self.next_backoff_ms(attempt) / 1000.0


class RetryBudget:
    """Wall-clock retry budget for one sealed batch.

    A new attempt may start only while ``elapsed() < duration``; waits are
    clamped to the remaining budget.
    """

    def __init__(
        self,
        duration_sec: float,
        policy: RetryPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
        started_at: Optional[float] = None,
    ):
        if duration_sec < 0:
            raise ValueError("duration_sec must be >= 0")
        self.duration_sec = float(duration_sec)
        self.policy = policy
        self._clock = clock
        self._started_at = started_at

    def start(self) -> float:
        if self._started_at is None:
            self._started_at = self._clock()
        return self._started_at

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(0.0, self._clock() - self._started_at)

    def remaining(self) -> float:
        return max(0.0, self.duration_sec - self.elapsed())

    def exhausted(self) -> bool:
        return self.elapsed() >= self.duration_sec

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before the next attempt, never past the budget."""
        return min(self.policy.next_backoff_sec(attempt), self.remaining())
