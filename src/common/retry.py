from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(RuntimeError):
    """Raised when a transient failure persists past the retry budget."""

    def __init__(self, operation: str, attempts: int, last_exc: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_exc = last_exc
        super().__init__(f"{operation} failed after {attempts} attempts: {last_exc}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    - `max_attempts` counts the first call, so 1 disables retries.
    - Delay for attempt n (0-based) is `base_delay * 2**n`, capped at
      `max_delay`, then spread by +/- `jitter` (a fraction of the delay).
    """

    max_attempts: int = 4
    base_delay: float = 0.1
    max_delay: float = 2.0
    jitter: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    def delay(self, attempt: int, *, rng: Callable[[float, float], float] = random.uniform) -> float:
        """Seconds to wait before retry number `attempt + 1`."""
        raw = min(self.max_delay, self.base_delay * (2 ** max(0, attempt)))
        if self.jitter == 0.0 or raw == 0.0:
            return raw
        spread = raw * self.jitter
        return max(0.0, raw + rng(-spread, spread))


NO_RETRY = RetryPolicy(max_attempts=1)


def call_with_retries(
    fn: Callable[[], T],
    *,
    operation: str,
    is_transient: Callable[[BaseException], bool],
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `fn`, retrying transient failures according to `policy`.

    Non-transient exceptions propagate immediately and untouched. When the
    budget is spent on transient failures, `RetryExhaustedError` is raised
    chained to the last one.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(operation, attempt, exc) from exc
            delay = policy.delay(attempt - 1)
            logger.warning(
                f"{operation}: transient failure ({exc!r}); "
                f"retry {attempt}/{policy.max_attempts - 1} in {delay:.2f}s"
            )
        sleep(delay)


__all__ = [
    "NO_RETRY",
    "RetryExhaustedError",
    "RetryPolicy",
    "call_with_retries",
]
