"""Retry, timeout and deadline policy applied uniformly to page tasks."""
from __future__ import annotations

import threading
import time
from concurrent.futures import Executor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from comparison.errors import ComparisonTimeoutError, FatalComparisonError
from config.settings import settings
from extraction.outcome import Outcome
from utils.logging import logger

T = TypeVar("T")

# How often a waiting attempt checks for cancellation
_POLL_SECONDS = 0.05


class Deadline:
    """Monotonic point in time after which a batch stops waiting."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    per_attempt_timeout: float = 60.0
    aggregate_deadline: float = 300.0
    backoff_seconds: float = 0.05

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            per_attempt_timeout=settings.per_attempt_timeout_seconds,
            aggregate_deadline=settings.batch_deadline_seconds,
            backoff_seconds=settings.retry_backoff_seconds,
        )

    def start_deadline(self) -> Deadline:
        return Deadline(self.aggregate_deadline)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based), doubling each time."""
        return self.backoff_seconds * (2 ** (attempt - 1))

    def run(
        self,
        fn: Callable[[], T],
        executor: Executor,
        description: str,
        deadline: Optional[Deadline] = None,
        cancel: Optional[threading.Event] = None,
        max_attempts: Optional[int] = None,
    ) -> Outcome[T]:
        """
        Call ``fn`` on ``executor`` until it succeeds or attempts run out.

        Each attempt is bounded by ``per_attempt_timeout`` and by whatever is left
        of ``deadline``. Fatal errors propagate; every other failure is retried
        and finally reported as a degraded outcome.
        """
        attempts = max_attempts or self.max_attempts
        last_reason = "not attempted"

        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                return Outcome.degraded(f"{description} cancelled", attempts=attempt - 1)
            timeout = self.per_attempt_timeout
            if deadline is not None:
                timeout = min(timeout, deadline.remaining())
                if timeout <= 0.0:
                    return Outcome.degraded(f"{description}: deadline exceeded", attempts=attempt - 1)

            future = executor.submit(fn)
            try:
                return Outcome.ok(self._wait(future, timeout, cancel), attempts=attempt)
            except _Cancelled:
                future.cancel()
                return Outcome.degraded(f"{description} cancelled", attempts=attempt)
            except ComparisonTimeoutError as exc:
                future.cancel()
                last_reason = str(exc)
            except FatalComparisonError:
                raise
            except Exception as exc:
                last_reason = f"{type(exc).__name__}: {exc}"

            logger.warning("%s failed (attempt %d/%d): %s", description, attempt, attempts, last_reason)
            if attempt < attempts:
                delay = self.backoff(attempt)
                if cancel is not None:
                    cancel.wait(delay)
                else:
                    time.sleep(delay)

        return Outcome.degraded(
            f"{description} failed after {attempts} attempts: {last_reason}",
            attempts=attempts,
        )

    @staticmethod
    def _wait(future, timeout: float, cancel: Optional[threading.Event]):
        end = time.monotonic() + timeout
        while True:
            remaining = end - time.monotonic()
            if remaining <= 0.0:
                raise ComparisonTimeoutError(f"timed out after {timeout:.1f}s")
            try:
                return future.result(timeout=min(remaining, _POLL_SECONDS))
            except FuturesTimeoutError:
                if future.done():
                    raise
                if cancel is not None and cancel.is_set():
                    raise _Cancelled() from None


class _Cancelled(Exception):
    pass
