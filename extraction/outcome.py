"""Typed result of recoverable work: either data or a reason for degradation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: Optional[T] = None
    reason: Optional[str] = None
    attempts: int = 1

    @classmethod
    def ok(cls, value: T, attempts: int = 1) -> "Outcome[T]":
        return cls(value=value, reason=None, attempts=attempts)

    @classmethod
    def degraded(cls, reason: str, attempts: int = 1) -> "Outcome[T]":
        return cls(value=None, reason=reason, attempts=attempts)

    @property
    def is_ok(self) -> bool:
        return self.reason is None

    def unwrap_or(self, fallback: Callable[[str], T]) -> T:
        """Return the value, or build a substitute from the degradation reason."""
        if self.is_ok:
            return self.value
        return fallback(self.reason)
