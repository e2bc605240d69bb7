from __future__ import annotations

from typing import Callable, Optional, TypeVar

from flickmeter.storage.errors import ConstraintViolation

T = TypeVar("T")


class RetryExhausted(Exception):
    """Every attempt failed with an error the predicate accepted as retryable."""

    def __init__(self, attempts: int, last_error: Optional[Exception]) -> None:
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def retry_on(
    fn: Callable[[int], T],
    *,
    attempts: int,
    should_retry: Callable[[Exception], bool],
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> T:
    """Call ``fn(attempt)`` until it returns, for at most ``attempts`` tries.

    Errors rejected by ``should_retry`` propagate immediately. ``attempt`` is
    1-based so callers can tell a first try from a retry.
    """

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn(attempt)
        except Exception as exc:
            if not should_retry(exc):
                raise
            last_error = exc
            if on_retry is not None:
                on_retry(attempt, exc)
    raise RetryExhausted(attempts, last_error)


def is_constraint_violation(field: str) -> Callable[[Exception], bool]:
    """Predicate matching uniqueness collisions on one logical column."""

    def _predicate(exc: Exception) -> bool:
        return isinstance(exc, ConstraintViolation) and exc.constraint == field

    return _predicate
