from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .cancellation import CancelToken, check

T = TypeVar("T")


@dataclass
class AttemptResult(Generic[T]):
    value: Optional[T]
    attempts: int
    exhausted: bool

    @property
    def ok(self) -> bool:
        return not self.exhausted


async def bounded_attempts(
    max_attempts: int,
    body: Callable[[int], Awaitable[tuple[bool, T]]],
    cancel: CancelToken | None = None,
) -> AttemptResult[T]:
    """Run ``body(attempt)`` (1-based) until it reports done or attempts run out.

    ``body`` returns ``(done, value)``. The last value is kept on exhaustion so
    callers can inspect what the final attempt produced. Exceptions raised by
    ``body`` propagate unchanged.
    """
    value: Optional[T] = None
    limit = max(1, int(max_attempts))
    for attempt in range(1, limit + 1):
        check(cancel)
        done, value = await body(attempt)
        if done:
            return AttemptResult(value=value, attempts=attempt, exhausted=False)
    return AttemptResult(value=value, attempts=limit, exhausted=True)
