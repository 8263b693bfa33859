from __future__ import annotations

import asyncio

from ..errors import GenerationCancelled


class CancelToken:
    """Cooperative cancellation shared by one orchestration call.

    Loops check it at the top of every iteration and before each network call;
    ``sleep`` wakes up early when the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def sleep_ms(ms: float | None, cancel: CancelToken | None = None) -> None:
    seconds = max(0.0, float(ms or 0)) / 1000.0
    if cancel is not None:
        await cancel.sleep(seconds)
    elif seconds > 0:
        await asyncio.sleep(seconds)


def check(cancel: CancelToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()
