# services/queue/cancellation.py
import asyncio
import inspect
from typing import Awaitable, Optional, TypeVar

from core.exceptions import JobCancelledError

T = TypeVar("T")


class CancellationToken:
    """
    Shared flag plus signal handed to a running job.

    ``cancel()`` is idempotent and never raises. ``run()`` races an awaitable
    against the signal so in‑flight network or browser work is aborted as soon
    as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Job was cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self.reason or "Job was cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def run(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first, in which case abort it."""
        if self._event.is_set():
            if inspect.iscoroutine(aw):
                aw.close()
            self.raise_if_cancelled()

        work = asyncio.ensure_future(aw)
        signal = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, signal}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            signal.cancel()
            raise

        if work in done:
            signal.cancel()
            return work.result()

        work.cancel()
        # Let the aborted task unwind (closes sockets, releases leases).
        await asyncio.gather(work, return_exceptions=True)
        raise JobCancelledError(self.reason or "Job was cancelled")
