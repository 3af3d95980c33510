import asyncio
import time
from typing import Awaitable, TypeVar

T = TypeVar("T")


class AbortSignal:
    """
    Cancellation handle passed by callers into blocking operations.

    Based on asyncio.Event, supports:
    - Synchronous abort status check before each stream read
    - Racing a sleep (retry backoff, rate-limit wait, OAuth polling) against abort
    - Recording the abort reason
    - An optional deadline that bounds HTTP attempts and retry backoff

    Examples:
        >>> signal = AbortSignal()
        >>> stream = await provider.generate_chat_completion(options, signal=signal)
        >>>
        >>> # From another task
        >>> signal.abort("User pressed stop")
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self.deadline: float | None = None
        if timeout is not None:
            self.deadline = time.monotonic() + timeout

    def abort(self, reason: str = "Operation cancelled") -> None:
        """Trigger abort signal."""
        self._reason = reason
        self._event.set()

    def is_aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Async wait for abort signal."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep for ``seconds`` unless aborted first.

        Returns:
            True if the full interval elapsed, False if the signal fired.
        """
        if self.is_aborted():
            return False
        if seconds <= 0:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the signal fires first.

        Raises:
            asyncio.CancelledError: the signal fired; the inner task is cancelled.
        """
        if self.is_aborted():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise asyncio.CancelledError(self._reason)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise asyncio.CancelledError(self._reason)

    def time_remaining(self) -> float | None:
        """Seconds left before the deadline, or None when no deadline is set."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def reason(self) -> str | None:
        """Get abort reason."""
        return self._reason

    def reset(self) -> None:
        """Reset abort signal for reuse."""
        self._event.clear()
        self._reason = None


__all__ = ["AbortSignal"]
