import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from packetflow.services.errors import ProcessingCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation signal shared by every stage call of one packet run.

    Listeners run synchronously inside `cancel()`, so a listener registered
    before the `cancelled` check can never miss the signal.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._listeners: List[Callable[[], None]] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation listener failed: {e}")

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired on cancel. Returns a function that removes it."""
        self._listeners.append(callback)

        def remove() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

        return remove

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ProcessingCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    """Await `awaitable`, aborting it with ProcessingCancelled when `token` fires."""
    if token is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    # Listener must be registered before the cancelled check.
    remove = token.add_listener(task.cancel)
    try:
        if token.cancelled:
            task.cancel()
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                raise ProcessingCancelled(token.reason or "cancelled") from None
            raise
    finally:
        remove()


async def cancellable_sleep(delay: float, token: Optional[CancellationToken]) -> None:
    await run_cancellable(asyncio.sleep(delay), token)


async def maybe_await(value: Any) -> Any:
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value
