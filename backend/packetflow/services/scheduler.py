import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from packetflow.config import MAX_CONCURRENCY, MIN_CONCURRENCY
from packetflow.services.cancellation import CancellationToken, maybe_await, run_cancellable
from packetflow.services.errors import ProcessingCancelled

logger = logging.getLogger(__name__)


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


@dataclass
class WorkItem:
    call: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    token: Optional[CancellationToken] = None
    on_start: Optional[Callable[[], Any]] = None
    label: str = ""
    packet_id: Optional[str] = None


class Scheduler:
    """
    Bounded worker pool for remote API calls.

    Work items run in FIFO order with at most `concurrency` in flight. Items
    whose token is cancelled before a worker picks them up are never started.
    Shrinking the limit takes effect as in-flight calls finish.
    """

    def __init__(self, concurrency: int = 5):
        self._limit = clamp_concurrency(concurrency)
        self._pending: Deque[WorkItem] = deque()
        self._cond: Optional[asyncio.Condition] = None
        self._workers: Dict[int, asyncio.Task] = {}
        self._running = False
        self._in_flight = 0
        self._peak_in_flight = 0
        self._completed = 0

    @property
    def concurrency(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak_in_flight(self) -> int:
        return self._peak_in_flight

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Start the scheduler workers."""
        if self._running:
            return
        self._cond = asyncio.Condition()
        self._running = True
        self._spawn_workers()
        logger.info(f"Scheduler started with concurrency {self._limit}")

    async def stop(self) -> None:
        """Stop the workers and cancel work that never started."""
        if not self._running:
            return
        self._running = False
        async with self._cond:
            self._cond.notify_all()

        for task in self._workers.values():
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers = {}

        while self._pending:
            item = self._pending.popleft()
            if not item.future.done():
                item.future.cancel()
        logger.info("Scheduler stopped")

    async def set_concurrency(self, value: int) -> int:
        limit = clamp_concurrency(value)
        if limit != value:
            logger.warning(f"Concurrency {value} out of range, clamped to {limit}")
        self._limit = limit
        if self._running:
            self._spawn_workers()
            async with self._cond:
                self._cond.notify_all()
        logger.info(f"Scheduler concurrency set to {limit}")
        return limit

    async def run(self, call: Callable[[], Awaitable[Any]], token: Optional[CancellationToken] = None,
                  on_start: Optional[Callable[[], Any]] = None, label: str = "",
                  packet_id: Optional[str] = None) -> Any:
        """
        Queue `call` and wait for its result.

        `on_start` runs when a worker admits the item, just before `call`.
        Raises ProcessingCancelled if `token` fires before or during the call.
        """
        if not self._running:
            raise RuntimeError("Scheduler is not running")
        if token is not None:
            token.raise_if_cancelled()

        future = asyncio.get_running_loop().create_future()
        item = WorkItem(call=call, future=future, token=token, on_start=on_start,
                        label=label, packet_id=packet_id)
        async with self._cond:
            self._pending.append(item)
            self._cond.notify()

        remove = token.add_listener(lambda: self._drop(item)) if token is not None else None
        try:
            return await future
        finally:
            if remove is not None:
                remove()

    def _drop(self, item: WorkItem) -> None:
        if item.future.done():
            return
        try:
            self._pending.remove(item)
        except ValueError:
            # Already picked up by a worker; the call itself observes the token
            return
        item.future.set_exception(ProcessingCancelled(item.token.reason if item.token else "cancelled"))

    def cancel_packet(self, packet_id: str, reason: str = "cancelled") -> int:
        """Fail every not-yet-started item for a packet."""
        dropped = [item for item in self._pending if item.packet_id == packet_id]
        for item in dropped:
            self._pending.remove(item)
            if not item.future.done():
                item.future.set_exception(ProcessingCancelled(reason))
        return len(dropped)

    def _spawn_workers(self) -> None:
        for index in range(self._limit):
            task = self._workers.get(index)
            if task is None or task.done():
                self._workers[index] = asyncio.create_task(self._worker_loop(index))

    async def _next_item(self, index: int) -> Optional[WorkItem]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._running or index >= self._limit
                or (bool(self._pending) and self._in_flight < self._limit)
            )
            if not self._running or index >= self._limit:
                return None
            return self._pending.popleft()

    async def _worker_loop(self, index: int) -> None:
        logger.debug(f"Scheduler worker {index} started")
        while self._running:
            item = await self._next_item(index)
            if item is None:
                break
            if item.future.done():
                continue
            if item.token is not None and item.token.cancelled:
                item.future.set_exception(ProcessingCancelled(item.token.reason or "cancelled"))
                continue
            await self._execute(item)
        logger.debug(f"Scheduler worker {index} exiting")

    async def _execute(self, item: WorkItem) -> None:
        self._in_flight += 1
        self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            if item.on_start is not None:
                await maybe_await(item.on_start())
            result = await run_cancellable(item.call(), item.token)
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            if not item.future.done():
                item.future.set_exception(e)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._in_flight -= 1
            self._completed += 1
            async with self._cond:
                self._cond.notify_all()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "concurrency": self._limit,
            "in_flight": self._in_flight,
            "pending": len(self._pending),
            "completed": self._completed,
            "workers": sum(1 for t in self._workers.values() if not t.done()),
        }
