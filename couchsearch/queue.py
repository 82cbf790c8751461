"""Bounded-concurrency work queue with a one-shot drain signal.

The queue never refuses work; admission is the caller's job. The pipeline
checks :meth:`ThrottledWorkQueue.length` before every push and, once the
backlog saturates, pauses the feed until :meth:`on_drain` reports the
backlog is empty again.
"""

from __future__ import annotations

import asyncio
import collections
import typing as typ

from .logging import get_logger, log_exception

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = get_logger(__name__)

DEFAULT_CONCURRENCY = 16


class ThrottledWorkQueue[T]:
    """Run ``handler`` over pushed items with at most ``concurrency`` in flight.

    Items may finish in any order. ``length()`` counts queued and in-flight
    items together.
    """

    def __init__(
        self,
        handler: cabc.Callable[[T], cabc.Awaitable[None]],
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        """Create an idle queue for ``handler``."""
        if concurrency < 1:
            msg = f"concurrency must be >= 1, got: {concurrency}"
            raise ValueError(msg)
        self._handler = handler
        self._concurrency = concurrency
        self._pending: collections.deque[T] = collections.deque()
        self._in_flight = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._drain_callbacks: list[cabc.Callable[[], None]] = []
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def concurrency(self) -> int:
        """Return the maximum number of items run at once."""
        return self._concurrency

    def length(self) -> int:
        """Return the backlog: queued plus in-flight items."""
        return len(self._pending) + self._in_flight

    def push(self, item: T) -> None:
        """Enqueue ``item``; it starts as soon as a worker slot is free."""
        self._pending.append(item)
        self._idle.clear()
        self._dispatch()

    def on_drain(self, callback: cabc.Callable[[], None]) -> None:
        """Call ``callback`` once, the next time the backlog reaches zero.

        When the queue is already empty the callback is scheduled on the
        event loop straight away.
        """
        if self.length() == 0:
            asyncio.get_running_loop().call_soon(callback)
            return
        self._drain_callbacks.append(callback)

    async def join(self, timeout: float | None = None) -> bool:
        """Wait until the backlog is empty; return False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """Drop queued items and cancel in-flight work."""
        self._pending.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _dispatch(self) -> None:
        while self._pending and self._in_flight < self._concurrency:
            item = self._pending.popleft()
            self._in_flight += 1
            task = asyncio.create_task(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: T) -> None:
        try:
            await self._handler(item)
        except Exception as exc:  # noqa: BLE001 - a failed item must not stall the queue
            log_exception(logger, f"work item failed: {item!r}", exc)
        finally:
            self._in_flight -= 1
            self._dispatch()
            if self.length() == 0:
                self._drained()

    def _drained(self) -> None:
        self._idle.set()
        callbacks, self._drain_callbacks = self._drain_callbacks, []
        for callback in callbacks:
            callback()
