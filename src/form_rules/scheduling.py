from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

Completion = Callable[[Any, BaseException | None], None]
CoroutineFactory = Callable[[], Awaitable[Any]]


class Cancellable(Protocol):
    def cancel(self) -> Any: ...


class Scheduler(Protocol):
    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> Cancellable: ...

    def spawn(self, coroutine_factory: CoroutineFactory, on_done: Completion) -> Cancellable: ...


class ManualHandle:
    def __init__(self, due: int = 0) -> None:
        self.due = due
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock for deterministic timers; coroutines run on a private loop in `run_pending`."""

    def __init__(self) -> None:
        self.now = 0
        self._timers: list[tuple[int, int, ManualHandle, Callable[[], None]]] = []
        self._tasks: list[tuple[ManualHandle, CoroutineFactory, Completion]] = []
        self._sequence = itertools.count()
        self._loop: asyncio.AbstractEventLoop | None = None

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self.now + max(0, int(delay_ms)))
        heapq.heappush(self._timers, (handle.due, next(self._sequence), handle, callback))
        return handle

    def spawn(self, coroutine_factory: CoroutineFactory, on_done: Completion) -> ManualHandle:
        handle = ManualHandle(self.now)
        self._tasks.append((handle, coroutine_factory, on_done))
        return handle

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, handle, _ in self._timers if not handle.cancelled)

    @property
    def pending_tasks(self) -> int:
        return sum(1 for handle, _, _ in self._tasks if not handle.cancelled)

    def advance(self, milliseconds: int) -> None:
        target = self.now + int(milliseconds)
        while self._timers and self._timers[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._timers)
            self.now = max(self.now, due)
            if not handle.cancelled:
                callback()
        self.now = target

    def run_pending(self) -> int:
        completed = 0
        while True:
            batch = [item for item in self._tasks if not item[0].cancelled]
            self._tasks = []
            if not batch:
                return completed
            if self._loop is None:
                self._loop = asyncio.new_event_loop()

            async def _call(factory: CoroutineFactory) -> Any:
                return await factory()

            async def _gather() -> list[Any]:
                return await asyncio.gather(*(_call(factory) for _, factory, _ in batch), return_exceptions=True)

            results = self._loop.run_until_complete(_gather())
            for (handle, _, on_done), result in zip(batch, results):
                if handle.cancelled:
                    continue
                completed += 1
                if isinstance(result, BaseException):
                    on_done(None, result)
                else:
                    on_done(result, None)

    def settle(self, max_rounds: int = 100) -> None:
        """Run queued coroutines and fire every timer until nothing is left."""
        for _ in range(max_rounds):
            self.run_pending()
            live = [item for item in self._timers if not item[2].cancelled]
            if not live:
                if not self._tasks:
                    return
                continue
            self.advance(max(0, min(item[0] for item in live) - self.now))
        logger.warning("scheduler_not_settled", extra={"rounds": max_rounds, "timers": self.pending_timers})

    def close(self) -> None:
        if self._loop is not None:
            self._loop.close()
            self._loop = None


class AsyncioScheduler:
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def call_later(self, delay_ms: int, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self._loop.call_later(max(0, delay_ms) / 1000, callback)

    def spawn(self, coroutine_factory: CoroutineFactory, on_done: Completion) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(coroutine_factory(), loop=self._loop)

        def _finished(future: asyncio.Future[Any]) -> None:
            if future.cancelled():
                return
            error = future.exception()
            on_done(None if error else future.result(), error)

        task.add_done_callback(_finished)
        return task
