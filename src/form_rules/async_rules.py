from __future__ import annotations

import logging
from typing import Any, Callable

from .http import ResponseCache
from .scheduling import Cancellable, CoroutineFactory, Scheduler

logger = logging.getLogger(__name__)


class Debouncer:
    """Trailing-edge timer: every trigger restarts the delay; the callback fires once on expiry."""

    def __init__(self, scheduler: Scheduler, delay_ms: int, callback: Callable[[], None]) -> None:
        self.scheduler = scheduler
        self.delay_ms = delay_ms
        self.callback = callback
        self._handle: Cancellable | None = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self.scheduler.call_later(self.delay_ms, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self.callback()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncResolver:
    """Runs one async request at a time per rule; later requests win over earlier ones."""

    def __init__(
        self,
        scheduler: Scheduler,
        name: str,
        on_result: Callable[[Any], None],
        on_error: Callable[[BaseException], None],
        cache: ResponseCache | None = None,
        cache_ms: int = 0,
    ) -> None:
        self.scheduler = scheduler
        self.name = name
        self.on_result = on_result
        self.on_error = on_error
        self.cache = cache
        self.cache_ms = cache_ms
        self.generation = 0
        self._handle: Cancellable | None = None

    @property
    def in_flight(self) -> bool:
        return self._handle is not None

    def request(self, factory: CoroutineFactory, cache_key: str | None = None) -> bool:
        """Start `factory`; return True when a cached result was delivered synchronously instead."""
        if self.cache is not None and cache_key is not None and self.cache_ms > 0:
            hit, value = self.cache.get(cache_key)
            if hit:
                self.cancel()
                logger.debug("async_rule_cache_hit", extra={"rule": self.name})
                self.on_result(value)
                return True
        self.cancel()
        generation = self.generation

        def _done(result: Any, error: BaseException | None) -> None:
            if generation != self.generation:
                logger.debug("async_rule_stale_result", extra={"rule": self.name, "generation": generation})
                return
            self._handle = None
            if error is not None:
                logger.warning("async_rule_failed", extra={"rule": self.name, "error": str(error)})
                self.on_error(error)
                return
            if self.cache is not None and cache_key is not None:
                self.cache.put(cache_key, result, self.cache_ms)
            self.on_result(result)

        self._handle = self.scheduler.spawn(factory, _done)
        return False

    def cancel(self) -> None:
        self.generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
