from __future__ import annotations

import heapq
import itertools
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, TypeVar

from .errors import ReactiveLoopError

MAX_FLUSH_ITERATIONS = 100

T = TypeVar("T")

logger = logging.getLogger(__name__)


def default_equals(left: Any, right: Any) -> bool:
    return left is right or (type(left) is type(right) and left == right)


class _Runtime(threading.local):
    """Tracking and flush state; each thread drives its own graph."""

    def __init__(self) -> None:
        self.observer: _Observer | None = None
        self.batch_depth = 0
        self.flushing = False
        self.pending: list[tuple[int, int, Effect]] = []
        self.sequence = itertools.count()

    def track(self, source: _Source) -> None:
        if self.observer is not None:
            self.observer._collected[source] = source._version

    def schedule(self, effect: Effect) -> None:
        heapq.heappush(self.pending, (effect.order, next(self.sequence), effect))

    def flush(self) -> None:
        if self.flushing or self.batch_depth:
            return
        self.flushing = True
        runs: dict[int, int] = {}
        try:
            while self.pending:
                _, _, effect = heapq.heappop(self.pending)
                effect._scheduled = False
                count = runs.get(id(effect), 0) + 1
                runs[id(effect)] = count
                if count > MAX_FLUSH_ITERATIONS:
                    self.pending.clear()
                    logger.error("reactive_loop_detected", extra={"effect": effect.name, "runs": count})
                    raise ReactiveLoopError(f"effect '{effect.name}' did not settle after {MAX_FLUSH_ITERATIONS} runs")
                effect._run()
        finally:
            self.flushing = False


_local_runtime = _Runtime()


def _runtime() -> _Runtime:
    return _local_runtime


class _Source:
    def __init__(self) -> None:
        self._version = 0
        self._observers: set[_Observer] = set()

    def _refresh(self) -> None:
        pass


class _Observer:
    def __init__(self) -> None:
        self._collected: dict[_Source, int] = {}
        self._sources: dict[_Source, int] = {}
        self._dirty = True
        self._disposed = False

    def _needs_update(self) -> bool:
        if not self._sources:
            return True
        for source, version in self._sources.items():
            source._refresh()
            if source._version != version:
                return True
        return False

    def _collect(self, fn: Callable[[], T]) -> T:
        for source in self._sources:
            source._observers.discard(self)
        self._collected = {}
        runtime = _runtime()
        previous = runtime.observer
        runtime.observer = self
        try:
            return fn()
        finally:
            runtime.observer = previous
            self._sources = self._collected
            self._collected = {}
            if not self._disposed:
                for source in self._sources:
                    source._observers.add(self)

    def _mark_dirty(self) -> None:
        raise NotImplementedError

    def dispose(self) -> None:
        self._disposed = True
        for source in self._sources:
            source._observers.discard(self)
        self._sources = {}


def _notify(source: _Source) -> None:
    for observer in list(source._observers):
        observer._mark_dirty()
    _runtime().flush()


class Signal(_Source, Generic[T]):
    def __init__(self, value: T, name: str | None = None, equals: Callable[[Any, Any], bool] = default_equals) -> None:
        super().__init__()
        self._value = value
        self.name = name
        self._equals = equals

    def get(self) -> T:
        _runtime().track(self)
        return self._value

    def peek(self) -> T:
        return self._value

    def set(self, value: T) -> bool:
        if self._equals(self._value, value):
            return False
        self._value = value
        self._version += 1
        _notify(self)
        return True

    def update(self, fn: Callable[[T], T]) -> bool:
        return self.set(fn(self._value))

    def __repr__(self) -> str:
        return f"Signal({self.name or ''}={self._value!r})"


class Computed(_Source, _Observer, Generic[T]):
    def __init__(self, fn: Callable[[], T], name: str | None = None, equals: Callable[[Any, Any], bool] = default_equals) -> None:
        _Source.__init__(self)
        _Observer.__init__(self)
        self._fn = fn
        self._value: Any = None
        self.name = name
        self._equals = equals
        self._initialized = False
        self._computing = False

    def _refresh(self) -> None:
        if self._disposed or not self._dirty:
            return
        if self._computing:
            raise ReactiveLoopError(f"computed '{self.name}' depends on itself")
        if not self._initialized or self._needs_update():
            self._computing = True
            try:
                value = self._collect(self._fn)
            finally:
                self._computing = False
            if not self._initialized or not self._equals(self._value, value):
                self._value = value
                self._version += 1
            self._initialized = True
        self._dirty = False

    def _mark_dirty(self) -> None:
        if self._dirty:
            return
        self._dirty = True
        for observer in list(self._observers):
            observer._mark_dirty()

    def get(self) -> T:
        self._refresh()
        _runtime().track(self)
        return self._value

    def peek(self) -> T:
        self._refresh()
        return self._value

    def __repr__(self) -> str:
        return f"Computed({self.name or ''})"


class Effect(_Observer):
    def __init__(self, fn: Callable[[], Any], order: int = 0, name: str | None = None) -> None:
        super().__init__()
        self._fn = fn
        self.order = order
        self.name = name or getattr(fn, "__name__", "effect")
        self._scheduled = False
        self._initialized = False
        self._mark_dirty()
        _runtime().flush()

    def _mark_dirty(self) -> None:
        if self._scheduled or self._disposed:
            return
        self._scheduled = True
        self._dirty = True
        _runtime().schedule(self)

    def _run(self) -> None:
        if self._disposed:
            return
        if self._initialized and not self._needs_update():
            self._dirty = False
            return
        self._initialized = True
        self._dirty = False
        self._collect(self._fn)

    def __repr__(self) -> str:
        return f"Effect({self.name}, order={self.order})"


@contextmanager
def batch() -> Iterator[None]:
    runtime = _runtime()
    runtime.batch_depth += 1
    try:
        yield
    finally:
        runtime.batch_depth -= 1
    runtime.flush()


def untracked(fn: Callable[[], T]) -> T:
    runtime = _runtime()
    previous = runtime.observer
    runtime.observer = None
    try:
        return fn()
    finally:
        runtime.observer = previous
