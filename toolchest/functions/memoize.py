"""
Memoization

Caches a function's results keyed by its arguments.

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  call(args) ──► key ──► cached? ──yes──► return stored result            │
    │                           │                                              │
    │                           no                                             │
    │                           ▼                                              │
    │                  in flight for key? ──yes──► wait, share its outcome     │
    │                           │                                              │
    │                           no                                             │
    │                           ▼                                              │
    │                  compute, store, wake waiters                            │
    └─────────────────────────────────────────────────────────────────────────┘

Keys are ``(args, sorted kwargs)`` compared with Python hash/equality, so
``f(1)`` and ``f(1.0)`` share an entry. Unhashable arguments raise
TypeError unless a ``key`` function is supplied.

Concurrent callers with the same uncached key are coalesced (single-flight):
one thread computes, the rest wait for it. Failures are never cached; every
waiter sees the leader's exception and the next call computes afresh.

Entries live until invalidated, unless ``max_size`` bounds the cache, in
which case the least recently used entry is evicted.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

from toolchest.config import get_config
from toolchest.functions.errors import require_at_least
from toolchest.observability import Combinator, event_extra

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class MemoizeMetrics:
    """Memoize cache metrics."""
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    failures: int = 0
    current_size: int = 0
    max_size: Optional[int] = None

    @property
    def total_requests(self) -> int:
        """Total cache requests."""
        return self.hits + self.misses + self.coalesced

    @property
    def hit_ratio(self) -> float:
        """Share of requests served without a fresh computation."""
        total = self.total_requests
        if total == 0:
            return 0.0
        return (self.hits + self.coalesced) / total


class _Flight:
    """One in-progress computation that other callers can wait on."""

    __slots__ = ("event", "result", "error", "done")

    def __init__(self):
        self.event = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self.done = False


class Memoized(Generic[T]):
    """
    Callable wrapper that caches results per argument key.

    Example:
        @memoize
        def fib(n):
            return n if n < 2 else fib(n - 1) + fib(n - 2)

        fib(80)
        fib.metrics.hits
        fib.invalidate(80)
        fib.cache_clear()
    """

    def __init__(
        self,
        func: Callable[..., T],
        key: Optional[Callable[..., Hashable]] = None,
        max_size: Optional[int] = None,
    ):
        if not callable(func):
            raise TypeError(f"memoize() expects a callable, got {type(func).__name__}")
        functools.update_wrapper(self, func)
        if max_size is None:
            max_size = get_config().memoize.max_size.get() or None
        if max_size is not None:
            require_at_least("max_size", max_size, 1)
        self.func = func
        self.name = getattr(func, "__qualname__", None) or repr(func)
        self.max_size = max_size
        self._key = key
        self._cache: "OrderedDict[Hashable, T]" = OrderedDict()
        self._in_flight: Dict[Hashable, _Flight] = {}
        self._lock = threading.Lock()
        self._metrics = MemoizeMetrics(max_size=max_size)

    def _make_key(self, args: tuple, kwargs: Dict[str, Any]) -> Hashable:
        if self._key is not None:
            key = self._key(*args, **kwargs)
        else:
            key = (args, tuple(sorted(kwargs.items())))
        try:
            hash(key)
        except TypeError as e:
            raise TypeError(f"memoize() arguments must be hashable: {e}") from e
        return key

    def __call__(self, *args: Any, **kwargs: Any) -> T:
        key = self._make_key(args, kwargs)

        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                self._metrics.hits += 1
                return self._cache[key]

            flight = self._in_flight.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._in_flight[key] = flight
                self._metrics.misses += 1
            else:
                self._metrics.coalesced += 1

        if not leader:
            flight.event.wait()
            if flight.error is not None:
                raise flight.error
            if not flight.done:
                raise RuntimeError(f"Memoized computation of {self.name} was interrupted")
            return flight.result

        try:
            result = self.func(*args, **kwargs)
        except Exception as e:
            flight.error = e
            with self._lock:
                self._metrics.failures += 1
            raise
        else:
            flight.result = result
            flight.done = True
            with self._lock:
                self._store(key, result)
            return result
        finally:
            with self._lock:
                if self._in_flight.get(key) is flight:
                    del self._in_flight[key]
            flight.event.set()

    def _store(self, key: Hashable, value: T) -> None:
        """Insert under the lock, evicting least recently used entries."""
        self._cache[key] = value
        self._cache.move_to_end(key)
        if self.max_size is not None:
            while len(self._cache) > self.max_size:
                evicted, _ = self._cache.popitem(last=False)
                self._metrics.evictions += 1
                logger.debug(
                    "Evicted memoized entry %r",
                    evicted,
                    extra=event_extra(Combinator.MEMOIZE, "evict"),
                )

    def invalidate(self, *args: Any, **kwargs: Any) -> bool:
        """Forget the cached result for these arguments."""
        key = self._make_key(args, kwargs)
        with self._lock:
            return self._cache.pop(key, _MISSING) is not _MISSING

    def cache_clear(self) -> None:
        """Forget every cached result."""
        with self._lock:
            self._cache.clear()

    @property
    def cache_size(self) -> int:
        """Current number of cached entries."""
        with self._lock:
            return len(self._cache)

    @property
    def metrics(self) -> MemoizeMetrics:
        """Current cache metrics."""
        with self._lock:
            return replace(self._metrics, current_size=len(self._cache))

    def __get__(self, instance: Any, owner: Any = None) -> Any:
        if instance is None:
            return self
        return functools.partial(self, instance)

    def __repr__(self) -> str:
        return f"<Memoized {self.name} max_size={self.max_size}>"


_MISSING = object()


def memoize(
    func: Optional[Callable[..., T]] = None,
    *,
    key: Optional[Callable[..., Hashable]] = None,
    max_size: Optional[int] = None,
) -> Any:
    """
    Memoize ``func``.

    Usable bare (``@memoize``), with options
    (``@memoize(max_size=128)``), or directly (``memoize(f)``).
    """
    if func is None:
        return lambda f: Memoized(f, key=key, max_size=max_size)
    return Memoized(func, key=key, max_size=max_size)


__all__ = [
    "MemoizeMetrics",
    "Memoized",
    "memoize",
]
