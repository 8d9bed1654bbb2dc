"""
Timing Combinators

Debounce and throttle wrappers that decide *when* a function runs.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         TIMING COMBINATORS                               │
    │                                                                          │
    │  Debounced                         Throttled                             │
    │  ├─ every call reschedules         ├─ leading edge runs inline           │
    │  ├─ latest arguments win           ├─ trailing edge on a timer           │
    │  ├─ fires after a quiet period     ├─ <= 1 execution per interval        │
    │  └─ cancel() / flush()             └─ trailing=False drops instead       │
    │                                                                          │
    │  Shared mechanics                                                        │
    │  ├─ one threading.Timer per wrapper (daemon), never more than one       │
    │  ├─ generation counter rejects timers that lost a race with cancel()    │
    │  └─ timers hold only a weak reference to their wrapper                  │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Deferred executions run on the timer thread. Their exceptions cannot reach
the caller, so they are logged with a traceback and counted in metrics.
Dropping the last reference to a wrapper cancels whatever it had pending.

Usage
─────

    from toolchest.functions import debounce, throttle

    save = debounce(write_settings, quiet_period=0.5)
    save(settings)            # returns immediately
    save(settings)            # reschedules; only this call's args are written

    @throttle(interval=1.0)
    def report_progress(pct):
        print(pct)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
import weakref
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from toolchest.config import get_config
from toolchest.functions.errors import require_positive
from toolchest.observability import Combinator, event_extra

T = TypeVar("T")

logger = logging.getLogger(__name__)

_Call = Tuple[Tuple[Any, ...], Dict[str, Any]]


def _describe(func: Callable[..., Any]) -> str:
    return getattr(func, "__qualname__", None) or getattr(func, "__name__", None) or repr(func)


def _fire(ref: "weakref.ReferenceType[Any]", generation: int) -> None:
    """Timer target. Resolves the wrapper lazily so timers never keep it alive."""
    wrapper = ref()
    if wrapper is not None:
        wrapper._fire(generation)


def _start_timer(owner: Any, delay: float, generation: int) -> threading.Timer:
    timer = threading.Timer(delay, _fire, args=(weakref.ref(owner), generation))
    timer.daemon = True
    timer.start()
    return timer


# ════════════════════════════════════════════════════════════════════════════
# DEBOUNCE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class DebounceMetrics:
    """Debounce metrics."""
    calls: int = 0
    executions: int = 0
    superseded: int = 0
    cancelled: int = 0
    failures: int = 0


class Debounced(Generic[T]):
    """
    Delays ``func`` until ``quiet_period`` seconds pass without another call.

    Each call replaces the pending arguments and restarts the quiet period,
    so a burst of calls produces exactly one execution with the arguments
    of the last call. Calls return ``None`` immediately.

    Example:
        debounced = Debounced(on_resize, quiet_period=0.1)
        debounced(800, 600)
        debounced(1024, 768)   # on_resize(1024, 768) runs ~0.1s later

        with Debounced(flush_buffer, 0.2) as flush:
            flush()
        # leaving the block cancels anything still pending
    """

    def __init__(
        self,
        func: Callable[..., T],
        quiet_period: Optional[float] = None,
        name: Optional[str] = None,
    ):
        if not callable(func):
            raise TypeError(f"debounce() expects a callable, got {type(func).__name__}")
        functools.update_wrapper(self, func)
        if quiet_period is None:
            quiet_period = get_config().debounce.quiet_period_seconds.get()
        self.quiet_period = require_positive("quiet_period", quiet_period)
        self.func = func
        self.name = name or _describe(func)
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._pending: Optional[_Call] = None
        self._metrics = DebounceMetrics()

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            self._metrics.calls += 1
            if self._timer is not None:
                self._timer.cancel()
                self._metrics.superseded += 1
            self._generation += 1
            self._pending = (args, kwargs)
            self._timer = _start_timer(self, self.quiet_period, self._generation)

        logger.debug(
            "Debounced call to %s scheduled in %.3fs",
            self.name,
            self.quiet_period,
            extra=event_extra(Combinator.DEBOUNCE, "schedule", name=self.name),
        )

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._pending is None:
                return
            args, kwargs = self._pending
            self._pending = None
            self._timer = None

        try:
            self.func(*args, **kwargs)
        except Exception:
            with self._lock:
                self._metrics.failures += 1
            logger.exception(
                "Debounced call to %s failed",
                self.name,
                extra=event_extra(Combinator.DEBOUNCE, "execute", name=self.name),
            )
        else:
            with self._lock:
                self._metrics.executions += 1

    @property
    def pending(self) -> bool:
        """True while an execution is scheduled."""
        with self._lock:
            return self._pending is not None

    @property
    def metrics(self) -> DebounceMetrics:
        """Current debounce metrics."""
        with self._lock:
            return replace(self._metrics)

    def cancel(self) -> bool:
        """Discard the pending execution. Returns True if one was pending."""
        with self._lock:
            had_pending = self._pending is not None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._pending = None
            if had_pending:
                self._metrics.cancelled += 1
        return had_pending

    def flush(self) -> Optional[T]:
        """Run the pending execution now, on the caller's thread.

        Returns the function's result, or ``None`` when nothing was pending.
        Exceptions propagate to the caller.
        """
        with self._lock:
            if self._pending is None:
                return None
            args, kwargs = self._pending
            self._pending = None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1

        try:
            result = self.func(*args, **kwargs)
        except Exception:
            with self._lock:
                self._metrics.failures += 1
            raise
        with self._lock:
            self._metrics.executions += 1
        return result

    def __enter__(self) -> "Debounced[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.cancel()
        return False

    def __del__(self) -> None:
        timer = getattr(self, "_timer", None)
        if timer is not None:
            timer.cancel()

    def __repr__(self) -> str:
        return f"<Debounced {self.name} quiet_period={self.quiet_period}>"


def debounce(
    func: Optional[Callable[..., T]] = None,
    quiet_period: Optional[float] = None,
    *,
    name: Optional[str] = None,
) -> Any:
    """
    Create a debounced version of ``func``.

    Works directly (``debounce(f, 0.1)``) or as a decorator factory
    (``@debounce(quiet_period=0.1)``). When ``quiet_period`` is omitted
    the ``debounce.quiet_period_seconds`` config value is used.
    """
    if func is None:
        return lambda f: Debounced(f, quiet_period, name=name)
    return Debounced(func, quiet_period, name=name)


# ════════════════════════════════════════════════════════════════════════════
# THROTTLE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class ThrottleMetrics:
    """Throttle metrics."""
    calls: int = 0
    executions: int = 0
    deferred: int = 0
    dropped: int = 0
    failures: int = 0


class Throttled(Generic[T]):
    """
    Runs ``func`` at most once per ``interval`` seconds.

    The first call of a fresh window runs immediately on the caller's thread
    and returns the result. Calls inside the window return ``None``; with
    ``trailing=True`` (the default) the last of them runs on a timer thread
    when the window closes, which opens the next window. With
    ``trailing=False`` they are dropped.

    Example:
        throttled = Throttled(send_position, interval=1.0)
        throttled(1)   # sent now
        throttled(2)   # suppressed
        throttled(3)   # sent at t=1.0 (trailing edge)
    """

    def __init__(
        self,
        func: Callable[..., T],
        interval: Optional[float] = None,
        trailing: Optional[bool] = None,
        name: Optional[str] = None,
    ):
        if not callable(func):
            raise TypeError(f"throttle() expects a callable, got {type(func).__name__}")
        functools.update_wrapper(self, func)
        config = get_config().throttle
        if interval is None:
            interval = config.interval_seconds.get()
        if trailing is None:
            trailing = config.trailing.get()
        self.interval = require_positive("interval", interval)
        self.trailing = bool(trailing)
        self.func = func
        self.name = name or _describe(func)
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._pending: Optional[_Call] = None
        self._last_execution: Optional[float] = None
        self._metrics = ThrottleMetrics()

    def __call__(self, *args: Any, **kwargs: Any) -> Optional[T]:
        with self._lock:
            self._metrics.calls += 1
            now = time.monotonic()
            window_open = (
                self._last_execution is not None
                and now - self._last_execution < self.interval
            )

            if self._timer is None and not window_open:
                self._last_execution = now
                run_now = True
            elif self.trailing:
                run_now = False
                self._pending = (args, kwargs)
                self._metrics.deferred += 1
                if self._timer is None:
                    remaining = max(0.0, self._last_execution + self.interval - now)
                    self._generation += 1
                    self._timer = _start_timer(self, remaining, self._generation)
            else:
                run_now = False
                self._metrics.dropped += 1

        if not run_now:
            logger.debug(
                "Throttled call to %s %s",
                self.name,
                "deferred" if self.trailing else "dropped",
                extra=event_extra(Combinator.THROTTLE, "suppress", name=self.name),
            )
            return None

        try:
            result = self.func(*args, **kwargs)
        except Exception:
            with self._lock:
                self._metrics.failures += 1
            raise
        with self._lock:
            self._metrics.executions += 1
        return result

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._pending is None:
                return
            args, kwargs = self._pending
            self._pending = None
            self._timer = None
            self._last_execution = time.monotonic()

        try:
            self.func(*args, **kwargs)
        except Exception:
            with self._lock:
                self._metrics.failures += 1
            logger.exception(
                "Trailing call to %s failed",
                self.name,
                extra=event_extra(Combinator.THROTTLE, "execute", name=self.name),
            )
        else:
            with self._lock:
                self._metrics.executions += 1

    @property
    def pending(self) -> bool:
        """True while a trailing execution is scheduled."""
        with self._lock:
            return self._pending is not None

    @property
    def metrics(self) -> ThrottleMetrics:
        """Current throttle metrics."""
        with self._lock:
            return replace(self._metrics)

    def cancel(self) -> bool:
        """
        Discard the pending trailing execution.

        The current window is kept, so a call made right after cancel()
        inside the interval is still deferred rather than run inline.
        """
        with self._lock:
            had_pending = self._pending is not None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            self._pending = None
        return had_pending

    def __enter__(self) -> "Throttled[T]":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.cancel()
        return False

    def __del__(self) -> None:
        timer = getattr(self, "_timer", None)
        if timer is not None:
            timer.cancel()

    def __repr__(self) -> str:
        return f"<Throttled {self.name} interval={self.interval} trailing={self.trailing}>"


def throttle(
    func: Optional[Callable[..., T]] = None,
    interval: Optional[float] = None,
    *,
    trailing: Optional[bool] = None,
    name: Optional[str] = None,
) -> Any:
    """
    Create a throttled version of ``func``.

    Works directly (``throttle(f, 1.0)``) or as a decorator factory
    (``@throttle(interval=1.0)``). Omitted parameters come from the
    ``throttle`` config section.
    """
    if func is None:
        return lambda f: Throttled(f, interval, trailing=trailing, name=name)
    return Throttled(func, interval, trailing=trailing, name=name)


__all__ = [
    "DebounceMetrics",
    "Debounced",
    "debounce",
    "ThrottleMetrics",
    "Throttled",
    "throttle",
]
