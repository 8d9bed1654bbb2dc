"""
Function composition helpers and ``once``.

Small stateless building blocks for gluing callables together, plus
``once`` which remembers the result of its first successful call.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import threading
from typing import Any, Callable, Generic, List, TypeVar

from toolchest.functions.errors import require_at_least

T = TypeVar("T")
R = TypeVar("R")


# ════════════════════════════════════════════════════════════════════════════
# ONCE
# ════════════════════════════════════════════════════════════════════════════


class Once(Generic[T]):
    """
    Runs ``func`` on the first call and replays that result afterwards.

    Concurrent first calls are serialised, so ``func`` runs exactly once.
    A first call that raises does not count: the exception propagates and
    the next call tries again.
    """

    def __init__(self, func: Callable[..., T]):
        if not callable(func):
            raise TypeError(f"once() expects a callable, got {type(func).__name__}")
        functools.update_wrapper(self, func)
        self.func = func
        self._lock = threading.Lock()
        self._done = False
        self._result: Any = None

    @property
    def called(self) -> bool:
        """True once ``func`` has completed successfully."""
        return self._done

    def __call__(self, *args: Any, **kwargs: Any) -> T:
        if self._done:
            return self._result
        with self._lock:
            if not self._done:
                self._result = self.func(*args, **kwargs)
                self._done = True
        return self._result


def once(func: Callable[..., T]) -> Once[T]:
    """Wrap ``func`` so it runs at most once."""
    return Once(func)


# ════════════════════════════════════════════════════════════════════════════
# COMPOSITION
# ════════════════════════════════════════════════════════════════════════════


def compose(*funcs: Callable[[Any], Any]) -> Callable[[Any], Any]:
    """Right-to-left composition: ``compose(g, f)(x) == g(f(x))``."""
    if not funcs:
        return identity

    def composed(value: Any) -> Any:
        for func in reversed(funcs):
            value = func(value)
        return value
    return composed


def pipe(value: Any, *funcs: Callable[[Any], Any]) -> Any:
    """Thread ``value`` through ``funcs`` left to right."""
    for func in funcs:
        value = func(value)
    return value


def tap(value: T, func: Callable[[T], Any]) -> T:
    """Call ``func(value)`` for its side effect and return ``value``."""
    func(value)
    return value


def identity(value: T) -> T:
    return value


def constant(value: T) -> Callable[..., T]:
    """Return a function that ignores its arguments and returns ``value``."""
    def const(*args: Any, **kwargs: Any) -> T:
        return value
    return const


def noop(*args: Any, **kwargs: Any) -> None:
    return None


def negate(predicate: Callable[..., bool]) -> Callable[..., bool]:
    """Logical negation of ``predicate``."""
    @functools.wraps(predicate)
    def negated(*args: Any, **kwargs: Any) -> bool:
        return not predicate(*args, **kwargs)
    return negated


def flip(func: Callable[..., R]) -> Callable[..., R]:
    """Swap the first two positional arguments of ``func``."""
    @functools.wraps(func)
    def flipped(a: Any, b: Any, *rest: Any, **kwargs: Any) -> R:
        return func(b, a, *rest, **kwargs)
    return flipped


def times(n: int, func: Callable[[int], R]) -> List[R]:
    """Call ``func(i)`` for ``i`` in ``range(n)`` and collect the results."""
    require_at_least("n", n, 0)
    return [func(i) for i in range(n)]


def until(value: T, predicate: Callable[[T], bool], step: Callable[[T], T]) -> T:
    """Apply ``step`` to ``value`` until ``predicate`` holds."""
    while not predicate(value):
        value = step(value)
    return value


__all__ = [
    "Once",
    "once",
    "compose",
    "pipe",
    "tap",
    "identity",
    "constant",
    "noop",
    "negate",
    "flip",
    "times",
    "until",
]
