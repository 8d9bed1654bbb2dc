"""
Token bucket rate limiting.

The bucket starts full at ``capacity`` tokens and refills continuously at
``rate`` tokens per second, never beyond ``capacity``. Each admitted call
takes one token (or more, for weighted calls). A rate of 0 disables refill,
turning the bucket into a fixed allowance.

Denial is an ordinary outcome, so nothing here raises on it: try_acquire()
returns False and the decorator form returns a RateLimited value in place of
the function's result.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, TypeVar, Union

from toolchest.config import get_config
from toolchest.functions.errors import (
    RateLimited,
    require_at_least,
    require_non_negative,
)
from toolchest.observability import Combinator, event_extra

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Token bucket parameters."""
    capacity: int = 10
    rate: float = 10.0

    def __post_init__(self) -> None:
        require_at_least("capacity", self.capacity, 1)
        require_non_negative("rate", self.rate)

    @classmethod
    def from_config(cls, **overrides: Any) -> "RateLimitPolicy":
        """Build a policy from the ``rate_limit`` config section."""
        config = get_config().rate_limit
        values = {
            "capacity": config.capacity.get(),
            "rate": config.rate_per_second.get(),
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class RateLimiterMetrics:
    """Rate limiter metrics."""
    admitted: int = 0
    rejected: int = 0
    waited_seconds: float = 0.0


class RateLimiter:
    """
    Token bucket rate limiter.

    Example:
        limiter = RateLimiter(RateLimitPolicy(capacity=5, rate=1.0))

        if limiter.try_acquire():
            send()

        @limiter
        def send_message(msg):
            ...

        outcome = send_message("hi")
        if isinstance(outcome, RateLimited):
            schedule_later(outcome.retry_after_seconds)
    """

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        name: str = "rate-limiter",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy if policy is not None else RateLimitPolicy.from_config()
        self.name = name
        self._clock = clock
        self._tokens = float(self.policy.capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()
        self._metrics = RateLimiterMetrics()

    def _refill(self) -> None:
        """Add tokens for the time elapsed since the last refill (lock held)."""
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._last_refill = now
        if self.policy.rate > 0:
            self._tokens = min(
                float(self.policy.capacity),
                self._tokens + elapsed * self.policy.rate,
            )

    def _wait_time(self, tokens: int) -> Optional[float]:
        """Seconds until ``tokens`` are available, None if never (lock held)."""
        missing = tokens - self._tokens
        if missing <= 0:
            return 0.0
        if self.policy.rate <= 0:
            return None
        return missing / self.policy.rate

    def _check_tokens(self, tokens: int) -> None:
        require_at_least("tokens", tokens, 1)
        if tokens > self.policy.capacity:
            raise ValueError(
                f"Cannot acquire {tokens} tokens from a bucket of capacity {self.policy.capacity}"
            )

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take ``tokens`` if available. Returns True if admitted."""
        self._check_tokens(tokens)
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                self._metrics.admitted += 1
                return True
            self._metrics.rejected += 1
            return False

    def acquire(self, tokens: int = 1, timeout: Optional[float] = None) -> bool:
        """
        Wait up to ``timeout`` seconds for ``tokens``.

        Returns False once the timeout passes, or immediately if the bucket
        cannot refill in time. ``timeout=None`` uses the timeout config value
        as the upper bound so the wait is never unbounded.
        """
        self._check_tokens(tokens)
        if timeout is None:
            timeout = get_config().timeout.seconds.get()
        timeout = require_non_negative("timeout", timeout)

        deadline = time.monotonic() + timeout
        started = time.monotonic()
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    self._metrics.admitted += 1
                    self._metrics.waited_seconds += time.monotonic() - started
                    return True
                wait = self._wait_time(tokens)

            remaining = deadline - time.monotonic()
            if wait is None or wait > remaining:
                with self._lock:
                    self._metrics.rejected += 1
                return False
            time.sleep(max(wait, 0.001))

    def retry_after(self, tokens: int = 1) -> Optional[float]:
        """Seconds until ``tokens`` could be admitted; None if never."""
        self._check_tokens(tokens)
        with self._lock:
            self._refill()
            return self._wait_time(tokens)

    @property
    def available_tokens(self) -> float:
        """Tokens currently in the bucket."""
        with self._lock:
            self._refill()
            return self._tokens

    @property
    def metrics(self) -> RateLimiterMetrics:
        """Current rate limiter metrics."""
        with self._lock:
            return replace(self._metrics)

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        with self._lock:
            self._tokens = float(self.policy.capacity)
            self._last_refill = self._clock()

    def __call__(self, func: Callable[..., T]) -> Callable[..., Union[T, RateLimited]]:
        """Decorator: denied calls return RateLimited instead of running."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Union[T, RateLimited]:
            if not self.try_acquire():
                retry_after = self.retry_after()
                logger.debug(
                    "Call to %s rate limited by %s",
                    getattr(func, "__qualname__", func),
                    self.name,
                    extra=event_extra(
                        Combinator.RATE_LIMIT, "reject", limiter=self.name, retry_after=retry_after
                    ),
                )
                return RateLimited(self.name, retry_after)
            return func(*args, **kwargs)
        wrapper.limiter = self  # type: ignore[attr-defined]
        return wrapper


def rate_limiter(
    capacity: Optional[int] = None,
    rate: Optional[float] = None,
    *,
    name: str = "rate-limiter",
    clock: Callable[[], float] = time.monotonic,
) -> RateLimiter:
    """Create a token bucket limiter; omitted values come from config."""
    overrides = {}
    if capacity is not None:
        overrides["capacity"] = capacity
    if rate is not None:
        overrides["rate"] = rate
    return RateLimiter(RateLimitPolicy.from_config(**overrides), name=name, clock=clock)


__all__ = [
    "RateLimitPolicy",
    "RateLimiterMetrics",
    "RateLimiter",
    "rate_limiter",
]
