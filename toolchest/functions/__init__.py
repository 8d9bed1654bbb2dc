"""
Function combinators

Wrappers that change when, how often, or how many times a function runs,
without changing what it computes.

Module Index
────────────

    timing.py       debounce, throttle (timer driven)
    memoize.py      argument-keyed result cache with single-flight
    resilience.py   retry with backoff, timeout, circuit breaker
    rate_limit.py   token bucket rate limiter
    compose.py      once, compose, pipe and small helpers
    errors.py       error taxonomy shared by every combinator

Every combinator is safe to call from multiple threads. Parameters left
unset are read from ``toolchest.config`` at construction time.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from toolchest.functions.errors import (
    CircuitOpenError,
    InvalidConfiguration,
    RateLimited,
    RetriesExhausted,
    TimeoutExceeded,
    ToolchestError,
)
from toolchest.functions.timing import (
    DebounceMetrics,
    Debounced,
    ThrottleMetrics,
    Throttled,
    debounce,
    throttle,
)
from toolchest.functions.memoize import MemoizeMetrics, Memoized, memoize
from toolchest.functions.resilience import (
    BackoffPolicy,
    BackoffStrategy,
    CircuitBreaker,
    CircuitBreakerMetrics,
    CircuitState,
    RetryMetrics,
    Retrying,
    Timeout,
    TimeoutMetrics,
    call_with_timeout,
    retry,
    retry_with_backoff,
    with_timeout,
)
from toolchest.functions.rate_limit import (
    RateLimiter,
    RateLimiterMetrics,
    RateLimitPolicy,
    rate_limiter,
)
from toolchest.functions.compose import (
    Once,
    compose,
    constant,
    flip,
    identity,
    negate,
    noop,
    once,
    pipe,
    tap,
    times,
    until,
)

__all__ = [
    # Timing
    "DebounceMetrics",
    "Debounced",
    "debounce",
    "ThrottleMetrics",
    "Throttled",
    "throttle",
    # Memoize
    "MemoizeMetrics",
    "Memoized",
    "memoize",
    # Resilience
    "BackoffStrategy",
    "BackoffPolicy",
    "RetryMetrics",
    "Retrying",
    "retry",
    "retry_with_backoff",
    "TimeoutMetrics",
    "Timeout",
    "with_timeout",
    "call_with_timeout",
    "CircuitState",
    "CircuitBreakerMetrics",
    "CircuitBreaker",
    # Rate limiting
    "RateLimitPolicy",
    "RateLimiterMetrics",
    "RateLimiter",
    "rate_limiter",
    # Composition
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
    # Errors
    "ToolchestError",
    "InvalidConfiguration",
    "TimeoutExceeded",
    "RetriesExhausted",
    "CircuitOpenError",
    "RateLimited",
]
