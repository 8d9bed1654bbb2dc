"""
Resilience Combinators

Retry with backoff, timeouts, and circuit breaking for arbitrary callables.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                       RESILIENCE PATTERNS                                │
    │                                                                          │
    │  Retrying             Timeout              Circuit Breaker               │
    │  ├─ BackoffPolicy     ├─ worker thread     ├─ CLOSED state               │
    │  ├─ Fixed / Linear    ├─ deadline wait     ├─ OPEN state                 │
    │  ├─ Exponential       ├─ abandon on miss   ├─ HALF_OPEN probes           │
    │  ├─ Jitter            └─ Metrics           └─ Metrics                    │
    │  └─ Retryable exc                                                        │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Backoff
───────

    Delay before retry n (n = 1 after the first failed attempt):

        FIXED               base
        LINEAR              base * n
        EXPONENTIAL         base * multiplier ** (n - 1)
        EXPONENTIAL_JITTER  d = EXPONENTIAL delay, then uniform in [d/2, 1.5*d]

    Every strategy is clamped to max_delay. Jitter is the only source of
    randomness; without it the schedule is fully determined by the policy.

Timeouts
────────

    Python threads cannot be pre-empted. When a deadline passes the caller
    gets TimeoutExceeded, but the wrapped call is abandoned, not cancelled:
    it keeps running on its daemon worker thread until it returns.

Usage
─────

    from toolchest.functions import BackoffPolicy, BackoffStrategy, retry, with_timeout

    policy = BackoffPolicy(max_attempts=5, base_delay=0.2,
                           retryable=(ConnectionError,))

    @retry(policy=policy)
    def fetch():
        return client.get("/status")

    bounded = with_timeout(fetch, 2.0)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import concurrent.futures
import functools
import logging
import random
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Type, TypeVar

from toolchest.config import get_config
from toolchest.functions.errors import (
    CircuitOpenError,
    InvalidConfiguration,
    RetriesExhausted,
    TimeoutExceeded,
    require_at_least,
    require_positive,
)
from toolchest.observability import Combinator, event_extra

T = TypeVar("T")

logger = logging.getLogger(__name__)

ExceptionTypes = Tuple[Type[BaseException], ...]


# ════════════════════════════════════════════════════════════════════════════
# BACKOFF POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


def _exception_types(parameter: str, value: Any) -> ExceptionTypes:
    if isinstance(value, type):
        value = (value,)
    if not isinstance(value, tuple) or not all(
        isinstance(t, type) and issubclass(t, BaseException) for t in value
    ):
        raise InvalidConfiguration(parameter, value, "must be a tuple of exception classes")
    return value


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Immutable retry policy.

    ``max_attempts`` counts every call including the first, so
    ``max_attempts=1`` never retries. Only exceptions matching
    ``retryable`` (and not ``non_retryable``) are retried.
    """
    max_attempts: int = 3
    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: Optional[float] = 30.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    retryable: ExceptionTypes = (Exception,)
    non_retryable: ExceptionTypes = ()

    def __post_init__(self) -> None:
        require_at_least("max_attempts", self.max_attempts, 1)
        require_positive("base_delay", self.base_delay)
        require_positive("multiplier", self.multiplier)
        if self.multiplier < 1:
            raise InvalidConfiguration("multiplier", self.multiplier, "must be >= 1")
        if self.max_delay is not None:
            require_positive("max_delay", self.max_delay)
            if self.max_delay < self.base_delay:
                raise InvalidConfiguration("max_delay", self.max_delay, "must be >= base_delay")
        if not isinstance(self.strategy, BackoffStrategy):
            raise InvalidConfiguration("strategy", self.strategy, "must be a BackoffStrategy")
        object.__setattr__(self, "retryable", _exception_types("retryable", self.retryable))
        object.__setattr__(
            self, "non_retryable", _exception_types("non_retryable", self.non_retryable)
        )

    @classmethod
    def from_config(cls, **overrides: Any) -> "BackoffPolicy":
        """Build a policy from the ``retry`` config section."""
        config = get_config().retry
        values = {
            "max_attempts": config.max_attempts.get(),
            "base_delay": config.base_delay_seconds.get(),
            "multiplier": config.multiplier.get(),
            "max_delay": config.max_delay_seconds.get(),
            "strategy": BackoffStrategy(config.strategy.get()),
        }
        values.update(overrides)
        return cls(**values)

    def nominal_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` ignoring jitter, clamped to max_delay."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        base = self.base_delay
        if self.strategy == BackoffStrategy.FIXED:
            delay = base
        elif self.strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        else:
            delay = base * (self.multiplier ** (attempt - 1))

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def jitter_bounds(self, attempt: int) -> Tuple[float, float]:
        """Inclusive range the actual delay for ``attempt`` falls in."""
        delay = self.nominal_delay(attempt)
        if self.strategy != BackoffStrategy.EXPONENTIAL_JITTER:
            return delay, delay
        high = delay * 1.5
        if self.max_delay is not None:
            high = min(high, self.max_delay)
        return delay / 2, high

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry ``attempt``, with jitter when the strategy uses it."""
        low, high = self.jitter_bounds(attempt)
        if low == high:
            return low
        return (rng or random).uniform(low, high)

    def schedule(self) -> List[float]:
        """Nominal delays between consecutive attempts (``max_attempts - 1`` entries)."""
        return [self.nominal_delay(n) for n in range(1, self.max_attempts)]

    def is_retryable(self, exc: BaseException) -> bool:
        """Check if exception is retryable."""
        if isinstance(exc, self.non_retryable):
            return False
        return isinstance(exc, self.retryable)


# ════════════════════════════════════════════════════════════════════════════
# RETRY
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    non_retryable_failures: int = 0
    total_retry_delay_seconds: float = 0.0
    delays: List[float] = field(default_factory=list)


class Retrying:
    """
    Applies a BackoffPolicy to calls.

    Example:
        retrying = Retrying(BackoffPolicy(max_attempts=3, base_delay=0.5))

        @retrying
        def flaky_operation():
            return external_service.call()

        # Or programmatic
        result = retrying.execute(lambda: external_service.call())
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        name: str = "operation",
    ):
        self.policy = policy if policy is not None else BackoffPolicy.from_config()
        self.name = name
        self._on_retry = on_retry
        self._sleep = sleep
        self._rng = rng
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return replace(self._metrics, delays=list(self._metrics.delays))

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        max_attempts = self.policy.max_attempts
        last_exception: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not self.policy.is_retryable(e):
                    with self._lock:
                        self._metrics.non_retryable_failures += 1
                    raise

                if attempt < max_attempts:
                    delay = self.policy.delay_for(attempt, self._rng)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay
                        self._metrics.delays.append(delay)

                    logger.warning(
                        "%s attempt %d/%d failed (%s); retrying in %.3fs",
                        self.name,
                        attempt,
                        max_attempts,
                        type(e).__name__,
                        delay,
                        extra=event_extra(
                            Combinator.RETRY, "retry", attempt=attempt, delay_seconds=delay
                        ),
                    )
                    if self._on_retry:
                        self._on_retry(attempt, e, delay)

                    self._sleep(delay)

        with self._lock:
            self._metrics.retries_exhausted += 1
        logger.warning(
            "%s failed after %d attempts",
            self.name,
            max_attempts,
            extra=event_extra(Combinator.RETRY, "exhausted", attempts=max_attempts),
        )
        raise RetriesExhausted(max_attempts, last_exception) from last_exception

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        wrapper.retrying = self  # type: ignore[attr-defined]
        return wrapper


def retry(
    func: Optional[Callable[..., T]] = None,
    policy: Optional[BackoffPolicy] = None,
    *,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Wrap ``func`` so failures are retried under ``policy``.

    Without a policy the ``retry`` config section supplies one. The returned
    wrapper exposes its Retrying instance (and its metrics) as ``.retrying``.
    Usable directly or as ``@retry(policy=...)``.
    """
    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        name = getattr(f, "__qualname__", None) or repr(f)
        return Retrying(policy, on_retry=on_retry, sleep=sleep, name=name)(f)

    if func is None:
        return decorator
    return decorator(func)


def retry_with_backoff(
    func: Callable[[], T],
    attempts: int,
    base_delay: float,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` now, retrying any Exception with doubling delays."""
    policy = BackoffPolicy(
        max_attempts=attempts,
        base_delay=base_delay,
        multiplier=2.0,
        max_delay=None,
        strategy=BackoffStrategy.EXPONENTIAL,
    )
    return Retrying(policy, sleep=sleep).execute(func)


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class TimeoutMetrics:
    """Timeout metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    timed_out_calls: int = 0
    total_duration_seconds: float = 0.0


class Timeout:
    """
    Deadline for a call.

    The call runs on a fresh daemon thread while the caller waits at most
    ``seconds``. On a miss the caller gets TimeoutExceeded and the worker
    thread is left to finish on its own; its eventual result is discarded.

    Example:
        timeout = Timeout(seconds=5.0)

        @timeout
        def slow_operation():
            return external_service.call()

        # Or programmatic
        result = timeout.execute(lambda: external_service.call())
    """

    def __init__(
        self,
        seconds: Optional[float] = None,
        name: str = "operation",
        on_timeout: Optional[Callable[[], None]] = None,
    ):
        if seconds is None:
            seconds = get_config().timeout.seconds.get()
        self.seconds = require_positive("seconds", seconds)
        self.name = name
        self._metrics = TimeoutMetrics()
        self._lock = threading.Lock()
        self._on_timeout = on_timeout

    @property
    def metrics(self) -> TimeoutMetrics:
        """Current timeout metrics."""
        with self._lock:
            return replace(self._metrics)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with timeout."""
        with self._lock:
            self._metrics.total_calls += 1

        future: "concurrent.futures.Future[T]" = concurrent.futures.Future()

        def run() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = func()
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        worker = threading.Thread(target=run, name=f"toolchest-timeout-{self.name}", daemon=True)
        start_time = time.monotonic()
        worker.start()

        done, _ = concurrent.futures.wait([future], timeout=self.seconds)
        duration = time.monotonic() - start_time

        if not done:
            with self._lock:
                self._metrics.timed_out_calls += 1
            logger.warning(
                "%s exceeded its %.3fs deadline; abandoning worker thread",
                self.name,
                self.seconds,
                extra=event_extra(Combinator.TIMEOUT, "timeout", duration * 1000),
            )
            if self._on_timeout:
                self._on_timeout()
            raise TimeoutExceeded(self.name, self.seconds)

        with self._lock:
            self._metrics.total_duration_seconds += duration
            if future.exception() is None:
                self._metrics.successful_calls += 1
            else:
                self._metrics.failed_calls += 1
        return future.result()

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for timeout protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        wrapper.timeout = self  # type: ignore[attr-defined]
        return wrapper


def with_timeout(
    func: Optional[Callable[..., T]] = None,
    duration: Optional[float] = None,
    *,
    on_timeout: Optional[Callable[[], None]] = None,
) -> Any:
    """
    Wrap ``func`` so each call fails with TimeoutExceeded after ``duration``.

    Without a duration the ``timeout.seconds`` config value is used.
    Usable directly or as ``@with_timeout(duration=...)``.
    """
    def decorator(f: Callable[..., T]) -> Callable[..., T]:
        name = getattr(f, "__qualname__", None) or repr(f)
        return Timeout(duration, name=name, on_timeout=on_timeout)(f)

    if func is None:
        return decorator
    return decorator(func)


def call_with_timeout(func: Callable[..., T], duration: float, *args: Any, **kwargs: Any) -> T:
    """Invoke ``func(*args, **kwargs)`` once under a ``duration`` deadline."""
    name = getattr(func, "__qualname__", None) or repr(func)
    return Timeout(duration, name=name).execute(lambda: func(*args, **kwargs))


# ════════════════════════════════════════════════════════════════════════════
# CIRCUIT BREAKER
# ════════════════════════════════════════════════════════════════════════════


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # calls pass
    OPEN = "open"            # calls rejected until cooldown ends
    HALF_OPEN = "half_open"  # limited probes decide the next state


@dataclass
class CircuitBreakerMetrics:
    """Circuit breaker metrics."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0


class CircuitBreaker:
    """
    Fails fast once a callee keeps failing.

    ``failure_threshold`` consecutive failures open the breaker. While open,
    calls raise CircuitOpenError without running. After ``cooldown_seconds``
    the breaker admits up to ``half_open_max_calls`` concurrent probes:
    ``success_threshold`` successes close it again, any failure reopens it.
    Exceptions listed in ``excluded_exceptions`` pass through without
    counting either way, but still free their probe slot.

    Example:
        breaker = CircuitBreaker("billing-api", failure_threshold=3)

        @breaker
        def charge(invoice):
            return billing.charge(invoice)

        with breaker:
            billing.ping()
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        success_threshold: int = 1,
        half_open_max_calls: int = 1,
        excluded_exceptions: ExceptionTypes = (),
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        config = get_config().circuit_breaker
        if failure_threshold is None:
            failure_threshold = config.failure_threshold.get()
        if cooldown_seconds is None:
            cooldown_seconds = config.cooldown_seconds.get()
        self.name = name
        self.failure_threshold = require_at_least("failure_threshold", failure_threshold, 1)
        self.cooldown_seconds = require_positive("cooldown_seconds", cooldown_seconds)
        self.success_threshold = require_at_least("success_threshold", success_threshold, 1)
        self.half_open_max_calls = require_at_least("half_open_max_calls", half_open_max_calls, 1)
        self.excluded_exceptions = _exception_types("excluded_exceptions", excluded_exceptions)
        self._state = CircuitState.CLOSED
        self._metrics = CircuitBreakerMetrics()
        self._lock = threading.RLock()
        self._clock = clock
        self._opened_at: Optional[float] = None
        self._probes_in_flight = 0
        self._probe_window = 0
        self._held = threading.local()
        self._on_state_change = on_state_change

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            self._check_cooldown()
            return self._state

    @property
    def metrics(self) -> CircuitBreakerMetrics:
        """Current metrics."""
        with self._lock:
            return replace(self._metrics)

    def _check_cooldown(self) -> None:
        """Move from OPEN to HALF_OPEN once the cooldown has elapsed (lock held)."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._enter(CircuitState.HALF_OPEN)

    def _enter(self, target: CircuitState) -> None:
        """Switch state, log it, and notify the listener (lock held)."""
        previous = self._state
        if previous is target:
            return
        self._state = target
        m = self._metrics
        m.state_transitions += 1

        if target is CircuitState.OPEN:
            self._opened_at = self._clock()
            logger.warning(
                "Circuit breaker '%s' opened after %d consecutive failures",
                self.name,
                m.consecutive_failures,
                extra=event_extra(Combinator.CIRCUIT_BREAKER, "open", breaker=self.name),
            )
        elif target is CircuitState.HALF_OPEN:
            self._probes_in_flight = 0
            self._probe_window += 1
            m.consecutive_successes = 0
        else:
            self._opened_at = None
            m.consecutive_failures = 0
            logger.info(
                "Circuit breaker '%s' closed",
                self.name,
                extra=event_extra(Combinator.CIRCUIT_BREAKER, "close", breaker=self.name),
            )

        if self._on_state_change is not None:
            self._on_state_change(previous, target)

    def _admit(self) -> Optional[int]:
        """
        Let a call through or raise CircuitOpenError.

        Returns the probe window a HALF_OPEN call was admitted under, or
        None for a CLOSED call. The window is handed back to _settle so
        the probe slot is released.
        """
        with self._lock:
            self._check_cooldown()
            state = self._state
            if state is CircuitState.CLOSED:
                return None
            if state is CircuitState.HALF_OPEN and self._probes_in_flight < self.half_open_max_calls:
                self._probes_in_flight += 1
                return self._probe_window
            self._metrics.rejected_calls += 1
        raise CircuitOpenError(self.name, state.name)

    def _settle(self, error: Optional[BaseException], probe: Optional[int]) -> None:
        """Record the outcome of an admitted call and apply its transition."""
        with self._lock:
            if probe is not None and probe == self._probe_window and self._probes_in_flight:
                self._probes_in_flight -= 1
            if error is not None and isinstance(error, self.excluded_exceptions):
                return

            m = self._metrics
            m.total_calls += 1
            if error is None:
                m.successful_calls += 1
                m.consecutive_successes += 1
                m.consecutive_failures = 0
                half_open_recovered = (
                    self._state is CircuitState.HALF_OPEN
                    and m.consecutive_successes >= self.success_threshold
                )
                if half_open_recovered:
                    self._enter(CircuitState.CLOSED)
                return

            m.failed_calls += 1
            m.consecutive_failures += 1
            m.consecutive_successes = 0
            tripped = self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and m.consecutive_failures >= self.failure_threshold
            )
            if tripped:
                self._enter(CircuitState.OPEN)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke ``func`` through the breaker."""
        probe = self._admit()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._settle(e, probe)
            raise
        self._settle(None, probe)
        return result

    def __enter__(self) -> "CircuitBreaker":
        probe = self._admit()
        stack = getattr(self._held, "probes", None)
        if stack is None:
            stack = self._held.probes = []
        stack.append(probe)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        probe = self._held.probes.pop()
        self._settle(exc_val if exc_type is not None else None, probe)
        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator form of call()."""
        @functools.wraps(func)
        def guarded(*args: Any, **kwargs: Any) -> T:
            return self.call(func, *args, **kwargs)
        guarded.breaker = self  # type: ignore[attr-defined]
        return guarded

    def reset(self) -> None:
        """Close the breaker and zero its metrics."""
        with self._lock:
            self._enter(CircuitState.CLOSED)
            self._metrics = CircuitBreakerMetrics()


__all__ = [
    # Backoff
    "BackoffStrategy",
    "BackoffPolicy",
    # Retry
    "RetryMetrics",
    "Retrying",
    "retry",
    "retry_with_backoff",
    # Timeout
    "TimeoutMetrics",
    "Timeout",
    "with_timeout",
    "call_with_timeout",
    # Circuit Breaker
    "CircuitState",
    "CircuitBreakerMetrics",
    "CircuitBreaker",
]
