"""
Tests for retry, timeout and circuit breaker combinators.

Retry tests inject a recording ``sleep`` so backoff schedules are checked
without waiting; circuit breaker tests drive a fake clock.
"""

import math
import random
import threading
import time

import pytest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _failing_then(value, failures, exc_type=ConnectionError):
    """Build a function that raises ``failures`` times, then returns ``value``."""
    calls = []

    def func():
        calls.append(len(calls) + 1)
        if len(calls) <= failures:
            raise exc_type(f"failure {len(calls)}")
        return value

    return func, calls


# ════════════════════════════════════════════════════════════════════════════
# BACKOFF POLICY TESTS
# ════════════════════════════════════════════════════════════════════════════


class TestBackoffPolicy:
    """Tests for delay schedules and policy validation."""

    def test_fixed_schedule(self):
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        policy = BackoffPolicy(max_attempts=4, base_delay=0.5, strategy=BackoffStrategy.FIXED)
        assert policy.schedule() == [0.5, 0.5, 0.5]

    def test_linear_schedule(self):
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        policy = BackoffPolicy(max_attempts=4, base_delay=0.5, strategy=BackoffStrategy.LINEAR)
        assert policy.schedule() == [0.5, 1.0, 1.5]

    def test_exponential_schedule_is_clamped(self):
        """Exponential delays grow by the multiplier and stop at max_delay."""
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        policy = BackoffPolicy(
            max_attempts=6,
            base_delay=1.0,
            multiplier=3.0,
            max_delay=20.0,
            strategy=BackoffStrategy.EXPONENTIAL,
        )
        assert policy.schedule() == [1.0, 3.0, 9.0, 20.0, 20.0]

    def test_jitter_stays_within_bounds(self):
        """Jittered delays fall in [d/2, 1.5d] clamped to max_delay."""
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        policy = BackoffPolicy(
            max_attempts=8,
            base_delay=0.2,
            multiplier=2.0,
            max_delay=5.0,
            strategy=BackoffStrategy.EXPONENTIAL_JITTER,
        )
        rng = random.Random(1234)

        for attempt in range(1, 8):
            low, high = policy.jitter_bounds(attempt)
            nominal = policy.nominal_delay(attempt)
            assert low == nominal / 2
            assert high == min(nominal * 1.5, 5.0)
            for _ in range(50):
                assert low <= policy.delay_for(attempt, rng) <= high

    def test_non_jitter_delay_is_deterministic(self):
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        policy = BackoffPolicy(base_delay=0.3, strategy=BackoffStrategy.EXPONENTIAL)
        assert policy.delay_for(2) == policy.nominal_delay(2) == 0.6

    @pytest.mark.parametrize("kwargs", [
        {"max_attempts": 0},
        {"base_delay": 0},
        {"base_delay": -0.5},
        {"multiplier": 0.5},
        {"base_delay": 2.0, "max_delay": 1.0},
        {"retryable": (int,)},
    ])
    def test_invalid_parameters_rejected(self, kwargs):
        """Out-of-range parameters raise InvalidConfiguration at construction."""
        from toolchest.functions.errors import InvalidConfiguration
        from toolchest.functions.resilience import BackoffPolicy

        with pytest.raises(InvalidConfiguration):
            BackoffPolicy(**kwargs)

    def test_invalid_configuration_is_value_error(self):
        """InvalidConfiguration can be caught as ValueError."""
        from toolchest.functions.resilience import BackoffPolicy

        with pytest.raises(ValueError):
            BackoffPolicy(max_attempts=0)

    def test_from_config_reads_retry_section(self, _isolated_config):
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy

        _isolated_config.set("retry.max_attempts", 7)
        _isolated_config.set("retry.strategy", "linear")

        policy = BackoffPolicy.from_config()
        assert policy.max_attempts == 7
        assert policy.strategy == BackoffStrategy.LINEAR
        assert policy.base_delay == 0.1

    def test_from_config_overrides_win(self):
        from toolchest.functions.resilience import BackoffPolicy

        assert BackoffPolicy.from_config(max_attempts=2).max_attempts == 2


# ════════════════════════════════════════════════════════════════════════════
# RETRY TESTS
# ════════════════════════════════════════════════════════════════════════════


class TestRetry:
    """Tests for retry execution."""

    def test_failures_then_success(self):
        """k failures then success makes k+1 calls with formula delays."""
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy, Retrying

        func, calls = _failing_then("ok", failures=2)
        sleeps = []
        retrying = Retrying(
            BackoffPolicy(
                max_attempts=5,
                base_delay=0.1,
                multiplier=2.0,
                strategy=BackoffStrategy.EXPONENTIAL,
            ),
            sleep=sleeps.append,
        )

        assert retrying.execute(func) == "ok"
        assert calls == [1, 2, 3]
        assert sleeps == pytest.approx([0.1, 0.2])

        metrics = retrying.metrics
        assert metrics.total_attempts == 3
        assert metrics.failed_attempts == 2
        assert metrics.successful_attempts == 1
        assert metrics.delays == pytest.approx([0.1, 0.2])

    def test_exhaustion_raises_with_last_exception(self):
        """When every attempt fails, RetriesExhausted carries the last error."""
        from toolchest.functions.errors import RetriesExhausted
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy, Retrying

        func, calls = _failing_then("never", failures=10)
        sleeps = []
        retrying = Retrying(
            BackoffPolicy(max_attempts=3, base_delay=0.1, strategy=BackoffStrategy.FIXED),
            sleep=sleeps.append,
        )

        with pytest.raises(RetriesExhausted) as exc_info:
            retrying.execute(func)

        err = exc_info.value
        assert err.attempts == 3
        assert isinstance(err.last_exception, ConnectionError)
        assert str(err.last_exception) == "failure 3"
        assert err.__cause__ is err.last_exception
        assert calls == [1, 2, 3]
        assert sleeps == [0.1, 0.1]
        assert retrying.metrics.retries_exhausted == 1

    def test_single_attempt_never_sleeps(self):
        from toolchest.functions.errors import RetriesExhausted
        from toolchest.functions.resilience import BackoffPolicy, Retrying

        func, calls = _failing_then("x", failures=1)
        sleeps = []

        with pytest.raises(RetriesExhausted):
            Retrying(BackoffPolicy(max_attempts=1), sleep=sleeps.append).execute(func)
        assert calls == [1]
        assert sleeps == []

    def test_non_retryable_propagates_unchanged(self):
        """A non-retryable error surfaces immediately, not wrapped."""
        from toolchest.functions.resilience import BackoffPolicy, Retrying

        func, calls = _failing_then("x", failures=5, exc_type=PermissionError)
        sleeps = []
        retrying = Retrying(
            BackoffPolicy(max_attempts=5, non_retryable=(PermissionError,)),
            sleep=sleeps.append,
        )

        with pytest.raises(PermissionError):
            retrying.execute(func)
        assert calls == [1]
        assert sleeps == []
        assert retrying.metrics.non_retryable_failures == 1

    def test_errors_outside_retryable_propagate(self):
        """Only exceptions matching ``retryable`` are retried."""
        from toolchest.functions.resilience import BackoffPolicy, Retrying

        func, calls = _failing_then("x", failures=5, exc_type=KeyError)
        retrying = Retrying(
            BackoffPolicy(max_attempts=5, retryable=(ConnectionError,)),
            sleep=lambda _: None,
        )

        with pytest.raises(KeyError):
            retrying.execute(func)
        assert calls == [1]

    def test_on_retry_callback(self):
        from toolchest.functions.resilience import BackoffPolicy, BackoffStrategy, Retrying

        func, _ = _failing_then("ok", failures=2)
        seen = []
        retrying = Retrying(
            BackoffPolicy(max_attempts=3, base_delay=0.25, strategy=BackoffStrategy.FIXED),
            on_retry=lambda attempt, exc, delay: seen.append((attempt, type(exc), delay)),
            sleep=lambda _: None,
        )

        retrying.execute(func)
        assert seen == [(1, ConnectionError, 0.25), (2, ConnectionError, 0.25)]

    def test_decorator_passes_arguments(self):
        from toolchest.functions.resilience import BackoffPolicy, retry

        attempts = []

        @retry(policy=BackoffPolicy(max_attempts=3, base_delay=0.01), sleep=lambda _: None)
        def add(a, b):
            attempts.append((a, b))
            if len(attempts) < 2:
                raise TimeoutError("transient")
            return a + b

        assert add(2, 3) == 5
        assert attempts == [(2, 3), (2, 3)]
        assert add.__name__ == "add"
        assert add.retrying.metrics.successful_attempts == 1

    def test_retry_with_backoff_doubles(self):
        from toolchest.functions.resilience import retry_with_backoff

        func, calls = _failing_then(42, failures=3)
        sleeps = []

        assert retry_with_backoff(func, attempts=4, base_delay=0.05, sleep=sleeps.append) == 42
        assert calls == [1, 2, 3, 4]
        assert sleeps == pytest.approx([0.05, 0.1, 0.2])

    def test_retry_logs_warning(self, caplog):
        import logging

        from toolchest.functions.resilience import BackoffPolicy, Retrying

        func, _ = _failing_then("ok", failures=1)
        with caplog.at_level(logging.WARNING, logger="toolchest"):
            Retrying(BackoffPolicy(max_attempts=2), sleep=lambda _: None, name="fetch").execute(func)

        assert any("fetch attempt 1/2 failed" in r.getMessage() for r in caplog.records)


# ════════════════════════════════════════════════════════════════════════════
# TIMEOUT TESTS
# ════════════════════════════════════════════════════════════════════════════


class TestTimeout:
    """Tests for deadline enforcement."""

    def test_fast_call_returns_result(self):
        from toolchest.functions.resilience import Timeout

        timeout = Timeout(seconds=1.0)
        assert timeout.execute(lambda: "done") == "done"
        assert timeout.metrics.successful_calls == 1

    def test_slow_call_times_out_no_earlier_than_deadline(self):
        """TimeoutExceeded is raised at, never before, the deadline."""
        from toolchest.functions.errors import TimeoutExceeded
        from toolchest.functions.resilience import Timeout

        timeout = Timeout(seconds=0.1, name="slow")
        start = time.monotonic()

        with pytest.raises(TimeoutExceeded) as exc_info:
            timeout.execute(lambda: time.sleep(0.5))

        elapsed = time.monotonic() - start
        assert elapsed >= 0.1 - 0.005
        assert elapsed < 0.45
        assert exc_info.value.operation == "slow"
        assert exc_info.value.timeout_seconds == 0.1
        assert timeout.metrics.timed_out_calls == 1

    def test_timeout_exceeded_is_builtin_timeout_error(self):
        from toolchest.functions.resilience import call_with_timeout

        with pytest.raises(TimeoutError):
            call_with_timeout(time.sleep, 0.05, 0.3)

    def test_function_errors_propagate_unchanged(self):
        """A failure before the deadline surfaces as the original exception."""
        from toolchest.functions.errors import TimeoutExceeded
        from toolchest.functions.resilience import Timeout

        def boom():
            raise TimeoutError("from the callee")

        timeout = Timeout(seconds=1.0)
        with pytest.raises(TimeoutError) as exc_info:
            timeout.execute(boom)

        assert not isinstance(exc_info.value, TimeoutExceeded)
        assert str(exc_info.value) == "from the callee"
        assert timeout.metrics.failed_calls == 1

    def test_base_exception_is_not_reported_as_timeout(self):
        """SystemExit from the callee reaches the caller before the deadline."""
        from toolchest.functions.resilience import Timeout

        def leave():
            raise SystemExit(3)

        timeout = Timeout(seconds=5.0)
        start = time.monotonic()
        with pytest.raises(SystemExit):
            timeout.execute(leave)

        assert time.monotonic() - start < 1.0
        assert timeout.metrics.timed_out_calls == 0
        assert timeout.metrics.failed_calls == 1

    def test_abandoned_call_keeps_running(self):
        """The worker thread finishes on its own after a timeout."""
        from toolchest.functions.errors import TimeoutExceeded
        from toolchest.functions.resilience import Timeout

        finished = threading.Event()

        def slow():
            time.sleep(0.15)
            finished.set()

        with pytest.raises(TimeoutExceeded):
            Timeout(seconds=0.02).execute(slow)
        assert not finished.is_set()
        assert finished.wait(1.0)

    def test_on_timeout_callback(self):
        from toolchest.functions.errors import TimeoutExceeded
        from toolchest.functions.resilience import with_timeout

        fired = []

        @with_timeout(duration=0.02, on_timeout=lambda: fired.append(True))
        def slow(seconds):
            time.sleep(seconds)
            return seconds

        assert slow(0) == 0
        with pytest.raises(TimeoutExceeded):
            slow(0.2)
        assert fired == [True]
        assert slow.timeout.metrics.total_calls == 2

    def test_default_from_config(self, _isolated_config):
        from toolchest.functions.resilience import Timeout

        _isolated_config.set("timeout.seconds", 2.5)
        assert Timeout().seconds == 2.5

    def test_invalid_duration_rejected(self):
        from toolchest.functions.errors import InvalidConfiguration
        from toolchest.functions.resilience import Timeout

        with pytest.raises(InvalidConfiguration):
            Timeout(seconds=0)
        with pytest.raises(InvalidConfiguration):
            Timeout(seconds=-3)
        with pytest.raises(InvalidConfiguration):
            Timeout(seconds=math.nan)


# ════════════════════════════════════════════════════════════════════════════
# CIRCUIT BREAKER TESTS
# ════════════════════════════════════════════════════════════════════════════


class TestCircuitBreaker:
    """Tests for circuit breaker pattern."""

    def _trip(self, breaker, times):
        for _ in range(times):
            try:
                with breaker:
                    raise ValueError("test error")
            except ValueError:
                pass

    def test_circuit_starts_closed(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=3)
        assert breaker.state == CircuitState.CLOSED

    def test_circuit_opens_after_failures(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=3)
        self._trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        self._trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_open_circuit_rejects_calls(self):
        from toolchest.functions.errors import CircuitOpenError
        from toolchest.functions.resilience import CircuitBreaker

        breaker = CircuitBreaker("api", failure_threshold=1)
        self._trip(breaker, 1)

        ran = []
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(ran.append, 1)
        assert ran == []
        assert exc_info.value.breaker_name == "api"
        assert breaker.metrics.rejected_calls == 1

    def test_half_open_probe_success_closes(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=1, cooldown_seconds=10, clock=clock)
        self._trip(breaker, 1)

        clock.advance(9)
        assert breaker.state == CircuitState.OPEN
        clock.advance(1)
        assert breaker.state == CircuitState.HALF_OPEN

        assert breaker.call(lambda: "probe") == "probe"
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_probe_failure_reopens(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        clock = FakeClock()
        breaker = CircuitBreaker("test", failure_threshold=2, cooldown_seconds=5, clock=clock)
        self._trip(breaker, 2)
        clock.advance(5)

        self._trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_half_open_limits_probes(self):
        from toolchest.functions.errors import CircuitOpenError
        from toolchest.functions.resilience import CircuitBreaker

        clock = FakeClock()
        breaker = CircuitBreaker(
            "test", failure_threshold=1, cooldown_seconds=1, half_open_max_calls=1, clock=clock
        )
        self._trip(breaker, 1)
        clock.advance(1)

        with breaker:
            with pytest.raises(CircuitOpenError):
                with breaker:
                    pass

    def test_excluded_probe_frees_its_slot(self):
        """A probe raising an excluded exception leaves room for the next probe."""
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        clock = FakeClock()
        breaker = CircuitBreaker(
            "test",
            failure_threshold=1,
            cooldown_seconds=1,
            excluded_exceptions=(KeyError,),
            clock=clock,
        )
        self._trip(breaker, 1)
        clock.advance(1)

        with pytest.raises(KeyError):
            breaker.call(lambda: {}["missing"])
        assert breaker.state == CircuitState.HALF_OPEN

        assert breaker.call(lambda: 1) == 1
        assert breaker.state == CircuitState.CLOSED

    def test_sequential_probes_reach_success_threshold(self):
        """More successes than probe slots are needed: slots are reused."""
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        clock = FakeClock()
        breaker = CircuitBreaker(
            "test",
            failure_threshold=1,
            cooldown_seconds=1,
            success_threshold=2,
            half_open_max_calls=1,
            clock=clock,
        )
        self._trip(breaker, 1)
        clock.advance(1)

        breaker.call(lambda: "first")
        assert breaker.state == CircuitState.HALF_OPEN
        with breaker:
            pass
        assert breaker.state == CircuitState.CLOSED

    def test_excluded_exceptions_do_not_trip(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        breaker = CircuitBreaker("test", failure_threshold=1, excluded_exceptions=(ValueError,))
        self._trip(breaker, 3)
        assert breaker.state == CircuitState.CLOSED

    def test_state_change_callback_and_reset(self):
        from toolchest.functions.resilience import CircuitBreaker, CircuitState

        transitions = []
        breaker = CircuitBreaker(
            "test",
            failure_threshold=1,
            on_state_change=lambda old, new: transitions.append((old, new)),
        )
        self._trip(breaker, 1)
        breaker.reset()

        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.CLOSED),
        ]
        assert breaker.metrics.total_calls == 0

    def test_decorator(self):
        from toolchest.functions.resilience import CircuitBreaker

        breaker = CircuitBreaker("test", failure_threshold=5)

        @breaker
        def protected(x):
            return x * 2

        assert protected(4) == 8
        assert protected.breaker is breaker
        assert breaker.metrics.successful_calls == 1

    def test_defaults_from_config(self, _isolated_config):
        from toolchest.functions.resilience import CircuitBreaker

        _isolated_config.set("circuit_breaker.failure_threshold", 9)
        breaker = CircuitBreaker("cfg")
        assert breaker.failure_threshold == 9
        assert breaker.cooldown_seconds == 30.0
