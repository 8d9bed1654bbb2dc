"""
Combinator error taxonomy.

Every exception raised by the function combinators derives from
ToolchestError so callers can catch the whole family at once. Each class
also derives from the closest builtin so existing ``except ValueError`` or
``except TimeoutError`` handlers keep working.

RateLimited is deliberately not an exception: being denied admission is an
expected outcome, so the limiter returns it as a value.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional


class ToolchestError(Exception):
    """Base class for all combinator errors."""
    pass


class InvalidConfiguration(ToolchestError, ValueError):
    """Raised at construction time when a policy parameter is out of range."""

    def __init__(self, parameter: str, value: Any, reason: str):
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {parameter}={value!r}: {reason}")


class TimeoutExceeded(ToolchestError, TimeoutError):
    """Raised when a wrapped call does not finish before its deadline.

    The underlying call is abandoned, not cancelled: it may still be
    running on its worker thread when this is raised.
    """

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Operation '{operation}' timed out after {timeout_seconds}s")


class RetriesExhausted(ToolchestError):
    """Raised when every retry attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_exception: BaseException):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


class CircuitOpenError(ToolchestError):
    """Raised when a circuit breaker rejects a call."""

    def __init__(self, breaker_name: str, state_name: str):
        self.breaker_name = breaker_name
        self.state_name = state_name
        super().__init__(f"Circuit breaker '{breaker_name}' is {state_name}")


@dataclass(frozen=True)
class RateLimited:
    """Returned in place of a result when a rate limiter denies admission."""
    limiter_name: str
    retry_after_seconds: Optional[float] = None

    def __bool__(self) -> bool:
        return False


# ════════════════════════════════════════════════════════════════════════════
# PARAMETER CHECKS
# ════════════════════════════════════════════════════════════════════════════


def require_positive(parameter: str, value: float) -> float:
    """Reject zero, negative, NaN and non-numeric durations."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfiguration(parameter, value, "must be a number")
    if math.isnan(value) or value <= 0:
        raise InvalidConfiguration(parameter, value, "must be > 0")
    return float(value)


def require_non_negative(parameter: str, value: float) -> float:
    """Reject negative, NaN and non-numeric values."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfiguration(parameter, value, "must be a number")
    if math.isnan(value) or value < 0:
        raise InvalidConfiguration(parameter, value, "must be >= 0")
    return float(value)


def require_at_least(parameter: str, value: int, minimum: int) -> int:
    """Reject integers below ``minimum``."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidConfiguration(parameter, value, "must be an integer")
    if value < minimum:
        raise InvalidConfiguration(parameter, value, f"must be >= {minimum}")
    return value


__all__ = [
    "ToolchestError",
    "InvalidConfiguration",
    "TimeoutExceeded",
    "RetriesExhausted",
    "CircuitOpenError",
    "RateLimited",
    "require_positive",
    "require_non_negative",
    "require_at_least",
]
