"""
Toolchest Observability

Structured logging for the function combinators. Every combinator module
logs through a plain ``logging.getLogger(__name__)`` logger; this module
supplies the handler and formatting that turn those records into JSON
events or readable text lines, plus a decorator for timing operations.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Combinator Code                       │
    │  logger.warning("retrying", extra={"combinator": ...})  │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │            "toolchest" logger hierarchy                  │
    │  configure_logging(level, fmt) attaches one handler     │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                      Handlers                            │
    │      StructuredHandler (json) │ StreamHandler (text)     │
    └─────────────────────────────────────────────────────────┘

The library never attaches handlers on import. Applications call
configure_logging() (or configure_from_config()) when they want output.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER_NAME = "toolchest"

T = TypeVar("T")


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Combinator(Enum):
    """Combinator families, used to categorise log events."""
    DEBOUNCE = "debounce"
    THROTTLE = "throttle"
    MEMOIZE = "memoize"
    RETRY = "retry"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    CIRCUIT_BREAKER = "circuit_breaker"
    CONFIG = "config"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    combinator: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def event_extra(
    combinator: Combinator,
    operation: str = "",
    duration_ms: Optional[float] = None,
    **context: Any,
) -> Dict[str, Any]:
    """Build the ``extra`` mapping understood by StructuredHandler."""
    return {
        "combinator": combinator.value,
        "operation": operation,
        "duration_ms": duration_ms,
        "context": context,
    }


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def build_event(self, record: logging.LogRecord) -> LogEvent:
        event = LogEvent(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            combinator=getattr(record, "combinator", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            context=getattr(record, "context", {}) or {},
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(self.build_event(record).to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """Human-readable formatter that appends the structured context."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
            line = f"{line} [{pairs}]"
        return line


def configure_logging(
    level: LogLevel = LogLevel.INFO,
    fmt: str = "json",
    stream: Any = None,
) -> logging.Logger:
    """
    Attach a single handler to the ``toolchest`` logger.

    Calling this again replaces the handler installed by the previous call
    rather than stacking a second one.
    """
    if fmt not in ("json", "text"):
        raise ValueError(f"Unknown log format: {fmt}")

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, level.value.upper()))

    for handler in list(root.handlers):
        if getattr(handler, "_toolchest_managed", False):
            root.removeHandler(handler)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())
    handler._toolchest_managed = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root


def configure_from_config() -> logging.Logger:
    """Configure logging from the ``observability`` config section."""
    from toolchest.config import get_config

    config = get_config().observability
    return configure_logging(
        level=LogLevel(config.log_level.get()),
        fmt=config.log_format.get(),
    )


def timed_operation(
    logger: logging.Logger,
    combinator: Combinator,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                status = "completed" if success else "failed"
                logger.log(
                    logging.DEBUG if success else logging.WARNING,
                    "Operation %s %s",
                    operation_name,
                    status,
                    extra=event_extra(combinator, operation_name, duration_ms),
                )
        return wrapper
    return decorator


__all__ = [
    "ROOT_LOGGER_NAME",
    "LogLevel",
    "Combinator",
    "LogEvent",
    "event_extra",
    "StructuredHandler",
    "TextFormatter",
    "configure_logging",
    "configure_from_config",
    "timed_operation",
]
