"""
Toolchest Configuration System

Default parameters for every combinator, with YAML files, environment
variables, validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (TOOLCHEST_*)
    2. Runtime overrides
    3. Project config file (./toolchest.yaml, then config/toolchest.yaml)
    4. User config file (~/.toolchest/config.yaml)
    5. Default values

Example toolchest.yaml:

    retry:
      max_attempts: 5
      strategy: exponential_jitter
    rate_limit:
      capacity: 20
      rate_per_second: 5

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

from toolchest.observability import Combinator, timed_operation

T = TypeVar("T")

logger = logging.getLogger(__name__)

STRATEGY_NAMES = ("fixed", "linear", "exponential", "exponential_jitter")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            value = self._coerce(os.environ[self.env_var])
            if self.validator and not self.validator(value):
                raise ValidationError(f"Invalid value in ${self.env_var}: {value!r}")
            return value

        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        """Drop any runtime override."""
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                flag = value.strip().lower()
                if flag in ("true", "1", "yes", "on"):
                    return True  # type: ignore
                if flag in ("false", "0", "no", "off"):
                    return False  # type: ignore
                raise ValueError("expected a boolean")
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            else:
                return value  # type: ignore
        except ValueError as e:
            raise ValidationError(f"Cannot parse ${self.env_var}={value!r}: {e}") from e

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


def _positive(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and x > 0


def _non_negative(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool) and x >= 0


@dataclass
class DebounceConfig:
    """Defaults for debounce()."""
    quiet_period_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.1,
        env_var="TOOLCHEST_DEBOUNCE_QUIET_PERIOD",
        description="Quiet period before a debounced call fires, in seconds",
        validator=_positive,
    ))


@dataclass
class ThrottleConfig:
    """Defaults for throttle()."""
    interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.1,
        env_var="TOOLCHEST_THROTTLE_INTERVAL",
        description="Minimum spacing between throttled executions, in seconds",
        validator=_positive,
    ))
    trailing: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="TOOLCHEST_THROTTLE_TRAILING",
        description="Fire the last suppressed call at the window boundary",
    ))


@dataclass
class MemoizeConfig:
    """Defaults for memoize()."""
    max_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=0,
        env_var="TOOLCHEST_MEMOIZE_MAX_SIZE",
        description="LRU bound on cached entries (0 = unbounded)",
        validator=_non_negative,
    ))


@dataclass
class RetryConfig:
    """Defaults for retry()."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="TOOLCHEST_RETRY_MAX_ATTEMPTS",
        description="Total attempts including the first call",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.1,
        env_var="TOOLCHEST_RETRY_BASE_DELAY",
        description="Delay before the first retry, in seconds",
        validator=_positive,
    ))
    multiplier: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="TOOLCHEST_RETRY_MULTIPLIER",
        description="Growth factor for exponential strategies",
        validator=lambda x: _positive(x) and x >= 1,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="TOOLCHEST_RETRY_MAX_DELAY",
        description="Upper bound on any single retry delay, in seconds",
        validator=_positive,
    ))
    strategy: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="exponential_jitter",
        env_var="TOOLCHEST_RETRY_STRATEGY",
        description="Backoff strategy (fixed, linear, exponential, exponential_jitter)",
        validator=lambda x: x in STRATEGY_NAMES,
    ))


@dataclass
class RateLimitConfig:
    """Defaults for rate_limiter()."""
    capacity: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var="TOOLCHEST_RATE_LIMIT_CAPACITY",
        description="Bucket size (maximum burst)",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))
    rate_per_second: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="TOOLCHEST_RATE_LIMIT_RATE",
        description="Tokens added per second",
        validator=_non_negative,
    ))


@dataclass
class TimeoutConfig:
    """Defaults for with_timeout()."""
    seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="TOOLCHEST_TIMEOUT_SECONDS",
        description="Deadline for a wrapped call, in seconds",
        validator=_positive,
    ))


@dataclass
class CircuitBreakerConfig:
    """Defaults for CircuitBreaker."""
    failure_threshold: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="TOOLCHEST_BREAKER_FAILURE_THRESHOLD",
        description="Consecutive failures before the breaker opens",
        validator=lambda x: isinstance(x, int) and x >= 1,
    ))
    cooldown_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="TOOLCHEST_BREAKER_COOLDOWN",
        description="Time an open breaker waits before probing, in seconds",
        validator=_positive,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="TOOLCHEST_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="TOOLCHEST_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class ToolchestConfig:
    """
    Root configuration: one section per combinator plus observability.

    Values are addressed by dotted path, ``<section>.<field>``.
    """
    debounce: DebounceConfig = field(default_factory=DebounceConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    memoize: MemoizeConfig = field(default_factory=MemoizeConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def values(self) -> Iterator[Tuple[str, ConfigValue[Any]]]:
        """Yield ``(dotted_path, ConfigValue)`` for every setting."""
        for section_name in self.__dataclass_fields__:
            section = getattr(self, section_name)
            for value_name in section.__dataclass_fields__:
                yield f"{section_name}.{value_name}", getattr(section, value_name)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        result: Dict[str, Dict[str, Any]] = {}
        for path, value in self.values():
            section, name = path.split(".", 1)
            result.setdefault(section, {})[name] = value.get()
        return result

    def to_yaml(self) -> str:
        """Effective values as a YAML document loadable by ConfigManager."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


# ════════════════════════════════════════════════════════════════════════════
# FILE SCHEMA
# ════════════════════════════════════════════════════════════════════════════


_POSITIVE = {"type": "number", "exclusiveMinimum": 0}
_NON_NEGATIVE = {"type": "number", "minimum": 0}


def _section(properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "additionalProperties": False, "properties": properties}


CONFIG_FILE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "debounce": _section({"quiet_period_seconds": _POSITIVE}),
        "throttle": _section({
            "interval_seconds": _POSITIVE,
            "trailing": {"type": "boolean"},
        }),
        "memoize": _section({"max_size": {"type": "integer", "minimum": 0}}),
        "retry": _section({
            "max_attempts": {"type": "integer", "minimum": 1},
            "base_delay_seconds": _POSITIVE,
            "multiplier": {"type": "number", "minimum": 1},
            "max_delay_seconds": _POSITIVE,
            "strategy": {"enum": list(STRATEGY_NAMES)},
        }),
        "rate_limit": _section({
            "capacity": {"type": "integer", "minimum": 1},
            "rate_per_second": _NON_NEGATIVE,
        }),
        "timeout": _section({"seconds": _POSITIVE}),
        "circuit_breaker": _section({
            "failure_threshold": {"type": "integer", "minimum": 1},
            "cooldown_seconds": _POSITIVE,
        }),
        "observability": _section({
            "log_level": {"enum": list(LOG_LEVELS)},
            "log_format": {"enum": ["json", "text"]},
        }),
    },
}


def validate_config_document(data: Any) -> List[str]:
    """Validate a parsed config file; returns error messages (empty if valid)."""
    validator = Draft202012Validator(CONFIG_FILE_SCHEMA)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(data), key=lambda e: e.json_path)
    ]


class ConfigManager:
    """
    Process-wide owner of the active ToolchestConfig.

    A thread-safe singleton: every ``ConfigManager()`` returns the same
    instance, so combinators constructed anywhere see the same defaults.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._initialized = False
                cls._instance = instance
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = ToolchestConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ToolchestConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> ToolchestConfig:
        """The active configuration."""
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        """Config files applied so far, in load order."""
        return list(self._config_paths)

    @timed_operation(logger, Combinator.CONFIG, "load_config_file")
    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file, rejecting unknown or invalid keys."""
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"Malformed YAML in {path}: {e}") from e

        if not data:
            return

        errors = validate_config_document(data)
        if errors:
            raise ValidationError(f"Invalid configuration in {path}: " + "; ".join(errors))

        for section, entries in data.items():
            for name, value in entries.items():
                self.set(f"{section}.{name}", value)

        if path not in self._config_paths:
            self._config_paths.append(path)
        logger.debug("Loaded configuration from %s", path)

    def load_defaults(self) -> None:
        """Apply the standard config files that exist, lowest precedence first."""
        candidates = (
            Path.home() / ".toolchest" / "config.yaml",
            Path("config/toolchest.yaml"),
            Path("toolchest.yaml"),
        )

        for path in candidates:
            if not path.exists():
                continue
            try:
                self.load_from_file(path)
            except ConfigError as e:
                logger.warning("Skipping configuration file %s: %s", path, e)

    def _lookup(self, path: str) -> ConfigValue[Any]:
        section_name, _, value_name = path.partition(".")
        section = getattr(self._config, section_name, None)
        fields = getattr(section, "__dataclass_fields__", {})
        if not value_name or value_name not in fields:
            raise ConfigError(f"Invalid config path: {path}")
        return getattr(section, value_name)

    def set(self, path: str, value: Any) -> None:
        """
        Override a value at runtime.

        Example: manager.set("retry.max_attempts", 5)
        """
        self._lookup(path).set(value)

    def get(self, path: str) -> Any:
        """
        Effective value at ``path``, environment overrides included.

        Example: manager.get("retry.max_attempts")
        """
        return self._lookup(path).get()

    def watch(self, callback: Callable[[ToolchestConfig], None]) -> None:
        """Call ``callback(config)`` after every reload()."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Re-apply every previously loaded file, then notify watchers."""
        for path in list(self._config_paths):
            if path.exists():
                self.load_from_file(path)

        for callback in self._watchers:
            callback(self._config)

    def reset(self) -> None:
        """Discard overrides, loaded files and watchers."""
        self._config = ToolchestConfig()
        self._config_paths = []
        self._watchers = []

    def validate(self) -> List[str]:
        """Check every effective value; returns error messages (empty if valid)."""
        errors: List[str] = []
        for path, value in self._config.values():
            try:
                current = value.get()
            except ConfigError as e:
                errors.append(f"{path}: {e}")
                continue
            if value.validator and not value.validator(current):
                errors.append(f"{path}: invalid value {current!r}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting (type, default, env var) for documentation."""
        properties: Dict[str, Dict[str, Any]] = {}
        for path, value in self._config.values():
            section, name = path.split(".", 1)
            entry: Dict[str, Any] = {
                "type": type(value.default).__name__,
                "default": str(value.default),
                "description": value.description,
            }
            if value.env_var:
                entry["env_var"] = value.env_var
            properties.setdefault(section, {})[name] = entry
        return {"properties": properties}


def get_config() -> ToolchestConfig:
    """The active toolchest configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """The configuration manager singleton."""
    return ConfigManager()


__all__ = [
    "ConfigError",
    "ValidationError",
    "ConfigValue",
    "DebounceConfig",
    "ThrottleConfig",
    "MemoizeConfig",
    "RetryConfig",
    "RateLimitConfig",
    "TimeoutConfig",
    "CircuitBreakerConfig",
    "ObservabilityConfig",
    "ToolchestConfig",
    "CONFIG_FILE_SCHEMA",
    "validate_config_document",
    "ConfigManager",
    "get_config",
    "get_config_manager",
]
