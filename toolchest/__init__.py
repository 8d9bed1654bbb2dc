"""
Toolchest

General purpose utilities. The ``functions`` package holds the function
combinators (debounce, throttle, memoize, retry, rate limiting, timeout,
circuit breaking). ``config`` and ``observability`` provide the shared
configuration and structured logging they rely on.

Copyright (c) 2026 Momentum. All rights reserved.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
