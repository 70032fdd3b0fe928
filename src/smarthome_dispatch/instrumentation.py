"""
Timing for transport calls (device API requests, broker publishes).

Slow calls are logged at warning level so backend latency problems show up
before they turn into attempt timeouts.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

__all__ = [
    "measure_time",
    "timed_async",
]

P = ParamSpec("P")
T = TypeVar("T")


def measure_time(start_time: float) -> float:
    """Elapsed milliseconds since a time.perf_counter() reading."""
    return (time.perf_counter() - start_time) * 1000


def timed_async(operation_name: str | None = None) -> Callable:
    """
    Decorator for timing async functions with a configurable threshold warning.

    Disabled via the SMARTHOME_PERF_TRACKING environment variable.

    Example:
        @timed_async("device_api_invoke")
        async def invoke(self, domain, action, entity_id, parameters):
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            from smarthome_dispatch.const import (  # noqa: PLC0415
                SMARTHOME_PERF_THRESHOLD_MS,
                SMARTHOME_PERF_TRACKING,
            )
            from smarthome_dispatch.logging_abstraction import get_logger  # noqa: PLC0415

            if not SMARTHOME_PERF_TRACKING:
                return await func(*args, **kwargs)

            logger = get_logger(__name__)
            op_name = operation_name or func.__name__

            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _log_timing(logger, op_name, measure_time(start_time), SMARTHOME_PERF_THRESHOLD_MS)

        return wrapper

    return decorator


def _log_timing(logger: Any, operation_name: str, elapsed_ms: float, threshold_ms: int) -> None:
    context = {
        "operation": operation_name,
        "duration_ms": round(elapsed_ms, 2),
        "threshold_ms": threshold_ms,
        "exceeded_threshold": elapsed_ms > threshold_ms,
    }
    if elapsed_ms > threshold_ms:
        logger.warning(
            "[%s] slow call: %.1fms (threshold: %dms)",
            operation_name,
            elapsed_ms,
            threshold_ms,
            extra=context,
        )
    else:
        logger.debug("[%s] completed in %.1fms", operation_name, elapsed_ms, extra=context)
