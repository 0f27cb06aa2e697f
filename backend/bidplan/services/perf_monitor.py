"""Performance monitoring utilities for takeoff-core store operations."""
import time
import logging
import threading
import functools
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("bidplan-api.perf")


def timed_async(func: Callable) -> Callable:
    """
    Decorator that measures async store operations and feeds the tracker.

    Usage::

        @timed_async
        async def sync(self, ...):
            ...
    """
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        failed = False
        try:
            return await func(*args, **kwargs)
        except Exception:
            failed = True
            raise
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            tracker.record_operation(func.__qualname__, duration_ms, failed=failed)
            logger.debug(
                "async function timed",
                extra={
                    "function": func.__qualname__,
                    "duration_ms": duration_ms,
                },
            )
    return wrapper


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for store-operation metrics.

    Tracks:
    - Call count and average duration per operation
    - Slowest operation seen
    - Hard failures (exceptions) and partial failures (per-unit failures in a report)
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._durations: Dict[str, list] = {}      # operation -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}
        self._partial_counts: Dict[str, int] = {}
        self._slowest: Optional[str] = None
        self._slowest_ms: float = 0.0

    def record_operation(self, name: str, duration_ms: float, failed: bool = False) -> None:
        with self._lock:
            self._durations.setdefault(name, []).append(duration_ms)
            if failed:
                self._error_counts[name] = self._error_counts.get(name, 0) + 1
            if duration_ms > self._slowest_ms:
                self._slowest_ms = duration_ms
                self._slowest = name

    def record_partial_failure(self, name: str, count: int = 1) -> None:
        """Units that failed inside an otherwise completed bulk operation."""
        with self._lock:
            self._partial_counts[name] = self._partial_counts.get(name, 0) + count

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "operations": {name: len(d) for name, d in self._durations.items()},
                "avg_duration_ms": {
                    name: round(sum(d) / len(d), 2) if d else 0.0
                    for name, d in self._durations.items()
                },
                "slowest_operation": self._slowest,
                "slowest_operation_ms": round(self._slowest_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_operation": dict(self._error_counts),
                "partial_failures": dict(self._partial_counts),
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._durations.clear()
            self._error_counts.clear()
            self._partial_counts.clear()
            self._slowest = None
            self._slowest_ms = 0.0


# Module-level singleton: import this instance everywhere else.
tracker = PerformanceTracker()
