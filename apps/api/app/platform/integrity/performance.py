from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, TypeVar

from app.metrics import observe_operation


logger = logging.getLogger("app.integrity.performance")

SLOW_OPERATION_THRESHOLD_MS = 1000.0

F = TypeVar("F", bound=Callable[..., Any])


@dataclass(slots=True)
class _OperationStats:
    count: int = 0
    total_time: float = 0.0
    avg_time: float = 0.0


class PerformanceMonitor:
    """Per-operation timing statistics, in milliseconds.

    Samples above ``slow_threshold_ms`` are logged and counted; they never change
    what the timed call returns or raises.
    """

    def __init__(
        self,
        slow_threshold_ms: float = SLOW_OPERATION_THRESHOLD_MS,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.slow_threshold_ms = slow_threshold_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: dict[str, _OperationStats] = {}

    def start_timer(self, operation: str) -> Callable[[], float]:
        started = self._clock()

        def stop() -> float:
            duration_ms = (self._clock() - started) * 1000
            self.record(operation, duration_ms)
            return duration_ms

        return stop

    def record(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            stats = self._metrics.setdefault(operation, _OperationStats())
            stats.count += 1
            stats.total_time += duration_ms
            stats.avg_time = stats.total_time / stats.count

        slow = duration_ms > self.slow_threshold_ms
        observe_operation(operation, duration_ms / 1000, slow)
        if slow:
            logger.warning(
                "slow_operation",
                extra={"operation": operation, "duration_ms": round(duration_ms, 2)},
            )

    @contextmanager
    def measure(self, operation: str) -> Iterator[None]:
        stop = self.start_timer(operation)
        try:
            yield
        finally:
            stop()

    def monitored(self, operation: str) -> Callable[[F], F]:
        def decorator(func: F) -> F:
            @functools.wraps(func)
            def wrapper(*args: Any, **kwargs: Any) -> Any:
                with self.measure(operation):
                    return func(*args, **kwargs)

            return wrapper  # type: ignore[return-value]

        return decorator

    def get_metrics(self) -> dict[str, dict[str, float]]:
        with self._lock:
            return {
                operation: {"count": stats.count, "total_time": stats.total_time, "avg_time": stats.avg_time}
                for operation, stats in self._metrics.items()
            }

    def get_summary(self) -> dict[str, Any]:
        metrics = self.get_metrics()
        averages = [entry["avg_time"] for entry in metrics.values()]
        return {
            "total_operations": sum(int(entry["count"]) for entry in metrics.values()),
            "average_response_time": sum(averages) / len(averages) if averages else 0.0,
            "slow_operations": [
                {"name": operation, "avg_time": entry["avg_time"], "count": int(entry["count"])}
                for operation, entry in metrics.items()
                if entry["avg_time"] > self.slow_threshold_ms
            ],
        }

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics.clear()
