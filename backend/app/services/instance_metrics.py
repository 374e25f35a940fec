from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from threading import Lock


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class InstanceMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    # Mean latency of successful attempts only.
    average_response_time_ms: float = 0.0
    last_updated: datetime | None = None


class InstanceMetricsStore:
    def __init__(self, *, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._lock = Lock()
        self._metrics: dict[str, InstanceMetrics] = {}

    def update(self, instance: str, *, success: bool, response_time_ms: float) -> None:
        with self._lock:
            metrics = self._metrics.setdefault(instance, InstanceMetrics())
            metrics.total_requests += 1
            if success:
                metrics.successful_requests += 1
                count = metrics.successful_requests
                metrics.average_response_time_ms = (
                    metrics.average_response_time_ms * (count - 1) + response_time_ms
                ) / count
            else:
                metrics.failed_requests += 1
            metrics.last_updated = self._clock()

    def get(self, instance: str) -> InstanceMetrics | None:
        with self._lock:
            metrics = self._metrics.get(instance)
            return replace(metrics) if metrics is not None else None
