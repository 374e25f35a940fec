from __future__ import annotations

from collections.abc import Sequence

from backend.app.services.circuit_breaker import CircuitBreakerRegistry
from backend.app.services.instance_metrics import InstanceMetrics, InstanceMetricsStore

NEUTRAL_SCORE = 50.0
SUCCESS_RATE_WEIGHT = 0.7
RESPONSE_SCORE_WEIGHT = 0.3


def score_instance(metrics: InstanceMetrics | None) -> float:
    if metrics is None or metrics.total_requests == 0:
        return NEUTRAL_SCORE

    success_rate = metrics.successful_requests / metrics.total_requests * 100
    # One point per 10ms of average latency.
    response_score = max(0.0, 100 - metrics.average_response_time_ms / 10)
    return success_rate * SUCCESS_RATE_WEIGHT + response_score * RESPONSE_SCORE_WEIGHT


class InstanceSelector:
    def __init__(
        self,
        instances: Sequence[str],
        *,
        metrics_store: InstanceMetricsStore,
        circuit_breakers: CircuitBreakerRegistry,
    ) -> None:
        self._instances = tuple(instances)
        self._metrics_store = metrics_store
        self._circuit_breakers = circuit_breakers

    @property
    def instances(self) -> tuple[str, ...]:
        return self._instances

    def score(self, instance: str) -> float:
        return score_instance(self._metrics_store.get(instance))

    def ranked_instances(self) -> list[str]:
        # is_available may re-admit an instance whose open window elapsed.
        available = [
            instance
            for instance in self._instances
            if self._circuit_breakers.is_available(instance)
        ]
        scores = {instance: self.score(instance) for instance in available}
        return sorted(available, key=lambda instance: scores[instance], reverse=True)
