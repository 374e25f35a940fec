from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.services.circuit_breaker import CircuitBreakerRegistry
from backend.app.services.instance_metrics import InstanceMetricsStore
from backend.app.services.invidious_service import InvidiousService
from backend.app.services.invidious_transport import UrllibTransport
from backend.app.services.result_cache import InMemoryResultCache
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_invidious_service() -> InvidiousService:
    settings = get_settings()
    return InvidiousService(
        settings.invidious_instances,
        transport=UrllibTransport(user_agent=settings.invidious_user_agent),
        cache=InMemoryResultCache(),
        metrics_store=InstanceMetricsStore(),
        circuit_breakers=CircuitBreakerRegistry(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            open_seconds=settings.circuit_breaker_open_seconds,
        ),
        request_timeout_seconds=settings.invidious_request_timeout_seconds,
        stream_cache_ttl_seconds=settings.stream_cache_ttl_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_invidious_service.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
