from __future__ import annotations

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from backend.app.services.circuit_breaker import CircuitBreakerRegistry
from backend.app.services.instance_metrics import InstanceMetricsStore
from backend.app.services.invidious_service import InvidiousService
from backend.app.services.invidious_transport import TransportError, TransportResponse
from backend.app.services.result_cache import InMemoryResultCache

INSTANCE_A = "https://inv-a.example"
INSTANCE_B = "https://inv-b.example"
INSTANCE_C = "https://inv-c.example"

Handler = Callable[[str], TransportResponse]


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Monotonic seconds; every reading advances by `step` to simulate latency."""

    def __init__(self, step: float = 0.0) -> None:
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


class FakeTransport:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self._handlers: dict[str, Handler | TransportResponse | Exception] = {}

    def route(self, instance: str, outcome: Handler | TransportResponse | Exception) -> None:
        self._handlers[instance] = outcome

    def get(self, url: str, *, timeout_seconds: float) -> TransportResponse:
        assert timeout_seconds > 0
        self.calls.append(url)
        for instance, outcome in self._handlers.items():
            if not url.startswith(instance):
                continue
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, TransportResponse):
                return outcome
            return outcome(url)
        raise TransportError(f"no route for {url}")


def json_response(payload: Any, *, status_code: int = 200) -> TransportResponse:
    return TransportResponse(status_code=status_code, body=json.dumps(payload))


def video_payload(*formats: dict[str, Any]) -> dict[str, Any]:
    return {"title": "Song", "videoId": "abc", "adaptiveFormats": list(formats)}


def search_payload(count: int) -> list[dict[str, Any]]:
    return [
        {
            "videoId": f"vid{index:02d}",
            "title": f"Track {index}",
            "author": f"Artist {index}",
            "lengthSeconds": 180 + index,
            "videoThumbnails": [
                {"quality": "maxres", "url": f"https://img.example/{index}/maxres.jpg"},
                {"quality": "default", "url": f"https://img.example/{index}/default.jpg"},
            ],
        }
        for index in range(count)
    ]


def build_service(
    transport: FakeTransport,
    *,
    instances: tuple[str, ...] = (INSTANCE_A, INSTANCE_B, INSTANCE_C),
    clock: FakeClock | None = None,
    timer: FakeTimer | None = None,
    cache: InMemoryResultCache | None = None,
) -> InvidiousService:
    resolved_clock = clock or FakeClock()
    return InvidiousService(
        instances,
        transport=transport,
        cache=cache or InMemoryResultCache(),
        metrics_store=InstanceMetricsStore(clock=resolved_clock),
        circuit_breakers=CircuitBreakerRegistry(clock=resolved_clock),
        timer=timer or FakeTimer(step=0.05),
    )


