from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest

from backend.app.services.circuit_breaker import CircuitBreakerRegistry
from backend.app.services.instance_metrics import InstanceMetricsStore
from backend.app.services.invidious_service import (
    DispatchCancelledError,
    InvidiousService,
    StreamResult,
    TrackResult,
)
from backend.app.services.invidious_transport import TransportError, TransportResponse
from backend.app.services.result_cache import InMemoryResultCache
from backend.app.telemetry import TelemetryClient
from tests.support import (
    INSTANCE_A,
    INSTANCE_B,
    INSTANCE_C,
    FakeClock,
    FakeTimer,
    FakeTransport,
    build_service,
    json_response,
    search_payload,
    video_payload,
)

AUDIO_LOW = {"type": "audio/webm; codecs=\"opus\"", "bitrate": "64000", "url": "https://cdn/low"}
AUDIO_HIGH = {"type": "audio/mp4; codecs=\"mp4a.40.2\"", "bitrate": 130000, "url": "https://cdn/high"}
VIDEO_ONLY = {"type": "video/mp4; codecs=\"avc1\"", "bitrate": 2_000_000, "url": "https://cdn/video"}


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _open_breaker(service: InvidiousService, instance: str) -> None:
    for _ in range(3):
        service.circuit_breakers.record_failure(instance)


def test_resolve_stream_picks_highest_bitrate_audio(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(INSTANCE_A, json_response(video_payload(VIDEO_ONLY, AUDIO_LOW, AUDIO_HIGH)))

    result = service.resolve_stream("abc")

    assert result == StreamResult(stream_url="https://cdn/high")
    assert transport.calls == [f"{INSTANCE_A}/api/v1/videos/abc"]
    metrics = service.metrics_store.get(INSTANCE_A)
    assert metrics is not None
    assert metrics.successful_requests == 1
    assert metrics.average_response_time_ms == pytest.approx(50.0)


def test_resolve_stream_bitrate_tie_keeps_first_format(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    first = {"type": "audio/webm", "bitrate": "128000", "url": "https://cdn/first"}
    second = {"type": "audio/mp4", "bitrate": 128000, "url": "https://cdn/second"}
    transport.route(INSTANCE_A, json_response(video_payload(first, second)))

    assert service.resolve_stream("abc") == StreamResult(stream_url="https://cdn/first")


def test_resolve_stream_returns_cached_url_without_transport_call(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(INSTANCE_A, json_response(video_payload(AUDIO_HIGH)))

    first = service.resolve_stream("abc")
    second = service.resolve_stream("abc")

    assert first == second == StreamResult(stream_url="https://cdn/high")
    assert len(transport.calls) == 1
    metrics = service.metrics_store.get(INSTANCE_A)
    assert metrics is not None and metrics.total_requests == 1


def test_resolve_stream_prepopulated_cache_skips_network(transport: FakeTransport) -> None:
    cache = InMemoryResultCache()
    cache.set("stream:abc", "https://cdn/cached", ttl_seconds=3600)
    service = build_service(transport, cache=cache)

    assert service.resolve_stream("abc") == StreamResult(stream_url="https://cdn/cached")
    assert transport.calls == []
    assert all(service.metrics_store.get(instance) is None for instance in (INSTANCE_A, INSTANCE_B))


def test_resolve_stream_fails_over_from_higher_scored_instance(transport: FakeTransport) -> None:
    service = build_service(transport, instances=(INSTANCE_B, INSTANCE_A))
    service.metrics_store.update(INSTANCE_A, success=True, response_time_ms=1000 / 3)
    service.metrics_store.update(INSTANCE_B, success=True, response_time_ms=2500 / 3)
    service.metrics_store.update(INSTANCE_B, success=False, response_time_ms=100)
    assert service.instance_snapshots()[1].score == pytest.approx(90.0)
    assert service.instance_snapshots()[0].score == pytest.approx(40.0)

    transport.route(INSTANCE_A, TransportResponse(status_code=503, body="busy"))
    transport.route(INSTANCE_B, json_response(video_payload(AUDIO_LOW)))

    result = service.resolve_stream("abc")

    assert result == StreamResult(stream_url="https://cdn/low")
    assert [call.split("/api/")[0] for call in transport.calls] == [INSTANCE_A, INSTANCE_B]
    metrics_a = service.metrics_store.get(INSTANCE_A)
    metrics_b = service.metrics_store.get(INSTANCE_B)
    assert metrics_a is not None and metrics_a.failed_requests == 1
    assert metrics_b is not None and metrics_b.successful_requests == 2


@pytest.mark.parametrize(
    "outcome",
    [
        TransportResponse(status_code=404, body="{}"),
        TransportResponse(status_code=200, body="<html>blocked</html>"),
        TransportResponse(status_code=200, body="[]"),
        json_response({"title": "no formats"}),
        json_response(video_payload()),
        json_response({"adaptiveFormats": "not-a-list"}),
        json_response(video_payload(VIDEO_ONLY)),
        json_response(video_payload({"type": "audio/webm", "bitrate": 1})),
        json_response(video_payload("audio/webm")),
        TransportError("connection refused"),
        TransportError("timed out", timed_out=True),
        RuntimeError("boom"),
    ],
)
def test_resolve_stream_attempt_failures_fall_through(
    service: InvidiousService,
    transport: FakeTransport,
    outcome: TransportResponse | Exception,
) -> None:
    transport.route(INSTANCE_A, outcome)
    transport.route(INSTANCE_B, json_response(video_payload(AUDIO_HIGH)))

    assert service.resolve_stream("abc") == StreamResult(stream_url="https://cdn/high")

    metrics_a = service.metrics_store.get(INSTANCE_A)
    assert metrics_a is not None
    assert metrics_a.failed_requests == 1
    assert metrics_a.successful_requests == 0
    state_a = service.circuit_breakers.get_state(INSTANCE_A)
    assert state_a is not None and state_a.consecutive_failures == 1


def test_resolve_stream_all_instances_exhausted(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    for instance in (INSTANCE_A, INSTANCE_B, INSTANCE_C):
        transport.route(instance, TransportResponse(status_code=500, body=""))

    assert service.resolve_stream("abc") is None
    assert len(transport.calls) == 3
    assert service.resolve_stream("abc") is None
    assert len(transport.calls) == 6

    # Third exhausted dispatch opens every breaker.
    assert service.resolve_stream("abc") is None
    assert all(service.circuit_breakers.is_open(i) for i in (INSTANCE_A, INSTANCE_B, INSTANCE_C))


def test_resolve_stream_with_all_circuits_open_makes_no_calls(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    for instance in (INSTANCE_A, INSTANCE_B, INSTANCE_C):
        _open_breaker(service, instance)
    transport.route(INSTANCE_A, json_response(video_payload(AUDIO_HIGH)))

    assert service.resolve_stream("abc") is None
    assert transport.calls == []


def test_resolve_stream_readmits_instance_after_open_window(
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    service = build_service(transport, instances=(INSTANCE_A,), clock=clock)
    _open_breaker(service, INSTANCE_A)
    transport.route(INSTANCE_A, json_response(video_payload(AUDIO_HIGH)))

    assert service.resolve_stream("abc") is None
    clock.advance(minutes=5)
    assert service.resolve_stream("abc") == StreamResult(stream_url="https://cdn/high")


def test_resolve_stream_escapes_video_id(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(INSTANCE_A, json_response(video_payload(AUDIO_HIGH)))
    service.resolve_stream("a/b c")
    assert transport.calls == [f"{INSTANCE_A}/api/v1/videos/a%2Fb%20c"]


def test_search_truncates_and_preserves_upstream_order(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(INSTANCE_A, json_response(search_payload(20)))

    tracks = service.search("test", 5)

    assert [track.id for track in tracks] == ["vid00", "vid01", "vid02", "vid03", "vid04"]
    assert tracks[1] == TrackResult(
        id="vid01",
        title="Track 1",
        artist="Artist 1",
        duration_seconds=181,
        thumbnail_url="https://img.example/1/maxres.jpg",
    )
    query = parse_qs(urlsplit(transport.calls[0]).query)
    assert urlsplit(transport.calls[0]).path == "/api/v1/search"
    assert query == {"q": ["test"], "type": ["video"], "sort_by": ["relevance"]}


def test_search_maps_missing_fields_to_defaults(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(
        INSTANCE_A,
        json_response([{"videoId": "x1", "lengthSeconds": "245"}, {"title": "Only title"}]),
    )

    tracks = service.search("lofi")

    assert tracks == [
        TrackResult(id="x1", title="", artist="", duration_seconds=245, thumbnail_url=""),
        TrackResult(id="", title="Only title", artist="", duration_seconds=0, thumbnail_url=""),
    ]


def test_search_empty_result_falls_through_to_next_instance(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    transport.route(INSTANCE_A, json_response([]))
    transport.route(INSTANCE_B, json_response(search_payload(3)))

    tracks = service.search("test", 20)

    assert len(tracks) == 3
    metrics_a = service.metrics_store.get(INSTANCE_A)
    assert metrics_a is not None and metrics_a.failed_requests == 1


def test_search_is_never_cached(service: InvidiousService, transport: FakeTransport) -> None:
    transport.route(INSTANCE_A, json_response(search_payload(2)))

    service.search("same query")
    service.search("same query")

    assert len(transport.calls) == 2


def test_search_returns_empty_list_when_everything_fails(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    for instance in (INSTANCE_A, INSTANCE_B, INSTANCE_C):
        transport.route(instance, json_response({"error": "nope"}))

    assert service.search("test") == []
    assert len(transport.calls) == 3


def test_cancel_before_dispatch_raises_without_calls(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(DispatchCancelledError):
        service.resolve_stream("abc", cancel_event=cancel_event)
    with pytest.raises(DispatchCancelledError):
        service.search("test", cancel_event=cancel_event)
    assert transport.calls == []


def test_cancel_during_attempt_discards_outcome_and_skips_rest(
    service: InvidiousService,
    transport: FakeTransport,
) -> None:
    cancel_event = threading.Event()

    def _cancel_then_fail(url: str) -> TransportResponse:
        _ = url
        cancel_event.set()
        return TransportResponse(status_code=502, body="")

    transport.route(INSTANCE_A, _cancel_then_fail)
    transport.route(INSTANCE_B, json_response(video_payload(AUDIO_HIGH)))

    with pytest.raises(DispatchCancelledError) as exc_info:
        service.resolve_stream("abc", cancel_event=cancel_event)

    assert exc_info.value.operation == "stream"
    assert len(transport.calls) == 1
    assert service.metrics_store.get(INSTANCE_A) is None
    assert service.circuit_breakers.get_state(INSTANCE_A) is None


def test_instance_snapshots_report_metrics_and_breakers(
    service: InvidiousService,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.route(INSTANCE_A, json_response(video_payload(AUDIO_HIGH)))
    service.resolve_stream("abc")
    _open_breaker(service, INSTANCE_C)

    snapshots = {snapshot.instance: snapshot for snapshot in service.instance_snapshots()}

    assert list(snapshots) == [INSTANCE_A, INSTANCE_B, INSTANCE_C]
    assert snapshots[INSTANCE_A].total == 1
    assert snapshots[INSTANCE_A].success_rate == 100.0
    assert snapshots[INSTANCE_A].last_updated == clock.now
    assert snapshots[INSTANCE_B].score == 50.0
    assert snapshots[INSTANCE_B].success_rate == 0.0
    assert snapshots[INSTANCE_B].last_updated is None
    assert snapshots[INSTANCE_C].circuit_breaker_open is True


def test_dispatch_emits_attempt_and_dispatch_telemetry(transport: FakeTransport) -> None:
    sink = _CaptureSink()
    clock = FakeClock()
    service = InvidiousService(
        (INSTANCE_A, INSTANCE_B),
        transport=transport,
        cache=InMemoryResultCache(),
        metrics_store=InstanceMetricsStore(clock=clock),
        circuit_breakers=CircuitBreakerRegistry(failure_threshold=1, clock=clock),
        telemetry=TelemetryClient(enabled=True, sink=sink),
        timer=FakeTimer(step=0.01),
    )
    transport.route(INSTANCE_A, TransportError("refused"))
    transport.route(INSTANCE_B, json_response(video_payload(AUDIO_HIGH)))

    service.resolve_stream("abc")
    service.resolve_stream("abc")

    names = [name for name, _ in sink.events]
    assert names == [
        "invidious.attempt.finish",
        "invidious.breaker.opened",
        "invidious.attempt.finish",
        "invidious.dispatch.finish",
        "invidious.cache.hit",
    ]
    assert sink.events[0][1]["outcome"] == "upstream_unavailable"
    assert sink.events[3][1]["outcome"] == "ok"
    assert sink.events[3][1]["attempts"] == 2
    assert sink.events[3][1]["instance"] == INSTANCE_B
