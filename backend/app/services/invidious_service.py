from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from time import perf_counter
from typing import Any, Literal, TypeVar, cast
from urllib.parse import quote, urlencode

from backend.app.services.circuit_breaker import CircuitBreakerRegistry
from backend.app.services.instance_metrics import InstanceMetricsStore
from backend.app.services.instance_selector import InstanceSelector, score_instance
from backend.app.services.invidious_transport import Transport, TransportError
from backend.app.services.result_cache import ResultCache, stream_cache_key
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("music_stream.invidious")

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_STREAM_CACHE_TTL_SECONDS = 5 * 60 * 60
DEFAULT_SEARCH_MAX_RESULTS = 20

OperationKind = Literal["stream", "search"]
DispatchOutcome = Literal[
    "ok",
    "no_instances_available",
    "all_instances_exhausted",
    "cancelled",
]

T = TypeVar("T")


@dataclass(frozen=True)
class StreamResult:
    stream_url: str


@dataclass(frozen=True)
class TrackResult:
    id: str
    title: str
    artist: str
    duration_seconds: int
    thumbnail_url: str


@dataclass(frozen=True)
class InstanceSnapshot:
    instance: str
    total: int
    success: int
    failed: int
    success_rate: float
    avg_response_time_ms: float
    score: float
    circuit_breaker_open: bool
    last_updated: datetime | None


class InvidiousServiceError(Exception):
    pass


class DispatchCancelledError(InvidiousServiceError):
    def __init__(self, operation: OperationKind) -> None:
        super().__init__(f"invidious {operation} dispatch cancelled")
        self.operation = operation


class InstanceAttemptError(InvidiousServiceError):
    """Failure of a single attempt against one instance; absorbed by the failover loop."""

    kind = "attempt_failed"


class NotFoundError(InstanceAttemptError):
    kind = "not_found"


class UpstreamUnavailableError(InstanceAttemptError):
    kind = "upstream_unavailable"

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class MalformedResponseError(InstanceAttemptError):
    kind = "malformed_response"


class InvidiousService:
    def __init__(
        self,
        instances: Sequence[str],
        *,
        transport: Transport,
        cache: ResultCache,
        metrics_store: InstanceMetricsStore | None = None,
        circuit_breakers: CircuitBreakerRegistry | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        stream_cache_ttl_seconds: float = DEFAULT_STREAM_CACHE_TTL_SECONDS,
        telemetry: TelemetryClient | None = None,
        timer: Callable[[], float] = perf_counter,
    ) -> None:
        self._transport = transport
        self._cache = cache
        self._metrics_store = metrics_store if metrics_store is not None else InstanceMetricsStore()
        self._circuit_breakers = (
            circuit_breakers if circuit_breakers is not None else CircuitBreakerRegistry()
        )
        self._selector = InstanceSelector(
            instances,
            metrics_store=self._metrics_store,
            circuit_breakers=self._circuit_breakers,
        )
        self._request_timeout_seconds = request_timeout_seconds
        self._stream_cache_ttl_seconds = stream_cache_ttl_seconds
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._timer = timer
        LOGGER.info(
            "invidious service initialized instances=%s timeout_seconds=%s",
            len(self._selector.instances),
            request_timeout_seconds,
        )

    @property
    def metrics_store(self) -> InstanceMetricsStore:
        return self._metrics_store

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        return self._circuit_breakers

    def resolve_stream(
        self,
        video_id: str,
        *,
        cancel_event: threading.Event | None = None,
    ) -> StreamResult | None:
        cache_key = stream_cache_key(video_id)
        cached_url = self._cache.get(cache_key)
        if cached_url is not None:
            LOGGER.info("invidious stream cache hit video_id=%s", video_id)
            self._telemetry.emit("invidious.cache.hit", operation="stream")
            return StreamResult(stream_url=cached_url)

        encoded_id = quote(video_id, safe="")
        stream_url = self._dispatch(
            operation="stream",
            subject=video_id,
            build_url=lambda instance: f"{instance}/api/v1/videos/{encoded_id}",
            parse=_select_audio_stream_url,
            cancel_event=cancel_event,
        )
        if stream_url is None:
            return None

        self._cache.set(cache_key, stream_url, self._stream_cache_ttl_seconds)
        return StreamResult(stream_url=stream_url)

    def search(
        self,
        query: str,
        max_results: int = DEFAULT_SEARCH_MAX_RESULTS,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[TrackResult]:
        params = urlencode({"q": query, "type": "video", "sort_by": "relevance"})
        limit = max(0, max_results)
        tracks = self._dispatch(
            operation="search",
            subject=query,
            build_url=lambda instance: f"{instance}/api/v1/search?{params}",
            parse=lambda body: _parse_search_tracks(body, max_results=limit),
            cancel_event=cancel_event,
        )
        return tracks if tracks is not None else []

    def instance_snapshots(self) -> list[InstanceSnapshot]:
        snapshots: list[InstanceSnapshot] = []
        for instance in self._selector.instances:
            metrics = self._metrics_store.get(instance)
            total = metrics.total_requests if metrics is not None else 0
            success = metrics.successful_requests if metrics is not None else 0
            snapshots.append(
                InstanceSnapshot(
                    instance=instance,
                    total=total,
                    success=success,
                    failed=metrics.failed_requests if metrics is not None else 0,
                    success_rate=success * 100.0 / total if total > 0 else 0.0,
                    avg_response_time_ms=(
                        metrics.average_response_time_ms if metrics is not None else 0.0
                    ),
                    score=score_instance(metrics),
                    circuit_breaker_open=self._circuit_breakers.is_open(instance),
                    last_updated=metrics.last_updated if metrics is not None else None,
                )
            )
        return snapshots

    def _dispatch(
        self,
        *,
        operation: OperationKind,
        subject: str,
        build_url: Callable[[str], str],
        parse: Callable[[str], T],
        cancel_event: threading.Event | None,
    ) -> T | None:
        started_at = self._timer()
        self._raise_if_cancelled(operation, cancel_event, started_at=started_at, attempts=0)

        instances = self._selector.ranked_instances()
        if not instances:
            LOGGER.error("invidious %s no available instances subject=%s", operation, subject)
            self._emit_dispatch_finish(
                operation,
                outcome="no_instances_available",
                attempts=0,
                started_at=started_at,
            )
            return None

        attempts = 0
        for instance in instances:
            self._raise_if_cancelled(
                operation, cancel_event, started_at=started_at, attempts=attempts
            )
            attempts += 1
            LOGGER.info("invidious %s trying instance=%s subject=%s", operation, instance, subject)
            attempt_started_at = self._timer()
            try:
                result = self._attempt(instance, build_url(instance), parse)
            except InstanceAttemptError as exc:
                response_time_ms = self._elapsed_ms(attempt_started_at)
                self._raise_if_cancelled(
                    operation, cancel_event, started_at=started_at, attempts=attempts
                )
                self._record_failure(operation, instance, exc, response_time_ms)
                continue

            response_time_ms = self._elapsed_ms(attempt_started_at)
            self._raise_if_cancelled(
                operation, cancel_event, started_at=started_at, attempts=attempts
            )
            self._record_success(operation, instance, response_time_ms)
            self._emit_dispatch_finish(
                operation,
                outcome="ok",
                attempts=attempts,
                started_at=started_at,
                instance=instance,
            )
            return result

        LOGGER.error(
            "invidious %s all instances failed subject=%s attempts=%s",
            operation,
            subject,
            attempts,
        )
        self._emit_dispatch_finish(
            operation,
            outcome="all_instances_exhausted",
            attempts=attempts,
            started_at=started_at,
        )
        return None

    def _attempt(self, instance: str, url: str, parse: Callable[[str], T]) -> T:
        try:
            response = self._transport.get(url, timeout_seconds=self._request_timeout_seconds)
        except TransportError as exc:
            raise UpstreamUnavailableError(str(exc), timed_out=exc.timed_out) from exc
        except Exception as exc:
            LOGGER.warning("invidious unexpected transport error instance=%s", instance, exc_info=True)
            raise UpstreamUnavailableError(f"unexpected error: {exc}") from exc

        if not response.ok:
            raise UpstreamUnavailableError(f"upstream returned status {response.status_code}")
        return parse(response.body)

    def _record_success(
        self,
        operation: OperationKind,
        instance: str,
        response_time_ms: float,
    ) -> None:
        self._metrics_store.update(instance, success=True, response_time_ms=response_time_ms)
        self._circuit_breakers.record_success(instance)
        LOGGER.info(
            "invidious %s succeeded instance=%s response_time_ms=%.0f",
            operation,
            instance,
            response_time_ms,
        )
        self._telemetry.emit(
            "invidious.attempt.finish",
            operation=operation,
            instance=instance,
            outcome="ok",
            duration_ms=int(response_time_ms),
        )

    def _record_failure(
        self,
        operation: OperationKind,
        instance: str,
        error: InstanceAttemptError,
        response_time_ms: float,
    ) -> None:
        self._metrics_store.update(instance, success=False, response_time_ms=response_time_ms)
        opened = self._circuit_breakers.record_failure(instance)
        LOGGER.warning(
            "invidious %s failed instance=%s kind=%s timed_out=%s error=%s",
            operation,
            instance,
            error.kind,
            isinstance(error, UpstreamUnavailableError) and error.timed_out,
            error,
        )
        self._telemetry.emit(
            "invidious.attempt.finish",
            operation=operation,
            instance=instance,
            outcome=error.kind,
            duration_ms=int(response_time_ms),
        )
        if opened:
            self._telemetry.emit("invidious.breaker.opened", instance=instance)

    def _raise_if_cancelled(
        self,
        operation: OperationKind,
        cancel_event: threading.Event | None,
        *,
        started_at: float,
        attempts: int,
    ) -> None:
        if cancel_event is None or not cancel_event.is_set():
            return
        LOGGER.info("invidious %s cancelled attempts=%s", operation, attempts)
        self._emit_dispatch_finish(
            operation,
            outcome="cancelled",
            attempts=attempts,
            started_at=started_at,
        )
        raise DispatchCancelledError(operation)

    def _emit_dispatch_finish(
        self,
        operation: OperationKind,
        *,
        outcome: DispatchOutcome,
        attempts: int,
        started_at: float,
        instance: str | None = None,
    ) -> None:
        self._telemetry.emit(
            "invidious.dispatch.finish",
            operation=operation,
            outcome=outcome,
            attempts=attempts,
            instance=instance,
            duration_ms=int(self._elapsed_ms(started_at)),
        )

    def _elapsed_ms(self, started_at: float) -> float:
        return (self._timer() - started_at) * 1000


def _select_audio_stream_url(body: str) -> str:
    payload = _parse_json(body)
    if not isinstance(payload, dict):
        raise MalformedResponseError("expected a video object")
    video = _as_dict(payload)

    raw_formats = video.get("adaptiveFormats")
    if raw_formats is not None and not isinstance(raw_formats, list):
        raise MalformedResponseError("adaptiveFormats is not a list")
    formats = _as_list(raw_formats)
    if not formats:
        raise NotFoundError("no adaptive formats")

    best_format: dict[str, Any] | None = None
    best_bitrate = 0
    for raw_format in formats:
        if not isinstance(raw_format, dict):
            raise MalformedResponseError("adaptive format is not an object")
        stream_format = _as_dict(raw_format)
        format_type = stream_format.get("type")
        if not isinstance(format_type, str) or "audio" not in format_type:
            continue
        bitrate = _coerce_int(stream_format.get("bitrate")) or 0
        if best_format is None or bitrate > best_bitrate:
            best_format = stream_format
            best_bitrate = bitrate

    if best_format is None:
        raise NotFoundError("no audio formats")
    stream_url = _coerce_nonempty_string(best_format.get("url"))
    if stream_url is None:
        raise NotFoundError("best audio format has no url")
    return stream_url


def _parse_search_tracks(body: str, *, max_results: int) -> list[TrackResult]:
    payload = _parse_json(body)
    if not isinstance(payload, list):
        raise MalformedResponseError("expected a list of search results")
    items = _as_list(payload)
    if not items:
        raise NotFoundError("no search results")

    tracks: list[TrackResult] = []
    for raw_item in items[:max_results]:
        if not isinstance(raw_item, dict):
            raise MalformedResponseError("search result is not an object")
        tracks.append(_track_from_search_item(_as_dict(raw_item)))
    return tracks


def _track_from_search_item(item: dict[str, Any]) -> TrackResult:
    thumbnails = _as_list(item.get("videoThumbnails"))
    thumbnail_url = ""
    if thumbnails:
        thumbnail_url = _coerce_string(_as_dict(thumbnails[0]).get("url"))
    return TrackResult(
        id=_coerce_string(item.get("videoId")),
        title=_coerce_string(item.get("title")),
        artist=_coerce_string(item.get("author")),
        duration_seconds=_coerce_int(item.get("lengthSeconds")) or 0,
        thumbnail_url=thumbnail_url,
    )


def _parse_json(body: str) -> object:
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"invalid JSON: {exc.msg}") from exc


def _coerce_string(raw_value: object) -> str:
    if isinstance(raw_value, str):
        return raw_value
    return ""


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return None
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value.strip())
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
