from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from backend.app.services.invidious_service import (
    DEFAULT_SEARCH_MAX_RESULTS,
    InstanceSnapshot,
    TrackResult,
)

MAX_SEARCH_RESULTS = 50


class SearchRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = ""
    max_results: int = Field(
        default=DEFAULT_SEARCH_MAX_RESULTS,
        ge=1,
        le=MAX_SEARCH_RESULTS,
        validation_alias=AliasChoices("max_results", "maxResults"),
    )

    @field_validator("query", mode="before")
    @classmethod
    def _strip_query(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class Track(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    artist: str
    duration_seconds: int
    thumbnail_url: str

    @classmethod
    def from_result(cls, result: TrackResult) -> Track:
        return cls(
            id=result.id,
            title=result.title,
            artist=result.artist,
            duration_seconds=result.duration_seconds,
            thumbnail_url=result.thumbnail_url,
        )


def _default_tracks() -> list[Track]:
    return []


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tracks: list[Track] = Field(default_factory=_default_tracks)
    success: bool
    error_message: str | None = None


class StreamResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stream_url: str
    success: bool = True


class StreamNotFoundResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = False
    error: str = "Stream not found"


class InstanceStatus(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instance: str
    total: int
    success: int
    failed: int
    success_rate: float
    avg_response_time_ms: float
    score: float
    circuit_breaker_open: bool
    last_updated: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: InstanceSnapshot) -> InstanceStatus:
        return cls(
            instance=snapshot.instance,
            total=snapshot.total,
            success=snapshot.success,
            failed=snapshot.failed,
            success_rate=snapshot.success_rate,
            avg_response_time_ms=snapshot.avg_response_time_ms,
            score=snapshot.score,
            circuit_breaker_open=snapshot.circuit_breaker_open,
            last_updated=snapshot.last_updated,
        )


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str = "healthy"
    timestamp: datetime
    version: str
