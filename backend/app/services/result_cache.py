from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic
from typing import Protocol


class ResultCache(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        ...


@dataclass(frozen=True)
class _CacheEntry:
    value: str
    expires_at: float


class InMemoryResultCache:
    """Process-local TTL cache; expired entries read as missing and are never purged eagerly."""

    def __init__(self, *, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = _CacheEntry(
                value=value,
                expires_at=self._clock() + max(0.0, ttl_seconds),
            )


def stream_cache_key(video_id: str) -> str:
    return f"stream:{video_id}"
