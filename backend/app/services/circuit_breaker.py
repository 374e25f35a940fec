from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock

LOGGER = logging.getLogger("music_stream.circuit_breaker")

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_OPEN_SECONDS = 300


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class CircuitBreakerState:
    is_open: bool = False
    opened_at: datetime | None = None
    consecutive_failures: int = 0


class CircuitBreakerRegistry:
    """
    Per-instance failure gate.

    An instance opens after `failure_threshold` consecutive failures and is
    re-admitted lazily by `is_available` once `open_seconds` have elapsed.
    There is no persisted half-open state: the re-admitted instance gets a
    normal attempt and starts counting failures from zero again.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        open_seconds: int = DEFAULT_OPEN_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._failure_threshold = max(1, failure_threshold)
        self._open_window = timedelta(seconds=max(0, open_seconds))
        self._clock = clock
        self._lock = Lock()
        self._states: dict[str, CircuitBreakerState] = {}

    def is_available(self, instance: str) -> bool:
        with self._lock:
            state = self._states.get(instance)
            if state is None or not state.is_open:
                return True

            opened_at = state.opened_at or self._clock()
            if self._clock() - opened_at >= self._open_window:
                state.is_open = False
                state.consecutive_failures = 0
                LOGGER.info("circuit breaker reset instance=%s", instance)
                return True
            return False

    def is_open(self, instance: str) -> bool:
        with self._lock:
            state = self._states.get(instance)
            return state is not None and state.is_open

    def record_success(self, instance: str) -> None:
        with self._lock:
            state = self._states.get(instance)
            if state is not None:
                state.consecutive_failures = 0

    def record_failure(self, instance: str) -> bool:
        """Count a failure; returns True when this failure opened the breaker."""
        with self._lock:
            state = self._states.setdefault(instance, CircuitBreakerState())
            state.consecutive_failures += 1
            if state.consecutive_failures < self._failure_threshold:
                return False

            was_open = state.is_open
            state.is_open = True
            state.opened_at = self._clock()
            if was_open:
                return False
            LOGGER.warning(
                "circuit breaker opened instance=%s consecutive_failures=%s",
                instance,
                state.consecutive_failures,
            )
            return True

    def get_state(self, instance: str) -> CircuitBreakerState | None:
        with self._lock:
            state = self._states.get(instance)
            if state is None:
                return None
            return CircuitBreakerState(
                is_open=state.is_open,
                opened_at=state.opened_at,
                consecutive_failures=state.consecutive_failures,
            )
