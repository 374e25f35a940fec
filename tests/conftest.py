from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from backend.app.dependencies import get_invidious_service, reset_cached_dependencies
from backend.app.main import create_app
from backend.app.services.invidious_service import InvidiousService
from tests.support import FakeClock, FakeTransport, build_service


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(transport: FakeTransport, clock: FakeClock) -> InvidiousService:
    return build_service(transport, clock=clock)


@pytest.fixture
def client(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    service: InvidiousService,
) -> Iterator[TestClient]:
    monkeypatch.setenv("MUSIC_STREAM_DATA_DIR", str(tmp_path / "runtime-data"))
    monkeypatch.setenv("MUSIC_STREAM_TELEMETRY_SINK", "none")
    reset_cached_dependencies()

    app = create_app()
    app.dependency_overrides[get_invidious_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client

    reset_cached_dependencies()
