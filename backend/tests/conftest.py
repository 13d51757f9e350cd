from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient

from app.core.db import ConnectionManager, reset_connection_manager
from app.core.db.backoff import BackoffPolicy
from app.main import app
from tests.utils.engine import FakeEngine, RecordingSleep


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def manager(fake_engine: FakeEngine) -> Generator[ConnectionManager, None, None]:
    """Process-wide manager backed by the fake engine; the probe never fires on its own."""
    m = ConnectionManager(
        engine_factory=lambda: fake_engine,  # type: ignore[arg-type,return-value]
        policy=BackoffPolicy(),
        probe_interval=3600,
        sleep=RecordingSleep(),
    )
    reset_connection_manager(m)
    yield m
    reset_connection_manager()


@pytest.fixture
def client(manager: ConnectionManager) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c
