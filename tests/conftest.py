"""Shared test fixtures."""

from collections.abc import Generator
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import guestgate.database as db_module
from guestgate.config import Settings
from guestgate.controller.mock import MockController
from guestgate.database import get_session
from guestgate.main import app, build_services


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def controller() -> MockController:
    return MockController()


@pytest.fixture
def notifier() -> AsyncMock:
    """Notifier double; every send is an awaitable mock."""
    return AsyncMock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        controller_mode="mock",
        scheduler_enabled=False,
        allow_offline_auth=False,
        cron_secret=None,
        auth_password=None,
        notifier_mode="log",
    )


@pytest.fixture
def client(engine, controller, notifier, test_settings, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to the test engine, a MockController and a mock notifier."""
    monkeypatch.setenv("GUESTGATE_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("GUESTGATE_CONTROLLER_MODE", "none")
    # Patch the module-level engine so lifespan's init_db() and the
    # scheduler's job sessions both use the test engine.
    original_engine = db_module.engine
    db_module.engine = engine

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app) as c:
        build_services(app, test_settings, controller, notifier=notifier)
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine
