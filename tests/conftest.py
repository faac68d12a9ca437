# tests/conftest.py
"""
Fixtures and test setup for the Pytest suite.
"""

import json
import os
from datetime import datetime, timedelta
from unittest.mock import MagicMock, AsyncMock

import pytest

# Set test environment variables BEFORE any application code is imported.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["API_KEY"] = "test_api_key"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "true"
os.environ.pop("SLACK_WEBHOOK_URL", None)
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

from fakeredis import FakeServer, aioredis as fake_aioredis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from healguard.boot import build_services
from healguard.infrastructure.cache import RedisCache
from healguard.infrastructure.control.controller import ControlResult
from healguard.infrastructure.db.base import _custom_json_serializer
from healguard.infrastructure.db.models import Base, HealthWindow
from healguard.domain.entities import ComponentStatus

OWNER = "ops@example.com"
T0 = datetime(2026, 10, 19, 12, 0, 0)


@pytest.fixture(scope="function")
def db_engine():
    """A private in-memory database per test; every connection sees the same schema."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        json_serializer=lambda obj: json.dumps(obj, default=_custom_json_serializer),
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Services commit and roll back on their own, so the session is a real one."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mock_notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.dispatch = AsyncMock(return_value={"system": True})
    notifier.drain = AsyncMock()
    return notifier


@pytest.fixture
def mock_controller() -> MagicMock:
    controller = MagicMock()
    controller.base_url = ""
    controller.perform = AsyncMock(return_value=ControlResult(ok=True, payload={"accepted": True}, message="accepted"))
    return controller


@pytest.fixture
def cache() -> RedisCache:
    return RedisCache(client=fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True))


@pytest.fixture
def services(mock_notifier, mock_controller, cache):
    """
    Builds the application services with mocked external dependencies
    (notifier, control plane) and an in-process Redis.
    """
    return build_services(notifier=mock_notifier, cache=cache, controller=mock_controller)


def make_window(owner_id=OWNER, component_type="api", component_name="checkout", window_start=T0,
                seconds=60, latency_p95_ms=100.0, error_rate=0.0, error_count=0, metrics_avg=None,
                status=ComponentStatus.HEALTHY, sample_count=10) -> HealthWindow:
    """Unsaved HealthWindow with sensible defaults for rule and recovery tests."""
    return HealthWindow(
        owner_id=owner_id,
        component_type=component_type,
        component_name=component_name,
        window_start=window_start,
        window_end=window_start + timedelta(seconds=seconds),
        sample_count=sample_count,
        latency_p50_ms=latency_p95_ms / 2,
        latency_p95_ms=latency_p95_ms,
        latency_p99_ms=latency_p95_ms * 1.1,
        error_count=error_count,
        error_rate=error_rate,
        availability_percentage=100.0 * (1.0 - error_rate),
        status=status,
        metrics_avg=metrics_avg or {},
    )
