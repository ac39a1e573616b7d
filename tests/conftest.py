"""
Pytest configuration and shared fixtures
"""
import pytest
import os
import sys
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

from sqlalchemy.orm import sessionmaker

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["BOT_TOKEN"] = "test-bot-token"
os.environ["FAL_KEY"] = "test-fal-key"
os.environ["GOAPI_API_KEY"] = "test-goapi-key"
os.environ["SCHEDULER_ENABLED"] = "false"

# Import after setting env vars
from brainai_bot.db.engine import create_db_engine, init_db
from brainai_bot.services.metrics import get_metrics_collector
from brainai_bot.services.quota_service import QuotaLimits, QuotaStore, ResourceLimits
from brainai_bot.services.usage_store import SqlUsageRowStore
from brainai_bot.services.user_service import UserService


class FakeClock:
    """Settable clock for date math tests"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory database per test"""
    test_engine = create_db_engine("sqlite://")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def clock():
    """Clock starting Wednesday 2024-01-03 12:00 UTC"""
    return FakeClock(datetime(2024, 1, 3, 12, 0))


@pytest.fixture(scope="function")
def user_service(session_factory, clock):
    return UserService(session_factory, clock=clock, premium_duration_days=30)


@pytest.fixture(scope="function")
def limits():
    return QuotaLimits(
        free=ResourceLimits(text=100, image=10, video=5),
        premium=ResourceLimits(text=1000, image=100, video=50),
    )


@pytest.fixture(scope="function")
def row_store(session_factory):
    return SqlUsageRowStore(session_factory)


@pytest.fixture(scope="function")
def quota_store(row_store, user_service, limits, clock):
    return QuotaStore(row_store, user_service, limits, clock=clock)


@pytest.fixture(scope="function")
def no_sleep():
    """Awaitable sleep that returns immediately"""
    return AsyncMock(return_value=None)


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Reset metrics before each test"""
    get_metrics_collector().reset()
    yield
