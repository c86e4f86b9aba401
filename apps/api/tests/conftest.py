"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database: the schema is created
before and dropped after every test, so nothing leaks between tests.
Redis is replaced by FakeRedis and Celery by a MagicMock.
"""
import fnmatch
import os
import sys
from unittest.mock import MagicMock

import pytest

# Must be set before core.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.cache import CacheLayer  # noqa: E402
from core.database import Base, SessionLocal, engine  # noqa: E402
from services.progress_engine import ProgressEngine  # noqa: E402
from services.recompute_scheduler import RecomputeScheduler  # noqa: E402


class FakeRedis:
    """Minimal in-memory Redis mock for unit tests."""

    def __init__(self):
        self._store: dict = {}
        self._ttls: dict = {}

    def get(self, key):
        return self._store.get(key)

    def setex(self, key, ttl, value):
        self._store[key] = value
        self._ttls[key] = ttl

    def delete(self, *keys):
        deleted = 0
        for k in keys:
            if self._store.pop(k, None) is not None:
                deleted += 1
            self._ttls.pop(k, None)
        return deleted

    def scan_iter(self, match=None, count=None):
        # Redis glob escapes with backslash; fnmatch uses [x] classes
        pattern = (match or "*").replace("\\*", "[*]").replace("\\?", "[?]")
        for key in list(self._store):
            if fnmatch.fnmatchcase(key, pattern):
                yield key

    def ping(self):
        return True


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheLayer(fake_redis)


@pytest.fixture
def celery_mock():
    return MagicMock()


@pytest.fixture
def progress_engine(cache, celery_mock):
    return ProgressEngine(cache=cache, scheduler=RecomputeScheduler(celery_mock), backfill_policy="ignore")

