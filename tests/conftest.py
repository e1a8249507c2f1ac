import os

os.environ.setdefault("PROCESS_VIDEO_ENDPOINT", "http://processor.test/process")
os.environ.setdefault("PROCESS_VIDEO_ENDPOINT_AUTH", "test-token")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "memory://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest

from clipforge.config import Settings
from clipforge.database import build_engine, build_session_factory, init_db
from clipforge.pipeline import build_pipeline

from _testutil import FakeObjectStore, FakeProcessor


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite:///:memory:",
        PROCESS_VIDEO_ENDPOINT="http://processor.test/process",
        PROCESS_VIDEO_ENDPOINT_AUTH="test-token",
        BUCKET_NAME="test-bucket",
        RATE_LIMIT_ENABLED=False,
        WORKFLOW_MAX_RETRIES=1,
    )


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store():
    return FakeObjectStore()


@pytest.fixture
def processor(store):
    return FakeProcessor(store)


@pytest.fixture
def scheduled():
    return []


@pytest.fixture
def pipeline(settings, session_factory, store, processor, scheduled):
    return build_pipeline(
        settings,
        session_factory,
        schedule=scheduled.append,
        store=store,
        processor=processor,
    )
