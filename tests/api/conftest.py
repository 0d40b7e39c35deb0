from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from workqueue.api.main import create_app
from workqueue.core.engine import build_engine


@pytest.fixture
def event_handler():
    """In-process Processor that accepts every event."""
    return AsyncMock()


@pytest.fixture
def engine(event_store, job_store, settings, event_handler, clock):
    return build_engine(event_store, job_store, settings, event_handler=event_handler, clock=clock)


@pytest.fixture
def disabled_engine(event_store, job_store, settings, clock):
    """Engine with no Processor: dispatch and recovery are off."""
    return build_engine(event_store, job_store, settings, clock=clock)


@pytest.fixture
def app(engine):
    return create_app(engine)


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app):
    """Client sharing the test's event loop, for tests that seed the stores."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
