import datetime as dt
from typing import Optional

import pytest

from workqueue.config import Settings
from workqueue.message_queue.dispatcher import DispatchError
from workqueue.message_queue.memory import InMemoryQueueStore
from workqueue.models.queue_item import QueueItem
from workqueue.utils.metrics import metrics


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: dt.datetime):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += dt.timedelta(**kwargs)


class FakeProcessorClient:
    """Processor transport that records invocations and fails on demand."""

    def __init__(self, fail_times: int = 0, always_fail: bool = False):
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.invocations: list[QueueItem] = []

    async def invoke(self, item: QueueItem) -> None:
        self.invocations.append(item)
        if self.always_fail or len(self.invocations) <= self.fail_times:
            raise DispatchError(f"processor unreachable for {item.id}")


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts from empty metrics."""
    metrics.reset()
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(dt.datetime(2025, 1, 15, 12, 0, tzinfo=dt.UTC))


@pytest.fixture
def settings() -> Settings:
    """Settings with zero delivery backoff so tests never sleep."""
    return Settings(
        _env_file=None,
        processor_url=None,
        dispatch_retry_max_attempts=3,
        dispatch_retry_initial_delay_seconds=0,
        job_batch_size=5,
        job_max_attempts=3,
        event_batch_size=10,
        event_max_attempts=5,
        recovery_stale_after_minutes=5,
        recovery_batch_size=50,
        recovery_max_retries=3,
        environment="test",
    )


@pytest.fixture
def event_store(clock) -> InMemoryQueueStore:
    return InMemoryQueueStore("webhook_queue", clock=clock)


@pytest.fixture
def job_store(clock) -> InMemoryQueueStore:
    return InMemoryQueueStore("job_queue", clock=clock)


@pytest.fixture
def processor_client() -> FakeProcessorClient:
    return FakeProcessorClient()


@pytest.fixture
def make_processor_client():
    """Factory for processor transports with a failure pattern."""
    return FakeProcessorClient


@pytest.fixture
def enqueue_aged(clock):
    """Enqueue an item whose created_at lies `minutes_ago` in the past."""

    async def _enqueue(
        store: InMemoryQueueStore,
        minutes_ago: float,
        dedup_key: str,
        organization_id: Optional[str] = "org-1",
    ) -> str:
        clock.advance(minutes=-minutes_ago)
        item_id = await store.enqueue({"id": dedup_key}, organization_id, dedup_key)
        clock.advance(minutes=minutes_ago)
        return item_id

    return _enqueue
