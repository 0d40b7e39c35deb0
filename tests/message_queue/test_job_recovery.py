"""
Tests for JobRecoverySweeper.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from workqueue.message_queue import JobRecoverySweeper, JobWorker, QueueStoreError
from workqueue.message_queue.recovery import STALLED_JOB_REASON
from workqueue.models.queue_item import ItemStatus, JobType
from workqueue.services.job_handlers import build_default_registry


@pytest.fixture
def sweeper(job_store, settings, clock):
    return JobRecoverySweeper(job_store, settings, clock=clock)


@pytest.fixture
def start_job(job_store, clock):
    """Enqueue a job and claim it for processing `minutes_ago`."""

    async def _start(dedup_key, minutes_ago, attempts=0):
        clock.advance(minutes=-minutes_ago)
        job_id = await job_store.enqueue({"contactId": "c1"}, "org-1", dedup_key, job_type=JobType.SYNC_HISTORY)
        for _ in range(attempts):
            await job_store.mark_pending_with_error(job_id, "earlier failure")
        await job_store.mark_processing(job_id)
        clock.advance(minutes=minutes_ago)
        return job_id

    return _start


class TestJobRecoverySweeper:

    async def test_stalled_job_goes_back_to_pending(self, job_store, sweeper, start_job):
        job_id = await start_job("j1", minutes_ago=10)

        summary = await sweeper.run_once()

        assert summary == {"recovered": 1, "failed": 0}
        job = await job_store.get(job_id)
        assert job.status == ItemStatus.PENDING
        assert job.attempts == 1
        assert job.error_log == STALLED_JOB_REASON

    async def test_stalled_job_at_attempt_cap_is_failed(self, job_store, sweeper, start_job):
        job_id = await start_job("j1", minutes_ago=10, attempts=2)

        summary = await sweeper.run_once()

        assert summary == {"recovered": 0, "failed": 1}
        job = await job_store.get(job_id)
        assert job.status == ItemStatus.FAILED
        assert job.attempts == 3

    async def test_recently_started_job_is_left_alone(self, job_store, sweeper, clock):
        """An old job claimed a minute ago is still running."""
        clock.advance(minutes=-30)
        job_id = await job_store.enqueue({}, "org-1", "j1", job_type=JobType.SYNC_HISTORY)
        clock.advance(minutes=29)
        await job_store.mark_processing(job_id)
        clock.advance(minutes=1)

        summary = await sweeper.run_once()

        assert summary == {"recovered": 0, "failed": 0}
        assert (await job_store.get(job_id)).status == ItemStatus.PROCESSING

    async def test_pending_jobs_are_not_touched(self, job_store, sweeper, clock):
        job_id = await job_store.enqueue({}, "org-1", "j1", job_type=JobType.SYNC_HISTORY)
        clock.advance(minutes=30)

        assert await sweeper.run_once() == {"recovered": 0, "failed": 0}
        job = await job_store.get(job_id)
        assert job.status == ItemStatus.PENDING
        assert job.attempts == 0

    async def test_threshold_never_below_job_timeout(self, job_store, settings, clock, start_job):
        settings.job_timeout_seconds = 900
        job_id = await start_job("j1", minutes_ago=10)

        summary = await JobRecoverySweeper(job_store, settings, clock=clock).run_once()

        assert summary == {"recovered": 0, "failed": 0}
        assert (await job_store.get(job_id)).status == ItemStatus.PROCESSING

    async def test_job_finished_meanwhile_is_skipped(self, job_store, sweeper, start_job):
        job_id = await start_job("j1", minutes_ago=10)
        find_stale = job_store.find_stale

        async def find_stale_then_complete(*args, **kwargs):
            stale = await find_stale(*args, **kwargs)
            await job_store.mark_completed(job_id)
            return stale

        job_store.find_stale = find_stale_then_complete

        assert await sweeper.run_once() == {"recovered": 0, "failed": 0}
        job = await job_store.get(job_id)
        assert job.status == ItemStatus.COMPLETED
        assert job.attempts == 0

    async def test_concurrent_sweeps_count_one_attempt(self, job_store, settings, clock, start_job):
        job_id = await start_job("j1", minutes_ago=10)
        find_stale = job_store.find_stale

        async def find_stale_then_yield(*args, **kwargs):
            stale = await find_stale(*args, **kwargs)
            await asyncio.sleep(0)
            return stale

        job_store.find_stale = find_stale_then_yield

        summaries = await asyncio.gather(
            JobRecoverySweeper(job_store, settings, clock=clock).run_once(),
            JobRecoverySweeper(job_store, settings, clock=clock).run_once(),
        )

        assert sorted(summary["recovered"] for summary in summaries) == [0, 1]
        assert (await job_store.get(job_id)).attempts == 1

    async def test_requeued_job_is_picked_up_by_worker(self, job_store, sweeper, start_job, settings, clock):
        job_id = await start_job("j1", minutes_ago=10)
        await sweeper.run_once()

        result = await JobWorker(job_store, build_default_registry(), settings, clock=clock).run_once()

        assert result["processed"] == 1
        assert (await job_store.get(job_id)).status == ItemStatus.COMPLETED

    async def test_store_failure_reading_stale_set_propagates(self, job_store, sweeper):
        job_store.find_stale = AsyncMock(side_effect=QueueStoreError("mongo down"))

        with pytest.raises(QueueStoreError):
            await sweeper.run_once()
