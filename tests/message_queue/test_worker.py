"""
Tests for JobWorker and PeriodicSweep.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from workqueue.message_queue import JobWorker, PeriodicSweep, QueueStoreError
from workqueue.models.queue_item import ItemStatus, JobType
from workqueue.services.job_handlers import JobHandlerRegistry, build_default_registry


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def worker(job_store, registry, settings, clock):
    return JobWorker(job_store, registry, settings, clock=clock)


async def enqueue_job(store, job_type, payload, key):
    return await store.enqueue(payload, "org-1", key, job_type=job_type)


class TestJobWorker:
    """Test suite for JobWorker.run_once."""

    async def test_successful_job_is_completed(self, worker, job_store, clock):
        job_id = await enqueue_job(job_store, JobType.SYNC_HISTORY, {"contactId": "c1"}, "j1")

        summary = await worker.run_once()

        assert summary == {
            "processed": 1,
            "results": [{"job_id": job_id, "success": True, "status": "completed"}],
        }
        job = await job_store.get(job_id)
        assert job.status == ItemStatus.COMPLETED
        assert job.started_at == clock.now
        assert job.completed_at == clock.now
        assert job.error_log is None

    async def test_failed_job_returns_to_pending(self, worker, job_store):
        job_id = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {}, "j1")

        summary = await worker.run_once()

        result = summary["results"][0]
        assert result["success"] is False
        assert result["status"] == "pending"
        assert "contactId" in result["error"]

        job = await job_store.get(job_id)
        assert job.status == ItemStatus.PENDING
        assert job.attempts == 1
        assert "missing payload fields" in job.error_log

    async def test_unknown_job_type_fails_with_descriptive_error(self, worker, job_store):
        job_id = await enqueue_job(job_store, JobType.SEND_NOTIFICATION, {"message": "hi"}, "j1")

        summary = await worker.run_once()

        assert summary["results"][0]["error"] == "Unknown job type: send_notification"
        assert (await job_store.get(job_id)).attempts == 1

    async def test_job_fails_for_good_at_attempt_cap(self, worker, job_store):
        """After job_max_attempts failed runs the job is failed, never pending again."""
        job_id = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {}, "j1")

        for _ in range(5):
            await worker.run_once()

        job = await job_store.get(job_id)
        assert job.status == ItemStatus.FAILED
        assert job.attempts == 3
        assert (await worker.run_once())["processed"] == 0

    async def test_one_failure_does_not_abort_batch(self, job_store, settings, clock):
        registry = JobHandlerRegistry({
            JobType.SYNC_HISTORY: AsyncMock(side_effect=RuntimeError("api down")),
            JobType.GENERATE_SUMMARY: AsyncMock(return_value={}),
        })
        worker = JobWorker(job_store, registry, settings, clock=clock)
        bad = await enqueue_job(job_store, JobType.SYNC_HISTORY, {}, "bad")
        clock.advance(seconds=1)
        good = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {}, "good")

        summary = await worker.run_once()

        assert summary["processed"] == 2
        assert [r["job_id"] for r in summary["results"]] == [bad, good]
        assert (await job_store.get(bad)).status == ItemStatus.PENDING
        assert (await job_store.get(good)).status == ItemStatus.COMPLETED

    async def test_error_text_with_braces_does_not_abort_batch(self, job_store, settings, clock):
        """Handler errors that look like format fields are logged and recorded verbatim."""
        error = "api replied {'error': 'quota'}"
        registry = JobHandlerRegistry({
            JobType.SYNC_HISTORY: AsyncMock(side_effect=RuntimeError(error)),
            JobType.GENERATE_SUMMARY: AsyncMock(return_value={}),
        })
        worker = JobWorker(job_store, registry, settings, clock=clock)
        bad = await enqueue_job(job_store, JobType.SYNC_HISTORY, {}, "bad")
        clock.advance(seconds=1)
        good = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {}, "good")

        summary = await worker.run_once()

        assert summary["processed"] == 2
        assert summary["results"][0]["error"] == error
        failed = await job_store.get(bad)
        assert failed.status == ItemStatus.PENDING
        assert failed.attempts == 1
        assert failed.error_log == error
        assert (await job_store.get(good)).status == ItemStatus.COMPLETED

    async def test_batch_is_bounded_and_fifo(self, worker, job_store, clock):
        ids = []
        for n in range(7):
            ids.append(await enqueue_job(job_store, JobType.SYNC_HISTORY, {"contactId": "c"}, f"j{n}"))
            clock.advance(seconds=1)

        summary = await worker.run_once()

        assert [r["job_id"] for r in summary["results"]] == ids[:5]

    async def test_store_failure_on_fetch_aborts_run(self, job_store, registry, settings):
        job_store.fetch_batch = AsyncMock(side_effect=QueueStoreError("mongo down"))
        worker = JobWorker(job_store, registry, settings)

        with pytest.raises(QueueStoreError):
            await worker.run_once()

    async def test_job_taken_by_concurrent_worker_is_skipped(self, worker, job_store):
        job_id = await enqueue_job(job_store, JobType.SYNC_HISTORY, {"contactId": "c1"}, "j1")
        job_store.mark_processing = AsyncMock(return_value=False)

        summary = await worker.run_once()

        assert summary["results"][0]["success"] is False
        assert (await job_store.get(job_id)).status == ItemStatus.PENDING


class TestPeriodicSweep:
    """Interval loop around run_once."""

    async def test_runs_until_max_runs(self):
        sweep = AsyncMock()
        sweep.sweep_name = "test"
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        loop = PeriodicSweep(sweep, interval=5, sleep=fake_sleep)
        await loop.start(max_runs=3)

        assert sweep.run_once.await_count == 3
        assert sleeps == [5, 5]
        assert not loop.running

    async def test_failing_run_does_not_stop_loop(self):
        sweep = AsyncMock()
        sweep.sweep_name = "test"
        sweep.run_once.side_effect = [QueueStoreError("down"), {"processed": 0}]

        await PeriodicSweep(sweep, interval=0).start(max_runs=2)

        assert sweep.run_once.await_count == 2

    async def test_stop_ends_loop(self):
        sweep = AsyncMock()
        sweep.sweep_name = "test"
        loop = PeriodicSweep(sweep, interval=0.01)

        task = asyncio.create_task(loop.start())
        await asyncio.sleep(0.05)
        loop.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert sweep.run_once.await_count >= 1
