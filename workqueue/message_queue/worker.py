"""
Queue Workers

JobWorker runs one bounded batch of internal jobs per call. PeriodicSweep
repeats any sweep on a fixed interval for deployments without an external
scheduler.
"""

import asyncio
import datetime as dt
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from loguru import logger
from pydantic import BaseModel

from workqueue.config import Settings, get_settings
from workqueue.message_queue.base import QueueStore
from workqueue.models.base import utc_now
from workqueue.models.queue_item import ItemStatus, QueueItem
from workqueue.services.job_handlers import JobHandlerRegistry
from workqueue.utils.metrics import metrics
from workqueue.utils.observability import log_sweep_summary, log_transition


class JobResult(BaseModel):
    """Per-job entry in the worker's summary."""
    job_id: str
    success: bool
    status: Optional[ItemStatus] = None
    error: Optional[str] = None


class JobWorker:
    """
    Executes pending internal jobs.

    Each run_once() call fetches up to `batch_size` pending jobs with
    attempts below the cap (oldest first) and processes them one by one.
    A failing job never aborts the rest of the batch; only a store failure
    while fetching the batch propagates to the caller.

    The job queue's `attempts` field is owned by this worker.

    Usage:
        worker = JobWorker(job_store, build_default_registry(), settings)
        summary = await worker.run_once()
        # {"processed": 2, "results": [{"job_id": ..., "success": True, ...}]}
    """

    sweep_name = "job_worker"

    def __init__(
        self,
        store: QueueStore,
        registry: JobHandlerRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.store = store
        self.registry = registry
        self.batch_size = settings.job_batch_size
        self.max_attempts = settings.job_max_attempts
        self.timeout = settings.job_timeout_seconds
        self._clock = clock

    async def run_once(self) -> Dict[str, Any]:
        jobs = await self.store.fetch_batch(self.batch_size, self.max_attempts)

        results = []
        for job in jobs:
            results.append(await self._process(job))

        succeeded = sum(1 for r in results if r.success)
        log_sweep_summary(
            self.sweep_name,
            processed=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        metrics.sweep_runs.inc(sweep=self.sweep_name, status="ok")

        return {
            "processed": len(results),
            "results": [r.model_dump(mode="json", exclude_none=True) for r in results],
        }

    async def _process(self, job: QueueItem) -> JobResult:
        try:
            claimed = await self.store.mark_processing(job.id, started_at=self._clock())
            if not claimed:
                logger.bind(job_id=job.id).info(f"Job {job.id} no longer claimable, skipping")
                return JobResult(job_id=job.id, success=False, error="no longer pending")

            handler = self.registry.get(job.job_type)
            await asyncio.wait_for(handler(job), timeout=self.timeout)

        except Exception as e:
            return await self._record_failure(job, e)

        try:
            await self.store.mark_completed(job.id)
        except Exception as e:
            logger.error(f"Job {job.id} succeeded but could not be marked completed: {e}")
            return JobResult(job_id=job.id, success=False, error=str(e))

        metrics.jobs_total.inc(job_type=str(job.job_type), result="completed")
        log_transition(job.id, self.store.name, ItemStatus.COMPLETED, job_type=job.job_type)
        logger.bind(job_id=job.id, job_type=job.job_type, organization_id=job.organization_id).info(
            f"✅ Job {job.id} ({job.job_type}) completed"
        )
        return JobResult(job_id=job.id, success=True, status=ItemStatus.COMPLETED)

    async def _record_failure(self, job: QueueItem, error: Exception) -> JobResult:
        reason = str(error) or error.__class__.__name__
        next_attempts = job.attempts + 1
        final = next_attempts >= self.max_attempts
        status = ItemStatus.FAILED if final else ItemStatus.PENDING

        logger.bind(job_id=job.id, job_type=job.job_type, attempts=next_attempts).error(
            f"❌ Job {job.id} ({job.job_type}) failed, attempt {next_attempts}/{self.max_attempts}: {reason}"
        )

        try:
            if final:
                await self.store.mark_failed(job.id, reason, count_attempt=True)
            else:
                await self.store.mark_pending_with_error(job.id, reason)
        except Exception as e:
            logger.error(f"Could not record failure for job {job.id}: {e}")
            return JobResult(job_id=job.id, success=False, error=reason)

        metrics.jobs_total.inc(job_type=str(job.job_type), result=status.value)
        log_transition(job.id, self.store.name, status, attempts=next_attempts, error=reason)
        return JobResult(job_id=job.id, success=False, status=status, error=reason)


class Sweep(Protocol):
    sweep_name: str

    async def run_once(self) -> Dict[str, Any]:
        ...


class PeriodicSweep:
    """
    Runs a sweep's run_once() on a fixed interval until stopped.

    Overlapping runs are not prevented across processes; store transitions
    keep double-processing safe.

    Attributes:
        sweep: Object with an async run_once()
        interval: Seconds to wait between runs
    """

    def __init__(
        self,
        sweep: Sweep,
        interval: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.sweep = sweep
        self.interval = interval
        self._sleep = sleep
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self, max_runs: Optional[int] = None) -> None:
        """
        Run until stop() is called (or `max_runs` runs have completed).

        A failing run is logged and the loop continues with the next one.
        """
        if self._running:
            logger.warning(f"Sweep {self.sweep.sweep_name} already running")
            return

        self._running = True
        runs = 0
        logger.info(f"🚀 Sweep {self.sweep.sweep_name} started (interval={self.interval}s)")

        try:
            while self._running:
                try:
                    await self.sweep.run_once()
                except Exception as e:
                    metrics.sweep_runs.inc(sweep=self.sweep.sweep_name, status="error")
                    logger.opt(exception=True).error(f"Sweep {self.sweep.sweep_name} run failed: {e}")

                runs += 1
                if max_runs is not None and runs >= max_runs:
                    break

                await self._sleep(self.interval)
        finally:
            self._running = False
            logger.info(f"🛑 Sweep {self.sweep.sweep_name} stopped")

    def stop(self) -> None:
        self._running = False
