"""
Recovery Sweepers

RecoverySweeper rescues inbound events stuck in pending/processing past the
staleness threshold, whatever the reason they stalled. Each stale event is
re-dispatched up to `recovery_max_retries` times and dead-lettered after that.

The recovery counter lives in metadata.retry_count, apart from the
Processor-owned `attempts`, so business retries and recovery rescues are
counted separately.

JobRecoverySweeper requeues internal jobs left in processing by a worker that
died mid-run. Jobs have a single counter, the JobWorker-owned `attempts`: a
rescued job costs one attempt and is failed once the cap is reached.
"""

import datetime as dt
from enum import StrEnum
from typing import Callable, Dict, Optional

from loguru import logger

from workqueue.config import Settings, get_settings
from workqueue.message_queue.base import QueueStore
from workqueue.message_queue.dispatcher import Dispatcher
from workqueue.message_queue.event_worker import record_undelivered
from workqueue.models.base import utc_now
from workqueue.models.queue_item import RECOVERED_AT_KEY, RECOVERY_COUNT_KEY, ItemStatus, QueueItem
from workqueue.utils.metrics import metrics
from workqueue.utils.observability import log_sweep_summary, log_transition


RECOVERY_EXHAUSTED_REASON = "max retries exceeded via recovery"
STALLED_JOB_REASON = "job stalled in processing"


class RecoveryOutcome(StrEnum):
    RECOVERED = "recovered"          # re-dispatch delivered
    UNDELIVERED = "undelivered"      # re-dispatch could not be delivered
    DEAD_LETTERED = "dead_lettered"  # recovery ceiling reached
    SKIPPED = "skipped"              # changed concurrently (terminal, ceiling or requeued)


class RecoverySweeper:
    """
    Periodic scan-and-act cycle over the inbound-event queue.

    Per stale item:
    1. Recovery counter at the ceiling -> mark failed (dead-letter), no dispatch
    2. Otherwise bump the counter and stamp recovered_at (persisted first)
    3. Re-dispatch; delivered counts as recovered, undelivered as failed and
       also costs one attempt like any other transport failure

    A store error while reading the stale set propagates to the caller; an
    error on one item is logged and counted as failed.

    Usage:
        sweeper = RecoverySweeper(event_store, dispatcher, settings)
        summary = await sweeper.run_once()  # {"recovered": 2, "failed": 1}
    """

    sweep_name = "recovery"

    def __init__(
        self,
        store: QueueStore,
        dispatcher: Dispatcher,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.store = store
        self.dispatcher = dispatcher
        self.stale_after = dt.timedelta(minutes=settings.recovery_stale_after_minutes)
        self.batch_size = settings.recovery_batch_size
        self.max_retries = settings.recovery_max_retries
        self.max_attempts = settings.event_max_attempts
        self._clock = clock

    async def run_once(self) -> Dict[str, int]:
        now = self._clock()
        stale = await self.store.find_stale(now - self.stale_after, self.batch_size)

        outcomes = {outcome: 0 for outcome in RecoveryOutcome}
        errors = 0

        for item in stale:
            try:
                outcome = await self._recover(item, now)
            except Exception as e:
                errors += 1
                logger.bind(item_id=item.id).opt(exception=True).error(
                    f"Recovery of {self.store.name} item {item.id} failed: {e}"
                )
                continue

            outcomes[outcome] += 1
            metrics.recovery_total.inc(queue=self.store.name, result=outcome.value)

        recovered = outcomes[RecoveryOutcome.RECOVERED]
        failed = (
            outcomes[RecoveryOutcome.UNDELIVERED]
            + outcomes[RecoveryOutcome.DEAD_LETTERED]
            + errors
        )

        log_sweep_summary(
            self.sweep_name,
            queue=self.store.name,
            stale=len(stale),
            recovered=recovered,
            failed=failed,
            dead_lettered=outcomes[RecoveryOutcome.DEAD_LETTERED],
            skipped=outcomes[RecoveryOutcome.SKIPPED],
        )
        metrics.sweep_runs.inc(sweep=self.sweep_name, status="ok")

        return {"recovered": recovered, "failed": failed}

    async def _recover(self, item: QueueItem, now: dt.datetime) -> RecoveryOutcome:
        if item.recovery_count >= self.max_retries:
            if not await self.store.mark_failed(item.id, RECOVERY_EXHAUSTED_REASON):
                return RecoveryOutcome.SKIPPED

            log_transition(item.id, self.store.name, ItemStatus.FAILED, recovery_count=item.recovery_count)
            logger.bind(item_id=item.id, organization_id=item.organization_id).warning(
                f"☠️ {self.store.name} item {item.id} dead-lettered after "
                f"{item.recovery_count} recovery attempts"
            )
            return RecoveryOutcome.DEAD_LETTERED

        # the ceiling is enforced again inside the atomic update
        count = await self.store.increment_recovery_count(item.id, now, ceiling=self.max_retries)
        if count is None:
            return RecoveryOutcome.SKIPPED

        item.metadata = {**item.metadata, RECOVERY_COUNT_KEY: count, RECOVERED_AT_KEY: now}

        result = await self.dispatcher.dispatch(item)
        if not result.delivered:
            await record_undelivered(self.store, item, result, self.max_attempts, now)
            return RecoveryOutcome.UNDELIVERED

        logger.bind(item_id=item.id, recovery_count=count).info(
            f"♻️ Re-dispatched stale {self.store.name} item {item.id} (recovery {count}/{self.max_retries})"
        )
        return RecoveryOutcome.RECOVERED


class JobRecoverySweeper:
    """
    Periodic scan-and-act cycle over the internal-job queue.

    A job is stale when it has been in `processing` longer than the staleness
    threshold (never shorter than the job timeout, so a running handler is
    left alone). Per stale job, with the attempt this run cost counted:
    1. Attempts still below `job_max_attempts` -> back to pending for the worker
    2. Otherwise -> failed (dead-letter)

    Both moves only apply while the job is still `processing`; a job the
    worker finished or another sweep already moved is skipped.

    Pending jobs are not touched: fetch_batch hands every pending job under
    the attempt cap to the worker, so they cannot stall.

    Usage:
        sweeper = JobRecoverySweeper(job_store, settings)
        summary = await sweeper.run_once()  # {"recovered": 1, "failed": 0}
    """

    sweep_name = "job_recovery"

    def __init__(
        self,
        store: QueueStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        settings = settings or get_settings()
        self.store = store
        self.stale_after = max(
            dt.timedelta(minutes=settings.recovery_stale_after_minutes),
            dt.timedelta(seconds=settings.job_timeout_seconds),
        )
        self.batch_size = settings.recovery_batch_size
        self.max_attempts = settings.job_max_attempts
        self._clock = clock

    async def run_once(self) -> Dict[str, int]:
        cutoff = self._clock() - self.stale_after
        candidates = await self.store.find_stale(
            cutoff, self.batch_size, statuses=(ItemStatus.PROCESSING,)
        )
        # created_at only bounds the scan; the job's own run started later
        stale = [job for job in candidates if job.started_at is None or job.started_at < cutoff]

        outcomes = {outcome: 0 for outcome in RecoveryOutcome}
        errors = 0

        for job in stale:
            try:
                outcome = await self._requeue(job)
            except Exception as e:
                errors += 1
                logger.bind(item_id=job.id).opt(exception=True).error(
                    f"Recovery of {self.store.name} job {job.id} failed: {e}"
                )
                continue

            outcomes[outcome] += 1
            metrics.recovery_total.inc(queue=self.store.name, result=outcome.value)

        recovered = outcomes[RecoveryOutcome.RECOVERED]
        failed = outcomes[RecoveryOutcome.DEAD_LETTERED] + errors

        log_sweep_summary(
            self.sweep_name,
            queue=self.store.name,
            stale=len(stale),
            recovered=recovered,
            failed=failed,
            dead_lettered=outcomes[RecoveryOutcome.DEAD_LETTERED],
            skipped=outcomes[RecoveryOutcome.SKIPPED],
        )
        metrics.sweep_runs.inc(sweep=self.sweep_name, status="ok")

        return {"recovered": recovered, "failed": failed}

    async def _requeue(self, job: QueueItem) -> RecoveryOutcome:
        attempts = job.attempts + 1

        if attempts >= self.max_attempts:
            moved = await self.store.mark_failed(
                job.id, STALLED_JOB_REASON, count_attempt=True, expected_status=ItemStatus.PROCESSING
            )
            if not moved:
                return RecoveryOutcome.SKIPPED

            log_transition(job.id, self.store.name, ItemStatus.FAILED, attempts=attempts)
            logger.bind(item_id=job.id, job_type=job.job_type, attempts=attempts).warning(
                f"☠️ Stalled {self.store.name} job {job.id} failed after {attempts} attempts"
            )
            return RecoveryOutcome.DEAD_LETTERED

        moved = await self.store.mark_pending_with_error(
            job.id, STALLED_JOB_REASON, expected_status=ItemStatus.PROCESSING
        )
        if not moved:
            return RecoveryOutcome.SKIPPED

        log_transition(job.id, self.store.name, ItemStatus.PENDING, attempts=attempts)
        logger.bind(item_id=job.id, job_type=job.job_type, attempts=attempts).info(
            f"♻️ Requeued stalled {self.store.name} job {job.id} (attempt {attempts}/{self.max_attempts})"
        )
        return RecoveryOutcome.RECOVERED
