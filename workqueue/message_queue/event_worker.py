"""
Inbound Event Dispatch Sweep

Normal path for the inbound-event queue: pick up due pending events and hand
each one to the Dispatcher. The Processor reports the business outcome
itself; this sweep only accounts for invocations that could not be delivered.
"""

import datetime as dt
from typing import Any, Callable, Dict, Optional

from loguru import logger

from workqueue.config import Settings, get_settings
from workqueue.message_queue.base import QueueStore
from workqueue.message_queue.dispatcher import Dispatcher, DispatchResult, next_retry_time
from workqueue.models.base import utc_now
from workqueue.models.queue_item import ItemStatus, QueueItem
from workqueue.utils.metrics import metrics
from workqueue.utils.observability import log_sweep_summary, log_transition


class EventDispatchWorker:
    """
    Dispatches pending inbound events.

    For each due event (status pending, attempts below `event_max_attempts`,
    next_retry_at reached): mark processing, then dispatch. An undelivered
    dispatch counts one attempt; the event is dead-lettered when that reaches
    the cap, otherwise it goes back to pending with next_retry_at backed off.
    """

    sweep_name = "event_dispatch"

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
        self.batch_size = settings.event_batch_size
        self.max_attempts = settings.event_max_attempts
        self._clock = clock

    async def run_once(self) -> Dict[str, Any]:
        now = self._clock()
        events = await self.store.fetch_batch(self.batch_size, self.max_attempts, due_before=now)

        results = []
        for event in events:
            try:
                results.append(await self._dispatch(event))
            except Exception as e:
                logger.bind(item_id=event.id).error(f"Dispatching event {event.id} failed: {e}")
                results.append({"item_id": event.id, "delivered": False, "error": str(e)})

        delivered = sum(1 for r in results if r["delivered"])
        log_sweep_summary(
            self.sweep_name,
            processed=len(results),
            delivered=delivered,
            undelivered=len(results) - delivered,
        )
        metrics.sweep_runs.inc(sweep=self.sweep_name, status="ok")

        return {"processed": len(results), "results": results}

    async def _dispatch(self, event: QueueItem) -> Dict[str, Any]:
        if not await self.store.mark_processing(event.id, started_at=self._clock()):
            return {"item_id": event.id, "delivered": False, "error": "no longer pending"}

        event.status = ItemStatus.PROCESSING
        result = await self.dispatcher.dispatch(event)
        if not result.delivered:
            await record_undelivered(self.store, event, result, self.max_attempts, self._clock())

        return {"item_id": event.id, "delivered": result.delivered, "error": result.error}


async def record_undelivered(
    store: QueueStore,
    event: QueueItem,
    result: DispatchResult,
    max_attempts: int,
    now: dt.datetime,
) -> ItemStatus:
    """
    Count an undelivered invocation as one attempt.

    Returns:
        The status the event was moved to (failed at the cap, else pending)
    """
    next_attempts = event.attempts + 1
    reason = f"Dispatch failed: {result.error}"

    if next_attempts >= max_attempts:
        await store.mark_failed(event.id, reason, count_attempt=True)
        status = ItemStatus.FAILED
    else:
        await store.mark_pending_with_error(
            event.id, reason, next_retry_at=next_retry_time(now, event.attempts)
        )
        status = ItemStatus.PENDING

    log_transition(event.id, store.name, status, attempts=next_attempts, error=result.error)
    return status
