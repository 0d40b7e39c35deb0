"""
In-Memory Queue Store

Simple in-memory store for testing and single-process deployments.
Uses an asyncio.Lock so each transition is atomic with respect to other
coroutines in the same event loop.
"""

import asyncio
import datetime as dt
import uuid
from typing import Any, Callable, Dict, Optional, Sequence

from workqueue.message_queue.base import (
    AlreadyExistsError,
    QueueStats,
    QueueStore,
)
from workqueue.models.base import utc_now
from workqueue.models.queue_item import (
    IN_FLIGHT_STATUSES,
    RECOVERED_AT_KEY,
    RECOVERY_COUNT_KEY,
    ItemStatus,
    JobType,
    QueueItem,
)


class InMemoryQueueStore(QueueStore):
    """
    In-memory queue store implementation.

    Items live in a dict keyed by id with a dedup index beside it; data is
    lost on restart.

    Suitable for:
    - Testing
    - Single-instance deployments

    Not suitable for:
    - Multi-process workers
    - Durable at-least-once delivery
    """

    def __init__(self, name: str = "queue", clock: Callable[[], dt.datetime] = utc_now):
        """
        Initialize in-memory store.

        Args:
            name: Queue name used in logs and metrics
            clock: Returns the current UTC time (injectable for tests)
        """
        self.name = name
        self._clock = clock
        self._items: dict[str, QueueItem] = {}
        self._by_dedup_key: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def enqueue(
        self,
        payload: Dict[str, Any],
        organization_id: Optional[str],
        dedup_key: str,
        job_type: Optional[JobType] = None,
    ) -> str:
        async with self._lock:
            existing_id = self._by_dedup_key.get(dedup_key)
            if existing_id is not None:
                raise AlreadyExistsError(dedup_key, existing_id)

            now = self._clock()
            item = QueueItem(
                id=uuid.uuid4().hex,
                dedup_key=dedup_key,
                organization_id=organization_id,
                payload=dict(payload),
                job_type=job_type,
                created_at=now,
                updated_at=now,
                next_retry_at=now if job_type is None else None,
            )
            self._items[item.id] = item
            self._by_dedup_key[dedup_key] = item.id
            return item.id

    async def get(self, item_id: str) -> Optional[QueueItem]:
        async with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    async def fetch_batch(
        self,
        limit: int,
        max_attempts: int,
        due_before: Optional[dt.datetime] = None,
    ) -> list[QueueItem]:
        async with self._lock:
            eligible = [
                item for item in self._items.values()
                if item.status == ItemStatus.PENDING
                and item.attempts < max_attempts
                and (
                    due_before is None
                    or item.next_retry_at is None
                    or item.next_retry_at <= due_before
                )
            ]
            eligible.sort(key=lambda item: item.created_at)
            return [item.model_copy(deep=True) for item in eligible[:limit]]

    async def mark_processing(self, item_id: str, started_at: Optional[dt.datetime] = None) -> bool:
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status not in IN_FLIGHT_STATUSES:
                return False
            item.status = ItemStatus.PROCESSING
            item.started_at = started_at or self._clock()
            item.updated_at = self._clock()
            return True

    async def mark_completed(self, item_id: str) -> bool:
        async with self._lock:
            item = self._mutable(item_id)
            if item is None:
                return False
            item.status = ItemStatus.COMPLETED
            item.completed_at = self._clock()
            item.error_log = None
            item.updated_at = item.completed_at
            return True

    async def mark_failed(
        self,
        item_id: str,
        reason: str,
        count_attempt: bool = False,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        async with self._lock:
            item = self._mutable(item_id, expected_status)
            if item is None:
                return False
            item.status = ItemStatus.FAILED
            item.error_log = reason
            if count_attempt:
                item.attempts += 1
            item.updated_at = self._clock()
            return True

    async def mark_pending_with_error(
        self,
        item_id: str,
        reason: str,
        next_retry_at: Optional[dt.datetime] = None,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        async with self._lock:
            item = self._mutable(item_id, expected_status)
            if item is None:
                return False
            item.status = ItemStatus.PENDING
            item.attempts += 1
            item.error_log = reason
            if next_retry_at is not None:
                item.next_retry_at = next_retry_at
            item.updated_at = self._clock()
            return True

    async def mark_error(self, item_id: str, reason: str) -> bool:
        async with self._lock:
            item = self._mutable(item_id)
            if item is None:
                return False
            item.status = ItemStatus.ERROR
            item.attempts += 1
            item.error_log = reason
            item.updated_at = self._clock()
            return True

    async def assign_organization(self, item_id: str, organization_id: str) -> bool:
        async with self._lock:
            item = self._mutable(item_id)
            if item is None:
                return False
            item.organization_id = organization_id
            item.updated_at = self._clock()
            return True

    async def find_stale(
        self,
        older_than: dt.datetime,
        limit: int,
        statuses: Sequence[ItemStatus] = IN_FLIGHT_STATUSES,
    ) -> list[QueueItem]:
        async with self._lock:
            stale = [
                item for item in self._items.values()
                if item.status in statuses and item.created_at < older_than
            ]
            stale.sort(key=lambda item: item.created_at)
            return [item.model_copy(deep=True) for item in stale[:limit]]

    async def increment_recovery_count(
        self,
        item_id: str,
        recovered_at: dt.datetime,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        async with self._lock:
            item = self._mutable(item_id)
            if item is None:
                return None
            if ceiling is not None and item.recovery_count >= ceiling:
                return None
            count = item.recovery_count + 1
            item.metadata = {
                **item.metadata,
                RECOVERY_COUNT_KEY: count,
                RECOVERED_AT_KEY: recovered_at,
            }
            item.updated_at = self._clock()
            return count

    async def get_stats(self) -> QueueStats:
        async with self._lock:
            counts = {status.value: 0 for status in ItemStatus}
            for item in self._items.values():
                counts[item.status.value] += 1
            return QueueStats(**counts)

    def _mutable(self, item_id: str, expected_status: Optional[ItemStatus] = None) -> Optional[QueueItem]:
        """Return the stored item if it may still transition. Caller holds the lock."""
        item = self._items.get(item_id)
        if item is None or item.is_terminal:
            return None
        if expected_status is not None and item.status != expected_status:
            return None
        return item
