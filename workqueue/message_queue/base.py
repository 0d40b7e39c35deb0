"""
Base Queue Store Interface

Abstract interface for the persisted work-item table: idempotent enqueue,
FIFO batch reads, single-item state transitions and staleness queries.
"""

import datetime as dt
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence
from pydantic import BaseModel

from workqueue.models.queue_item import (
    IN_FLIGHT_STATUSES,
    ItemStatus,
    JobType,
    QueueItem,
)


class QueueError(Exception):
    """Base class for queue errors."""


class AlreadyExistsError(QueueError):
    """
    Raised by enqueue when the dedup key is already recorded.

    Producers treat this as a successful no-op, not as a fault.
    """

    def __init__(self, dedup_key: str, existing_id: Optional[str] = None):
        self.dedup_key = dedup_key
        self.existing_id = existing_id
        super().__init__(f"Queue item already exists for dedup key {dedup_key!r}")


class QueueStoreError(QueueError):
    """The backing store is unreachable or rejected the operation. Aborts a sweep."""


class QueueStats(BaseModel):
    """
    Item counts per status.

    Attributes:
        pending: Items awaiting a worker
        processing: Items claimed by a worker
        completed: Items finished successfully
        failed: Dead-lettered items
        error: Items a remote processor reported as failed
    """
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    error: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.completed + self.failed + self.error


class QueueStore(ABC):
    """
    Abstract queue store.

    Every transition is a single-item atomic write guarded by the terminal-state
    rule: an item in `completed` or `failed` is never modified again. Transition
    methods return False when the item is missing or already terminal.

    Implementations:
    - InMemoryQueueStore: tests and single-process deployments
    - MongoQueueStore: production (unique index on dedup_key)
    """

    name: str = "queue"

    @abstractmethod
    async def enqueue(
        self,
        payload: Dict[str, Any],
        organization_id: Optional[str],
        dedup_key: str,
        job_type: Optional[JobType] = None,
    ) -> str:
        """
        Insert a new item in `pending`.

        Args:
            payload: Event or job arguments (immutable after enqueue)
            organization_id: Tenant, may be None until resolved
            dedup_key: Natural key; unique within this queue
            job_type: Handler selector for internal jobs

        Returns:
            The new item id

        Raises:
            AlreadyExistsError: If dedup_key is already recorded
            QueueStoreError: If the store is unreachable
        """

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]:
        """Return an item by id, or None."""

    @abstractmethod
    async def fetch_batch(
        self,
        limit: int,
        max_attempts: int,
        due_before: Optional[dt.datetime] = None,
    ) -> list[QueueItem]:
        """
        Return up to `limit` pending items with attempts < max_attempts, oldest first.

        Args:
            limit: Maximum items to return
            max_attempts: Attempt cap; items at or above it are skipped
            due_before: When set, skip items whose next_retry_at is later
        """

    @abstractmethod
    async def mark_processing(self, item_id: str, started_at: Optional[dt.datetime] = None) -> bool:
        """Move a pending or processing item to `processing` and stamp started_at."""

    @abstractmethod
    async def mark_completed(self, item_id: str) -> bool:
        """Move an item to `completed`, stamp completed_at and clear error_log."""

    @abstractmethod
    async def mark_failed(
        self,
        item_id: str,
        reason: str,
        count_attempt: bool = False,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        """
        Dead-letter an item.

        Args:
            item_id: Item to fail
            reason: Stored in error_log
            count_attempt: Also increment attempts (the failing attempt itself)
            expected_status: Only transition if the item is still in this status
        """

    @abstractmethod
    async def mark_pending_with_error(
        self,
        item_id: str,
        reason: str,
        next_retry_at: Optional[dt.datetime] = None,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        """
        Increment attempts, record the error and put the item back to `pending`.

        With `expected_status`, only an item still in that status is moved.
        """

    @abstractmethod
    async def mark_error(self, item_id: str, reason: str) -> bool:
        """Increment attempts and record a processor-reported business failure."""

    @abstractmethod
    async def assign_organization(self, item_id: str, organization_id: str) -> bool:
        """Fill in a tenant that could not be resolved at enqueue time."""

    @abstractmethod
    async def find_stale(
        self,
        older_than: dt.datetime,
        limit: int,
        statuses: Sequence[ItemStatus] = IN_FLIGHT_STATUSES,
    ) -> list[QueueItem]:
        """Return up to `limit` items in `statuses` created before `older_than`, oldest first."""

    @abstractmethod
    async def increment_recovery_count(
        self,
        item_id: str,
        recovered_at: dt.datetime,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        """
        Atomically bump metadata.retry_count and stamp metadata.recovered_at.

        Args:
            item_id: Item being recovered
            recovered_at: Stamped into metadata.recovered_at
            ceiling: Refuse the increment once retry_count has reached this value

        Returns:
            The new recovery count, or None if the item is missing, terminal
            or already at the ceiling
        """

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        """Return item counts per status."""
