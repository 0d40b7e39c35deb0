"""
Queue Item Repository
MongoDB-backed QueueStore: one collection per queue variant, a unique index
on dedup_key, and single-document atomic transitions.
"""
import datetime as dt
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseRepository
from ..message_queue.base import AlreadyExistsError, QueueStats, QueueStore, QueueStoreError
from ..models.base import utc_now
from ..models.queue_item import (
    IN_FLIGHT_STATUSES,
    RECOVERED_AT_KEY,
    RECOVERY_COUNT_KEY,
    TERMINAL_STATUSES,
    ItemStatus,
    JobType,
    QueueItem,
)
from ..utils.observability import logger

_NOT_TERMINAL = {"$nin": [status.value for status in TERMINAL_STATUSES]}


def _status_is(status: Optional[ItemStatus]) -> Optional[Dict[str, Any]]:
    """Status filter for a guarded transition, None for the default non-terminal guard."""
    return {"$eq": ItemStatus(status).value} if status is not None else None


class MongoQueueStore(BaseRepository[QueueItem], QueueStore):
    """
    Production queue store.

    Every transition is a single update_one/find_one_and_update whose filter
    excludes terminal statuses, so a completed or failed item is never
    modified again even when sweeps race on the same document.

    PyMongo failures (other than duplicate keys on enqueue) are raised as
    QueueStoreError so sweeps abort cleanly.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        collection_name: str,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        """Initialize queue store on `collection_name`."""
        super().__init__(database, collection_name, QueueItem)
        self.name = collection_name
        self._clock = clock

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except PyMongoError as e:
            logger.bind(collection=self.collection_name, operation=operation).error(
                f"MongoDB {operation} on {self.collection_name} failed: {e}"
            )
            raise QueueStoreError(f"{operation} on {self.collection_name} failed: {e}") from e

    async def enqueue(
        self,
        payload: Dict[str, Any],
        organization_id: Optional[str],
        dedup_key: str,
        job_type: Optional[JobType] = None,
    ) -> str:
        now = self._clock()
        item = QueueItem(
            dedup_key=dedup_key,
            organization_id=organization_id,
            payload=payload,
            job_type=job_type,
            created_at=now,
            updated_at=now,
            next_retry_at=now if job_type is None else None,
        )
        doc = item.model_dump(by_alias=True, exclude={"id"})

        with self._store_errors("enqueue"):
            try:
                result = await self.collection.insert_one(doc)
            except DuplicateKeyError:
                existing = await self.collection.find_one({"dedup_key": dedup_key}, {"_id": 1})
                existing_id = str(existing["_id"]) if existing else None
                raise AlreadyExistsError(dedup_key, existing_id) from None

        logger.bind(item_id=str(result.inserted_id), dedup_key=dedup_key).debug(
            f"Enqueued item in {self.collection_name}"
        )
        return str(result.inserted_id)

    async def get(self, item_id: str) -> Optional[QueueItem]:
        with self._store_errors("get"):
            return await self.find_by_id(item_id)

    async def fetch_batch(
        self,
        limit: int,
        max_attempts: int,
        due_before: Optional[dt.datetime] = None,
    ) -> list[QueueItem]:
        query: Dict[str, Any] = {
            "status": ItemStatus.PENDING.value,
            "attempts": {"$lt": max_attempts},
        }
        if due_before is not None:
            # null also matches documents without the field
            query["$or"] = [
                {"next_retry_at": None},
                {"next_retry_at": {"$lte": due_before}},
            ]

        with self._store_errors("fetch_batch"):
            return await self.find_many(query, limit=limit, sort=[("created_at", ASCENDING)])

    async def mark_processing(self, item_id: str, started_at: Optional[dt.datetime] = None) -> bool:
        now = self._clock()
        return await self._transition(
            item_id,
            {"$set": {
                "status": ItemStatus.PROCESSING.value,
                "started_at": started_at or now,
                "updated_at": now,
            }},
            status_filter={"$in": [status.value for status in IN_FLIGHT_STATUSES]},
        )

    async def mark_completed(self, item_id: str) -> bool:
        now = self._clock()
        return await self._transition(
            item_id,
            {"$set": {
                "status": ItemStatus.COMPLETED.value,
                "completed_at": now,
                "error_log": None,
                "updated_at": now,
            }},
        )

    async def mark_failed(
        self,
        item_id: str,
        reason: str,
        count_attempt: bool = False,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        update: Dict[str, Any] = {"$set": {
            "status": ItemStatus.FAILED.value,
            "error_log": reason,
            "updated_at": self._clock(),
        }}
        if count_attempt:
            update["$inc"] = {"attempts": 1}
        return await self._transition(item_id, update, status_filter=_status_is(expected_status))

    async def mark_pending_with_error(
        self,
        item_id: str,
        reason: str,
        next_retry_at: Optional[dt.datetime] = None,
        expected_status: Optional[ItemStatus] = None,
    ) -> bool:
        fields: Dict[str, Any] = {
            "status": ItemStatus.PENDING.value,
            "error_log": reason,
            "updated_at": self._clock(),
        }
        if next_retry_at is not None:
            fields["next_retry_at"] = next_retry_at
        return await self._transition(
            item_id,
            {"$set": fields, "$inc": {"attempts": 1}},
            status_filter=_status_is(expected_status),
        )

    async def mark_error(self, item_id: str, reason: str) -> bool:
        return await self._transition(
            item_id,
            {
                "$set": {
                    "status": ItemStatus.ERROR.value,
                    "error_log": reason,
                    "updated_at": self._clock(),
                },
                "$inc": {"attempts": 1},
            },
        )

    async def assign_organization(self, item_id: str, organization_id: str) -> bool:
        return await self._transition(
            item_id,
            {"$set": {"organization_id": organization_id, "updated_at": self._clock()}},
        )

    async def find_stale(
        self,
        older_than: dt.datetime,
        limit: int,
        statuses: Sequence[ItemStatus] = IN_FLIGHT_STATUSES,
    ) -> list[QueueItem]:
        query = {
            "status": {"$in": [ItemStatus(status).value for status in statuses]},
            "created_at": {"$lt": older_than},
        }
        with self._store_errors("find_stale"):
            return await self.find_many(query, limit=limit, sort=[("created_at", ASCENDING)])

    async def increment_recovery_count(
        self,
        item_id: str,
        recovered_at: dt.datetime,
        ceiling: Optional[int] = None,
    ) -> Optional[int]:
        oid = self._object_id(item_id)
        if oid is None:
            return None

        query: Dict[str, Any] = {"_id": oid, "status": _NOT_TERMINAL}
        if ceiling is not None:
            # $not also matches documents that have no counter yet
            query[f"metadata.{RECOVERY_COUNT_KEY}"] = {"$not": {"$gte": ceiling}}

        with self._store_errors("increment_recovery_count"):
            doc = await self.collection.find_one_and_update(
                query,
                {
                    "$inc": {f"metadata.{RECOVERY_COUNT_KEY}": 1},
                    "$set": {
                        f"metadata.{RECOVERED_AT_KEY}": recovered_at,
                        "updated_at": self._clock(),
                    },
                },
                projection={"metadata": 1},
                return_document=ReturnDocument.AFTER,
            )

        if doc is None:
            return None
        return int(doc["metadata"][RECOVERY_COUNT_KEY])

    async def get_stats(self) -> QueueStats:
        pipeline = [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]

        with self._store_errors("get_stats"):
            cursor = self.collection.aggregate(pipeline)
            rows = await cursor.to_list(length=None)

        counts = {row["_id"]: row["count"] for row in rows if row["_id"] in ItemStatus._value2member_map_}
        return QueueStats(**counts)

    async def _transition(
        self,
        item_id: str,
        update: Dict[str, Any],
        status_filter: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply one atomic update unless the item is terminal.

        Returns:
            True if a non-terminal item matched
        """
        oid = self._object_id(item_id)
        if oid is None:
            return False

        with self._store_errors("update"):
            result = await self.collection.update_one(
                {"_id": oid, "status": status_filter or _NOT_TERMINAL},
                update,
            )

        return result.matched_count > 0
