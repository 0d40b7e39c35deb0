import datetime as dt
from enum import StrEnum
from typing import Any, Dict, Optional
from pydantic import Field, field_serializer
from workqueue.models.base import MongoBaseModel


class ItemStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"       # dead-letter, needs manual handling
    ERROR = "error"         # business failure reported by a remote processor


# Absorbing states: no transition out of these
TERMINAL_STATUSES = frozenset({ItemStatus.COMPLETED, ItemStatus.FAILED})

# States the recovery sweep considers in-flight
IN_FLIGHT_STATUSES = (ItemStatus.PENDING, ItemStatus.PROCESSING)


class JobType(StrEnum):
    """Closed set of internal job types. Extend together with the handler registry."""
    TRANSCRIBE_AUDIO = "transcribe_audio"
    GENERATE_SUMMARY = "generate_summary"
    SYNC_HISTORY = "sync_history"
    SEND_NOTIFICATION = "send_notification"


RECOVERY_COUNT_KEY = "retry_count"
RECOVERED_AT_KEY = "recovered_at"


class QueueItem(MongoBaseModel):
    """
    One unit of asynchronous work.

    Shared by the inbound-event queue and the internal job queue; `job_type`
    is only set on jobs, `next_retry_at` only on inbound events.
    """
    dedup_key: str = Field(..., description="Natural key; unique per queue")
    organization_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    job_type: Optional[JobType] = None

    status: ItemStatus = ItemStatus.PENDING
    attempts: int = Field(default=0, ge=0)

    started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    next_retry_at: Optional[dt.datetime] = None
    error_log: Optional[str] = None

    # Recovery bookkeeping (retry_count, recovered_at) lives here
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def recovery_count(self) -> int:
        return int(self.metadata.get(RECOVERY_COUNT_KEY, 0) or 0)

    @field_serializer("started_at", "completed_at", "next_retry_at", when_used="json")
    def serialize_optional_dt(self, value: Optional[dt.datetime]):
        return value.isoformat() if value else None
