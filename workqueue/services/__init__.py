"""Services package."""
from workqueue.services.job_handlers import (
    JobError,
    JobHandlerRegistry,
    JobPayloadError,
    UnknownJobTypeError,
    build_default_registry,
)
from workqueue.services.producers import (
    EnqueueReceipt,
    derive_event_dedup_key,
    enqueue_event,
    enqueue_job,
)

__all__ = [
    "JobError",
    "JobHandlerRegistry",
    "JobPayloadError",
    "UnknownJobTypeError",
    "build_default_registry",
    "EnqueueReceipt",
    "derive_event_dedup_key",
    "enqueue_event",
    "enqueue_job",
]
