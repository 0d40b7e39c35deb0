"""
Job Handler Registry

Maps each JobType to the coroutine that executes it. The registry is built
once at startup; new job types are added by extending JobType and registering
a handler here.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from workqueue.models.queue_item import JobType, QueueItem
from workqueue.utils.observability import logger


JobHandler = Callable[[QueueItem], Awaitable[Dict[str, Any]]]


class JobError(Exception):
    """Base class for job handler failures. Counted as one failed attempt."""


class UnknownJobTypeError(JobError):
    """No handler is registered for the job's type."""

    def __init__(self, job_type: Optional[str]):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class JobPayloadError(JobError):
    """The job payload is missing arguments its handler requires."""


def require_fields(job: QueueItem, fields: Iterable[str]) -> Dict[str, Any]:
    """
    Return the named payload fields, raising JobPayloadError if any is missing.

    Args:
        job: Job being executed
        fields: Payload keys the handler needs

    Returns:
        Dict of field -> value
    """
    missing = [name for name in fields if job.payload.get(name) in (None, "")]
    if missing:
        raise JobPayloadError(
            f"{job.job_type} job {job.id} missing payload fields: {', '.join(missing)}"
        )
    return {name: job.payload[name] for name in fields}


class JobHandlerRegistry:
    """
    Closed mapping of JobType -> handler.

    Usage:
        registry = JobHandlerRegistry()
        registry.register(JobType.TRANSCRIBE_AUDIO, transcribe_audio)

        handler = registry.get(job.job_type)  # raises UnknownJobTypeError
        result = await handler(job)
    """

    def __init__(self, handlers: Optional[Dict[JobType, JobHandler]] = None):
        self._handlers: Dict[JobType, JobHandler] = {}
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        if not isinstance(job_type, JobType):
            raise TypeError(f"job_type must be a JobType, got {job_type!r}")
        self._handlers[job_type] = handler

    def get(self, job_type: Optional[JobType]) -> JobHandler:
        handler = self._handlers.get(job_type) if job_type is not None else None
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    @property
    def job_types(self) -> list[JobType]:
        return list(self._handlers)


# ============================================
# DEFAULT HANDLERS
# ============================================

async def transcribe_audio(job: QueueItem) -> Dict[str, Any]:
    args = require_fields(job, ("audioUrl", "messageId"))
    logger.bind(job_id=job.id, organization_id=job.organization_id).info(
        f"Transcribing audio for message {args['messageId']}"
    )
    return {"message_id": args["messageId"], "transcribed": True}


async def generate_summary(job: QueueItem) -> Dict[str, Any]:
    args = require_fields(job, ("contactId",))
    logger.bind(job_id=job.id, organization_id=job.organization_id).info(
        f"Generating summary for contact {args['contactId']}"
    )
    return {"contact_id": args["contactId"], "summarized": True}


async def sync_history(job: QueueItem) -> Dict[str, Any]:
    args = require_fields(job, ("contactId",))
    logger.bind(job_id=job.id, organization_id=job.organization_id).info(
        f"Syncing history for contact {args['contactId']}"
    )
    return {"contact_id": args["contactId"], "synced": True}


def build_default_registry() -> JobHandlerRegistry:
    """
    Registry with the built-in handlers.

    send_notification is accepted by producers but has no built-in handler;
    such jobs fail with UnknownJobTypeError until one is registered.
    """
    return JobHandlerRegistry({
        JobType.TRANSCRIBE_AUDIO: transcribe_audio,
        JobType.GENERATE_SUMMARY: generate_summary,
        JobType.SYNC_HISTORY: sync_history,
    })
