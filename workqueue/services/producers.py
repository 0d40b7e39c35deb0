"""
Queue Producers

Helpers for code that puts work on a queue. A duplicate enqueue is reported
as a successful no-op (the work is already recorded), never as an error.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from workqueue.message_queue.base import AlreadyExistsError, QueueStore
from workqueue.models.queue_item import JobType
from workqueue.services.job_handlers import UnknownJobTypeError
from workqueue.utils.metrics import metrics
from workqueue.utils.observability import logger


@dataclass
class EnqueueReceipt:
    """Result of a producer call."""
    item_id: Optional[str]
    dedup_key: str
    created: bool  # False when the dedup key was already recorded


def _message_id(payload: Dict[str, Any]) -> Optional[str]:
    """Upstream message id: data.key.id, else messageId, else id."""
    data = payload.get("data")
    if isinstance(data, dict):
        key = data.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])

    for field in ("messageId", "id"):
        if payload.get(field):
            return str(payload[field])

    return None


def payload_fingerprint(payload: Dict[str, Any]) -> str:
    """SHA-256 of the payload's canonical JSON (sorted keys, compact separators)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def derive_event_dedup_key(payload: Dict[str, Any], organization_id: Optional[str] = None) -> str:
    """
    Natural key for an inbound event.

    Uses the upstream message id when the payload carries one, otherwise a
    fingerprint of the whole payload. Scoped by organization so two tenants
    can receive events with the same upstream id.

    Example:
        >>> derive_event_dedup_key({"data": {"key": {"id": "ABC"}}}, "org-1")
        'org-1:ABC'
    """
    natural_id = _message_id(payload) or f"sha256:{payload_fingerprint(payload)}"
    return f"{organization_id or '-'}:{natural_id}"


async def _enqueue(
    store: QueueStore,
    payload: Dict[str, Any],
    organization_id: Optional[str],
    dedup_key: str,
    job_type: Optional[JobType] = None,
) -> EnqueueReceipt:
    try:
        item_id = await store.enqueue(payload, organization_id, dedup_key, job_type=job_type)
    except AlreadyExistsError as e:
        metrics.enqueue_duplicates.inc(queue=store.name)
        logger.bind(dedup_key=dedup_key, existing_id=e.existing_id).info(
            f"Duplicate {store.name} enqueue ignored (dedup_key={dedup_key})"
        )
        return EnqueueReceipt(item_id=e.existing_id, dedup_key=dedup_key, created=False)

    metrics.enqueued.inc(queue=store.name)
    logger.bind(item_id=item_id, dedup_key=dedup_key, organization_id=organization_id).info(
        f"📥 Enqueued {store.name} item {item_id}"
    )
    return EnqueueReceipt(item_id=item_id, dedup_key=dedup_key, created=True)


async def enqueue_event(
    store: QueueStore,
    payload: Dict[str, Any],
    organization_id: Optional[str] = None,
) -> EnqueueReceipt:
    """
    Record an inbound webhook event.

    Args:
        store: Inbound-event queue
        payload: Raw event body
        organization_id: Tenant, None if it could not be resolved yet

    Returns:
        EnqueueReceipt (created=False for a replayed event)
    """
    dedup_key = derive_event_dedup_key(payload, organization_id)
    return await _enqueue(store, payload, organization_id, dedup_key)


async def enqueue_job(
    store: QueueStore,
    job_type: Union[JobType, str],
    payload: Dict[str, Any],
    organization_id: str,
    dedup_key: Optional[str] = None,
) -> EnqueueReceipt:
    """
    Queue an internal background job.

    Without an explicit dedup_key the key is derived from the job type,
    tenant and payload, so submitting the same job twice is a no-op.

    Raises:
        UnknownJobTypeError: If job_type is not a JobType value
    """
    try:
        job_type = JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(str(job_type)) from None

    if dedup_key is None:
        dedup_key = f"{job_type.value}:{organization_id}:{payload_fingerprint(payload)}"

    return await _enqueue(store, payload, organization_id, dedup_key, job_type=job_type)
