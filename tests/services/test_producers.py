"""
Tests for queue producer helpers.
"""
import pytest

from workqueue.models.queue_item import JobType
from workqueue.services.job_handlers import UnknownJobTypeError
from workqueue.services.producers import (
    derive_event_dedup_key,
    enqueue_event,
    enqueue_job,
    payload_fingerprint,
)
from workqueue.utils.metrics import metrics


def counter_value(counter, **labels):
    for value in counter.collect():
        if value.labels == labels:
            return value.value
    return 0


class TestDedupKeyDerivation:

    def test_nested_message_id_wins(self):
        payload = {"data": {"key": {"id": "ABC"}}, "messageId": "other", "id": "x"}
        assert derive_event_dedup_key(payload, "org-1") == "org-1:ABC"

    def test_falls_back_to_message_id_then_id(self):
        assert derive_event_dedup_key({"messageId": "M1", "id": "x"}, "org-1") == "org-1:M1"
        assert derive_event_dedup_key({"id": "X1"}, "org-1") == "org-1:X1"

    def test_unknown_organization_uses_placeholder(self):
        assert derive_event_dedup_key({"id": "X1"}) == "-:X1"

    def test_payload_without_id_uses_fingerprint(self):
        payload = {"event": "status", "value": 3}
        key = derive_event_dedup_key(payload, "org-1")
        assert key == f"org-1:sha256:{payload_fingerprint(payload)}"

    def test_fingerprint_ignores_key_order(self):
        assert payload_fingerprint({"a": 1, "b": 2}) == payload_fingerprint({"b": 2, "a": 1})
        assert payload_fingerprint({"a": 1}) != payload_fingerprint({"a": 2})


class TestEnqueueEvent:

    async def test_new_event_is_created(self, event_store):
        receipt = await enqueue_event(event_store, {"id": "m1"}, "org-1")

        assert receipt.created is True
        assert receipt.dedup_key == "org-1:m1"
        item = await event_store.get(receipt.item_id)
        assert item.payload == {"id": "m1"}
        assert counter_value(metrics.enqueued, queue=event_store.name) == 1

    async def test_replayed_event_is_a_noop(self, event_store):
        first = await enqueue_event(event_store, {"id": "m1"}, "org-1")
        second = await enqueue_event(event_store, {"id": "m1", "retry": True}, "org-1")

        assert second.created is False
        assert second.item_id == first.item_id
        assert (await event_store.get_stats()).total == 1
        assert counter_value(metrics.enqueue_duplicates, queue=event_store.name) == 1

    async def test_replayed_event_with_braces_in_key_is_a_noop(self, event_store):
        first = await enqueue_event(event_store, {"messageId": "{abc}"}, "org-1")
        second = await enqueue_event(event_store, {"messageId": "{abc}"}, "org-1")

        assert first.dedup_key == "org-1:{abc}"
        assert second.created is False
        assert second.item_id == first.item_id

    async def test_same_id_different_tenants_are_distinct(self, event_store):
        a = await enqueue_event(event_store, {"id": "m1"}, "org-1")
        b = await enqueue_event(event_store, {"id": "m1"}, "org-2")

        assert a.created and b.created
        assert a.item_id != b.item_id


class TestEnqueueJob:

    async def test_default_key_is_type_tenant_fingerprint(self, job_store):
        payload = {"contactId": "c1"}

        receipt = await enqueue_job(job_store, "sync_history", payload, "org-1")

        assert receipt.dedup_key == f"sync_history:org-1:{payload_fingerprint(payload)}"
        job = await job_store.get(receipt.item_id)
        assert job.job_type == JobType.SYNC_HISTORY

    async def test_same_job_twice_is_deduplicated(self, job_store):
        first = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {"contactId": "c1"}, "org-1")
        second = await enqueue_job(job_store, JobType.GENERATE_SUMMARY, {"contactId": "c1"}, "org-1")

        assert second.created is False
        assert second.item_id == first.item_id

    async def test_explicit_dedup_key(self, job_store):
        receipt = await enqueue_job(job_store, JobType.SYNC_HISTORY, {}, "org-1", dedup_key="custom")
        assert receipt.dedup_key == "custom"

    async def test_unknown_job_type_is_rejected(self, job_store):
        with pytest.raises(UnknownJobTypeError, match="Unknown job type: reindex"):
            await enqueue_job(job_store, "reindex", {}, "org-1")

        assert (await job_store.get_stats()).total == 0
