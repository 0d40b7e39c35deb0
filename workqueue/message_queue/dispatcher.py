"""
Queue Item Dispatcher

Delivers one queue item to the Processor and reports whether the invocation
was delivered. The Processor owns the business outcome: it sets the item to
`completed` (or records a failure) itself, so a delivered dispatch says
nothing about whether processing succeeded.
"""

import asyncio
import datetime as dt
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx
from loguru import logger

from workqueue.config import Settings, get_settings
from workqueue.message_queue.base import QueueStore
from workqueue.models.base import utc_now
from workqueue.models.queue_item import QueueItem
from workqueue.utils.metrics import Timer, metrics
from workqueue.utils.retry import RetryConfig, retry_with_backoff


class DispatchOutcome(StrEnum):
    COMPLETED = "completed"  # Processor acknowledged receipt
    ERROR = "error"          # Could not be delivered


@dataclass
class DispatchResult:
    """Outcome of one dispatch call."""
    item_id: str
    outcome: DispatchOutcome
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.outcome == DispatchOutcome.COMPLETED


class DispatchError(Exception):
    """Transport-level failure reaching the Processor (network, timeout, 5xx)."""


class ProcessorClient(Protocol):
    """
    Transport to the Processor.

    Implement this to add new ways of reaching a Processor. `invoke` returns
    once the Processor acknowledged the record and raises on delivery failure.
    """

    async def invoke(self, item: QueueItem) -> None:
        ...


def next_retry_time(now: dt.datetime, attempts: int) -> dt.datetime:
    """Backed-off retry time: 2^attempts minutes after `now`."""
    return now + dt.timedelta(minutes=2 ** attempts)


ItemHandler = Callable[[QueueItem], Awaitable[Any]]
OrganizationResolver = Callable[[QueueItem], Awaitable[Optional[str]]]


class HttpProcessorClient:
    """
    Invokes a remote Processor with an HTTP POST of `{"record": <item>}`.

    The remote Processor updates the item's status through its own store access.
    """

    def __init__(self, url: str, timeout: float = 10.0, headers: Optional[dict] = None):
        self._url = url
        self._timeout = timeout
        self._headers = headers or {}

    async def invoke(self, item: QueueItem) -> None:
        body = {"record": item.model_dump(mode="json")}

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self._url,
                    json=body,
                    headers=self._headers,
                    timeout=self._timeout
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DispatchError(f"Processor invocation failed for {item.id}: {e}") from e


class InProcessProcessor:
    """
    Runs a domain handler in this process and performs the Processor's
    self-reporting on the store.

    Success marks the item `completed`. A handler failure counts one attempt:
    the item is dead-lettered once attempts reach `max_attempts`, otherwise it
    goes back to `pending` with `next_retry_at` pushed out 2^attempts minutes.
    Handler failures and timeouts are recorded, not raised, so the dispatch
    still counts as delivered.
    """

    def __init__(
        self,
        store: QueueStore,
        handler: ItemHandler,
        max_attempts: int = 5,
        timeout: float = 10.0,
        organization_resolver: Optional[OrganizationResolver] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        self._store = store
        self._handler = handler
        self._max_attempts = max_attempts
        self._timeout = timeout
        self._resolve_organization = organization_resolver
        self._clock = clock

    async def invoke(self, item: QueueItem) -> None:
        try:
            if not item.organization_id:
                item.organization_id = await self._resolve(item)

            await asyncio.wait_for(self._handler(item), timeout=self._timeout)

        except Exception as e:
            await self._record_failure(item, e)
            return

        await self._store.mark_completed(item.id)
        logger.bind(item_id=item.id, organization_id=item.organization_id).info(
            f"✅ Processed {self._store.name} item {item.id}"
        )

    async def _resolve(self, item: QueueItem) -> str:
        """Resolve a missing tenant or fail the attempt."""
        organization_id = None
        if self._resolve_organization is not None:
            organization_id = await self._resolve_organization(item)

        if not organization_id:
            raise ValueError(f"Organization not resolved for item {item.id}")

        await self._store.assign_organization(item.id, organization_id)
        return organization_id

    async def _record_failure(self, item: QueueItem, error: Exception) -> None:
        next_attempts = item.attempts + 1
        reason = str(error) or error.__class__.__name__

        if next_attempts >= self._max_attempts:
            await self._store.mark_failed(item.id, f"Moved to dead letter: {reason}", count_attempt=True)
            logger.bind(item_id=item.id, attempts=next_attempts).error(
                f"❌ {self._store.name} item {item.id} dead-lettered after {next_attempts} attempts: {reason}"
            )
            return

        next_retry_at = next_retry_time(self._clock(), item.attempts)
        await self._store.mark_pending_with_error(item.id, reason, next_retry_at=next_retry_at)
        logger.bind(item_id=item.id, attempts=next_attempts).warning(
            f"{self._store.name} item {item.id} failed (attempt {next_attempts}/{self._max_attempts}), "
            f"retry at {next_retry_at.isoformat()}: {reason}"
        )


class Dispatcher:
    """
    Delivers queue items to a Processor with bounded retries.

    Usage:
        dispatcher = Dispatcher(HttpProcessorClient(url), queue_name="webhook_queue")
        result = await dispatcher.dispatch(item)
        if not result.delivered:
            ...  # invocation failed; the caller decides how to count it
    """

    def __init__(
        self,
        client: ProcessorClient,
        queue_name: str = "queue",
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize dispatcher.

        Args:
            client: Transport to the Processor
            queue_name: Queue label for logs and metrics
            retry_config: Delivery retry schedule (default: 3 attempts, 0.5s, x2)
        """
        self.client = client
        self.queue_name = queue_name
        self.retry_config = retry_config or RetryConfig(max_attempts=3, initial_delay=0.5, factor=2.0)

    async def dispatch(self, item: QueueItem) -> DispatchResult:
        """
        Deliver one item. Never raises for delivery failures.

        Args:
            item: Full queue item (id, organization_id and payload travel with it)

        Returns:
            DispatchResult with outcome `completed` (delivered) or `error`
        """
        try:
            with Timer(metrics.dispatch_duration, queue=self.queue_name):
                await retry_with_backoff(
                    lambda: self.client.invoke(item),
                    f"dispatch:{self.queue_name}",
                    self.retry_config,
                )
        except Exception as e:
            metrics.dispatch_total.inc(queue=self.queue_name, outcome=DispatchOutcome.ERROR.value)
            logger.bind(item_id=item.id, queue=self.queue_name).error(
                f"Dispatch of {self.queue_name} item {item.id} failed: {e}"
            )
            return DispatchResult(item_id=item.id, outcome=DispatchOutcome.ERROR, error=str(e))

        metrics.dispatch_total.inc(queue=self.queue_name, outcome=DispatchOutcome.COMPLETED.value)
        return DispatchResult(item_id=item.id, outcome=DispatchOutcome.COMPLETED)


def create_dispatcher(
    store: QueueStore,
    handler: Optional[ItemHandler] = None,
    settings: Optional[Settings] = None,
    organization_resolver: Optional[OrganizationResolver] = None,
    clock: Callable[[], dt.datetime] = utc_now,
) -> Dispatcher:
    """
    Build the event dispatcher from settings.

    A configured `processor_url` selects the remote HTTP Processor; otherwise
    `handler` runs in-process.
    """
    settings = settings or get_settings()
    retry_config = RetryConfig(
        max_attempts=settings.dispatch_retry_max_attempts,
        initial_delay=settings.dispatch_retry_initial_delay_seconds,
        factor=settings.retry_factor,
    )

    if settings.processor_url:
        client = HttpProcessorClient(settings.processor_url, timeout=settings.dispatch_timeout_seconds)
    elif handler is not None:
        client = InProcessProcessor(
            store,
            handler,
            max_attempts=settings.event_max_attempts,
            timeout=settings.dispatch_timeout_seconds,
            organization_resolver=organization_resolver,
            clock=clock,
        )
    else:
        raise ValueError("Either PROCESSOR_URL or an in-process handler is required")

    return Dispatcher(client, queue_name=store.name, retry_config=retry_config)
