"""
Queue Engine Wiring

Builds the stores, dispatcher and sweeps from one Settings instance. Shared by
the API lifespan and the CLI so both triggers run identical sweeps.
"""
import datetime as dt
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from loguru import logger

from workqueue.config import Settings, get_settings
from workqueue.message_queue.base import QueueStore
from workqueue.message_queue.dispatcher import (
    Dispatcher,
    ItemHandler,
    OrganizationResolver,
    create_dispatcher,
)
from workqueue.message_queue.event_worker import EventDispatchWorker
from workqueue.message_queue.recovery import JobRecoverySweeper, RecoverySweeper
from workqueue.message_queue.worker import JobWorker
from workqueue.models.base import utc_now
from workqueue.repositories import MongoQueueStore, db_manager
from workqueue.services.job_handlers import JobHandlerRegistry, build_default_registry


@dataclass
class QueueEngine:
    """
    Everything a trigger needs to run one sweep.

    `dispatcher`, `event_worker` and `recovery` are None when no Processor is
    configured (no PROCESSOR_URL and no in-process handler).
    """
    settings: Settings
    event_store: QueueStore
    job_store: QueueStore
    job_worker: JobWorker
    job_recovery: JobRecoverySweeper
    dispatcher: Optional[Dispatcher] = None
    event_worker: Optional[EventDispatchWorker] = None
    recovery: Optional[RecoverySweeper] = None

    @property
    def stores(self) -> tuple[QueueStore, QueueStore]:
        return (self.event_store, self.job_store)


def build_engine(
    event_store: QueueStore,
    job_store: QueueStore,
    settings: Optional[Settings] = None,
    event_handler: Optional[ItemHandler] = None,
    registry: Optional[JobHandlerRegistry] = None,
    organization_resolver: Optional[OrganizationResolver] = None,
    clock: Callable[[], dt.datetime] = utc_now,
) -> QueueEngine:
    """
    Wire the sweeps around two stores.

    Args:
        event_store: Inbound-event queue
        job_store: Internal job queue
        settings: Configuration (default: get_settings())
        event_handler: In-process Processor, used when PROCESSOR_URL is unset
        registry: Job handlers (default: build_default_registry())
        organization_resolver: Fills in missing tenants for in-process events
        clock: Current UTC time (injectable for tests)
    """
    settings = settings or get_settings()

    engine = QueueEngine(
        settings=settings,
        event_store=event_store,
        job_store=job_store,
        job_worker=JobWorker(job_store, registry or build_default_registry(), settings, clock=clock),
        job_recovery=JobRecoverySweeper(job_store, settings, clock=clock),
    )

    if not settings.processor_url and event_handler is None:
        logger.warning("No PROCESSOR_URL or event handler configured: event dispatch and recovery disabled")
        return engine

    engine.dispatcher = create_dispatcher(
        event_store,
        handler=event_handler,
        settings=settings,
        organization_resolver=organization_resolver,
        clock=clock,
    )
    engine.event_worker = EventDispatchWorker(event_store, engine.dispatcher, settings, clock=clock)
    engine.recovery = RecoverySweeper(event_store, engine.dispatcher, settings, clock=clock)
    return engine


@asynccontextmanager
async def mongo_engine(
    settings: Optional[Settings] = None,
    create_indexes: bool = False,
    **engine_kwargs,
) -> AsyncIterator[QueueEngine]:
    """
    Connect to MongoDB, yield an engine over the two queue collections and
    disconnect on exit.

    Usage:
        async with mongo_engine(settings) as engine:
            await engine.job_worker.run_once()
    """
    settings = settings or get_settings()
    await db_manager.connect(settings)

    try:
        if create_indexes:
            await db_manager.create_indexes()

        database = db_manager.database
        yield build_engine(
            MongoQueueStore(database, settings.event_queue_collection),
            MongoQueueStore(database, settings.job_queue_collection),
            settings,
            **engine_kwargs,
        )
    finally:
        await db_manager.disconnect()
