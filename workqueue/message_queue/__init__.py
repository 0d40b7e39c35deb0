"""
Durable Work Queue

Provides persisted queue processing for inbound events and internal jobs with:
- Abstract store interface with idempotent enqueue and atomic transitions
- In-memory store for testing, MongoDB store for production
- Dispatcher with bounded delivery retries
- Job worker, event dispatch sweep and recovery sweepers
"""

from workqueue.message_queue.base import (
    AlreadyExistsError,
    QueueError,
    QueueStats,
    QueueStore,
    QueueStoreError,
)
from workqueue.message_queue.memory import InMemoryQueueStore
from workqueue.message_queue.dispatcher import (
    DispatchError,
    DispatchOutcome,
    DispatchResult,
    Dispatcher,
    HttpProcessorClient,
    InProcessProcessor,
    create_dispatcher,
)
from workqueue.message_queue.worker import JobWorker, PeriodicSweep
from workqueue.message_queue.event_worker import EventDispatchWorker
from workqueue.message_queue.recovery import JobRecoverySweeper, RecoverySweeper

__all__ = [
    "AlreadyExistsError",
    "QueueError",
    "QueueStats",
    "QueueStore",
    "QueueStoreError",
    "InMemoryQueueStore",
    "DispatchError",
    "DispatchOutcome",
    "DispatchResult",
    "Dispatcher",
    "HttpProcessorClient",
    "InProcessProcessor",
    "create_dispatcher",
    "JobWorker",
    "PeriodicSweep",
    "EventDispatchWorker",
    "RecoverySweeper",
    "JobRecoverySweeper",
]
