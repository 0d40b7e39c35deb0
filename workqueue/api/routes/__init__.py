"""
API Routes

Modular route definitions for the workqueue operator API.
"""
from workqueue.api.routes.health import router as health_router
from workqueue.api.routes.operations import router as operations_router
from workqueue.api.routes.metrics import router as metrics_router

__all__ = [
    "health_router",
    "operations_router",
    "metrics_router",
]
