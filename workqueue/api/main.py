"""
FastAPI Application

Operator surface for the work queues: sweep triggers, health probes and
metrics. Handles application lifecycle and router mounting.
"""
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from loguru import logger

from workqueue.config import get_settings
from workqueue.core.engine import QueueEngine, mongo_engine
from workqueue.utils.observability import configure_logging
from workqueue.api.routes import health_router, operations_router, metrics_router
from workqueue.api.routes.health import API_VERSION


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle: startup and shutdown events.

    Startup:
    - Configure logging
    - Connect to MongoDB and create the queue indexes
    - Build the stores, dispatcher and sweeps

    An engine already present on app.state (tests, embedding) is used as is.

    Shutdown:
    - Disconnect from MongoDB
    """
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting workqueue API server...")

    async with AsyncExitStack() as stack:
        if getattr(app.state, "engine", None) is None:
            app.state.engine = await stack.enter_async_context(
                mongo_engine(settings, create_indexes=True)
            )

        logger.info("API server ready to receive sweep triggers")

        yield

        logger.info("Shutting down API server...")

    logger.info("Shutdown complete")


def create_app(engine: Optional[QueueEngine] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        engine: Pre-built engine; when None one is built from settings at startup
    """
    application = FastAPI(
        title="Workqueue API",
        description="Durable work queue with job worker, event dispatch and recovery sweeps",
        version=API_VERSION,
        lifespan=lifespan
    )
    application.state.engine = engine

    # Mount routers
    application.include_router(health_router)
    application.include_router(operations_router)
    application.include_router(metrics_router)

    return application


app = create_app()
