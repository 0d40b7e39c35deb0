"""
Metrics Endpoints

Prometheus-compatible metrics and queue statistics for observability.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import Response, JSONResponse
from loguru import logger

from workqueue.api.dependencies import get_engine
from workqueue.core.engine import QueueEngine
from workqueue.utils.metrics import metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def prometheus_metrics(engine: QueueEngine = Depends(get_engine)):
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format for scraping.
    Includes:
    - Enqueue and duplicate counts per queue
    - Dispatch outcomes and durations
    - Job results by type
    - Recovery results and sweep runs
    - Queue depth per status (refreshed on every scrape)

    Content-Type: text/plain; version=0.0.4; charset=utf-8
    """
    try:
        for store in engine.stores:
            stats = await store.get_stats()
            metrics.update_queue_gauges(store.name, stats.model_dump())

        return Response(
            content=metrics.export(),
            media_type="text/plain; version=0.0.4; charset=utf-8"
        )

    except Exception as e:
        logger.opt(exception=True).error(f"Failed to export metrics: {e}")
        return Response(
            content=f"# Error exporting metrics: {e}\n",
            media_type="text/plain",
            status_code=500
        )


@router.get("/metrics/queue")
async def queue_metrics(engine: QueueEngine = Depends(get_engine)):
    """
    Get per-queue item counts.

    Returns:
        {"status": "ok", "queues": {<name>: {pending, processing, completed, failed, error, total}}}
    """
    try:
        queues = {}
        for store in engine.stores:
            stats = await store.get_stats()
            queues[store.name] = {**stats.model_dump(), "total": stats.total}

        return {
            "status": "ok",
            "queues": queues
        }

    except Exception as e:
        logger.opt(exception=True).error(f"Failed to get queue metrics: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": str(e)
            }
        )
