"""
Health and Readiness Endpoints

Kubernetes-compatible health probes for load balancers and orchestration.
"""
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from loguru import logger

router = APIRouter(tags=["Health"])

# API version - single source of truth
API_VERSION = "0.1.0"


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if service is running.
    Used by load balancers and monitoring systems.
    """
    return {
        "status": "healthy",
        "service": "workqueue",
        "version": API_VERSION
    }


@router.get("/ready")
async def readiness_check(request: Request):
    """
    Readiness probe - checks if service can handle requests.

    Verifies:
    - The queue engine is initialized
    - Both queue stores answer a stats query

    Returns 200 if ready, 503 if not ready.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": "Queue engine not initialized"
            }
        )

    try:
        for store in engine.stores:
            await store.get_stats()
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": str(e)
            }
        )

    return {
        "status": "ready",
        "stores": [store.name for store in engine.stores],
        "processor": "configured" if engine.dispatcher else "disabled"
    }


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "workqueue",
        "version": API_VERSION,
        "endpoints": {
            "health": "/health",
            "ready": "/ready",
            "metrics": "/metrics",
            "queue_metrics": "/metrics/queue",
            "run_jobs": "/operations/jobs/run (POST)",
            "recover_jobs": "/operations/jobs/recover (POST)",
            "dispatch_events": "/operations/events/dispatch (POST)",
            "run_recovery": "/operations/recovery/run (POST)"
        }
    }
