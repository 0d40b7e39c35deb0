"""
Operator Trigger Endpoints

One no-argument POST per sweep, meant for cron-style schedulers. Each call
runs a single bounded batch and returns its summary. A store outage aborts
the sweep and is reported as 503.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger

from workqueue.api.dependencies import get_engine
from workqueue.core.engine import QueueEngine
from workqueue.message_queue.base import QueueStoreError
from workqueue.utils.metrics import metrics

router = APIRouter(prefix="/operations", tags=["Operations"])


async def _run_sweep(
    sweep_name: str,
    run_once: Optional[Callable[[], Awaitable[Dict[str, Any]]]],
):
    if run_once is None:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": f"{sweep_name} disabled: no processor configured"}
        )

    try:
        return await run_once()
    except QueueStoreError as e:
        metrics.sweep_runs.inc(sweep=sweep_name, status="error")
        logger.error(f"Sweep {sweep_name} aborted: {e}")
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": str(e)}
        )


@router.post("/jobs/run")
async def run_jobs(engine: QueueEngine = Depends(get_engine)):
    """
    Run one JobWorker batch.

    Returns:
        {"processed": int, "results": [{"job_id", "success", "status", "error"}]}
    """
    return await _run_sweep("job_worker", engine.job_worker.run_once)


@router.post("/events/dispatch")
async def dispatch_events(engine: QueueEngine = Depends(get_engine)):
    """Dispatch one batch of due inbound events."""
    worker = engine.event_worker
    return await _run_sweep("event_dispatch", worker.run_once if worker else None)


@router.post("/recovery/run")
async def run_recovery(engine: QueueEngine = Depends(get_engine)):
    """
    Run one RecoverySweeper pass.

    Returns:
        {"recovered": int, "failed": int}
    """
    sweeper = engine.recovery
    return await _run_sweep("recovery", sweeper.run_once if sweeper else None)


@router.post("/jobs/recover")
async def recover_jobs(engine: QueueEngine = Depends(get_engine)):
    """
    Requeue or fail internal jobs stalled in processing.

    Returns:
        {"recovered": int, "failed": int}
    """
    return await _run_sweep("job_recovery", engine.job_recovery.run_once)
