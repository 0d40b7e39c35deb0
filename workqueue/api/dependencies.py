"""
FastAPI Dependencies

Reusable dependencies for the operator routes.
"""

from fastapi import HTTPException, Request, status

from workqueue.core.engine import QueueEngine


async def get_engine(request: Request) -> QueueEngine:
    """
    Return the engine built during startup.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue engine not initialized"
        )
    return engine
