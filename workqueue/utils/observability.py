"""
Structured Logging & Observability
Production-grade logging that's both human-readable and machine-parseable.
"""
import sys
from loguru import logger
from typing import Any, Optional

from workqueue.config import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None):
    """
    Configure loguru for production observability.

    In development: Human-readable colorized output
    In production: Structured JSON logs for ingestion (ELK, Datadog, etc.)
    """
    settings = settings or get_settings()

    # Remove default handler
    logger.remove()

    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,  # Output as JSON
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_sweep_summary(sweep: str, **counts: Any) -> None:
    """
    Emit the single structured summary record for one sweep run.

    Args:
        sweep: Sweep name (e.g., "recovery", "job_worker", "event_dispatch")
        **counts: Outcome counters for the run (recovered=2, failed=1, ...)

    Example:
        >>> log_sweep_summary("recovery", recovered=3, failed=1)
    """
    log_data = {
        "event_type": "sweep_summary",
        "sweep": sweep,
        **counts,
    }

    summary = ", ".join(f"{key}={value}" for key, value in counts.items())
    logger.bind(**log_data).info(f"Sweep {sweep} finished: {summary}")


def log_transition(item_id: str, queue: str, status: str, **details: Any) -> None:
    """
    Log a queue item state transition.

    Args:
        item_id: Queue item id
        queue: Queue name (collection)
        status: New status
        **details: Transition-specific data (attempts, error, ...)
    """
    log_data = {
        "event_type": "queue_transition",
        "item_id": item_id,
        "queue": queue,
        "status": status,
        **details,
    }

    logger.bind(**log_data).debug(f"{queue}:{item_id} -> {status}")


__all__ = ["logger", "configure_logging", "log_sweep_summary", "log_transition"]
