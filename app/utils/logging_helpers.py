"""
Structured logging helpers for worker iterations.

Logging contract:
- correlation_id: Unique identifier for one scan
- component: Component name (worker, scheduler, email)
- operation: Operation name (reminders_iteration, ...)
- outcome: success | degraded | failed | skipped

Failure taxonomy:
- infra_error: Infrastructure errors (DB, Redis, network, timeouts)
- dependency_error: External dependency errors (email provider)
- domain_error: Business rule errors (malformed subscription, duplicate log)
- unexpected_error: Anything else (bugs)
"""

import logging
import json
import uuid
from typing import Optional
from datetime import datetime, timezone
from contextvars import ContextVar

_correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)

logger = logging.getLogger(__name__)


def generate_correlation_id() -> str:
    """Generate a unique correlation ID (UUID4 string)."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def log_worker_iteration_start(
    worker_name: str,
    iteration_number: Optional[int] = None,
    **kwargs
) -> str:
    """
    Log worker iteration start and bind a fresh correlation id.

    Args:
        worker_name: Name of the worker (e.g., "reminders")
        iteration_number: Iteration number (optional)
        **kwargs: Additional context to log (e.g., trigger="hourly")

    Returns:
        Correlation ID for this iteration
    """
    correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)

    log_data = {
        "event": "ITERATION_START",
        "worker": worker_name,
        "correlation_id": correlation_id,
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "timestamp": _utc_timestamp(),
    }

    if iteration_number is not None:
        log_data["iteration_number"] = iteration_number

    if kwargs:
        log_data.update(kwargs)

    log_data["level"] = "INFO"
    logger.info(json.dumps(log_data, default=str))
    return correlation_id


def log_worker_iteration_end(
    worker_name: str,
    outcome: str,  # "success" | "degraded" | "failed" | "skipped"
    items_processed: Optional[int] = None,
    error_type: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> None:
    """
    Log worker iteration end.

    Args:
        worker_name: Name of the worker
        outcome: Outcome of the iteration ("success" | "degraded" | "failed" | "skipped")
        items_processed: Number of items processed (optional)
        error_type: Type of error if outcome is "failed" (optional)
        duration_ms: Duration of the iteration in milliseconds (optional)
        **kwargs: Additional context to log
    """
    log_data = {
        "event": "ITERATION_END",
        "worker": worker_name,
        "correlation_id": get_correlation_id(),
        "component": "worker",
        "operation": f"{worker_name}_iteration",
        "outcome": outcome,
        "timestamp": _utc_timestamp(),
    }

    if items_processed is not None:
        log_data["items_processed"] = items_processed

    if error_type:
        log_data["error_type"] = error_type

    if duration_ms is not None:
        log_data["duration_ms"] = round(duration_ms, 1)

    if kwargs:
        log_data.update(kwargs)

    if outcome == "failed":
        log_data["level"] = "ERROR"
        logger.error(json.dumps(log_data, default=str))
    elif outcome == "degraded":
        log_data["level"] = "WARNING"
        logger.warning(json.dumps(log_data, default=str))
    else:
        log_data["level"] = "INFO"
        logger.info(json.dumps(log_data, default=str))


def classify_error(exception: BaseException) -> str:
    """
    Classify error type for the failure taxonomy.

    Returns:
        "infra_error" | "dependency_error" | "domain_error" | "unexpected_error"
    """
    import asyncio
    import asyncpg
    import httpx
    from app.services.notifications.exceptions import (
        NotificationServiceError,
        DeliveryError,
        PersistenceError,
        StoreUnavailableError,
    )

    if isinstance(exception, DeliveryError):
        return "dependency_error"

    if isinstance(exception, (PersistenceError, StoreUnavailableError)):
        return "infra_error"

    if isinstance(exception, NotificationServiceError):
        return "domain_error"

    if isinstance(exception, (
        asyncpg.PostgresError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return "infra_error"

    if isinstance(exception, httpx.HTTPError):
        return "dependency_error"

    return "unexpected_error"
