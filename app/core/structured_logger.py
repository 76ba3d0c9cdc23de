"""
Structured lifecycle logging.

One contract for scheduler and server lifecycle events:
- component
- operation
- correlation_id (optional)
- outcome
- duration_ms (optional, omitted if None)
- reason (optional)
- any extra scalar fields (counts, trigger names)

Do not log secrets, email bodies or API keys.
"""
from logging import Logger
from typing import Any, Optional


def log_event(
    logger: Logger,
    *,
    component: str,
    operation: str,
    outcome: str,
    correlation_id: Optional[str] = None,
    duration_ms: Optional[int] = None,
    reason: Optional[str] = None,
    level: str = "info",
    message: Optional[str] = None,
    **fields: Any,
) -> None:
    """
    Emit structured log event.

    Args:
        logger: Logger instance
        component: Component name (e.g., "scheduler", "http", "email")
        operation: Operation name (e.g., "scheduler_start", "scan_lock")
        outcome: Outcome (e.g., "success", "skipped", "failed")
        correlation_id: Scan/request identifier (optional)
        duration_ms: Duration in milliseconds (omitted if None)
        reason: Short non-PII explanation (optional)
        level: Log level ("info", "warning", "error", "critical", "debug")
        message: Optional override message (defaults to component/operation/outcome)
        **fields: Extra scalar fields attached to the record
    """
    extra: dict = {
        "component": component,
        "operation": operation,
        "outcome": outcome,
    }
    if correlation_id is not None:
        extra["correlation_id"] = str(correlation_id)
    if duration_ms is not None:
        extra["duration_ms"] = duration_ms
    if reason is not None:
        extra["reason"] = reason
    extra.update(fields)

    msg = message or f"{component} {operation} outcome={outcome}"
    if reason is not None and message is None:
        msg = f"{msg} reason={reason}"
    log_method = getattr(logger, level.lower(), logger.info)
    log_method(msg, extra=extra)
