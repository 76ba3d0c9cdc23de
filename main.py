import asyncio
import logging
import os
import signal
import uuid
from datetime import datetime, timezone

# Configure logging FIRST (before any other imports that may log)
# Routes INFO/WARNING → stdout, ERROR/CRITICAL → stderr for correct container classification
from app.core.logging_config import setup_logging
setup_logging(os.getenv("LOG_LEVEL", "INFO"))

import config
import database
import redis_client
import reminders
import health_server
from app.core.feature_flags import get_feature_flags
from app.core.structured_logger import log_event

# ====================================================================================
# LOGGING CONTRACT
# ====================================================================================
#
# Standard log fields (logical, not enforced by library):
# - component        (scheduler / worker / http / infra / shutdown)
# - operation        (what is happening)
# - correlation_id   (scan id)
# - outcome          (success | degraded | failed | skipped)
# - duration_ms      (when applicable)
# - reason           (short, non-PII explanation)
#
# Workers log ITERATION_START / ITERATION_END once per scan; no per-user
# spam above DEBUG except sends, failures and malformed data.
#
# FAILURE TAXONOMY:
# - infra_error         (DB down, Redis, network, timeouts)
# - dependency_error    (email provider)
# - domain_error        (malformed subscription, duplicate log entry)
# - unexpected_error    (bug, invariant violation)
#
# SECURITY:
# - DO NOT log secrets or API keys; e-mail addresses only at DEBUG
# ====================================================================================

logger = logging.getLogger(__name__)

DB_RETRY_INTERVAL_SECONDS = 30


async def retry_db_init():
    """
    Фоновая задача повторной инициализации БД

    Пока DB_READY == False, сканы прерываются как store_unavailable; как только
    init_db() проходит, следующее срабатывание расписания работает штатно.
    """
    logger.info(f"Starting DB initialization retry task (will retry every {DB_RETRY_INTERVAL_SECONDS} seconds)")
    while not database.DB_READY:
        await asyncio.sleep(DB_RETRY_INTERVAL_SECONDS)
        logger.info("Retrying database initialization...")
        try:
            if await database.init_db():
                logger.info("DATABASE RECOVERY SUCCESSFUL - reminder scans resume on next trigger")
                break
            logger.warning("Database initialization retry failed, will retry later")
        except Exception as e:
            logger.warning(f"Database initialization retry error: {type(e).__name__}: {e}")
            logger.debug("Full retry error details:", exc_info=True)
    logger.info("DB retry task finished")


async def main():
    instance_id = os.getenv("INSTANCE_ID", str(uuid.uuid4()))
    logger.info(
        "WORKER_INSTANCE_STARTED pid=%s instance_id=%s PROCESS_START_TIMESTAMP=%s",
        os.getpid(), instance_id, datetime.now(timezone.utc).isoformat(),
    )
    logger.info(f"Starting reminder worker in {config.APP_ENV.upper()} environment")
    logger.info(f"Using DATABASE_URL from {config.APP_ENV.upper()}_DATABASE_URL")

    flags = get_feature_flags()
    if not flags.background_workers_enabled:
        logger.warning("BACKGROUND_WORKERS_DISABLED - scheduled scans will be skipped")

    # ====================================================================================
    # SAFE STARTUP GUARD: процесс стартует даже без БД (degraded mode)
    # ====================================================================================
    try:
        if await database.init_db():
            logger.info("DATABASE INITIALIZATION COMPLETED SUCCESSFULLY")
        else:
            logger.error("DB INIT FAILED - RUNNING IN DEGRADED MODE")
    except Exception as e:
        logger.exception("DB INIT FAILED - RUNNING IN DEGRADED MODE")
        logger.error(f"Database initialization error: {type(e).__name__}: {e}")
        database.DB_READY = False

    # Redis is optional: without it only the in-process scan guard applies
    redis_instance = await redis_client.get_redis_client()
    if redis_instance is not None and not await redis_client.check_redis_connection():
        logger.warning("Redis configured but unreachable - distributed scan lock will fail open")

    scheduler = reminders.create_reminder_scheduler(redis_client=redis_instance)

    # Centralized list for graceful shutdown
    background_tasks = []

    background_tasks.append(asyncio.create_task(reminders.reminders_task(scheduler), name="reminders"))
    logger.info("Reminders task started")

    background_tasks.append(asyncio.create_task(
        health_server.health_server_task(port=config.HEALTH_PORT, scheduler=scheduler),
        name="health_server",
    ))

    if not database.DB_READY:
        background_tasks.append(asyncio.create_task(retry_db_init(), name="db_retry"))
        logger.info("DB retry task started")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still works
            pass

    try:
        await stop_event.wait()
        log_event(logger, component="shutdown", operation="signal_received", outcome="success")
    finally:
        log_event(logger, component="shutdown", operation="shutdown_start", outcome="success")

        log_event(
            logger,
            component="shutdown",
            operation="shutdown_tasks_cancelling",
            outcome="success",
            reason=f"count={len(background_tasks)}",
        )

        # Step 1: Cancel all tasks
        for task in background_tasks:
            if not task.done():
                task.cancel()

        # Step 2: Await all tasks (reminders_task drains an in-flight scan)
        for task in background_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Error during shutdown of task {task.get_name()}: {e}")

        log_event(logger, component="shutdown", operation="shutdown_tasks_cancelled", outcome="success")

        try:
            await database.close_pool()
        except Exception as e:
            logger.error(f"Error closing database pool: {e}")

        try:
            await redis_client.close_redis_client()
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")

        log_event(logger, component="shutdown", operation="shutdown_completed", outcome="success")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Worker stopped")
