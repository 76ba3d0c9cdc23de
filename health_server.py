"""
HTTP Health Check Server

Operational surface of the reminder worker:
- GET  /health               liveness + DB/Redis readiness + in-process metrics
- GET  /notifications/stats  notification log aggregates and scheduler state
- POST /notifications/run    manual reminder scan (same overlap guard as triggers)

/health does NOT depend on the database - it only reads the DB_READY flag
and always responds.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from aiohttp import web
import database
import redis_client
from app.core.metrics import get_metrics
from app.services.notifications.exceptions import NotificationServiceError

logger = logging.getLogger(__name__)

SCHEDULER_KEY = web.AppKey("scheduler")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def health_handler(request: web.Request) -> web.Response:
    """
    Health check endpoint handler

    Response format:
        {
            "status": "ok" | "degraded",
            "db_ready": true | false,
            "redis_ready": true | false,
            "scheduler": "running" | "stopped" | null,
            "scan_running": true | false,
            "last_scan": {...} | null,
            "metrics": {...},
            "timestamp": "2024-01-01T12:00:00Z"
        }

    HTTP status is 200 for both ok and degraded; monitoring reads "status".
    """
    try:
        # Читаем глобальный флаг (не обращаемся к БД)
        db_ready = database.DB_READY
        scheduler = request.app.get(SCHEDULER_KEY)

        response_data: Dict[str, Any] = {
            "status": "ok" if db_ready else "degraded",
            "db_ready": db_ready,
            "redis_ready": redis_client.REDIS_READY,
            "scheduler": scheduler.state.value if scheduler else None,
            "scan_running": scheduler.is_scan_running if scheduler else False,
            "last_scan": scheduler.last_scan.to_dict() if scheduler and scheduler.last_scan else None,
            "metrics": get_metrics().get_all_metrics(),
            "timestamp": _timestamp(),
        }
        return web.json_response(response_data, status=200)
    except Exception as e:
        # Критическая ошибка - логируем, но всё равно отвечаем
        logger.exception(f"Error in health endpoint: {e}")
        response_data = {
            "status": "degraded",
            "db_ready": False,
            "redis_ready": False,
            "timestamp": _timestamp(),
            "error": "Health check error",
        }
        return web.json_response(response_data, status=200)


async def stats_handler(request: web.Request) -> web.Response:
    scheduler = request.app.get(SCHEDULER_KEY)
    if scheduler is None:
        return web.json_response({"error": "scheduler not configured"}, status=503)

    try:
        stats = await scheduler.get_stats()
    except NotificationServiceError as e:
        logger.error(f"Notification stats unavailable: {e}")
        return web.json_response({"error": "notification log unavailable"}, status=503)

    return web.json_response(stats, status=200, dumps=_dumps)


async def run_handler(request: web.Request) -> web.Response:
    """
    Manual scan. Runs synchronously and returns the ScanSummary.

    409 when a scan is already in flight on this instance.
    """
    scheduler = request.app.get(SCHEDULER_KEY)
    if scheduler is None:
        return web.json_response({"error": "scheduler not configured"}, status=503)

    summary = await scheduler.run_once()
    status = 409 if summary.reason == "scan_already_running" else 200
    return web.json_response(summary.to_dict(), status=status, dumps=_dumps)


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)


def create_health_app(scheduler=None) -> web.Application:
    """Создать aiohttp приложение с health и notifications endpoints"""
    app = web.Application()
    if scheduler is not None:
        app[SCHEDULER_KEY] = scheduler

    app.router.add_get("/health", health_handler)
    app.router.add_get("/notifications/stats", stats_handler)
    app.router.add_post("/notifications/run", run_handler)

    # Корневой endpoint для простой проверки
    async def root_handler(request: web.Request) -> web.Response:
        return web.json_response({"service": "subscription-reminders", "health": "/health"})

    app.router.add_get("/", root_handler)
    return app


async def start_health_server(host: str = "0.0.0.0", port: int = 8080, scheduler=None) -> web.AppRunner:
    """
    Запустить HTTP сервер

    Args:
        host: Хост для прослушивания (по умолчанию 0.0.0.0)
        port: Порт для прослушивания (по умолчанию 8080)
        scheduler: ReminderScheduler for the notifications endpoints (optional)

    Returns:
        AppRunner для управления сервером
    """
    app = create_health_app(scheduler)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Health check server started on http://{host}:{port}/health")
    return runner


async def health_server_task(host: str = "0.0.0.0", port: int = 8080, scheduler=None):
    """
    Фоновая задача для запуска health check сервера

    Работает до отмены; при отмене сервер останавливается.
    """
    runner: Optional[web.AppRunner] = None
    try:
        runner = await start_health_server(host, port, scheduler)

        # Задача будет отменена при остановке процесса
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Health server task cancelled")
        raise
    finally:
        if runner:
            try:
                await runner.cleanup()
                logger.info("Health server stopped")
            except Exception as e:
                logger.error(f"Error stopping health server: {e}")
