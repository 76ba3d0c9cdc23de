import asyncpg
import json
import os
import sys
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging
import config
import migrations
from app.utils.retry import retry_async
from app.core.metrics import get_metrics, timer

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: Глобальный флаг готовности базы данных
# ====================================================================================
# Флаг отражает, инициализирована ли база данных (пул создан, миграции применены).
# Пока False, сканы напоминаний прерываются как StoreUnavailable и повторяются
# на следующем срабатывании расписания.
# ====================================================================================
DB_READY: bool = False


# ====================================================================================
# UTC HELPERS: DB boundary: TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# STRICT RULE: All datetime passed TO asyncpg → _to_db_utc. All datetime read FROM DB → _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert aware datetime to naive UTC for DB storage. Naive input is taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive DB datetime to aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def _decode_json(value: Any) -> Any:
    """asyncpg returns JSONB as str unless a codec is registered"""
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("DB_JSON_DECODE_FAILED value_prefix=%r", str(value)[:40])
            return None
    return value


def _normalize_user_row(row) -> Dict[str, Any]:
    d = dict(row)
    d["subscription"] = _decode_json(d.get("subscription"))
    d["notification_preferences"] = _decode_json(d.get("notification_preferences"))
    return d


def _normalize_log_row(row) -> Dict[str, Any]:
    d = dict(row)
    d["sent_at"] = _from_db_utc(d.get("sent_at"))
    d["metadata"] = _decode_json(d.get("metadata")) or {}
    return d


DATABASE_URL = config.DATABASE_URL


# ====================================================================================
# DB POOL CONFIG: ENV-overridable, single source of truth
# ====================================================================================
def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "1")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


if not DATABASE_URL:
    # В STAGE/LOCAL допустим degraded mode (PROD уже завершился в config.py)
    logger.warning(f"{config.APP_ENV.upper()}_DATABASE_URL is not set - running in degraded mode")

# Глобальный пул соединений
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Получить пул соединений, создав его при необходимости

    - DB unavailable → RuntimeError / asyncpg error raised to the caller
    - Connection errors are retried once with backoff (transient only)
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        with timer("db_latency_ms"):
            _pool = await retry_async(
                lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
                retries=1,
                base_delay=0.5,
                max_delay=5.0,
            )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    """Закрыть пул соединений"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Инициализация базы данных: пул + миграции

    Returns:
        True если БД готова, False если DATABASE_URL не задан или произошла ошибка
    """
    global DB_READY

    if not DATABASE_URL:
        DB_READY = False
        return False

    try:
        pool = await get_pool()
        async with pool.acquire() as conn:
            await migrations.run_migrations(conn)
        DB_READY = True
        logger.info("DB_READY=True")
        return True
    except Exception as e:
        DB_READY = False
        logger.error(f"Database initialization failed: {type(e).__name__}: {str(e)[:200]}")
        return False


async def _require_pool() -> asyncpg.Pool:
    if not DB_READY:
        raise RuntimeError("Database is not ready")
    return await get_pool()


# ====================================================================================
# USERS / SUBSCRIPTIONS
# ====================================================================================

async def list_users_with_subscription() -> List[Dict[str, Any]]:
    """
    Получить всех пользователей с непустой подпиской

    Returns:
        Список словарей users (subscription / notification_preferences уже декодированы)

    Raises:
        RuntimeError / asyncpg errors: БД недоступна
    """
    pool = await _require_pool()
    with timer("db_latency_ms"):
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT id, name, email, subscription, notification_preferences
                   FROM users
                   WHERE subscription IS NOT NULL AND subscription <> 'null'::jsonb
                   ORDER BY id"""
            )
    return [_normalize_user_row(row) for row in rows]


async def update_notification_preferences(user_id: int, preferences: Dict[str, Any]) -> bool:
    """
    Перезаписать notification_preferences пользователя

    Returns:
        True если строка обновлена, False если пользователь не найден
    """
    pool = await _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            """UPDATE users
               SET notification_preferences = $2::jsonb,
                   updated_at = (NOW() AT TIME ZONE 'UTC')
               WHERE id = $1""",
            user_id,
            json.dumps(preferences),
        )
    # asyncpg execute возвращает строку вида "UPDATE 1" или "UPDATE 0"
    return result.endswith(" 1")


async def update_last_reminder_sent(user_id: int, at: datetime) -> bool:
    """
    Записать только ключ lastReminderSent, остальные настройки не трогаются

    Returns:
        True если строка обновлена, False если пользователь не найден
    """
    pool = await _require_pool()
    async with pool.acquire() as conn:
        result = await conn.execute(
            """UPDATE users
               SET notification_preferences = jsonb_set(
                       COALESCE(notification_preferences, '{}'::jsonb),
                       '{lastReminderSent}',
                       to_jsonb($2::text),
                       true
                   ),
                   updated_at = (NOW() AT TIME ZONE 'UTC')
               WHERE id = $1""",
            user_id,
            at.astimezone(timezone.utc).isoformat(),
        )
    return result.endswith(" 1")


# ====================================================================================
# NOTIFICATION LOG (append-only)
# ====================================================================================

async def find_recent_sent_notification(
    user_id: int,
    tier: str,
    since: datetime,
) -> Optional[Dict[str, Any]]:
    """
    Последняя успешная отправка (user, tier) строго позже since

    Returns:
        Строка notification_logs или None
    """
    pool = await _require_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(
            """SELECT id, user_id, channel, tier, status, sent_at, metadata
               FROM notification_logs
               WHERE user_id = $1 AND tier = $2 AND status = 'sent' AND sent_at > $3
               ORDER BY sent_at DESC
               LIMIT 1""",
            user_id,
            tier,
            _to_db_utc(since),
        )
    return _normalize_log_row(row) if row else None


async def insert_notification_log(
    user_id: int,
    channel: str,
    tier: str,
    status: str,
    sent_at: datetime,
    metadata: Dict[str, Any],
) -> Optional[int]:
    """
    Добавить запись в notification_logs

    Returns:
        id новой записи, или None если уникальный индекс отклонил дубль
        (второй 'sent' для того же user/tier/дня)
    """
    pool = await _require_pool()
    async with pool.acquire() as conn:
        new_id = await conn.fetchval(
            """INSERT INTO notification_logs (user_id, channel, tier, status, sent_at, metadata)
               VALUES ($1, $2, $3, $4, $5, $6::jsonb)
               ON CONFLICT DO NOTHING
               RETURNING id""",
            user_id,
            channel,
            tier,
            status,
            _to_db_utc(sent_at),
            json.dumps(metadata),
        )
    if new_id is None:
        get_metrics().increment_counter("notification_log_duplicates_total")
    return new_id


async def count_notification_logs(status: str) -> int:
    pool = await _require_pool()
    async with pool.acquire() as conn:
        value = await conn.fetchval(
            "SELECT COUNT(*) FROM notification_logs WHERE status = $1",
            status,
        )
    return int(value or 0)


async def get_recent_notification_logs(since: datetime, limit: int = 10) -> List[Dict[str, Any]]:
    """Записи notification_logs с sent_at >= since, новые первыми"""
    pool = await _require_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(
            """SELECT id, user_id, channel, tier, status, sent_at, metadata
               FROM notification_logs
               WHERE sent_at >= $1
               ORDER BY sent_at DESC, id DESC
               LIMIT $2""",
            _to_db_utc(since),
            limit,
        )
    return [_normalize_log_row(row) for row in rows]


if __name__ == "__main__":
    # Manual schema bootstrap: APP_ENV=local LOCAL_DATABASE_URL=... python database.py
    import asyncio

    ok = asyncio.run(init_db())
    print("DB_READY" if ok else "DB init failed", file=sys.stderr)
    sys.exit(0 if ok else 1)
