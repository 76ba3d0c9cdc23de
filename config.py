import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: Изоляция PROD / STAGE / LOCAL через префиксы
# ====================================================================================
# Все переменные окружения читаются с префиксом окружения:
#   - PROD: PROD_DATABASE_URL, PROD_RESEND_API_KEY, PROD_REDIS_URL
#   - STAGE: STAGE_DATABASE_URL, STAGE_RESEND_API_KEY, STAGE_REDIS_URL
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_RESEND_API_KEY, LOCAL_REDIS_URL
#
# STAGE воркер не сможет отправить письма через PROD ключ, даже если он
# случайно задан в окружении.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Получить переменную окружения с префиксом окружения

    Args:
        key: Имя переменной без префикса (например, "DATABASE_URL")
        default: Значение по умолчанию, если переменная не задана

    Returns:
        Значение переменной с префиксом (например, "STAGE_DATABASE_URL")

    Example:
        env("DATABASE_URL") -> "PROD_DATABASE_URL" (если APP_ENV=prod)
        env("EMAIL_TIMEOUT_SECONDS", default="10") -> "10" если не задано
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _env_int(key: str, default: int, minimum: int, maximum: int) -> int:
    raw = env(key, default=str(default))
    try:
        value = int(raw)
    except ValueError:
        print(f"WARNING: {APP_ENV.upper()}_{key}={raw!r} is not an integer, using {default}", file=sys.stderr)
        value = default
    return max(minimum, min(maximum, value))


# Защита от прямого использования переменных без префикса
_direct_usage_vars = ["DATABASE_URL", "RESEND_API_KEY"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)

# ====================================================================================
# SECRET & CONFIG SAFETY
# ====================================================================================
# Secrets are validated at startup and never logged.
# Required in PROD: DATABASE_URL. RESEND_API_KEY missing => emails fail and are
# recorded as failed attempts (the scan itself keeps running).
# ====================================================================================

DATABASE_URL = env("DATABASE_URL")
if not DATABASE_URL and IS_PROD:
    print(f"ERROR: {APP_ENV.upper()}_DATABASE_URL is REQUIRED in PROD!", file=sys.stderr)
    sys.exit(1)

# Redis for the cross-instance scan lock (optional: single instance works without it)
REDIS_URL = env("REDIS_URL", default="")

# Resend e-mail API
RESEND_API_KEY = env("RESEND_API_KEY")
RESEND_API_URL = env("RESEND_API_URL", default="https://api.resend.com")
EMAIL_FROM = env("EMAIL_FROM", default="Elevate <onboarding@resend.dev>")
FRONTEND_URL = env("FRONTEND_URL", default="http://localhost:3000")
EMAIL_TIMEOUT_SECONDS = float(env("EMAIL_TIMEOUT_SECONDS", default="10.0"))

if not RESEND_API_KEY:
    print(f"WARNING: {APP_ENV.upper()}_RESEND_API_KEY is not set - reminder emails will fail", file=sys.stderr)

# Reminder scheduler cadence
# Daily trigger hour (UTC) + hourly trigger at the top of every hour
REMINDER_DAILY_HOUR = _env_int("REMINDER_DAILY_HOUR", 9, 0, 23)
REMINDER_HOURLY_ENABLED = env("REMINDER_HOURLY_ENABLED", default="true").lower() == "true"
REMINDER_SCAN_CONCURRENCY = _env_int("REMINDER_SCAN_CONCURRENCY", 5, 1, 50)
REMINDER_SCAN_TIMEOUT_SECONDS = _env_int("REMINDER_SCAN_TIMEOUT_SECONDS", 600, 30, 3600)
REMINDER_STARTUP_DELAY_SECONDS = _env_int("REMINDER_STARTUP_DELAY_SECONDS", 30, 0, 600)

# HTTP server (health + operational endpoints)
HEALTH_PORT = int(os.getenv("PORT") or env("HEALTH_PORT") or "8080")

LOG_LEVEL = env("LOG_LEVEL", default="INFO").upper()
