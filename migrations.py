"""
Database Migration System

Versioned SQL migrations from ./migrations (NNN_name.sql). Each file is
applied in its own transaction and recorded in schema_migrations.
A Postgres advisory lock serialises migration runs when several worker
instances boot at the same time.
"""
import re
import logging
from pathlib import Path
from typing import List, Set, Tuple
import asyncpg

logger = logging.getLogger(__name__)

# Путь к папке с миграциями
MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Arbitrary constant shared by every instance of this service
MIGRATIONS_ADVISORY_LOCK_ID = 72_431_001

_MIGRATION_NAME = re.compile(r'^(\d+)_(.+)\.sql$')


async def ensure_migrations_table(conn: asyncpg.Connection):
    """Создать таблицу schema_migrations, если её нет"""
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            name TEXT,
            applied_at TIMESTAMP DEFAULT (NOW() AT TIME ZONE 'UTC')
        )
    """)


async def get_applied_migrations(conn: asyncpg.Connection) -> Set[str]:
    rows = await conn.fetch("SELECT version FROM schema_migrations")
    return {row["version"] for row in rows}


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> List[Tuple[str, Path]]:
    """
    Список файлов миграций, отсортированный по числовой версии

    Returns:
        [(version, path), ...]; files not matching NNN_name.sql are skipped with a warning
    """
    if not directory.exists():
        logger.warning(f"Migrations directory not found: {directory}")
        return []

    migrations = []
    for file_path in directory.glob("*.sql"):
        match = _MIGRATION_NAME.match(file_path.name)
        if match:
            migrations.append((match.group(1), file_path))
        else:
            logger.warning(f"Migration file name doesn't match pattern: {file_path.name}")

    # Числовая сортировка: "010" после "009", а не после "001"
    migrations.sort(key=lambda x: int(x[0]))
    return migrations


async def apply_migration(conn: asyncpg.Connection, version: str, migration_path: Path) -> None:
    """
    Apply one migration file. The caller owns the transaction.

    Raises:
        asyncpg.PostgresError: SQL failed (transaction is rolled back by the caller)
    """
    sql_content = migration_path.read_text(encoding='utf-8')

    if sql_content.strip():
        logger.info(f"Applying migration {version}: {migration_path.name}")
        await conn.execute(sql_content)
    else:
        logger.warning(f"Migration {version} is empty, recording as applied")

    await conn.execute(
        "INSERT INTO schema_migrations (version, name) VALUES ($1, $2) ON CONFLICT (version) DO NOTHING",
        version,
        migration_path.name,
    )


async def run_migrations(conn: asyncpg.Connection, directory: Path = MIGRATIONS_DIR) -> int:
    """
    Применить все неприменённые миграции

    Args:
        conn: Соединение с БД (вне транзакции, транзакции создаются здесь)
        directory: Folder with NNN_name.sql files

    Returns:
        Number of migrations applied in this run

    Raises:
        Любая ошибка миграции пробрасывается: init_db не должен считать БД готовой
    """
    await conn.execute("SELECT pg_advisory_lock($1)", MIGRATIONS_ADVISORY_LOCK_ID)
    try:
        await ensure_migrations_table(conn)
        applied = await get_applied_migrations(conn)
        applied_now = 0

        for version, migration_path in get_migration_files(directory):
            if version in applied:
                continue
            try:
                async with conn.transaction():
                    await apply_migration(conn, version, migration_path)
            except Exception:
                logger.error(f"CRITICAL: Migration {version} ({migration_path.name}) FAILED")
                raise
            applied_now += 1

        logger.info(f"Migrations up to date (applied now: {applied_now}, total: {len(applied) + applied_now})")
        return applied_now
    finally:
        await conn.execute("SELECT pg_advisory_unlock($1)", MIGRATIONS_ADVISORY_LOCK_ID)
