"""
Tests for the asyncpg persistence layer and the migration runner.

No live Postgres: the pool/connection are mocks and the tests assert on the
SQL contract (parameters, conflict handling, UTC conversion).
"""
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import database
import migrations


NOW = datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


def _pool_with(conn):
    acquire_cm = MagicMock()
    acquire_cm.__aenter__ = AsyncMock(return_value=conn)
    acquire_cm.__aexit__ = AsyncMock(return_value=False)
    pool = MagicMock()
    pool.acquire.return_value = acquire_cm
    return pool


def _transaction_cm():
    cm = MagicMock()
    cm.__aenter__ = AsyncMock(return_value=None)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


@pytest.fixture
def conn():
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.transaction = MagicMock(side_effect=lambda: _transaction_cm())
    return conn


@pytest.fixture
def ready_db(conn):
    with patch.object(database, "DB_READY", True):
        with patch.object(database, "get_pool", AsyncMock(return_value=_pool_with(conn))):
            yield conn


class TestUtcHelpers:

    def test_to_db_utc_strips_tz(self):
        aware = datetime(2024, 1, 15, 12, 0, tzinfo=timezone(timedelta(hours=3)))
        assert database._to_db_utc(aware) == datetime(2024, 1, 15, 9, 0)

    def test_from_db_utc_adds_tz(self):
        assert database._from_db_utc(datetime(2024, 1, 15, 9, 0)) == NOW


class TestQueries:

    @pytest.mark.asyncio
    async def test_not_ready_raises(self):
        with patch.object(database, "DB_READY", False):
            with pytest.raises(RuntimeError):
                await database.list_users_with_subscription()

    @pytest.mark.asyncio
    async def test_list_users_decodes_json(self, ready_db):
        ready_db.fetch.return_value = [{
            "id": 1,
            "name": "Ann",
            "email": "ann@example.com",
            "subscription": json.dumps({"paymentDate": "2024-01-01T00:00:00Z"}),
            "notification_preferences": json.dumps({"emailReminders": True}),
        }]
        rows = await database.list_users_with_subscription()
        assert rows[0]["subscription"] == {"paymentDate": "2024-01-01T00:00:00Z"}
        assert rows[0]["notification_preferences"] == {"emailReminders": True}

    @pytest.mark.asyncio
    async def test_insert_passes_naive_utc_and_jsonb(self, ready_db):
        ready_db.fetchval.return_value = 17
        new_id = await database.insert_notification_log(
            user_id=1,
            channel="email",
            tier="1day_reminder",
            status="sent",
            sent_at=NOW,
            metadata={"providerMessageId": "re_1"},
        )
        assert new_id == 17
        sql, *args = ready_db.fetchval.call_args.args
        assert "ON CONFLICT DO NOTHING" in sql
        assert args[4] == datetime(2024, 1, 15, 9, 0)
        assert json.loads(args[5]) == {"providerMessageId": "re_1"}

    @pytest.mark.asyncio
    async def test_insert_conflict_returns_none(self, ready_db):
        ready_db.fetchval.return_value = None
        new_id = await database.insert_notification_log(1, "email", "1day_reminder", "sent", NOW, {})
        assert new_id is None

    @pytest.mark.asyncio
    async def test_find_recent_sent_is_strict(self, ready_db):
        ready_db.fetchrow.return_value = {
            "id": 3,
            "user_id": 1,
            "channel": "email",
            "tier": "1day_reminder",
            "status": "sent",
            "sent_at": datetime(2024, 1, 15, 8, 0),
            "metadata": '{"emailAddress": "a@example.com"}',
        }
        row = await database.find_recent_sent_notification(1, "1day_reminder", NOW - timedelta(days=1))
        sql = ready_db.fetchrow.call_args.args[0]
        assert "sent_at > $3" in sql
        assert "status = 'sent'" in sql
        assert row["sent_at"] == datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)
        assert row["metadata"] == {"emailAddress": "a@example.com"}

    @pytest.mark.asyncio
    async def test_update_preferences_reports_missing_user(self, ready_db):
        ready_db.execute.return_value = "UPDATE 0"
        assert await database.update_notification_preferences(1, {"emailReminders": False}) is False

    @pytest.mark.asyncio
    async def test_last_reminder_sent_sets_single_key(self, ready_db):
        assert await database.update_last_reminder_sent(1, NOW) is True
        sql, user_id, value = ready_db.execute.call_args.args
        assert "jsonb_set" in sql
        assert "'{lastReminderSent}'" in sql
        assert "$2::jsonb" not in sql
        assert user_id == 1
        assert value == "2024-01-15T09:00:00+00:00"

    @pytest.mark.asyncio
    async def test_count(self, ready_db):
        ready_db.fetchval.return_value = 5
        assert await database.count_notification_logs("failed") == 5


class TestMigrations:

    def test_bundled_migrations_are_ordered(self):
        versions = [version for version, _ in migrations.get_migration_files()]
        assert versions == sorted(versions, key=int)
        assert versions[:3] == ["001", "002", "003"]

    def test_numeric_sort_and_bad_names_skipped(self, tmp_path):
        for name in ("010_later.sql", "002_second.sql", "notes.sql", "001_first.sql"):
            (tmp_path / name).write_text("SELECT 1;", encoding="utf-8")
        assert [v for v, _ in migrations.get_migration_files(tmp_path)] == ["001", "002", "010"]

    @pytest.mark.asyncio
    async def test_applies_only_pending(self, conn, tmp_path):
        (tmp_path / "001_first.sql").write_text("CREATE TABLE a (id INT);", encoding="utf-8")
        (tmp_path / "002_second.sql").write_text("CREATE TABLE b (id INT);", encoding="utf-8")
        conn.fetch.return_value = [{"version": "001"}]

        applied = await migrations.run_migrations(conn, tmp_path)

        assert applied == 1
        executed = [c.args[0] for c in conn.execute.call_args_list]
        assert "CREATE TABLE b (id INT);" in executed
        assert "CREATE TABLE a (id INT);" not in executed
        assert executed[-1] == "SELECT pg_advisory_unlock($1)"

    @pytest.mark.asyncio
    async def test_failure_propagates_and_unlocks(self, conn, tmp_path):
        (tmp_path / "001_broken.sql").write_text("CREATE TABLE", encoding="utf-8")

        async def execute(sql, *args):
            if sql == "CREATE TABLE":
                raise RuntimeError("syntax error")
            return "OK"

        conn.execute = AsyncMock(side_effect=execute)
        with pytest.raises(RuntimeError):
            await migrations.run_migrations(conn, tmp_path)
        assert conn.execute.call_args_list[-1].args[0] == "SELECT pg_advisory_unlock($1)"
