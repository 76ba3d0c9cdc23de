"""
Tests for the reminder scheduler.

Scans run against in-memory stores, a frozen clock and a fake channel:
1. End-to-end scenarios (7-day send, same-day re-run, expired re-send next day, failed delivery)
2. Overlap guard (in-process lock, Redis lock)
3. Error isolation (store down, log write failure, channel errors and timeouts)
4. Lifecycle (start/stop, triggers, reminders_task)
"""
import asyncio
import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from app.core.feature_flags import FeatureFlags
from app.core.metrics import get_metrics
from app.services.notifications.exceptions import PersistenceError, StoreUnavailableError
from app.services.notifications.models import (
    DeliveryOutcome,
    NotificationPreferences,
    NotificationStatus,
    ReminderTier,
    Subscription,
    User,
)
from app.utils.clock import FrozenClock
from reminders import (
    ReminderScheduler,
    SchedulerState,
    next_daily_run,
    next_hourly_run,
    reminders_task,
)


ALL_TIERS = NotificationPreferences(reminder_frequency=frozenset({"7days", "3days", "1day", "expired"}))


def _scheduler(user_store, log_store, channel, clock, flags=None, **kwargs):
    params = dict(
        user_store=user_store,
        log_store=log_store,
        channel=channel,
        clock=clock,
        feature_flags=flags or FeatureFlags(),
        concurrency=3,
        daily_hour=9,
        hourly_enabled=True,
        scan_timeout_seconds=5,
    )
    params.update(kwargs)
    return ReminderScheduler(**params)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_seven_day_reminder_sent_and_logged(self, user_store, log_store, channel, clock, now):
        """Scenario A: paid 23 days ago, 30-day validity → 7-day reminder"""
        user_store.add(User(
            id=1,
            email="ann@example.com",
            name="Ann",
            subscription=Subscription(payment_date=now - timedelta(days=23), validity_days=30),
        ))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        summary = await scheduler.run_once()

        assert summary.outcome == "success"
        assert (summary.processed, summary.sent, summary.failed, summary.skipped) == (1, 1, 0, 0)
        assert channel.calls == [(1, ReminderTier.SEVEN_DAY, 7)]

        entries = log_store.entries
        assert len(entries) == 1
        assert entries[0].status is NotificationStatus.SENT
        assert entries[0].tier is ReminderTier.SEVEN_DAY
        assert entries[0].sent_at == now
        assert entries[0].metadata.email_address == "ann@example.com"
        assert entries[0].metadata.provider_message_id.startswith("msg-1-")

        assert user_store.get(1).preferences.last_reminder_sent == now
        assert get_metrics().get_counter("reminders_sent_total") == 1

    @pytest.mark.asyncio
    async def test_same_day_rerun_sends_nothing(self, user_store, log_store, channel, clock, user_factory):
        """Scenario B: re-running the scan the same day is a no-op"""
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        await scheduler.run_once()
        clock.advance(hours=1)
        summary = await scheduler.run_once()

        assert summary.sent == 0
        assert summary.skipped == 1
        assert len(channel.calls) == 1
        assert len(log_store.entries) == 1

    @pytest.mark.asyncio
    async def test_expired_reminder_repeats_next_day(self, user_store, log_store, channel, clock, now):
        """Scenario C: paid 31 days ago → expired; a new entry is allowed 24h later"""
        user_store.add(User(
            id=1,
            email="bo@example.com",
            subscription=Subscription(payment_date=now - timedelta(days=31), validity_days=30),
            preferences=ALL_TIERS,
        ))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        first = await scheduler.run_once()
        clock.advance(days=1)
        second = await scheduler.run_once()

        assert first.sent == 1
        assert second.sent == 1
        sent = [e for e in log_store.entries if e.status is NotificationStatus.SENT]
        assert [e.tier for e in sent] == [ReminderTier.EXPIRED, ReminderTier.EXPIRED]
        assert sent[1].sent_at - sent[0].sent_at == timedelta(days=1)

    @pytest.mark.asyncio
    async def test_expired_not_sent_without_opt_in(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=-2)))
        summary = await _scheduler(user_store, log_store, channel, clock).run_once()
        assert summary.skipped == 1
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_failed_delivery_is_logged_and_retried_next_scan(self, user_store, log_store, channel, clock, user_factory):
        """Scenario D: failed attempts never suppress a later attempt"""
        user_store.add(user_factory(1, timedelta(days=3)))
        channel.failing_users.add(1)
        scheduler = _scheduler(user_store, log_store, channel, clock)

        summary = await scheduler.run_once()
        assert summary.failed == 1
        entry = log_store.entries[0]
        assert entry.status is NotificationStatus.FAILED
        assert entry.metadata.error_message == "mailbox unavailable"
        # lastReminderSent is updated after any attempt
        assert user_store.get(1).preferences.last_reminder_sent == clock.now()

        channel.failing_users.clear()
        clock.advance(hours=1)
        summary = await scheduler.run_once()
        assert summary.sent == 1
        assert [e.status for e in log_store.entries] == [NotificationStatus.FAILED, NotificationStatus.SENT]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent_for_many_users(self, user_store, log_store, channel, clock, user_factory):
        offsets = [7, 3, 1, 5, 30, -3]
        for user_id, days in enumerate(offsets, start=1):
            user_store.add(user_factory(user_id, timedelta(days=days), preferences=ALL_TIERS))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        first = await scheduler.run_once()
        entries_after_first = len(log_store.entries)
        second = await scheduler.run_once()

        assert first.sent == 4
        assert first.skipped == 2
        assert second.sent == 0
        assert len(log_store.entries) == entries_after_first


class TestErrorIsolation:

    @pytest.mark.asyncio
    async def test_store_unavailable_aborts_without_writes(self, log_store, channel, clock):
        user_store = MagicMock()
        user_store.list_users_with_subscription = AsyncMock(side_effect=StoreUnavailableError("db down"))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        summary = await scheduler.run_once()

        assert summary.outcome == "aborted"
        assert summary.reason == "store_unavailable"
        assert log_store.entries == []
        assert channel.calls == []
        assert get_metrics().get_counter("reminder_scans_aborted_total") == 1

    @pytest.mark.asyncio
    async def test_malformed_subscription_skips_only_that_user(self, user_store, log_store, channel, clock, user_factory, now):
        user_store.add(User(id=1, email="x@example.com",
                            subscription=Subscription(payment_date=now, validity_days=None)))
        user_store.add(User.from_row({"id": 2, "email": "y@example.com",
                                      "subscription": {"paymentDate": "2024-01-01", "validityDays": "abc"}}))
        user_store.add(user_factory(3, timedelta(days=1)))

        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert summary.outcome == "success"
        assert summary.skipped == 2
        assert summary.sent == 1
        assert [e.user_id for e in log_store.entries] == [3]

    @pytest.mark.asyncio
    async def test_channel_exception_becomes_failed_entry(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        user_store.add(user_factory(2, timedelta(days=7)))
        channel.raising_users.add(1)

        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert (summary.sent, summary.failed) == (1, 1)
        by_user = {e.user_id: e for e in log_store.entries}
        assert by_user[1].status is NotificationStatus.FAILED
        assert "provider exploded" in by_user[1].metadata.error_message
        assert by_user[2].status is NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_delivery_timeout_is_failed_attempt(self, user_store, log_store, clock, user_factory, channel):
        channel.timeout_seconds = 0.05
        channel.delay = 1.0
        user_store.add(user_factory(1, timedelta(days=3)))

        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert summary.failed == 1
        entry = log_store.entries[0]
        assert entry.status is NotificationStatus.FAILED
        assert "timed out" in entry.metadata.error_message

    @pytest.mark.asyncio
    async def test_log_write_failure_does_not_stop_other_users(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        user_store.add(user_factory(2, timedelta(days=7)))
        real_append = log_store.append

        async def flaky_append(entry):
            if entry.user_id == 1:
                raise PersistenceError("disk full")
            return await real_append(entry)

        log_store.append = flaky_append
        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert summary.outcome == "success"
        assert summary.sent == 2
        assert summary.errors == 1
        assert [e.user_id for e in log_store.entries] == [2]
        assert get_metrics().get_counter("reminder_log_write_errors_total") == 1

    @pytest.mark.asyncio
    async def test_dedup_lookup_failure_records_failed_attempt(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=1)))
        log_store.find_recent_sent = AsyncMock(side_effect=PersistenceError("timeout"))

        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert channel.calls == []
        assert summary.failed == 1
        assert log_store.entries[0].status is NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_preferences_update_failure_is_ignored(self, log_store, channel, clock, user_factory):
        user_store = MagicMock()
        user_store.list_users_with_subscription = AsyncMock(return_value=[user_factory(1, timedelta(days=7))])
        user_store.update_last_reminder_sent = AsyncMock(side_effect=PersistenceError("read only"))

        summary = await _scheduler(user_store, log_store, channel, clock).run_once()

        assert summary.sent == 1
        assert summary.errors == 0
        user_store.update_last_reminder_sent.assert_awaited_once()
        user_store.update_notification_preferences.assert_not_called()

    @pytest.mark.asyncio
    async def test_opt_out_during_scan_survives_last_sent_update(self, user_store, log_store, channel, clock, user_factory):
        channel.delay = 0.05
        user = user_factory(1, timedelta(days=7))
        user_store.add(user)
        scheduler = _scheduler(user_store, log_store, channel, clock)

        scan = asyncio.create_task(scheduler.run_once())
        await asyncio.sleep(0.01)
        assert channel.calls, "send should be in flight"
        opted_out = NotificationPreferences(email_reminders_enabled=False, reminder_frequency=frozenset())
        user_store.add(replace(user, preferences=opted_out))
        summary = await scan

        assert summary.sent == 1
        prefs = user_store.get(1).preferences
        assert prefs.email_reminders_enabled is False
        assert prefs.reminder_frequency == frozenset()
        assert prefs.last_reminder_sent == clock.now()


class TestOverlapGuard:

    @pytest.mark.asyncio
    async def test_concurrent_scans_collapse(self, user_store, log_store, channel, clock, user_factory):
        channel.delay = 0.1
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, clock)

        first, second = await asyncio.gather(scheduler.run_scan("daily"), scheduler.run_scan("hourly"))

        assert first.outcome == "success"
        assert second.outcome == "skipped"
        assert second.reason == "scan_already_running"
        assert len(channel.calls) == 1
        assert get_metrics().get_counter("reminder_scans_skipped_total") == 1

    @pytest.mark.asyncio
    async def test_redis_lock_held_elsewhere_skips(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        redis = MagicMock()
        redis.set = AsyncMock(return_value=None)
        scheduler = _scheduler(user_store, log_store, channel, clock, redis_client=redis)

        summary = await scheduler.run_once()

        assert summary.outcome == "skipped"
        assert summary.reason == "scan_locked_by_another_instance"
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_redis_lock_acquired_and_released(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        release_script = AsyncMock(return_value=1)
        redis = MagicMock()
        redis.set = AsyncMock(return_value=True)
        redis.register_script = MagicMock(return_value=release_script)
        scheduler = _scheduler(user_store, log_store, channel, clock, redis_client=redis, lock_key="lock:test:scan")

        summary = await scheduler.run_once()

        assert summary.sent == 1
        assert redis.set.call_args.args[0] == "lock:test:scan"
        assert redis.set.call_args.kwargs["nx"] is True
        release_script.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redis_down_fails_open(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        redis = MagicMock()
        redis.set = AsyncMock(side_effect=ConnectionError("refused"))
        scheduler = _scheduler(user_store, log_store, channel, clock, redis_client=redis)

        summary = await scheduler.run_once()

        assert summary.outcome == "success"
        assert summary.sent == 1


class TestScanControls:

    @pytest.mark.asyncio
    async def test_kill_switch_skips_scan(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        flags = FeatureFlags(background_workers_enabled=True, email_reminders_enabled=False)

        summary = await _scheduler(user_store, log_store, channel, clock, flags=flags).run_once()

        assert summary.outcome == "skipped"
        assert summary.reason == "email_reminders_enabled=false"
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_scan_timeout_aborts(self, user_store, log_store, channel, clock, user_factory):
        channel.timeout_seconds = 5
        channel.delay = 2.0
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, clock, scan_timeout_seconds=0.1)

        summary = await scheduler.run_once()

        assert summary.outcome == "aborted"
        assert summary.reason == "scan_timeout"
        assert scheduler.is_scan_running is False

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, user_store, log_store, clock, user_factory):
        class CountingChannel:
            name = "email"
            timeout_seconds = 1.0

            def __init__(self):
                self.active = 0
                self.max_active = 0

            async def send(self, user, tier, remaining_days):
                self.active += 1
                self.max_active = max(self.max_active, self.active)
                await asyncio.sleep(0.02)
                self.active -= 1
                return DeliveryOutcome.delivered(f"id-{user.id}")

        for user_id in range(1, 9):
            user_store.add(user_factory(user_id, timedelta(days=7)))
        counting = CountingChannel()

        summary = await _scheduler(user_store, log_store, counting, clock, concurrency=2).run_once()

        assert summary.sent == 8
        assert counting.max_active <= 2


class TestStats:

    @pytest.mark.asyncio
    async def test_get_stats(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        user_store.add(user_factory(2, timedelta(days=3)))
        channel.failing_users.add(2)
        scheduler = _scheduler(user_store, log_store, channel, clock)
        await scheduler.run_once()

        stats = await scheduler.get_stats()

        assert stats["total_sent"] == 1
        assert stats["total_failed"] == 1
        assert stats["total_pending"] == 0
        assert len(stats["recent_activity"]) == 2
        assert stats["last_scan"]["outcome"] == "success"
        assert stats["running"] is False
        assert stats["state"] == "stopped"

    @pytest.mark.asyncio
    async def test_recent_activity_window(self, user_store, log_store, channel, clock, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, clock)
        await scheduler.run_once()

        clock.advance(days=8)
        stats = await scheduler.get_stats()

        assert stats["total_sent"] == 1
        assert stats["recent_activity"] == []


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_twice_creates_one_set_of_triggers(self, user_store, log_store, channel, clock):
        scheduler = _scheduler(user_store, log_store, channel, clock)

        assert scheduler.start() is True
        assert scheduler.start() is False
        assert len(scheduler._trigger_tasks) == 2
        assert scheduler.state is SchedulerState.RUNNING

        await scheduler.stop()
        assert scheduler.state is SchedulerState.STOPPED
        assert scheduler._trigger_tasks == []

    @pytest.mark.asyncio
    async def test_hourly_trigger_disabled(self, user_store, log_store, channel, clock):
        scheduler = _scheduler(user_store, log_store, channel, clock, hourly_enabled=False)
        scheduler.start()
        assert len(scheduler._trigger_tasks) == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_with_drain_waits_for_scan(self, user_store, log_store, channel, clock, user_factory):
        channel.delay = 0.05
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, clock)
        scheduler.start()
        scan = scheduler._spawn_scan("daily")
        await asyncio.sleep(0)

        await scheduler.stop(drain=True)

        assert scan.done()
        assert not scan.cancelled()
        assert scan.result().sent == 1

    @pytest.mark.asyncio
    async def test_simultaneous_triggers_run_one_scan(self, user_store, log_store, channel, now, user_factory):
        channel.delay = 0.2
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, FrozenClock(now - timedelta(seconds=1)))

        scheduler.start()
        await asyncio.sleep(1.5)
        await scheduler.stop(drain=True)

        assert scheduler.last_scan.trigger in ("daily", "hourly")
        assert scheduler.last_scan.sent == 1
        assert len(channel.calls) == 1
        metrics = get_metrics()
        assert metrics.get_counter("reminder_scans_total") == 1
        assert metrics.get_counter("reminder_scans_skipped_total") == 1

    @pytest.mark.asyncio
    async def test_trigger_does_not_refire_when_clock_lags(self, user_store, log_store, channel, now, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        # frozen clock still reads 08:59:59 after the 09:00 firing
        scheduler = _scheduler(
            user_store, log_store, channel, FrozenClock(now - timedelta(seconds=1)), hourly_enabled=False
        )

        scheduler.start()
        await asyncio.sleep(2.4)
        await scheduler.stop(drain=True)

        assert scheduler.last_scan.trigger == "daily"
        assert get_metrics().get_counter("reminder_scans_total") == 1

    @pytest.mark.asyncio
    async def test_no_scan_after_stop(self, user_store, log_store, channel, now, user_factory):
        user_store.add(user_factory(1, timedelta(days=7)))
        scheduler = _scheduler(user_store, log_store, channel, FrozenClock(now - timedelta(seconds=1)))

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()
        await asyncio.sleep(1.2)

        assert scheduler.last_scan is None
        assert channel.calls == []
        assert get_metrics().get_counter("reminder_scans_total") == 0

    def test_explicit_values_are_not_replaced_by_config(self, user_store, log_store, channel, clock):
        scheduler = _scheduler(user_store, log_store, channel, clock, concurrency=1, scan_timeout_seconds=0.5)
        assert scheduler.concurrency == 1
        assert scheduler.scan_timeout_seconds == 0.5

    @pytest.mark.parametrize("kwargs", [{"concurrency": 0}, {"scan_timeout_seconds": 0}])
    def test_non_positive_limits_rejected(self, user_store, log_store, channel, clock, kwargs):
        with pytest.raises(ValueError):
            _scheduler(user_store, log_store, channel, clock, **kwargs)

    @pytest.mark.asyncio
    async def test_reminders_task_starts_and_stops_scheduler(self, user_store, log_store, channel, clock):
        scheduler = _scheduler(user_store, log_store, channel, clock)
        task = asyncio.create_task(reminders_task(scheduler, startup_delay=0))
        await asyncio.sleep(0.01)
        assert scheduler.state is SchedulerState.RUNNING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert scheduler.state is SchedulerState.STOPPED


class TestTriggerCadence:

    def test_next_daily_run_later_today(self):
        now = datetime(2024, 1, 15, 7, 30, tzinfo=timezone.utc)
        assert next_daily_run(now, 9) == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)

    def test_next_daily_run_at_the_hour_is_tomorrow(self):
        now = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
        assert next_daily_run(now, 9) == datetime(2024, 1, 16, 9, 0, tzinfo=timezone.utc)

    def test_next_hourly_run(self):
        now = datetime(2024, 1, 15, 23, 59, 59, tzinfo=timezone.utc)
        assert next_hourly_run(now) == datetime(2024, 1, 16, 0, 0, tzinfo=timezone.utc)
