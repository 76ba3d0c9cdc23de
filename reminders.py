"""Модуль для отправки напоминаний об окончании подписки"""
import asyncio
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import config
from app.core.feature_flags import FeatureFlags, get_feature_flags
from app.core.metrics import get_metrics
from app.core.redis_lock import RedisDistributedLock, RedisLockUnavailableError
from app.core.structured_logger import log_event
from app.services.notifications.channels import DeliveryChannel
from app.services.notifications.exceptions import (
    ClassificationError,
    DeliveryError,
    DuplicateNotificationError,
    PersistenceError,
    StoreUnavailableError,
)
from app.services.notifications.models import (
    DeliveryOutcome,
    NotificationLogEntry,
    NotificationMetadata,
    NotificationStatus,
    ReminderTier,
    ScanSummary,
    User,
)
from app.services.notifications.service import (
    calculate_remaining_days,
    classify_subscription,
    compute_expiry,
    is_eligible,
)
from app.services.notifications.stores import NotificationLogStore, UserStore
from app.utils.clock import Clock, SystemClock
from app.utils.logging_helpers import (
    log_worker_iteration_start,
    log_worker_iteration_end,
    classify_error,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "reminders"

# get_stats(): window and size of recent_activity
RECENT_ACTIVITY_WINDOW = timedelta(days=7)
RECENT_ACTIVITY_LIMIT = 10


class SchedulerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


# ====================================================================================
# Trigger cadence
# ====================================================================================

def next_daily_run(now: datetime, hour: int) -> datetime:
    """Next hour:00 UTC strictly after now"""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def next_hourly_run(now: datetime) -> datetime:
    """Next top of the hour strictly after now"""
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


# ====================================================================================
# Scheduler
# ====================================================================================

class ReminderScheduler:
    """
    Periodic subscription expiry reminder scan.

    Two triggers (daily at REMINDER_DAILY_HOUR:00 UTC, hourly at the top of
    the hour) and the manual run_once() all funnel into run_scan(). At most
    one scan runs per instance (asyncio.Lock owned by the scheduler); with
    Redis configured, at most one across instances.

    run_scan() never raises: every outcome is a ScanSummary.
    """

    def __init__(
        self,
        user_store: UserStore,
        log_store: NotificationLogStore,
        channel: DeliveryChannel,
        clock: Optional[Clock] = None,
        feature_flags: Optional[FeatureFlags] = None,
        redis_client=None,
        lock_key: Optional[str] = None,
        concurrency: Optional[int] = None,
        daily_hour: Optional[int] = None,
        hourly_enabled: Optional[bool] = None,
        scan_timeout_seconds: Optional[float] = None,
    ):
        self.user_store = user_store
        self.log_store = log_store
        self.channel = channel
        self.clock = clock or SystemClock()
        # None: read the process-wide flags at scan time
        self._feature_flags = feature_flags
        self.redis_client = redis_client
        self.lock_key = lock_key or f"lock:{config.APP_ENV}:reminders:scan"
        self.concurrency = config.REMINDER_SCAN_CONCURRENCY if concurrency is None else concurrency
        self.daily_hour = config.REMINDER_DAILY_HOUR if daily_hour is None else daily_hour
        self.hourly_enabled = config.REMINDER_HOURLY_ENABLED if hourly_enabled is None else hourly_enabled
        self.scan_timeout_seconds = float(
            config.REMINDER_SCAN_TIMEOUT_SECONDS if scan_timeout_seconds is None else scan_timeout_seconds
        )
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.scan_timeout_seconds <= 0:
            raise ValueError(f"scan_timeout_seconds must be > 0, got {self.scan_timeout_seconds}")

        self._state = SchedulerState.STOPPED
        self._scan_lock = asyncio.Lock()
        self._trigger_tasks: List[asyncio.Task] = []
        self._scan_tasks: Set[asyncio.Task] = set()
        self._last_scan: Optional[ScanSummary] = None
        self._iteration = 0

    # ------------------------------------------------------------------ lifecycle

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_scan_running(self) -> bool:
        return self._scan_lock.locked()

    @property
    def last_scan(self) -> Optional[ScanSummary]:
        return self._last_scan

    def start(self) -> bool:
        """
        Register the daily and hourly triggers. Idempotent.

        Returns:
            True if triggers were started, False if already running
        """
        if self._state is SchedulerState.RUNNING:
            log_event(
                logger,
                component="scheduler",
                operation="scheduler_start",
                outcome="skipped",
                reason="already_running",
            )
            return False

        self._state = SchedulerState.RUNNING
        self._trigger_tasks = [
            asyncio.create_task(
                self._trigger_loop("daily", lambda now: next_daily_run(now, self.daily_hour)),
                name="reminders-daily-trigger",
            )
        ]
        if self.hourly_enabled:
            self._trigger_tasks.append(
                asyncio.create_task(
                    self._trigger_loop("hourly", next_hourly_run),
                    name="reminders-hourly-trigger",
                )
            )
        log_event(
            logger,
            component="scheduler",
            operation="scheduler_start",
            outcome="success",
            daily_hour=self.daily_hour,
            hourly_enabled=self.hourly_enabled,
        )
        return True

    async def stop(self, drain: bool = False) -> None:
        """
        Stop future triggers. An in-flight scan is never cancelled;
        drain=True waits for it to finish.
        """
        if self._state is SchedulerState.STOPPED and not self._trigger_tasks:
            return
        self._state = SchedulerState.STOPPED

        for task in self._trigger_tasks:
            task.cancel()
        if self._trigger_tasks:
            await asyncio.gather(*self._trigger_tasks, return_exceptions=True)
        self._trigger_tasks = []

        if drain and self._scan_tasks:
            await asyncio.gather(*list(self._scan_tasks), return_exceptions=True)

        log_event(
            logger,
            component="scheduler",
            operation="scheduler_stop",
            outcome="success",
            drained=drain,
        )

    async def _trigger_loop(self, trigger: str, next_run: Callable[[datetime], datetime]) -> None:
        target = next_run(self.clock.now())
        while self._state is SchedulerState.RUNNING:
            delay = (target - self.clock.now()).total_seconds()
            await asyncio.sleep(max(delay, 0.0))
            if self._state is not SchedulerState.RUNNING:
                break
            self._spawn_scan(trigger)
            # a lagging wall clock must not re-fire the same target; after a
            # suspend, skip the missed targets instead of replaying them
            target = next_run(max(target, self.clock.now()))

    def _spawn_scan(self, trigger: str) -> asyncio.Task:
        task = asyncio.create_task(self.run_scan(trigger=trigger), name=f"reminders-scan-{trigger}")
        self._scan_tasks.add(task)
        task.add_done_callback(self._scan_tasks.discard)
        return task

    # ------------------------------------------------------------------ scans

    async def run_once(self) -> ScanSummary:
        """Manual trigger; same overlap guard as the scheduled ones."""
        return await self.run_scan(trigger="manual")

    async def run_scan(self, trigger: str = "manual") -> ScanSummary:
        """
        One full pass over users with a subscription.

        Returns:
            ScanSummary with outcome success | aborted | skipped
        """
        if self._scan_lock.locked():
            now = self.clock.now()
            summary = ScanSummary(
                trigger=trigger,
                outcome="skipped",
                reason="scan_already_running",
                started_at=now,
                finished_at=now,
            )
            get_metrics().increment_counter("reminder_scans_skipped_total")
            log_event(
                logger,
                component="scheduler",
                operation="reminder_scan",
                outcome="skipped",
                reason="scan_already_running",
                trigger=trigger,
            )
            return summary

        async with self._scan_lock:
            return await self._run_locked_scan(trigger)

    async def _run_locked_scan(self, trigger: str) -> ScanSummary:
        self._iteration += 1
        iteration_start_time = time.time()
        correlation_id = log_worker_iteration_start(
            worker_name=WORKER_NAME,
            iteration_number=self._iteration,
            trigger=trigger,
        )
        summary = ScanSummary(trigger=trigger, started_at=self.clock.now(), correlation_id=correlation_id)
        error_type = None
        metrics = get_metrics()

        try:
            disabled_reason = self._flags().disabled_reason()
            if disabled_reason:
                summary.outcome = "skipped"
                summary.reason = disabled_reason
                logger.warning(f"[FEATURE_FLAG] Reminder scan skipped: {disabled_reason}")
                return summary

            distributed_lock, may_run = await self._acquire_distributed_lock(correlation_id)
            if not may_run:
                summary.outcome = "skipped"
                summary.reason = "scan_locked_by_another_instance"
                return summary

            metrics.increment_counter("reminder_scans_total")
            try:
                await asyncio.wait_for(
                    self._scan_users(summary),
                    timeout=self.scan_timeout_seconds,
                )
            except asyncio.TimeoutError:
                summary.outcome = "aborted"
                summary.reason = "scan_timeout"
                error_type = "infra_error"
                logger.error(
                    f"WORKER_TIMEOUT worker={WORKER_NAME} exceeded {self.scan_timeout_seconds:.0f}s, scan cancelled "
                    f"(processed={summary.processed})"
                )
            except StoreUnavailableError as e:
                summary.outcome = "aborted"
                summary.reason = "store_unavailable"
                error_type = classify_error(e)
                logger.error(f"reminders: user store unavailable, scan aborted: {e}")
            finally:
                if distributed_lock is not None:
                    await distributed_lock.release(correlation_id)
        except Exception as e:
            summary.outcome = "aborted"
            summary.reason = "unexpected_error"
            error_type = classify_error(e)
            logger.error(f"reminders: Unexpected error in scan: {type(e).__name__}: {str(e)[:100]}")
            logger.debug("reminders: Full traceback for scan", exc_info=True)
        finally:
            summary.finished_at = self.clock.now()
            self._last_scan = summary
            if summary.outcome == "skipped":
                metrics.increment_counter("reminder_scans_skipped_total")
            elif summary.outcome == "aborted":
                metrics.increment_counter("reminder_scans_aborted_total")
            duration_ms = (time.time() - iteration_start_time) * 1000
            metrics.record_timer("reminder_scan_duration_ms", duration_ms)
            log_worker_iteration_end(
                worker_name=WORKER_NAME,
                outcome=_iteration_outcome(summary),
                items_processed=summary.processed,
                error_type=error_type,
                duration_ms=duration_ms,
                trigger=trigger,
                reason=summary.reason,
                sent=summary.sent,
                failed=summary.failed,
                skipped=summary.skipped,
                errors=summary.errors,
            )

        return summary

    def _flags(self) -> FeatureFlags:
        return self._feature_flags if self._feature_flags is not None else get_feature_flags()

    async def _acquire_distributed_lock(self, correlation_id: str) -> Tuple[Optional[RedisDistributedLock], bool]:
        """
        Returns:
            (held lock or None, whether this instance may scan)
        """
        if self.redis_client is None:
            return None, True

        lock = RedisDistributedLock(
            redis_client=self.redis_client,
            key=self.lock_key,
            ttl_seconds=int(self.scan_timeout_seconds) + 60,
            wait_timeout=0,
        )
        try:
            acquired = await lock.acquire(correlation_id=correlation_id)
        except RedisLockUnavailableError as e:
            # Redis down: in-process guard only
            log_event(
                logger,
                component="scheduler",
                operation="scan_lock",
                outcome="degraded",
                correlation_id=correlation_id,
                reason=f"redis_unavailable: {str(e)[:100]}",
                level="warning",
            )
            return None, True

        if not acquired:
            log_event(
                logger,
                component="scheduler",
                operation="scan_lock",
                outcome="skipped",
                correlation_id=correlation_id,
                reason="scan_locked_by_another_instance",
            )
            return None, False
        return lock, True

    async def _scan_users(self, summary: ScanSummary) -> None:
        """
        Raises:
            StoreUnavailableError: listing failed, nothing was processed
        """
        users = await self.user_store.list_users_with_subscription()
        now = self.clock.now()
        logger.info(f"Found {len(users)} users with subscription for reminders check")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _guarded(user: User) -> None:
            async with semaphore:
                await self._process_user(user, now, summary)

        results = await asyncio.gather(*(_guarded(user) for user in users), return_exceptions=True)
        for user, result in zip(users, results):
            if isinstance(result, Exception):
                # _process_user isolates its own errors; reaching here is a bug
                summary.errors += 1
                logger.error(f"reminders: unhandled error for user={user.id}: {type(result).__name__}: {str(result)[:100]}")

    async def _process_user(self, user: User, now: datetime, summary: ScanSummary) -> None:
        summary.processed += 1
        metrics = get_metrics()

        if user.subscription_error is not None:
            self._skip(summary, user, f"classification_error: {user.subscription_error}", warning=True)
            return

        try:
            tier = classify_subscription(user.subscription, now)
        except ClassificationError as e:
            self._skip(summary, user, f"classification_error: {e}", warning=True)
            return

        if tier is ReminderTier.NONE:
            self._skip(summary, user, "no_reminder_due")
            return

        try:
            decision = await is_eligible(user.id, user.preferences, tier, self.log_store, now)
            if not decision.should_send:
                self._skip(summary, user, decision.reason)
                return

            remaining_days = calculate_remaining_days(compute_expiry(user.subscription), now)
            outcome = await self._deliver(user, tier, remaining_days)
        except Exception as e:
            # Tier is known: leave a failed trace in the log
            error_type = classify_error(e)
            logger.error(
                f"reminders: error processing user={user.id} tier={tier.value}: "
                f"{type(e).__name__}: {str(e)[:100]} error_type={error_type}"
            )
            summary.failed += 1
            metrics.increment_counter("reminders_failed_total")
            await self._append_log(summary, user, tier, DeliveryOutcome.failure(f"{type(e).__name__}: {str(e)[:200]}"))
            return

        entry = await self._append_log(summary, user, tier, outcome)
        if outcome.success:
            summary.sent += 1
            metrics.increment_counter("reminders_sent_total")
            logger.info(f"Reminder sent: user={user.id} tier={tier.value} remaining_days={remaining_days}")
        else:
            summary.failed += 1
            metrics.increment_counter("reminders_failed_total")
            logger.warning(f"Reminder failed: user={user.id} tier={tier.value} error={outcome.error_message}")

        await self._update_last_reminder_sent(user, entry.sent_at if entry else self.clock.now())

    def _skip(self, summary: ScanSummary, user: User, reason: Optional[str], warning: bool = False) -> None:
        summary.skipped += 1
        get_metrics().increment_counter("reminders_skipped_total")
        if warning:
            logger.warning(f"Reminder skipped: user={user.id} reason={reason}")
        else:
            logger.debug(f"Reminder skipped: user={user.id} reason={reason}")

    async def _deliver(self, user: User, tier: ReminderTier, remaining_days: int) -> DeliveryOutcome:
        """Channel call bounded by channel.timeout_seconds; never raises."""
        timeout = self.channel.timeout_seconds
        try:
            outcome = await asyncio.wait_for(self.channel.send(user, tier, remaining_days), timeout=timeout)
        except asyncio.TimeoutError:
            error = DeliveryError(f"delivery timed out after {timeout}s")
        except Exception as e:
            error = DeliveryError(f"{type(e).__name__}: {str(e)[:200]}")
        else:
            if outcome is None:
                return DeliveryOutcome.failure("channel returned no outcome")
            return outcome

        logger.warning(
            f"reminders: delivery error user={user.id} tier={tier.value} "
            f"error_type={classify_error(error)} error={error}"
        )
        return DeliveryOutcome.failure(str(error))

    async def _append_log(
        self,
        summary: ScanSummary,
        user: User,
        tier: ReminderTier,
        outcome: DeliveryOutcome,
    ) -> Optional[NotificationLogEntry]:
        """Best-effort append; errors are counted on the summary, never raised."""
        entry = NotificationLogEntry(
            user_id=user.id,
            tier=tier,
            status=NotificationStatus.SENT if outcome.success else NotificationStatus.FAILED,
            sent_at=self.clock.now(),
            channel=self.channel.name,
            metadata=NotificationMetadata(
                email_address=user.email or None,
                provider_message_id=outcome.provider_message_id,
                error_message=outcome.error_message,
            ),
        )
        try:
            return await self.log_store.append(entry)
        except DuplicateNotificationError as e:
            summary.errors += 1
            logger.warning(f"reminders: duplicate notification log entry skipped: {e}")
        except PersistenceError as e:
            summary.errors += 1
            get_metrics().increment_counter("reminder_log_write_errors_total")
            logger.error(
                f"reminders: failed to write notification log user={user.id} tier={tier.value} "
                f"status={entry.status.value}: {e}"
            )
        return None

    async def _update_last_reminder_sent(self, user: User, at: datetime) -> None:
        try:
            await self.user_store.update_last_reminder_sent(user.id, at)
        except PersistenceError as e:
            logger.warning(f"reminders: failed to update lastReminderSent user={user.id}: {e}")

    # ------------------------------------------------------------------ stats

    async def get_stats(self) -> Dict[str, Any]:
        """
        Aggregate counts from the notification log plus scheduler state.

        Raises:
            PersistenceError: log store unavailable
        """
        now = self.clock.now()
        recent = await self.log_store.recent(now - RECENT_ACTIVITY_WINDOW, limit=RECENT_ACTIVITY_LIMIT)
        return {
            "total_sent": await self.log_store.count(NotificationStatus.SENT),
            "total_failed": await self.log_store.count(NotificationStatus.FAILED),
            "total_pending": await self.log_store.count(NotificationStatus.PENDING),
            "recent_activity": [entry.to_dict() for entry in recent],
            "last_scan": self._last_scan.to_dict() if self._last_scan else None,
            "running": self.is_scan_running,
            "state": self._state.value,
        }


def _iteration_outcome(summary: ScanSummary) -> str:
    if summary.outcome == "skipped":
        return "skipped"
    if summary.outcome == "aborted":
        return "failed"
    if summary.errors or summary.failed:
        return "degraded"
    return "success"


# ====================================================================================
# Wiring
# ====================================================================================

def create_reminder_scheduler(redis_client=None) -> ReminderScheduler:
    """Production wiring: Postgres stores, Resend channel, config cadence."""
    from app.services.notifications.stores import PostgresNotificationLogStore, PostgresUserStore
    from email_service import ResendEmailChannel

    return ReminderScheduler(
        user_store=PostgresUserStore(),
        log_store=PostgresNotificationLogStore(),
        channel=ResendEmailChannel(),
        redis_client=redis_client,
    )


async def reminders_task(scheduler: ReminderScheduler, startup_delay: Optional[float] = None):
    """Фоновая задача: запускает триггеры расписания и держит их до отмены"""
    # Небольшая задержка при старте, чтобы БД успела инициализироваться
    delay = config.REMINDER_STARTUP_DELAY_SECONDS if startup_delay is None else startup_delay
    try:
        await asyncio.sleep(delay)
        scheduler.start()
        # Триггеры живут в собственных задачах; ждём отмены
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Reminders task cancelled")
        await scheduler.stop(drain=True)
        raise
