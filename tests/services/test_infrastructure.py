"""
Tests for shared infrastructure: Redis lock, retry, metrics, feature flags,
error taxonomy and the clock.
"""
import asyncio
import json
import logging
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from app.core.feature_flags import FeatureFlags, get_feature_flags, reset_feature_flags
from app.core.metrics import get_metrics, timer
from app.core.redis_lock import RedisDistributedLock, RedisLockUnavailableError
from app.services.notifications.exceptions import (
    ClassificationError,
    DeliveryError,
    DuplicateNotificationError,
    StoreUnavailableError,
)
from app.utils.clock import FrozenClock, ensure_utc
from app.utils.logging_helpers import (
    classify_error,
    get_correlation_id,
    log_worker_iteration_end,
    log_worker_iteration_start,
)
from app.utils.retry import retry_async


class TestRedisDistributedLock:

    def _redis(self, set_result=True, set_error=None, release_result=1):
        redis = MagicMock()
        redis.set = AsyncMock(return_value=set_result, side_effect=set_error)
        redis.register_script = MagicMock(return_value=AsyncMock(return_value=release_result))
        return redis

    @pytest.mark.asyncio
    async def test_acquire_and_release(self):
        redis = self._redis()
        lock = RedisDistributedLock(redis, "lock:test", ttl_seconds=30, wait_timeout=0)

        assert await lock.acquire() is True
        assert redis.set.call_args.kwargs == {"nx": True, "px": 30000}
        token = lock.token
        await lock.release()

        script = redis.register_script.return_value
        script.assert_awaited_once_with(keys=["lock:test"], args=[token])
        assert lock.acquired is False

    @pytest.mark.asyncio
    async def test_single_attempt_when_contended(self):
        redis = self._redis(set_result=None)
        lock = RedisDistributedLock(redis, "lock:test", wait_timeout=0)
        assert await lock.acquire() is False
        assert redis.set.await_count == 1

    @pytest.mark.asyncio
    async def test_redis_errors_raise_unavailable(self):
        redis = self._redis(set_error=ConnectionError("refused"))
        lock = RedisDistributedLock(redis, "lock:test", wait_timeout=0)
        with pytest.raises(RedisLockUnavailableError):
            await lock.acquire()

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self):
        redis = self._redis()
        await RedisDistributedLock(redis, "lock:test").release()
        redis.register_script.assert_not_called()


class TestRetryAsync:

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])
        with patch("app.utils.retry.asyncio.sleep", AsyncMock()) as mock_sleep:
            assert await retry_async(fn, retries=2) == "ok"
        assert fn.await_count == 2
        mock_sleep.assert_awaited_once()
        assert get_metrics().get_counter("retries_total") == 1

    @pytest.mark.asyncio
    async def test_domain_error_not_retried(self):
        fn = AsyncMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            await retry_async(fn, retries=2)
        assert fn.await_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        fn = AsyncMock(side_effect=httpx.ConnectError("down"))
        with patch("app.utils.retry.asyncio.sleep", AsyncMock()):
            with pytest.raises(httpx.ConnectError):
                await retry_async(fn, retries=2)
        assert fn.await_count == 3


class TestMetrics:

    def test_counters_and_timer(self):
        metrics = get_metrics()
        metrics.increment_counter("reminders_sent_total", 2)
        with timer("reminder_scan_duration_ms"):
            pass
        snapshot = metrics.get_all_metrics()
        assert snapshot["counters"]["reminders_sent_total"] == 2
        assert snapshot["timers"]["reminder_scan_duration_ms"]["count"] == 1
        assert snapshot["counters"]["reminder_scans_total"] == 0


class TestFeatureFlags:

    def test_env_parsing(self, monkeypatch):
        monkeypatch.setenv("FEATURE_EMAIL_REMINDERS_ENABLED", "off")
        monkeypatch.delenv("FEATURE_BACKGROUND_WORKERS_ENABLED", raising=False)
        reset_feature_flags()
        try:
            flags = get_feature_flags()
            assert flags.background_workers_enabled is True
            assert flags.email_reminders_enabled is False
            assert flags.disabled_reason() == "email_reminders_enabled=false"
        finally:
            reset_feature_flags()

    def test_background_workers_reason_wins(self):
        flags = FeatureFlags(background_workers_enabled=False, email_reminders_enabled=False)
        assert flags.disabled_reason() == "background_workers_enabled=false"

    def test_non_bool_rejected(self):
        with pytest.raises(ValueError):
            FeatureFlags(background_workers_enabled="yes")


class TestErrorTaxonomy:

    @pytest.mark.parametrize("exc, expected", [
        (DeliveryError("x"), "dependency_error"),
        (DuplicateNotificationError("x"), "infra_error"),
        (StoreUnavailableError("x"), "infra_error"),
        (ClassificationError("x"), "domain_error"),
        (asyncio.TimeoutError(), "infra_error"),
        (httpx.ReadTimeout("x"), "dependency_error"),
        (KeyError("x"), "unexpected_error"),
    ])
    def test_classify_error(self, exc, expected):
        assert classify_error(exc) == expected


class TestIterationLogging:

    def test_start_and_end_share_correlation_id(self, caplog):
        with caplog.at_level(logging.INFO, logger="app.utils.logging_helpers"):
            correlation_id = log_worker_iteration_start("reminders", iteration_number=1, trigger="daily")
            log_worker_iteration_end("reminders", outcome="success", items_processed=3, duration_ms=12.34)

        start, end = [json.loads(r.getMessage()) for r in caplog.records[-2:]]
        assert get_correlation_id() == correlation_id
        assert start["event"] == "ITERATION_START"
        assert start["trigger"] == "daily"
        assert end["correlation_id"] == correlation_id
        assert end["duration_ms"] == 12.3


class TestClock:

    def test_frozen_clock_advances(self):
        clock = FrozenClock(datetime(2024, 1, 15, 9, 0))
        assert clock.now().tzinfo == timezone.utc
        assert clock.advance(hours=2) == datetime(2024, 1, 15, 11, 0, tzinfo=timezone.utc)

    def test_ensure_utc(self):
        assert ensure_utc(None) is None
