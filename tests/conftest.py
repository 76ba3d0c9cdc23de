"""
Pytest configuration and shared fixtures for the reminder engine tests.
"""
import os

# config.py exits in PROD without a database URL; tests run as LOCAL
os.environ.setdefault("APP_ENV", "local")

import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from app.core.feature_flags import FeatureFlags
from app.core.metrics import reset_metrics
from app.services.notifications.channels import DeliveryChannel
from app.services.notifications.models import (
    DeliveryOutcome,
    NotificationPreferences,
    ReminderTier,
    Subscription,
    User,
)
from app.services.notifications.stores import InMemoryNotificationLogStore, InMemoryUserStore
from app.utils.clock import FrozenClock


NOW = datetime(2024, 1, 15, 9, 0, 0, tzinfo=timezone.utc)


def make_user(
    user_id: int,
    expires_in: Optional[timedelta],
    validity_days: int = 30,
    preferences: Optional[NotificationPreferences] = None,
    now: datetime = NOW,
) -> User:
    """User whose subscription expires at now + expires_in (None: no payment date)."""
    payment_date = None if expires_in is None else now + expires_in - timedelta(days=validity_days)
    return User(
        id=user_id,
        email=f"user{user_id}@example.com",
        name=f"User {user_id}",
        subscription=Subscription(payment_date=payment_date, validity_days=validity_days, status="active"),
        preferences=preferences or NotificationPreferences(),
    )


class FakeChannel(DeliveryChannel):
    """Records calls; outcome per user configurable."""

    def __init__(self, timeout_seconds: float = 1.0):
        self.timeout_seconds = timeout_seconds
        self.calls: List[Tuple[int, ReminderTier, int]] = []
        self.failing_users = set()
        self.raising_users = set()
        self.delay: float = 0.0

    async def send(self, user, tier, remaining_days):
        import asyncio

        self.calls.append((user.id, tier, remaining_days))
        if self.delay:
            await asyncio.sleep(self.delay)
        if user.id in self.raising_users:
            raise RuntimeError("provider exploded")
        if user.id in self.failing_users:
            return DeliveryOutcome.failure("mailbox unavailable")
        return DeliveryOutcome.delivered(f"msg-{user.id}-{len(self.calls)}")


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Metrics are a process-wide singleton"""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def log_store():
    return InMemoryNotificationLogStore()


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def enabled_flags():
    return FeatureFlags(background_workers_enabled=True, email_reminders_enabled=True)


@pytest.fixture
def user_factory():
    """make_user(user_id, expires_in, ...) as a fixture"""
    return make_user
