"""
Persistence boundary for the reminder engine.

UserStore / NotificationLogStore are the two seams the scheduler talks to.
Postgres implementations wrap database.py and translate driver errors into
the notification exception taxonomy; the in-memory implementations keep the
same guarantees (unique sent entry per user/tier/day) for tests and local runs.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

import database
from app.services.notifications.exceptions import (
    DuplicateNotificationError,
    PersistenceError,
    StoreUnavailableError,
)
from app.services.notifications.models import (
    NotificationLogEntry,
    NotificationPreferences,
    NotificationStatus,
    ReminderTier,
    User,
)
from app.utils.clock import ensure_utc

logger = logging.getLogger(__name__)


# ====================================================================================
# Interfaces
# ====================================================================================

class UserStore:
    """Read access to users with a subscription plus the preferences write-back."""

    async def list_users_with_subscription(self) -> List[User]:
        """
        Raises:
            StoreUnavailableError: the listing could not be produced
        """
        raise NotImplementedError

    async def update_notification_preferences(self, user_id: int, preferences: NotificationPreferences) -> None:
        """
        Raises:
            PersistenceError: the write failed
        """
        raise NotImplementedError

    async def update_last_reminder_sent(self, user_id: int, at: datetime) -> None:
        """
        Set only lastReminderSent; every other preference keeps its stored value.

        Raises:
            PersistenceError: the write failed
        """
        raise NotImplementedError


class NotificationLogStore:
    """Append-only log of delivery attempts; the only source of dedup truth."""

    async def find_recent_sent(
        self,
        user_id: int,
        tier: ReminderTier,
        since: datetime,
    ) -> Optional[NotificationLogEntry]:
        """Newest sent entry for (user, tier) with sent_at strictly after since."""
        raise NotImplementedError

    async def append(self, entry: NotificationLogEntry) -> NotificationLogEntry:
        """
        Persist entry and return it with its id assigned.

        Raises:
            DuplicateNotificationError: a sent entry for (user, tier, day) exists
            PersistenceError: the write failed
        """
        raise NotImplementedError

    async def count(self, status: NotificationStatus) -> int:
        raise NotImplementedError

    async def recent(self, since: datetime, limit: int = 10) -> List[NotificationLogEntry]:
        raise NotImplementedError


# ====================================================================================
# PostgreSQL
# ====================================================================================

class PostgresUserStore(UserStore):

    async def list_users_with_subscription(self) -> List[User]:
        try:
            rows = await database.list_users_with_subscription()
        except Exception as e:
            raise StoreUnavailableError(f"{type(e).__name__}: {str(e)[:200]}") from e
        return [User.from_row(row) for row in rows]

    async def update_notification_preferences(self, user_id: int, preferences: NotificationPreferences) -> None:
        try:
            updated = await database.update_notification_preferences(user_id, preferences.to_dict())
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e
        if not updated:
            raise PersistenceError(f"user {user_id} not found")

    async def update_last_reminder_sent(self, user_id: int, at: datetime) -> None:
        try:
            updated = await database.update_last_reminder_sent(user_id, ensure_utc(at))
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e
        if not updated:
            raise PersistenceError(f"user {user_id} not found")


class PostgresNotificationLogStore(NotificationLogStore):

    async def find_recent_sent(self, user_id, tier, since):
        try:
            row = await database.find_recent_sent_notification(user_id, tier.value, ensure_utc(since))
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e
        return NotificationLogEntry.from_row(row) if row else None

    async def append(self, entry):
        try:
            new_id = await database.insert_notification_log(
                user_id=entry.user_id,
                channel=entry.channel,
                tier=entry.tier.value,
                status=entry.status.value,
                sent_at=entry.sent_at,
                metadata=entry.metadata.to_dict(),
            )
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e
        if new_id is None:
            raise DuplicateNotificationError(
                f"sent entry already exists for user={entry.user_id} tier={entry.tier.value} "
                f"day={entry.sent_at.date().isoformat()}"
            )
        return replace(entry, id=new_id)

    async def count(self, status):
        try:
            return await database.count_notification_logs(NotificationStatus(status).value)
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e

    async def recent(self, since, limit=10):
        try:
            rows = await database.get_recent_notification_logs(ensure_utc(since), limit)
        except Exception as e:
            raise PersistenceError(f"{type(e).__name__}: {str(e)[:200]}") from e
        return [NotificationLogEntry.from_row(row) for row in rows]


# ====================================================================================
# In-memory (tests, local runs without Postgres)
# ====================================================================================

class InMemoryUserStore(UserStore):

    def __init__(self, users: Iterable[User] = ()):
        self._users: Dict[int, User] = {user.id: user for user in users}

    def add(self, user: User) -> None:
        self._users[user.id] = user

    def get(self, user_id: int) -> Optional[User]:
        return self._users.get(user_id)

    async def list_users_with_subscription(self) -> List[User]:
        return [
            user for user in sorted(self._users.values(), key=lambda u: u.id)
            if user.subscription is not None or user.subscription_error is not None
        ]

    async def update_notification_preferences(self, user_id: int, preferences: NotificationPreferences) -> None:
        user = self._users.get(user_id)
        if user is None:
            raise PersistenceError(f"user {user_id} not found")
        self._users[user_id] = replace(user, preferences=preferences)

    async def update_last_reminder_sent(self, user_id: int, at: datetime) -> None:
        user = self._users.get(user_id)
        if user is None:
            raise PersistenceError(f"user {user_id} not found")
        self._users[user_id] = replace(user, preferences=user.preferences.with_last_reminder_sent(at))


class InMemoryNotificationLogStore(NotificationLogStore):
    """
    List-backed log. An asyncio.Lock around check-and-append enforces the
    same (user, tier, day) uniqueness for sent entries as the Postgres index.
    """

    def __init__(self):
        self._entries: List[NotificationLogEntry] = []
        self._sent_keys: set = set()
        self._next_id = 1
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> List[NotificationLogEntry]:
        return list(self._entries)

    @staticmethod
    def _sent_key(entry: NotificationLogEntry) -> Tuple[int, ReminderTier, object]:
        return entry.user_id, entry.tier, ensure_utc(entry.sent_at).date()

    async def find_recent_sent(self, user_id, tier, since):
        since = ensure_utc(since)
        matches = [
            entry for entry in self._entries
            if entry.user_id == user_id
            and entry.tier is tier
            and entry.status is NotificationStatus.SENT
            and entry.sent_at > since
        ]
        if not matches:
            return None
        return max(matches, key=lambda entry: entry.sent_at)

    async def append(self, entry):
        async with self._lock:
            entry = replace(entry, sent_at=ensure_utc(entry.sent_at))
            if entry.status is NotificationStatus.SENT:
                key = self._sent_key(entry)
                if key in self._sent_keys:
                    raise DuplicateNotificationError(
                        f"sent entry already exists for user={entry.user_id} tier={entry.tier.value} "
                        f"day={key[2].isoformat()}"
                    )
                self._sent_keys.add(key)
            stored = replace(entry, id=self._next_id)
            self._next_id += 1
            self._entries.append(stored)
            return stored

    async def count(self, status):
        status = NotificationStatus(status)
        return sum(1 for entry in self._entries if entry.status is status)

    async def recent(self, since, limit=10):
        since = ensure_utc(since)
        matches = [entry for entry in self._entries if entry.sent_at >= since]
        matches.sort(key=lambda entry: (entry.sent_at, entry.id), reverse=True)
        return matches[:limit]
