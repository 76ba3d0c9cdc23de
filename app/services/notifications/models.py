"""
Typed records for the reminder engine.

Subscription and notification preferences are stored as JSON blobs on the
user row. They are parsed here, at the store boundary, into frozen
dataclasses: unknown keys are dropped, unknown reminder keys are ignored and
malformed subscription data is reported as ClassificationError instead of
leaking half-parsed dicts into the scheduler.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Mapping

from app.services.notifications.exceptions import ClassificationError
from app.utils.clock import ensure_utc


DEFAULT_VALIDITY_DAYS = 30


# ====================================================================================
# Reminder tiers
# ====================================================================================

class ReminderTier(Enum):
    """Reminder classification; value is what gets persisted in notification_logs.tier"""
    NONE = "none"
    SEVEN_DAY = "7day_reminder"
    THREE_DAY = "3day_reminder"
    ONE_DAY = "1day_reminder"
    EXPIRED = "expired_reminder"

    @property
    def preference_key(self) -> Optional[str]:
        """Key in NotificationPreferences.reminder_frequency that opts into this tier"""
        return _PREFERENCE_KEYS.get(self)

    @property
    def urgency(self) -> int:
        """Higher is more urgent; NONE is 0"""
        return _URGENCY[self]


_PREFERENCE_KEYS = {
    ReminderTier.SEVEN_DAY: "7days",
    ReminderTier.THREE_DAY: "3days",
    ReminderTier.ONE_DAY: "1day",
    ReminderTier.EXPIRED: "expired",
}

_URGENCY = {
    ReminderTier.NONE: 0,
    ReminderTier.SEVEN_DAY: 1,
    ReminderTier.THREE_DAY: 2,
    ReminderTier.ONE_DAY: 3,
    ReminderTier.EXPIRED: 4,
}

REMINDER_FREQUENCY_KEYS: FrozenSet[str] = frozenset(_PREFERENCE_KEYS.values())
DEFAULT_REMINDER_FREQUENCY: FrozenSet[str] = frozenset({"7days", "3days", "1day"})


class NotificationStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    # Only counted in stats; the scheduler never writes pending entries
    PENDING = "pending"


# ====================================================================================
# Parsing helpers
# ====================================================================================

def parse_instant(value: Any) -> Optional[datetime]:
    """
    Parse a stored instant.

    Args:
        value: datetime, ISO-8601 string (trailing "Z" allowed) or None

    Returns:
        Aware UTC datetime or None

    Raises:
        ValueError: value is neither None, a datetime nor an ISO string
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported instant type: {type(value).__name__}")


def _load_json_object(raw: Any, what: str) -> Optional[Dict[str, Any]]:
    """asyncpg hands JSONB back as str; in-memory stores pass dicts."""
    if raw is None:
        return None
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise ClassificationError(f"{what} is not valid JSON: {e}") from e
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ClassificationError(f"{what} must be an object, got {type(raw).__name__}")
    return dict(raw)


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower().strip() in ("true", "false"):
        return value.lower().strip() == "true"
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return default


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


# ====================================================================================
# Subscription
# ====================================================================================

@dataclass(frozen=True)
class Subscription:
    payment_date: Optional[datetime] = None
    # None means the stored value was explicitly null: classification raises
    validity_days: Optional[int] = DEFAULT_VALIDITY_DAYS
    status: Optional[str] = None
    interval: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Subscription"]:
        """
        Build a Subscription from the stored JSON blob.

        Returns:
            Subscription, or None when the user has no subscription at all

        Raises:
            ClassificationError: paymentDate or validityDays has a malformed shape
        """
        data = _load_json_object(raw, "subscription")
        if data is None:
            return None

        try:
            payment_date = parse_instant(_first_present(data, "paymentDate", "payment_date"))
        except ValueError as e:
            raise ClassificationError(f"subscription.paymentDate is malformed: {e}") from e

        if "validityDays" in data or "validity_days" in data:
            validity_days = _parse_validity_days(_first_present(data, "validityDays", "validity_days"))
        else:
            validity_days = DEFAULT_VALIDITY_DAYS

        status = data.get("status")
        interval = data.get("interval")
        return cls(
            payment_date=payment_date,
            validity_days=validity_days,
            status=str(status) if status is not None else None,
            interval=str(interval) if interval is not None else None,
        )

    def expires_at(self) -> Optional[datetime]:
        """
        Expiry instant = paymentDate + validityDays.

        Returns:
            None if paymentDate is not set (user not eligible for reminders)

        Raises:
            ClassificationError: validityDays missing or not positive
        """
        if self.payment_date is None:
            return None
        if self.validity_days is None:
            raise ClassificationError("subscription.validityDays is missing")
        if self.validity_days <= 0:
            raise ClassificationError(f"subscription.validityDays must be positive, got {self.validity_days}")
        return self.payment_date + timedelta(days=self.validity_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentDate": self.payment_date.isoformat() if self.payment_date else None,
            "validityDays": self.validity_days,
            "status": self.status,
            "interval": self.interval,
        }


def _parse_validity_days(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ClassificationError("subscription.validityDays must be a number, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ClassificationError(f"subscription.validityDays must be a whole number, got {value!r}")


# ====================================================================================
# Notification preferences
# ====================================================================================

@dataclass(frozen=True)
class NotificationPreferences:
    email_reminders_enabled: bool = True
    reminder_frequency: FrozenSet[str] = DEFAULT_REMINDER_FREQUENCY
    # Advisory cache for display; dedup always goes through the notification log
    last_reminder_sent: Optional[datetime] = None
    push_notifications: bool = True
    preferred_time: str = "09:00"
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, raw: Any) -> "NotificationPreferences":
        """Parse the stored preferences blob; missing or broken blobs fall back to defaults."""
        try:
            data = _load_json_object(raw, "notificationPreferences")
        except ClassificationError:
            data = None
        if data is None:
            return cls()

        frequency_raw = _first_present(data, "reminderFrequency", "reminder_frequency")
        if frequency_raw is None:
            frequency = DEFAULT_REMINDER_FREQUENCY
        else:
            if isinstance(frequency_raw, str):
                frequency_raw = [frequency_raw]
            if not isinstance(frequency_raw, (list, tuple, set, frozenset)):
                frequency_raw = []
            frequency = frozenset(
                key for key in frequency_raw
                if isinstance(key, str) and key in REMINDER_FREQUENCY_KEYS
            )

        try:
            last_sent = parse_instant(_first_present(data, "lastReminderSent", "last_reminder_sent"))
        except ValueError:
            last_sent = None

        preferred_time = data.get("preferredTime")
        tz_name = data.get("timezone")
        return cls(
            email_reminders_enabled=_coerce_bool(
                _first_present(data, "emailReminders", "emailRemindersEnabled", "email_reminders_enabled"),
                default=True,
            ),
            reminder_frequency=frequency,
            last_reminder_sent=last_sent,
            push_notifications=_coerce_bool(data.get("pushNotifications"), default=True),
            preferred_time=preferred_time if isinstance(preferred_time, str) else "09:00",
            timezone=tz_name if isinstance(tz_name, str) else "UTC",
        )

    def with_last_reminder_sent(self, at: datetime) -> "NotificationPreferences":
        return replace(self, last_reminder_sent=ensure_utc(at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emailReminders": self.email_reminders_enabled,
            "reminderFrequency": sorted(self.reminder_frequency),
            "lastReminderSent": self.last_reminder_sent.isoformat() if self.last_reminder_sent else None,
            "pushNotifications": self.push_notifications,
            "preferredTime": self.preferred_time,
            "timezone": self.timezone,
        }


# ====================================================================================
# User
# ====================================================================================

@dataclass(frozen=True)
class User:
    id: int
    email: str
    name: Optional[str] = None
    subscription: Optional[Subscription] = None
    preferences: NotificationPreferences = field(default_factory=NotificationPreferences)
    # Set when the stored subscription blob could not be parsed
    subscription_error: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        """
        Build a User from a users row (or any mapping with the same keys).

        A malformed subscription blob does not fail the whole listing: the
        error is kept on the user and reported when the user is classified.
        """
        subscription = None
        subscription_error = None
        try:
            subscription = Subscription.from_dict(row.get("subscription"))
        except ClassificationError as e:
            subscription_error = str(e)

        return cls(
            id=int(row["id"]),
            email=row.get("email") or "",
            name=row.get("name"),
            subscription=subscription,
            preferences=NotificationPreferences.from_dict(
                _first_present(row, "notification_preferences", "notificationPreferences")
            ),
            subscription_error=subscription_error,
        )


# ====================================================================================
# Notification log
# ====================================================================================

@dataclass(frozen=True)
class NotificationMetadata:
    email_address: Optional[str] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Any) -> "NotificationMetadata":
        try:
            data = _load_json_object(raw, "metadata") or {}
        except ClassificationError:
            data = {}
        return cls(
            email_address=_first_present(data, "emailAddress", "email_address"),
            provider_message_id=_first_present(data, "providerMessageId", "deliveryId", "provider_message_id"),
            error_message=_first_present(data, "errorMessage", "error_message"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "emailAddress": self.email_address,
            "providerMessageId": self.provider_message_id,
            "errorMessage": self.error_message,
        }


@dataclass(frozen=True)
class NotificationLogEntry:
    """One delivery attempt. Created once, never updated or deleted by the engine."""
    user_id: int
    tier: ReminderTier
    status: NotificationStatus
    sent_at: datetime
    channel: str = "email"
    metadata: NotificationMetadata = field(default_factory=NotificationMetadata)
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "NotificationLogEntry":
        return cls(
            id=row.get("id"),
            user_id=int(row["user_id"]),
            tier=ReminderTier(row["tier"]),
            status=NotificationStatus(row["status"]),
            sent_at=parse_instant(row["sent_at"]),
            channel=row.get("channel") or "email",
            metadata=NotificationMetadata.from_dict(row.get("metadata")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "channel": self.channel,
            "tier": self.tier.value,
            "status": self.status.value,
            "sentAt": self.sent_at.isoformat(),
            "metadata": self.metadata.to_dict(),
        }


# ====================================================================================
# Delivery / scan results
# ====================================================================================

@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def delivered(cls, provider_message_id: Optional[str]) -> "DeliveryOutcome":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failure(cls, error_message: str) -> "DeliveryOutcome":
        return cls(success=False, error_message=error_message)


@dataclass
class ScanSummary:
    """Result of one run_scan() call; always returned, never raised."""
    trigger: str
    outcome: str = "success"  # success | aborted | skipped
    reason: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    correlation_id: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "outcome": self.outcome,
            "reason": self.reason,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms,
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
            "correlationId": self.correlation_id,
        }
