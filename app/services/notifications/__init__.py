"""
Notification Service Layer

Reminder classification, eligibility and the persistence/delivery seams
used by the reminder scheduler.
"""

from app.services.notifications.service import (
    calculate_remaining_days,
    classify_reminder,
    classify_subscription,
    compute_expiry,
    check_preferences,
    is_eligible,
    ReminderDecision,
)

from app.services.notifications.models import (
    DeliveryOutcome,
    NotificationLogEntry,
    NotificationMetadata,
    NotificationPreferences,
    NotificationStatus,
    ReminderTier,
    ScanSummary,
    Subscription,
    User,
)

from app.services.notifications.exceptions import (
    NotificationServiceError,
    ClassificationError,
    DeliveryError,
    PersistenceError,
    DuplicateNotificationError,
    StoreUnavailableError,
)

__all__ = [
    "calculate_remaining_days",
    "classify_reminder",
    "classify_subscription",
    "compute_expiry",
    "check_preferences",
    "is_eligible",
    "ReminderDecision",
    "DeliveryOutcome",
    "NotificationLogEntry",
    "NotificationMetadata",
    "NotificationPreferences",
    "NotificationStatus",
    "ReminderTier",
    "ScanSummary",
    "Subscription",
    "User",
    "NotificationServiceError",
    "ClassificationError",
    "DeliveryError",
    "PersistenceError",
    "DuplicateNotificationError",
    "StoreUnavailableError",
]
