"""
Notification Service Layer

Business rules for subscription expiry reminders:
- which reminder tier applies to a subscription right now (classifier)
- whether a user may receive that tier in this scan (eligibility)

Classification is pure: no I/O, no clock reads, no logging. Eligibility
reads the notification log (the only source of dedup truth) through the
store passed in by the caller.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.services.notifications.models import (
    NotificationPreferences,
    ReminderTier,
    Subscription,
)
from app.utils.clock import ensure_utc


ONE_DAY = timedelta(days=1)

# ±1 day around each target absorbs scan drift (hourly or daily runs)
WINDOW_TOLERANCE = timedelta(hours=24)

# Only sent entries newer than this suppress another send of the same tier
DEDUP_WINDOW = timedelta(hours=24)

# Most urgent first; the first matching window wins
_WINDOWED_TIERS = (
    (ReminderTier.ONE_DAY, timedelta(days=1)),
    (ReminderTier.THREE_DAY, timedelta(days=3)),
    (ReminderTier.SEVEN_DAY, timedelta(days=7)),
)


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass(frozen=True)
class ReminderDecision:
    """Decision about whether to send a reminder"""
    should_send: bool
    tier: ReminderTier
    reason: Optional[str] = None  # Reason if should_send is False


# ====================================================================================
# Reminder Classifier
# ====================================================================================

def calculate_remaining_days(expires_at: datetime, now: datetime) -> int:
    """
    Whole days left until expiry, rounded up (negative once expired).

    Example:
        expiry in 6d 1h -> 7; expiry 1d ago -> -1
    """
    seconds = (ensure_utc(expires_at) - ensure_utc(now)).total_seconds()
    return math.ceil(seconds / ONE_DAY.total_seconds())


def is_within_time_window(expires_at: datetime, target: datetime, tolerance: timedelta) -> bool:
    """Closed interval check: target - tolerance <= expires_at <= target + tolerance"""
    return target - tolerance <= expires_at <= target + tolerance


def classify_reminder(expires_at: datetime, now: datetime) -> ReminderTier:
    """
    Determine the reminder tier for a subscription expiring at expires_at.

    Rules, most urgent first:
    - expired at least one day ago -> EXPIRED (threshold, re-triggers every
      day; repetition is bounded by dedup, not by a window)
    - expiry within now + 1d ± 24h -> ONE_DAY
    - expiry within now + 3d ± 24h -> THREE_DAY
    - expiry within now + 7d ± 24h -> SEVEN_DAY
    - otherwise NONE

    An instant sitting on a shared window edge gets the more urgent tier.

    Args:
        expires_at: Subscription expiry (naive values are treated as UTC)
        now: Current instant

    Returns:
        ReminderTier (never None)
    """
    expires_at = ensure_utc(expires_at)
    now = ensure_utc(now)

    if expires_at <= now - ONE_DAY:
        return ReminderTier.EXPIRED

    for tier, offset in _WINDOWED_TIERS:
        if is_within_time_window(expires_at, now + offset, WINDOW_TOLERANCE):
            return tier

    return ReminderTier.NONE


def compute_expiry(subscription: Optional[Subscription]) -> Optional[datetime]:
    """
    paymentDate + validityDays, or None when there is nothing to expire.

    Raises:
        ClassificationError: validityDays is null or not positive
    """
    if subscription is None:
        return None
    return subscription.expires_at()


def classify_subscription(subscription: Optional[Subscription], now: datetime) -> ReminderTier:
    """
    Classify a parsed subscription.

    Returns NONE when there is no subscription or no payment date.

    Raises:
        ClassificationError: subscription data is malformed
    """
    expires_at = compute_expiry(subscription)
    if expires_at is None:
        return ReminderTier.NONE
    return classify_reminder(expires_at, now)


# ====================================================================================
# Eligibility Filter
# ====================================================================================

def check_preferences(prefs: NotificationPreferences, tier: ReminderTier) -> Optional[str]:
    """
    Preference rules of the eligibility filter.

    Returns:
        Skip reason, or None if the preferences allow this tier
    """
    if tier is ReminderTier.NONE:
        return "no_reminder_due"
    if not prefs.email_reminders_enabled:
        return "email_reminders_disabled"
    if tier.preference_key not in prefs.reminder_frequency:
        return f"tier_not_in_reminder_frequency:{tier.preference_key}"
    return None


async def is_eligible(
    user_id: int,
    prefs: NotificationPreferences,
    tier: ReminderTier,
    log_store,
    now: datetime,
) -> ReminderDecision:
    """
    Decide whether user_id may receive tier in this scan.

    Rules, in order, any failure makes the user ineligible:
    1. email reminders enabled
    2. tier key present in reminder_frequency
    3. no sent entry for (user, tier) within the last 24h in the log store

    tier NONE short-circuits before any rule. lastReminderSent on the
    preferences is never consulted.

    Raises:
        PersistenceError: log store lookup failed (dedup state unknown)
    """
    reason = check_preferences(prefs, tier)
    if reason is not None:
        return ReminderDecision(should_send=False, tier=tier, reason=reason)

    recent = await log_store.find_recent_sent(user_id, tier, ensure_utc(now) - DEDUP_WINDOW)
    if recent is not None:
        return ReminderDecision(
            should_send=False,
            tier=tier,
            reason=f"already_sent_at:{recent.sent_at.isoformat()}",
        )

    return ReminderDecision(should_send=True, tier=tier)
