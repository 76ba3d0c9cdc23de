"""
Delivery channel interface and reminder message content.
"""

from dataclasses import dataclass
from typing import Optional

import config
from app.services.notifications.models import DeliveryOutcome, ReminderTier, User


@dataclass(frozen=True)
class ReminderMessage:
    subject: str
    text: str


_SUBJECTS = {
    ReminderTier.SEVEN_DAY: "Your Elevate Subscription Expires in 7 Days",
    ReminderTier.THREE_DAY: "Your Elevate Subscription Expires in 3 Days",
    ReminderTier.ONE_DAY: "Your Elevate Subscription Expires Tomorrow",
    ReminderTier.EXPIRED: "Your Elevate Subscription Has Expired",
}


def renewal_link(frontend_url: Optional[str] = None) -> str:
    base = (frontend_url if frontend_url is not None else config.FRONTEND_URL).rstrip("/")
    return f"{base}/subscription/renew"


def build_reminder_message(
    tier: ReminderTier,
    remaining_days: int,
    name: Optional[str] = None,
    frontend_url: Optional[str] = None,
) -> ReminderMessage:
    """
    Subject and one-line body for a reminder tier.

    Raises:
        ValueError: tier is NONE (nothing to send)
    """
    if tier is ReminderTier.NONE:
        raise ValueError("No reminder message for tier NONE")

    greeting = f"Hi {name}," if name else "Hi,"
    link = renewal_link(frontend_url)
    if tier is ReminderTier.EXPIRED:
        body = f"{greeting} your Elevate subscription has expired. Renew here: {link}"
    else:
        days = max(remaining_days, 1)
        unit = "day" if days == 1 else "days"
        body = f"{greeting} your Elevate subscription expires in {days} {unit}. Renew here: {link}"
    return ReminderMessage(subject=_SUBJECTS[tier], text=body)


class DeliveryChannel:
    """
    Sends one reminder to one user.

    send() must not raise for provider-level failures: it returns
    DeliveryOutcome.failure(...). The scheduler still bounds every call with
    timeout_seconds and treats any exception as a failed attempt.
    """

    name = "email"
    timeout_seconds: float = 10.0

    async def send(self, user: User, tier: ReminderTier, remaining_days: int) -> DeliveryOutcome:
        raise NotImplementedError
