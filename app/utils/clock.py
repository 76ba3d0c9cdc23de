"""Time sources. Everything in the reminder engine asks a Clock for "now"."""
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Supplies the current instant (timezone-aware UTC)."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock(Clock):
    """
    Clock pinned to a fixed instant; moves only when told to.

    Example:
        clock = FrozenClock(datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc))
        clock.advance(days=1)
    """

    def __init__(self, instant: Optional[datetime] = None):
        self._now = ensure_utc(instant or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = ensure_utc(instant)

    def advance(self, **delta) -> datetime:
        """Move forward by timedelta(**delta) and return the new instant."""
        self._now = self._now + timedelta(**delta)
        return self._now


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
