"""
Notification Service Domain Exceptions

All exceptions raised by the reminder engine. None of them escapes the
scheduler: run_scan() turns every one into a log line, a failed
notification log entry, or a summary field.
"""


class NotificationServiceError(Exception):
    """Base exception for notification service errors"""
    pass


class ClassificationError(NotificationServiceError):
    """Subscription data is malformed (e.g. validityDays null or not a number); user gets no tier"""
    pass


class DeliveryError(NotificationServiceError):
    """Delivery channel raised or timed out; recorded as a failed attempt"""
    pass


class PersistenceError(NotificationServiceError):
    """Notification log or preferences write failed; scan continues"""
    pass


class DuplicateNotificationError(PersistenceError):
    """A sent entry for the same (user, tier, day) already exists in the log"""
    pass


class StoreUnavailableError(NotificationServiceError):
    """User/subscription store cannot be listed; the whole scan is aborted"""
    pass
