"""
Operational kill switches for the reminder worker.

Flags can stop reminder delivery during an incident (bad template deploy,
provider outage, mass-mail mistake) without a code change.

IMPORTANT:
- Flags default to True (enabled)
- Flags are read once and are immutable at runtime
- Disabled = log + skip (no exceptions)
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureFlags:
    """
    Immutable feature flags for operational control.

    Set via environment variables:
    - FEATURE_BACKGROUND_WORKERS_ENABLED (default: true) - all scheduled scans
    - FEATURE_EMAIL_REMINDERS_ENABLED (default: true) - reminder delivery
    """
    background_workers_enabled: bool = True
    email_reminders_enabled: bool = True

    def __post_init__(self):
        """Validate flags are boolean."""
        for field_name, field_value in self.__dict__.items():
            if not isinstance(field_value, bool):
                raise ValueError(f"Feature flag {field_name} must be boolean, got {type(field_value)}")

    def disabled_reason(self) -> Optional[str]:
        """Reason a scan must be skipped, or None if reminders may run."""
        if not self.background_workers_enabled:
            return "background_workers_enabled=false"
        if not self.email_reminders_enabled:
            return "email_reminders_enabled=false"
        return None


_feature_flags: Optional[FeatureFlags] = None


def _parse_bool_env(key: str, default: bool = True) -> bool:
    """
    Parse boolean from environment variable.

    Unrecognised values fall back to the default.
    """
    value = os.getenv(key, "").lower().strip()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    else:
        return default


def get_feature_flags() -> FeatureFlags:
    """
    Get global feature flags (singleton).

    Returns:
        FeatureFlags instance
    """
    global _feature_flags

    if _feature_flags is None:
        _feature_flags = FeatureFlags(
            background_workers_enabled=_parse_bool_env("FEATURE_BACKGROUND_WORKERS_ENABLED", default=True),
            email_reminders_enabled=_parse_bool_env("FEATURE_EMAIL_REMINDERS_ENABLED", default=True),
        )

        logger.info(
            f"[FEATURE_FLAGS] Initialized: "
            f"background_workers={_feature_flags.background_workers_enabled}, "
            f"email_reminders={_feature_flags.email_reminders_enabled}"
        )

    return _feature_flags


def reset_feature_flags() -> None:
    """Drop the cached flags so the next call re-reads the environment (tests)."""
    global _feature_flags
    _feature_flags = None
