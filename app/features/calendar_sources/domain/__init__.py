"""
Domain subpackage for the calendar source gate.
"""

from .errors import (
    AllowlistRefused,
    AllowlistTransitionError,
    CalendarSourceError,
    FetchError,
    SourceErrorKind,
    SsrfViolation,
    UrlValidationError,
)
from .models import (
    AllowlistEntry,
    AllowlistStatus,
    CalendarSource,
    FetchAttempt,
    GuardResult,
    RegistrationResult,
    SyncState,
)

__all__ = [
    "AllowlistEntry",
    "AllowlistRefused",
    "AllowlistStatus",
    "AllowlistTransitionError",
    "CalendarSource",
    "CalendarSourceError",
    "FetchAttempt",
    "FetchError",
    "GuardResult",
    "RegistrationResult",
    "SourceErrorKind",
    "SsrfViolation",
    "SyncState",
    "UrlValidationError",
]
