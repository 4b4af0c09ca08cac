"""
Error taxonomy for the calendar source gate.

Every failure leaving this feature is a CalendarSourceError carrying one
SourceErrorKind. Component subclasses accept only the kinds that component
can produce.
"""

from enum import Enum


class SourceErrorKind(str, Enum):
    # Input / shape
    INVALID_URL = "invalid_url"
    INVALID_PORT = "invalid_port"
    # Network-target policy
    PRIVATE_IP = "private_ip"
    LOCALHOST = "localhost"
    # Allowlist workflow
    ALLOWLIST_PENDING = "allowlist_pending"
    ALLOWLIST_BLOCKED = "allowlist_blocked"
    ALLOWLIST_DENIED = "allowlist_denied"
    # Fetch execution
    TOO_MANY_REDIRECTS = "too_many_redirects"
    RESPONSE_TOO_LARGE = "response_too_large"
    FETCH_FAILED = "fetch_failed"


# Transient failures: recorded on the source and retried on the next tick
RETRIABLE_KINDS = frozenset(
    {
        SourceErrorKind.TOO_MANY_REDIRECTS,
        SourceErrorKind.RESPONSE_TOO_LARGE,
        SourceErrorKind.FETCH_FAILED,
    }
)

# SSRF findings that put the offending host on the blocked list
BLOCKING_KINDS = frozenset({SourceErrorKind.PRIVATE_IP, SourceErrorKind.LOCALHOST})


class CalendarSourceError(Exception):
    """Base exception for every calendar source failure."""

    KINDS: frozenset[SourceErrorKind] = frozenset(SourceErrorKind)

    def __init__(self, message: str, kind: SourceErrorKind, host: str | None = None):
        if kind not in self.KINDS:
            raise ValueError(f"{type(self).__name__} cannot carry error kind {kind.value!r}")
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.host = host

    @property
    def recoverable(self) -> bool:
        return self.kind in RETRIABLE_KINDS

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "message": self.message}


class UrlValidationError(CalendarSourceError):
    KINDS = frozenset({SourceErrorKind.INVALID_URL})

    def __init__(self, message: str, host: str | None = None):
        super().__init__(message, SourceErrorKind.INVALID_URL, host)


class SsrfViolation(CalendarSourceError):
    KINDS = frozenset(
        {SourceErrorKind.PRIVATE_IP, SourceErrorKind.LOCALHOST, SourceErrorKind.INVALID_PORT}
    )


class AllowlistRefused(CalendarSourceError):
    KINDS = frozenset(
        {
            SourceErrorKind.ALLOWLIST_PENDING,
            SourceErrorKind.ALLOWLIST_BLOCKED,
            SourceErrorKind.ALLOWLIST_DENIED,
        }
    )


class FetchError(CalendarSourceError):
    KINDS = RETRIABLE_KINDS


class AllowlistTransitionError(Exception):
    """A reviewer or policy action was attempted from a state that forbids it."""

    def __init__(self, host: str, current: str | None, requested: str):
        super().__init__(f"Cannot move host {host!r} from {current or 'unknown'} to {requested}")
        self.host = host
        self.current = current
        self.requested = requested
