"""
Domain models for the calendar source gate.

Lightweight dataclasses mirroring the calendar_sources and
calendar_allowlist rows, plus the in-memory result of one fetch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AllowlistStatus(str, Enum):
    """Review state of a host; also mirrored onto every source on that host."""

    PENDING = "pending"
    APPROVED = "approved"
    BLOCKED = "blocked"
    DENIED = "denied"


class SyncState(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"


@dataclass(slots=True)
class CalendarSource:
    """Represents a calendar_sources row registered by one organization."""

    id: str
    organization_id: str
    raw_url: str
    normalized_url: str
    host: str
    allowlist_status: AllowlistStatus
    sync_state: SyncState = SyncState.IDLE
    claimed_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_error: str | None = None
    last_error_message: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class AllowlistEntry:
    """Represents a calendar_allowlist row; one per host, shared by all tenants."""

    host: str
    status: AllowlistStatus
    first_seen_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    blocked_reason: str | None = None


@dataclass(slots=True)
class GuardResult:
    """Network target that passed the SSRF guard."""

    host: str
    port: int
    addresses: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FetchAttempt:
    """Outcome of one successful safe fetch."""

    requested_url: str
    final_url: str
    status_code: int
    body: bytes
    byte_count: int
    redirect_count: int
    elapsed_ms: float
    content_type: str | None = None


@dataclass(slots=True)
class RegistrationResult:
    """A stored source plus the allowlist code the UI should render, if any."""

    source: CalendarSource
    allowlist_error: str | None = None
