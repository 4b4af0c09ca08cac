"""
Calendar source API request/response models.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.features.calendar_sources.domain import AllowlistEntry, CalendarSource
from app.features.calendar_sources.services import get_display_url


class RegisterSourceRequest(BaseModel):
    """Request model for registering a calendar feed."""

    url: str = Field(..., min_length=1, max_length=2048, description="ICS/webcal feed URL")


class BlockHostRequest(BaseModel):
    """Request model for blocking a host."""

    reason: str = Field(..., min_length=1, max_length=500, description="Why the host is blocked")


class CalendarSourceResponse(BaseModel):
    """A registered source; the feed URL is always masked."""

    id: str = Field(..., description="Source ID")
    organization_id: str = Field(..., description="Owning organization")
    display_url: str = Field(..., description="Masked feed URL")
    host: str = Field(..., description="Feed host")
    allowlist_status: str = Field(..., description="Allowlist status of the host")
    allowlist_error: str | None = Field(None, description="Allowlist error code at registration")
    last_synced_at: datetime | None = Field(None, description="Last sync attempt")
    last_error: str | None = Field(None, description="Error kind of the last attempt")

    @classmethod
    def from_source(
        cls, source: CalendarSource, allowlist_error: str | None = None
    ) -> "CalendarSourceResponse":
        return cls(
            id=source.id,
            organization_id=source.organization_id,
            display_url=get_display_url(source),
            host=source.host,
            allowlist_status=source.allowlist_status.value,
            allowlist_error=allowlist_error,
            last_synced_at=source.last_synced_at,
            last_error=source.last_error,
        )


class CalendarSourcesListResponse(BaseModel):
    sources: list[CalendarSourceResponse]
    count: int


class AllowlistEntryResponse(BaseModel):
    """Response model for an allowlist host entry."""

    host: str
    status: str
    first_seen_at: datetime | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    blocked_reason: str | None = None

    @classmethod
    def from_entry(cls, entry: AllowlistEntry) -> "AllowlistEntryResponse":
        return cls(
            host=entry.host,
            status=entry.status.value,
            first_seen_at=entry.first_seen_at,
            reviewed_by=entry.reviewed_by,
            reviewed_at=entry.reviewed_at,
            blocked_reason=entry.blocked_reason,
        )


class AllowlistEntriesResponse(BaseModel):
    entries: list[AllowlistEntryResponse]
    count: int
