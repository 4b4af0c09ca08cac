import asyncio
import itertools
from datetime import UTC, datetime

import pytest

from app.auth.verify import auth_dependency, require_reviewer
from app.features.calendar_sources.domain import (
    AllowlistEntry,
    AllowlistStatus,
    CalendarSource,
    SyncState,
)
from app.features.calendar_sources.security import AllowlistGate, SsrfGuard
from app.features.calendar_sources.services import AllowlistReviewService

MEMBER_CLAIMS = {
    "sub": "user-123",
    "app_metadata": {"organization_ids": ["org-1"]},
}
REVIEWER_CLAIMS = {
    "sub": "reviewer-1",
    "app_metadata": {"organization_ids": ["org-1"], "role": "allowlist_reviewer"},
}


@pytest.fixture
def auth_override():
    def _override():
        return MEMBER_CLAIMS

    return _override


@pytest.fixture
def reviewer_override():
    def _override():
        return REVIEWER_CLAIMS

    return _override


@pytest.fixture
def apply_auth_override(auth_override, reviewer_override):
    def _apply(app, reviewer: bool = False):
        claims_override = reviewer_override if reviewer else auth_override
        app.dependency_overrides[auth_dependency] = claims_override
        if reviewer:
            app.dependency_overrides[require_reviewer] = reviewer_override

    return _apply


class FakeAllowlistRepository:
    """In-memory calendar_allowlist with the same compare-and-set contract."""

    def __init__(self):
        self.entries: dict[str, AllowlistEntry] = {}
        self.create_pending_calls = 0
        self._lock = asyncio.Lock()

    def seed(self, host: str, status: AllowlistStatus) -> AllowlistEntry:
        entry = AllowlistEntry(host=host, status=status, first_seen_at=datetime.now(UTC))
        self.entries[host] = entry
        return entry

    async def get(self, host: str) -> AllowlistEntry | None:
        # Yield so concurrent callers interleave between read and write
        await asyncio.sleep(0)
        return self.entries.get(host)

    async def create_pending(self, host: str) -> AllowlistEntry | None:
        self.create_pending_calls += 1
        async with self._lock:
            if host in self.entries:
                return None
            return self.seed(host, AllowlistStatus.PENDING)

    async def transition(self, host, to_status, from_statuses, reviewed_by=None):
        async with self._lock:
            entry = self.entries.get(host)
            if entry is None or entry.status not in tuple(from_statuses):
                return None
            entry.status = to_status
            entry.reviewed_by = reviewed_by
            entry.reviewed_at = datetime.now(UTC)
            return entry

    async def mark_blocked(self, host, reason, actor=None):
        async with self._lock:
            entry = self.entries.get(host) or self.seed(host, AllowlistStatus.BLOCKED)
            entry.status = AllowlistStatus.BLOCKED
            entry.blocked_reason = reason
            entry.reviewed_by = actor
            entry.reviewed_at = datetime.now(UTC)
            return entry

    async def list_by_status(self, status=None, limit=100):
        entries = [e for e in self.entries.values() if status is None or e.status == status]
        return entries[:limit]


class FakeCalendarSourceRepository:
    """In-memory calendar_sources with atomic claim/release."""

    def __init__(self):
        self.sources: dict[str, CalendarSource] = {}
        self.released: list[tuple[str, str | None]] = []
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(self, organization_id, raw_url, normalized_url, host, allowlist_status):
        source = CalendarSource(
            id=f"src-{next(self._ids)}",
            organization_id=organization_id,
            raw_url=raw_url,
            normalized_url=normalized_url,
            host=host,
            allowlist_status=allowlist_status,
            created_at=datetime.now(UTC),
        )
        self.sources[source.id] = source
        return source

    async def get(self, source_id):
        return self.sources.get(source_id)

    async def list_for_organization(self, organization_id):
        return [s for s in self.sources.values() if s.organization_id == organization_id]

    def _is_due(self, source, sync_interval, stale_after, now) -> bool:
        if source.allowlist_status != AllowlistStatus.APPROVED:
            return False
        if source.last_synced_at is not None and source.last_synced_at >= now - sync_interval:
            return False
        if source.sync_state == SyncState.IDLE:
            return True
        return source.claimed_at is not None and source.claimed_at < now - stale_after

    async def list_due(self, sync_interval, stale_after, limit, organization_id=None):
        now = datetime.now(UTC)
        due = [
            s
            for s in self.sources.values()
            if self._is_due(s, sync_interval, stale_after, now)
            and (organization_id is None or s.organization_id == organization_id)
        ]
        return due[:limit]

    async def claim(self, source_id, sync_interval, stale_after):
        async with self._lock:
            source = self.sources.get(source_id)
            now = datetime.now(UTC)
            if source is None or not self._is_due(source, sync_interval, stale_after, now):
                return None
            source.sync_state = SyncState.IN_PROGRESS
            source.claimed_at = now
            return now

    async def release(self, source_id, claimed_at, last_error=None, last_error_message=None):
        source = self.sources[source_id]
        if source.claimed_at != claimed_at:
            return False
        source.sync_state = SyncState.IDLE
        source.claimed_at = None
        source.last_synced_at = datetime.now(UTC)
        source.last_error = last_error
        source.last_error_message = last_error_message
        self.released.append((source_id, last_error))
        return True

    async def update_status(self, source_id, to_status):
        self.sources[source_id].allowlist_status = to_status

    async def update_status_for_host(self, host, to_status, from_statuses):
        updated = 0
        for source in self.sources.values():
            if source.host == host and source.allowlist_status in tuple(from_statuses):
                source.allowlist_status = to_status
                updated += 1
        return updated


class FakeAudit:
    def __init__(self):
        self.events: list[dict] = []

    async def log_allowlist_decision(self, **kwargs) -> bool:
        self.events.append(kwargs)
        return True


def make_resolver(mapping: dict[str, list[str]]):
    """Resolver stand-in; unknown hosts fail like a DNS miss."""
    calls: list[str] = []

    async def _resolve(host: str, port: int) -> list[str]:
        calls.append(host)
        if host not in mapping:
            raise OSError(f"Name or service not known: {host}")
        return list(mapping[host])

    _resolve.calls = calls
    return _resolve


@pytest.fixture
def stub_resolver():
    return make_resolver


@pytest.fixture
def allowlist_repo():
    return FakeAllowlistRepository()


@pytest.fixture
def source_repo():
    return FakeCalendarSourceRepository()


@pytest.fixture
def fake_audit():
    return FakeAudit()


@pytest.fixture
def gate(allowlist_repo):
    return AllowlistGate(repository=allowlist_repo)


@pytest.fixture
def review_service(allowlist_repo, source_repo, fake_audit):
    return AllowlistReviewService(allowlist=allowlist_repo, sources=source_repo, audit=fake_audit)


@pytest.fixture
def public_guard():
    resolver = make_resolver(
        {
            "cal.example.com": ["93.184.216.34"],
            "mirror.example.org": ["93.184.216.35"],
            "internal.example.com": ["10.0.0.5"],
            "sneaky.example.com": ["127.0.0.1"],
        }
    )
    return SsrfGuard(resolver=resolver)
