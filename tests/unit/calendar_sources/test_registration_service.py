import pytest

from app.features.calendar_sources.domain import (
    AllowlistStatus,
    SourceErrorKind,
    SsrfViolation,
    UrlValidationError,
)
from app.features.calendar_sources.services import CalendarSourceService


@pytest.fixture
def service(source_repo, public_guard, gate, review_service):
    return CalendarSourceService(
        sources=source_repo, guard=public_guard, gate=gate, review=review_service
    )


@pytest.mark.asyncio
async def test_register_approved_host(service, allowlist_repo, source_repo):
    allowlist_repo.seed("cal.example.com", AllowlistStatus.APPROVED)

    result = await service.register_source("org-1", "webcal://Cal.Example.com/feed/token123456")

    assert result.allowlist_error is None
    source = result.source
    assert source.allowlist_status == AllowlistStatus.APPROVED
    assert source.normalized_url == "https://cal.example.com/feed/token123456"
    assert source.raw_url == "webcal://Cal.Example.com/feed/token123456"
    assert source.host == "cal.example.com"
    assert list(source_repo.sources) == [source.id]


@pytest.mark.asyncio
async def test_register_unknown_host_is_stored_pending(service, allowlist_repo):
    result = await service.register_source("org-1", "https://cal.example.com/feed.ics")

    assert result.source.allowlist_status == AllowlistStatus.PENDING
    assert result.allowlist_error == SourceErrorKind.ALLOWLIST_PENDING.value
    assert allowlist_repo.entries["cal.example.com"].status == AllowlistStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error",
    [
        (AllowlistStatus.BLOCKED, "allowlist_blocked"),
        (AllowlistStatus.DENIED, "allowlist_denied"),
    ],
)
async def test_register_refused_host_keeps_host_status(service, allowlist_repo, status, error):
    allowlist_repo.seed("cal.example.com", status)

    result = await service.register_source("org-1", "https://cal.example.com/feed.ics")

    assert result.source.allowlist_status == status
    assert result.allowlist_error == error


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url, kind, host",
    [
        ("http://localhost/feed.ics", SourceErrorKind.LOCALHOST, "localhost"),
        ("https://sneaky.example.com/feed.ics", SourceErrorKind.LOCALHOST, "sneaky.example.com"),
        (
            "https://internal.example.com/feed.ics",
            SourceErrorKind.PRIVATE_IP,
            "internal.example.com",
        ),
    ],
)
async def test_register_ssrf_target_is_rejected_and_host_blocked(
    service, allowlist_repo, source_repo, fake_audit, url, kind, host
):
    with pytest.raises(SsrfViolation) as exc_info:
        await service.register_source("org-1", url)

    assert exc_info.value.kind == kind
    assert source_repo.sources == {}
    assert allowlist_repo.entries[host].status == AllowlistStatus.BLOCKED
    assert fake_audit.events[-1]["to_status"] == "blocked"
    assert fake_audit.events[-1]["actor"] is None
    assert fake_audit.events[-1]["metadata"] == {
        "error_kind": kind.value,
        "organization_id": "org-1",
    }


@pytest.mark.asyncio
async def test_register_invalid_port_does_not_block_host(service, allowlist_repo, source_repo):
    with pytest.raises(SsrfViolation) as exc_info:
        await service.register_source("org-1", "https://cal.example.com:8443/feed.ics")

    assert exc_info.value.kind == SourceErrorKind.INVALID_PORT
    assert allowlist_repo.entries == {}
    assert source_repo.sources == {}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url", ["", "ftp://cal.example.com/feed.ics", "https://nowhere.example.com/feed.ics"]
)
async def test_register_invalid_url(service, source_repo, url):
    with pytest.raises(UrlValidationError) as exc_info:
        await service.register_source("org-1", url)

    assert exc_info.value.kind == SourceErrorKind.INVALID_URL
    assert source_repo.sources == {}


@pytest.mark.asyncio
async def test_list_sources_is_scoped_to_organization(service, allowlist_repo):
    allowlist_repo.seed("cal.example.com", AllowlistStatus.APPROVED)
    await service.register_source("org-1", "https://cal.example.com/a.ics")
    await service.register_source("org-2", "https://cal.example.com/b.ics")

    sources = await service.list_sources("org-1")

    assert [s.normalized_url for s in sources] == ["https://cal.example.com/a.ics"]


@pytest.mark.asyncio
async def test_register_port_zero_is_rejected(service, allowlist_repo, source_repo):
    with pytest.raises(SsrfViolation) as exc_info:
        await service.register_source("org-1", "https://cal.example.com:0/feed.ics")

    assert exc_info.value.kind == SourceErrorKind.INVALID_PORT
    assert source_repo.sources == {}
