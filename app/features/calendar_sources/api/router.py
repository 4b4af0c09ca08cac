"""
Calendar source routes.

Organization members register and list feeds, allowlist reviewers act on
hosts, and the scheduler trigger is exposed for an external cron. Feed URLs
are only ever returned masked.
"""

from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.verify import auth_dependency, require_reviewer, verify_cron_secret
from app.features.calendar_sources.api.schemas import (
    AllowlistEntriesResponse,
    AllowlistEntryResponse,
    BlockHostRequest,
    CalendarSourceResponse,
    CalendarSourcesListResponse,
    RegisterSourceRequest,
)
from app.features.calendar_sources.domain import (
    AllowlistStatus,
    AllowlistTransitionError,
    CalendarSourceError,
)
from app.features.calendar_sources.jobs.sync_job import (
    CalendarSyncJob,
    CalendarSyncJobError,
    calendar_sync_job,
)
from app.features.calendar_sources.services import AllowlistReviewService, CalendarSourceService
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/organizations/{org_id}/calendar-sources", tags=["calendar-sources"])
admin_router = APIRouter(prefix="/admin/calendar-allowlist", tags=["calendar-allowlist"])
internal_router = APIRouter(prefix="/internal", tags=["internal"])


@lru_cache
def get_source_service() -> CalendarSourceService:
    return CalendarSourceService()


@lru_cache
def get_review_service() -> AllowlistReviewService:
    return AllowlistReviewService()


def get_sync_job() -> CalendarSyncJob:
    return calendar_sync_job


def _ensure_org_member(claims: dict, org_id: str) -> None:
    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    app_metadata = claims.get("app_metadata") or {}
    if org_id not in (app_metadata.get("organization_ids") or []):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this organization"
        )


def _policy_error(e: CalendarSourceError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())


def _conflict(e: AllowlistTransitionError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": "invalid_transition", "message": str(e)},
    )


@router.post("", response_model=CalendarSourceResponse, status_code=status.HTTP_201_CREATED)
async def register_calendar_source(
    org_id: str,
    request: RegisterSourceRequest,
    claims: dict = Depends(auth_dependency),
    service: CalendarSourceService = Depends(get_source_service),
):
    """Register an external calendar feed for the organization."""
    _ensure_org_member(claims, org_id)

    try:
        result = await service.register_source(org_id, request.url)
    except CalendarSourceError as e:
        logger.info(
            "Calendar source registration refused",
            organization_id=org_id,
            user_id=claims.get("sub"),
            error_kind=e.kind.value,
        )
        raise _policy_error(e) from e

    return CalendarSourceResponse.from_source(result.source, result.allowlist_error)


@router.get("", response_model=CalendarSourcesListResponse)
async def list_calendar_sources(
    org_id: str,
    claims: dict = Depends(auth_dependency),
    service: CalendarSourceService = Depends(get_source_service),
):
    """List the organization's calendar sources with masked URLs."""
    _ensure_org_member(claims, org_id)

    sources = await service.list_sources(org_id)
    items = [CalendarSourceResponse.from_source(source) for source in sources]
    return CalendarSourcesListResponse(sources=items, count=len(items))


@admin_router.get("", response_model=AllowlistEntriesResponse)
async def list_allowlist_entries(
    status_filter: AllowlistStatus | None = Query(AllowlistStatus.PENDING, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    claims: dict = Depends(require_reviewer),
    review: AllowlistReviewService = Depends(get_review_service),
):
    """List allowlist hosts, pending review by default."""
    entries = await review.list_entries(status_filter, limit=limit)
    items = [AllowlistEntryResponse.from_entry(entry) for entry in entries]
    return AllowlistEntriesResponse(entries=items, count=len(items))


@admin_router.post("/{host}/approve", response_model=AllowlistEntryResponse)
async def approve_host(
    host: str,
    claims: dict = Depends(require_reviewer),
    review: AllowlistReviewService = Depends(get_review_service),
):
    try:
        entry = await review.approve(host, reviewer_id=claims["sub"])
    except AllowlistTransitionError as e:
        raise _conflict(e) from e
    return AllowlistEntryResponse.from_entry(entry)


@admin_router.post("/{host}/deny", response_model=AllowlistEntryResponse)
async def deny_host(
    host: str,
    claims: dict = Depends(require_reviewer),
    review: AllowlistReviewService = Depends(get_review_service),
):
    try:
        entry = await review.deny(host, reviewer_id=claims["sub"])
    except AllowlistTransitionError as e:
        raise _conflict(e) from e
    return AllowlistEntryResponse.from_entry(entry)


@admin_router.post("/{host}/block", response_model=AllowlistEntryResponse)
async def block_host(
    host: str,
    request: BlockHostRequest,
    claims: dict = Depends(require_reviewer),
    review: AllowlistReviewService = Depends(get_review_service),
):
    """Block a host permanently. Blocked hosts cannot be approved again."""
    entry = await review.block_host(host, reason=request.reason, actor=claims["sub"])
    return AllowlistEntryResponse.from_entry(entry)


@internal_router.post("/calendar-sync", dependencies=[Depends(verify_cron_secret)])
async def trigger_calendar_sync(
    organization_id: str | None = Query(None),
    job: CalendarSyncJob = Depends(get_sync_job),
):
    """Run one tick of the calendar sync job (called by the external cron)."""
    try:
        return await job.run_once(organization_id)
    except CalendarSyncJobError as e:
        logger.error("Calendar sync trigger failed", error=str(e), operation=e.operation)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Calendar sync unavailable",
        ) from e
