"""
Calendar sync job.

Invoked once per tick (by the authenticated cron route or the worker loop).
Selects approved sources that are due, claims each one, fetches it through
the SafeFetcher under a bounded worker pool and releases it with the
outcome. One source failing never affects another.
"""

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from app.config import Settings, settings
from app.db.helpers import DatabaseError, with_db_retry
from app.db.pool import db_pool
from app.features.calendar_sources.domain import (
    AllowlistRefused,
    CalendarSource,
    CalendarSourceError,
    FetchAttempt,
    SourceErrorKind,
)
from app.features.calendar_sources.domain.errors import BLOCKING_KINDS
from app.features.calendar_sources.repository import CalendarSourceRepository
from app.features.calendar_sources.security import SafeFetcher, mask_url
from app.features.calendar_sources.security.allowlist import refusal_status
from app.features.calendar_sources.services.review_service import AllowlistReviewService
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

PayloadHandler = Callable[[CalendarSource, FetchAttempt], Awaitable[None]]

# Slack on top of the fetcher's own deadline before the job gives up on it
ATTEMPT_TIMEOUT_GRACE_SECONDS = 5.0


async def log_payload(source: CalendarSource, attempt: FetchAttempt) -> None:
    """Default payload handler; the ICS importer plugs in here."""
    logger.info(
        "Calendar payload received",
        source_id=source.id,
        organization_id=source.organization_id,
        byte_count=attempt.byte_count,
        content_type=attempt.content_type,
        redirect_count=attempt.redirect_count,
    )


class CalendarSyncJobError(Exception):
    """Custom exception for calendar sync job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class CalendarSyncMetrics:
    """Metrics tracking for one calendar sync run."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self.sources_selected = 0
        self.sources_processed = 0
        self.sources_synced = 0
        self.sources_failed = 0
        self.sources_skipped = 0
        self.bytes_fetched = 0
        self.total_duration_seconds = 0.0
        self.errors_by_kind: Counter[str] = Counter()
        self.sources_by_organization: Counter[str] = Counter()
        self.errors: list[dict] = []

    def record_success(self, source: CalendarSource, attempt: FetchAttempt):
        self.sources_processed += 1
        self.sources_synced += 1
        self.bytes_fetched += attempt.byte_count
        self.sources_by_organization[source.organization_id] += 1

        logger.debug(
            "Calendar source synced",
            source_id=source.id,
            elapsed_ms=round(attempt.elapsed_ms, 2),
            job_run="calendar_sync",
        )

    def record_failure(self, source: CalendarSource, kind: SourceErrorKind, message: str):
        self.sources_processed += 1
        self.sources_failed += 1
        self.errors_by_kind[kind.value] += 1
        self.sources_by_organization[source.organization_id] += 1
        self.errors.append(
            {
                "source_id": source.id,
                "error": kind.value,
                "message": message,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

        # Policy refusals log at info, transport failures at warning
        log = logger.warning if kind == SourceErrorKind.FETCH_FAILED else logger.info
        log(
            "Calendar source sync failed",
            source_id=source.id,
            organization_id=source.organization_id,
            error_kind=kind.value,
            error=message,
            job_run="calendar_sync",
        )

    def record_skipped(self, source: CalendarSource, reason: str):
        self.sources_skipped += 1
        logger.debug(
            "Calendar source skipped", source_id=source.id, reason=reason, job_run="calendar_sync"
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "calendar_sync",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "sources_selected": self.sources_selected,
            "sources_processed": self.sources_processed,
            "sources_synced": self.sources_synced,
            "sources_failed": self.sources_failed,
            "sources_skipped": self.sources_skipped,
            "bytes_fetched": self.bytes_fetched,
            "errors_by_kind": dict(self.errors_by_kind),
            "sources_by_organization": dict(self.sources_by_organization),
            "errors_count": len(self.errors),
        }


class CalendarSyncJob:
    """
    Background job that fetches due calendar sources.

    Concurrency is bounded by CALENDAR_SYNC_MAX_CONCURRENT; every source is
    claimed with a compare-and-set before fetching, so overlapping runs
    (two cron ticks, or cron plus worker) never fetch the same source twice.
    """

    def __init__(
        self,
        sources: CalendarSourceRepository | None = None,
        fetcher: SafeFetcher | None = None,
        review: AllowlistReviewService | None = None,
        payload_handler: PayloadHandler | None = None,
        config: Settings | None = None,
    ):
        self.config = config or settings
        self.sources = sources or CalendarSourceRepository()
        self.fetcher = fetcher or SafeFetcher()
        self.review = review or AllowlistReviewService(
            allowlist=self.fetcher.gate.repository, sources=self.sources
        )
        self.payload_handler = payload_handler or log_payload
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.job_metrics = CalendarSyncMetrics()

    @property
    def attempt_timeout(self) -> float:
        return self.fetcher.policy.timeout_seconds + ATTEMPT_TIMEOUT_GRACE_SECONDS

    async def run_once(self, organization_id: str | None = None) -> dict:
        """
        Run a single tick of the calendar sync job.

        Args:
            organization_id: Restrict the tick to one organization

        Returns:
            Dict: Job execution metrics

        Raises:
            CalendarSyncJobError: If due sources cannot be selected
        """
        if self.is_running:
            logger.warning("Calendar sync job already running, skipping this tick")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.job_metrics.reset()

            due_sources = await self._get_due_sources(organization_id)
            self.job_metrics.sources_selected = len(due_sources)

            if due_sources:
                logger.info(
                    "Found due calendar sources",
                    source_count=len(due_sources),
                    organization_id=organization_id,
                    max_concurrent=self.config.CALENDAR_SYNC_MAX_CONCURRENT,
                )
                await self._process_sources(due_sources)
            else:
                logger.info("No calendar sources due for sync", organization_id=organization_id)

            self.job_metrics.finalize()
            self.last_run_time = datetime.now(UTC)

            metrics = self.job_metrics.to_dict()
            logger.info("Calendar sync job completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    async def _get_due_sources(self, organization_id: str | None) -> list[CalendarSource]:
        try:
            return await self._list_due(organization_id)
        except DatabaseError as e:
            logger.error("Failed to select due calendar sources", error=str(e))
            raise CalendarSyncJobError(
                f"Failed to select due sources: {e}", operation="get_due_sources"
            ) from e

    @with_db_retry(max_retries=2)
    async def _list_due(self, organization_id: str | None) -> list[CalendarSource]:
        return await self.sources.list_due(
            sync_interval=self.config.sync_interval(),
            stale_after=self.config.stale_claim_after(),
            limit=self.config.CALENDAR_SYNC_BATCH_SIZE,
            organization_id=organization_id,
        )

    async def _process_sources(self, due_sources: list[CalendarSource]) -> None:
        semaphore = asyncio.Semaphore(self.config.CALENDAR_SYNC_MAX_CONCURRENT)
        tasks = [self._sync_source_with_semaphore(semaphore, source) for source in due_sources]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _sync_source_with_semaphore(
        self, semaphore: asyncio.Semaphore, source: CalendarSource
    ) -> None:
        async with semaphore:
            await self._sync_source(source)

    async def _sync_source(self, source: CalendarSource) -> None:
        """Claim, fetch and release one source. Never raises."""
        try:
            claimed_at = await self.sources.claim(
                source.id, self.config.sync_interval(), self.config.stale_claim_after()
            )
        except DatabaseError as e:
            logger.error("Failed to claim calendar source", source_id=source.id, error=str(e))
            self.job_metrics.record_skipped(source, "claim_error")
            return

        if claimed_at is None:
            self.job_metrics.record_skipped(source, "already_claimed")
            return

        error_kind: SourceErrorKind | None = None
        error_message: str | None = None
        try:
            attempt = await asyncio.wait_for(
                self.fetcher.fetch(source.normalized_url), timeout=self.attempt_timeout
            )
            await self.payload_handler(source, attempt)
            self.job_metrics.record_success(source, attempt)

        except CalendarSourceError as e:
            error_kind, error_message = e.kind, e.message
            self.job_metrics.record_failure(source, e.kind, e.message)
            await self._apply_policy(source, e)

        except TimeoutError:
            error_kind = SourceErrorKind.FETCH_FAILED
            error_message = f"Sync attempt timed out after {self.attempt_timeout}s"
            self.job_metrics.record_failure(source, error_kind, error_message)

        except Exception as e:
            error_kind = SourceErrorKind.FETCH_FAILED
            error_message = f"Unexpected error: {type(e).__name__}: {e}"
            logger.exception("Unexpected calendar sync error", source_id=source.id)
            self.job_metrics.record_failure(source, error_kind, error_message)

        finally:
            await self._release(source, claimed_at, error_kind, error_message)

    async def _apply_policy(self, source: CalendarSource, error: CalendarSourceError) -> None:
        """Feed SSRF and allowlist findings back into host and source state."""
        try:
            if error.kind in BLOCKING_KINDS and error.host:
                await self.review.block_host(
                    error.host,
                    reason=f"{error.kind.value}: {error.message}",
                    metadata={"error_kind": error.kind.value, "source_id": source.id},
                )
            elif isinstance(error, AllowlistRefused) and error.host == source.host:
                status = refusal_status(error.kind)
                if status is not None:
                    await self.sources.update_status(source.id, status)
        except DatabaseError as e:
            logger.error(
                "Failed to apply allowlist policy after sync failure",
                source_id=source.id,
                host=error.host,
                error=str(e),
            )

    async def _release(
        self,
        source: CalendarSource,
        claimed_at: datetime,
        error_kind: SourceErrorKind | None,
        error_message: str | None,
    ) -> None:
        try:
            released = await self.sources.release(
                source.id,
                claimed_at,
                last_error=error_kind.value if error_kind else None,
                last_error_message=error_message,
            )
        except DatabaseError as e:
            # The stale-claim TTL frees the source on a later tick
            logger.error(
                "Failed to release calendar source",
                source_id=source.id,
                url=mask_url(source.normalized_url),
                error=str(e),
            )
            return

        if not released:
            logger.warning(
                "Calendar source claim was taken over before release",
                source_id=source.id,
                claimed_at=claimed_at.isoformat(),
            )

    def get_job_status(self) -> dict:
        return {
            "job_name": "calendar_sync",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "tick_minutes": self.config.CALENDAR_SYNC_TICK_MINUTES,
            "sync_interval_hours": self.config.CALENDAR_SYNC_INTERVAL_HOURS,
            "max_concurrent": self.config.CALENDAR_SYNC_MAX_CONCURRENT,
            "batch_size": self.config.CALENDAR_SYNC_BATCH_SIZE,
            "last_run_metrics": self.job_metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Healthy unless the last run is older than two ticks."""
        now = datetime.now(UTC)
        overdue_threshold = timedelta(minutes=self.config.CALENDAR_SYNC_TICK_MINUTES * 2)
        is_overdue = (
            self.last_run_time is not None and (now - self.last_run_time) > overdue_threshold
        )

        health_status = {
            "healthy": not is_overdue,
            "service": "calendar_sync_job",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = (
                f"Job overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )
        return health_status


# Singleton instance for application use
calendar_sync_job = CalendarSyncJob()


async def run_calendar_sync_job(organization_id: str | None = None) -> dict:
    """Run a single tick of the calendar sync job."""
    return await calendar_sync_job.run_once(organization_id)


async def start_calendar_sync_scheduler() -> None:
    """
    Run the calendar sync job on a fixed tick inside the worker process.

    Deployments driven by an external cron hit POST /internal/calendar-sync
    instead; both paths are safe to run together because of source claims.
    """
    interval_seconds = settings.CALENDAR_SYNC_TICK_MINUTES * 60
    logger.info(
        "Starting calendar sync scheduler", tick_minutes=settings.CALENDAR_SYNC_TICK_MINUTES
    )

    if not db_pool.initialized:
        await db_pool.initialize()

    try:
        while True:
            try:
                metrics = await run_calendar_sync_job()
                if not metrics.get("skipped", False):
                    logger.info(
                        "Calendar sync cycle completed",
                        synced=metrics["sources_synced"],
                        failed=metrics["sources_failed"],
                    )
            except CalendarSyncJobError as e:
                logger.error("Calendar sync tick failed", error=str(e), operation=e.operation)

            await asyncio.sleep(interval_seconds)
    finally:
        await calendar_sync_job.fetcher.aclose()
        await db_pool.close()
