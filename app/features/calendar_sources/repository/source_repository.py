"""
Persistence for organization calendar sources (calendar_sources).

Claim and release are single conditional UPDATEs so two scheduler runs can
never both own a source.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

from app.db.helpers import execute_query, fetch_all, fetch_one
from app.features.calendar_sources.domain import (
    AllowlistStatus,
    CalendarSource,
    SyncState,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class CalendarSourceRepository:
    """Postgres-backed access to calendar_sources."""

    SELECT_COLUMNS = """
        id, organization_id, raw_url, normalized_url, host, allowlist_status,
        sync_state, claimed_at, last_synced_at, last_error, last_error_message, created_at
    """

    @staticmethod
    def _row_to_source(row: dict | None) -> CalendarSource | None:
        if not row:
            return None

        return CalendarSource(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            raw_url=row["raw_url"],
            normalized_url=row["normalized_url"],
            host=row["host"],
            allowlist_status=AllowlistStatus(row["allowlist_status"]),
            sync_state=SyncState(row.get("sync_state") or SyncState.IDLE.value),
            claimed_at=row.get("claimed_at"),
            last_synced_at=row.get("last_synced_at"),
            last_error=row.get("last_error"),
            last_error_message=row.get("last_error_message"),
            created_at=row.get("created_at"),
        )

    async def create(
        self,
        organization_id: str,
        raw_url: str,
        normalized_url: str,
        host: str,
        allowlist_status: AllowlistStatus,
    ) -> CalendarSource:
        query = f"""
            INSERT INTO calendar_sources (
                organization_id, raw_url, normalized_url, host, allowlist_status
            )
            VALUES (%s, %s, %s, %s, %s)
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(
            query, (organization_id, raw_url, normalized_url, host, allowlist_status.value)
        )
        source = self._row_to_source(row)
        logger.info(
            "Calendar source registered",
            source_id=source.id,
            organization_id=organization_id,
            host=host,
            allowlist_status=allowlist_status.value,
        )
        return source

    async def get(self, source_id: str) -> CalendarSource | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM calendar_sources WHERE id = %s"
        return self._row_to_source(await fetch_one(query, (source_id,)))

    async def list_for_organization(self, organization_id: str) -> list[CalendarSource]:
        query = f"""
            SELECT {self.SELECT_COLUMNS} FROM calendar_sources
            WHERE organization_id = %s
            ORDER BY created_at ASC
        """
        rows = await fetch_all(query, (organization_id,))
        return [self._row_to_source(row) for row in rows]

    async def list_due(
        self,
        sync_interval: timedelta,
        stale_after: timedelta,
        limit: int,
        organization_id: str | None = None,
    ) -> list[CalendarSource]:
        """
        Approved sources whose last sync is older than sync_interval and that
        are idle or hold a claim older than stale_after. Oldest first.
        """
        org_filter = "AND organization_id = %s" if organization_id else ""
        query = f"""
            SELECT {self.SELECT_COLUMNS} FROM calendar_sources
            WHERE allowlist_status = 'approved'
              AND (last_synced_at IS NULL OR last_synced_at < NOW() - %s)
              AND (sync_state = 'idle' OR claimed_at < NOW() - %s)
              {org_filter}
            ORDER BY last_synced_at ASC NULLS FIRST
            LIMIT %s
        """
        params: tuple = (sync_interval, stale_after)
        if organization_id:
            params += (organization_id,)
        params += (limit,)

        rows = await fetch_all(query, params)
        return [self._row_to_source(row) for row in rows]

    async def claim(
        self, source_id: str, sync_interval: timedelta, stale_after: timedelta
    ) -> datetime | None:
        """
        Atomically mark a source in_progress and return the claim timestamp.
        None if someone else holds it or it was synced since it was selected.
        """
        query = """
            UPDATE calendar_sources
            SET sync_state = 'in_progress',
                claimed_at = NOW()
            WHERE id = %s
              AND allowlist_status = 'approved'
              AND (last_synced_at IS NULL OR last_synced_at < NOW() - %s)
              AND (sync_state = 'idle' OR claimed_at < NOW() - %s)
            RETURNING claimed_at
        """
        row = await fetch_one(query, (source_id, sync_interval, stale_after))
        return row["claimed_at"] if row else None

    async def release(
        self,
        source_id: str,
        claimed_at: datetime,
        last_error: str | None = None,
        last_error_message: str | None = None,
    ) -> bool:
        """
        Return a claimed source to idle and record the attempt's outcome.

        Only the holder of the claim identified by ``claimed_at`` may release
        it. Returns False when the claim was taken over as stale by another
        run, in which case nothing is written.
        """
        query = """
            UPDATE calendar_sources
            SET sync_state = 'idle',
                claimed_at = NULL,
                last_synced_at = NOW(),
                last_error = %s,
                last_error_message = %s
            WHERE id = %s AND claimed_at = %s
        """
        message = (last_error_message or "")[:MAX_ERROR_MESSAGE_LENGTH] or None
        updated = await execute_query(query, (last_error, message, source_id, claimed_at))
        return updated > 0

    async def update_status(self, source_id: str, to_status: AllowlistStatus) -> None:
        query = "UPDATE calendar_sources SET allowlist_status = %s WHERE id = %s"
        await execute_query(query, (to_status.value, source_id))

    async def update_status_for_host(
        self,
        host: str,
        to_status: AllowlistStatus,
        from_statuses: Iterable[AllowlistStatus],
    ) -> int:
        """Cascade a host decision onto every source registered on it."""
        query = """
            UPDATE calendar_sources
            SET allowlist_status = %s
            WHERE host = %s AND allowlist_status = ANY(%s)
        """
        allowed = [status.value for status in from_statuses]
        updated = await execute_query(query, (to_status.value, host, allowed))
        if updated:
            logger.info(
                "Calendar sources updated for host",
                host=host,
                allowlist_status=to_status.value,
                source_count=updated,
            )
        return updated
