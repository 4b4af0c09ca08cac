"""
Persistence for the shared host allowlist (calendar_allowlist).

One row per host across all tenants. Creation is insert-if-absent and every
status change is a compare-and-set on the current status, so concurrent
registrations and reviewers never clobber each other.
"""

from collections.abc import Iterable

from app.db.helpers import fetch_all, fetch_one
from app.features.calendar_sources.domain import AllowlistEntry, AllowlistStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AllowlistRepository:
    """Postgres-backed access to calendar_allowlist."""

    SELECT_COLUMNS = "host, status, first_seen_at, reviewed_by, reviewed_at, blocked_reason"

    @staticmethod
    def _row_to_entry(row: dict | None) -> AllowlistEntry | None:
        if not row:
            return None

        return AllowlistEntry(
            host=row["host"],
            status=AllowlistStatus(row["status"]),
            first_seen_at=row.get("first_seen_at"),
            reviewed_by=row.get("reviewed_by"),
            reviewed_at=row.get("reviewed_at"),
            blocked_reason=row.get("blocked_reason"),
        )

    async def get(self, host: str) -> AllowlistEntry | None:
        query = f"SELECT {self.SELECT_COLUMNS} FROM calendar_allowlist WHERE host = %s"
        return self._row_to_entry(await fetch_one(query, (host,)))

    async def create_pending(self, host: str) -> AllowlistEntry | None:
        """
        Insert a pending entry for a host seen for the first time.

        Returns None when the host already existed (a concurrent insert won).
        """
        query = f"""
            INSERT INTO calendar_allowlist (host, status, first_seen_at)
            VALUES (%s, 'pending', NOW())
            ON CONFLICT (host) DO NOTHING
            RETURNING {self.SELECT_COLUMNS}
        """
        entry = self._row_to_entry(await fetch_one(query, (host,)))
        if entry:
            logger.info("Allowlist host queued for review", host=host)
        return entry

    async def transition(
        self,
        host: str,
        to_status: AllowlistStatus,
        from_statuses: Iterable[AllowlistStatus],
        reviewed_by: str | None = None,
    ) -> AllowlistEntry | None:
        """
        Move host to to_status only if its current status is in from_statuses.

        Returns the updated entry, or None when the row is missing or in
        another state.
        """
        query = f"""
            UPDATE calendar_allowlist
            SET status = %s,
                reviewed_by = %s,
                reviewed_at = NOW()
            WHERE host = %s AND status = ANY(%s)
            RETURNING {self.SELECT_COLUMNS}
        """
        allowed = [status.value for status in from_statuses]
        row = await fetch_one(query, (to_status.value, reviewed_by, host, allowed))
        return self._row_to_entry(row)

    async def mark_blocked(
        self, host: str, reason: str, actor: str | None = None
    ) -> AllowlistEntry:
        """Upsert host as blocked regardless of its current state."""
        query = f"""
            INSERT INTO calendar_allowlist (
                host, status, first_seen_at, reviewed_by, reviewed_at, blocked_reason
            )
            VALUES (%s, 'blocked', NOW(), %s, NOW(), %s)
            ON CONFLICT (host) DO UPDATE
            SET status = 'blocked',
                reviewed_by = EXCLUDED.reviewed_by,
                reviewed_at = EXCLUDED.reviewed_at,
                blocked_reason = EXCLUDED.blocked_reason
            RETURNING {self.SELECT_COLUMNS}
        """
        row = await fetch_one(query, (host, actor, reason[:500]))
        return self._row_to_entry(row)

    async def list_by_status(
        self, status: AllowlistStatus | None = None, limit: int = 100
    ) -> list[AllowlistEntry]:
        if status is None:
            query = f"""
                SELECT {self.SELECT_COLUMNS} FROM calendar_allowlist
                ORDER BY first_seen_at ASC
                LIMIT %s
            """
            rows = await fetch_all(query, (limit,))
        else:
            query = f"""
                SELECT {self.SELECT_COLUMNS} FROM calendar_allowlist
                WHERE status = %s
                ORDER BY first_seen_at ASC
                LIMIT %s
            """
            rows = await fetch_all(query, (status.value, limit))
        return [self._row_to_entry(row) for row in rows]
