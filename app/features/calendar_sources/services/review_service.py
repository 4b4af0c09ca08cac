"""
Allowlist review and policy actions.

Reviewers approve or deny pending hosts; automated policy (SSRF findings)
and the security team block hosts. Every transition is a compare-and-set on
the host entry, cascades to the sources registered on that host, and lands
in the audit trail.
"""

from typing import Any

from app.features.calendar_sources.domain import (
    AllowlistEntry,
    AllowlistStatus,
    AllowlistTransitionError,
)
from app.features.calendar_sources.repository import (
    AllowlistRepository,
    CalendarSourceRepository,
)
from app.features.calendar_sources.security.url import normalize_host
from app.infrastructure.audit import AuditLogger, audit_logger
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# States each transition may start from; blocked is never left
APPROVE_FROM = (AllowlistStatus.PENDING, AllowlistStatus.DENIED)
DENY_FROM = (AllowlistStatus.PENDING, AllowlistStatus.APPROVED)
BLOCK_FROM = (AllowlistStatus.PENDING, AllowlistStatus.APPROVED, AllowlistStatus.DENIED)


class AllowlistReviewService:
    """Reviewer and policy transitions for calendar_allowlist hosts."""

    def __init__(
        self,
        allowlist: AllowlistRepository | None = None,
        sources: CalendarSourceRepository | None = None,
        audit: AuditLogger | None = None,
    ):
        self.allowlist = allowlist or AllowlistRepository()
        self.sources = sources or CalendarSourceRepository()
        self.audit = audit or audit_logger

    async def list_entries(
        self, status: AllowlistStatus | None = AllowlistStatus.PENDING, limit: int = 100
    ) -> list[AllowlistEntry]:
        return await self.allowlist.list_by_status(status, limit=limit)

    async def _review(
        self,
        host: str,
        to_status: AllowlistStatus,
        from_statuses: tuple[AllowlistStatus, ...],
        reviewer_id: str,
    ) -> AllowlistEntry:
        host = normalize_host(host)
        current = await self.allowlist.get(host)
        if current is None or current.status not in from_statuses:
            raise AllowlistTransitionError(
                host, current.status.value if current else None, to_status.value
            )
        from_status = current.status.value

        updated = await self.allowlist.transition(
            host, to_status, from_statuses, reviewed_by=reviewer_id
        )
        if updated is None:
            # Lost a race with another reviewer or a policy block
            latest = await self.allowlist.get(host)
            raise AllowlistTransitionError(
                host, latest.status.value if latest else None, to_status.value
            )

        await self.sources.update_status_for_host(host, to_status, from_statuses)
        await self.audit.log_allowlist_decision(
            actor=reviewer_id,
            host=host,
            from_status=from_status,
            to_status=to_status.value,
        )
        logger.info(
            "Allowlist host reviewed",
            host=host,
            from_status=from_status,
            to_status=to_status.value,
            reviewer_id=reviewer_id,
        )
        return updated

    async def approve(self, host: str, reviewer_id: str) -> AllowlistEntry:
        """Approve a pending or previously denied host. Blocked hosts stay blocked."""
        return await self._review(host, AllowlistStatus.APPROVED, APPROVE_FROM, reviewer_id)

    async def deny(self, host: str, reviewer_id: str) -> AllowlistEntry:
        """Reject a host; the decision can be revisited by a later approve."""
        return await self._review(host, AllowlistStatus.DENIED, DENY_FROM, reviewer_id)

    async def block_host(
        self,
        host: str,
        reason: str,
        actor: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AllowlistEntry:
        """
        Block a host permanently, creating its entry if needed.

        Called by automated policy when the SSRF guard reports a private or
        loopback target, and by the security team. Idempotent. ``metadata``
        is stored with the audit row (policy passes the error kind).
        """
        host = normalize_host(host)
        previous = await self.allowlist.get(host)
        if previous is not None and previous.status == AllowlistStatus.BLOCKED:
            return previous
        previous_status = previous.status.value if previous else None

        entry = await self.allowlist.mark_blocked(host, reason, actor=actor)
        await self.sources.update_status_for_host(host, AllowlistStatus.BLOCKED, BLOCK_FROM)
        await self.audit.log_allowlist_decision(
            actor=actor,
            host=host,
            from_status=previous_status,
            to_status=AllowlistStatus.BLOCKED.value,
            reason=reason,
            metadata=metadata,
        )
        logger.warning(
            "Allowlist host blocked",
            host=host,
            from_status=previous_status,
            reason=reason,
            actor=actor,
        )
        return entry
