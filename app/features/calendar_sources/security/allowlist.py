"""
Allowlist gate: decides whether a host may be fetched right now.

Unknown hosts are never fetched. Their first sighting queues them for human
review as a pending entry; the fetch is refused until a reviewer approves.
"""

from app.features.calendar_sources.domain import (
    AllowlistEntry,
    AllowlistRefused,
    AllowlistStatus,
    SourceErrorKind,
)
from app.features.calendar_sources.repository import AllowlistRepository
from app.features.calendar_sources.security.url import normalize_host
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REFUSAL_KINDS = {
    AllowlistStatus.PENDING: SourceErrorKind.ALLOWLIST_PENDING,
    AllowlistStatus.BLOCKED: SourceErrorKind.ALLOWLIST_BLOCKED,
    AllowlistStatus.DENIED: SourceErrorKind.ALLOWLIST_DENIED,
}

REFUSAL_MESSAGES = {
    AllowlistStatus.PENDING: "is awaiting review",
    AllowlistStatus.BLOCKED: "is blocked by policy",
    AllowlistStatus.DENIED: "was rejected by a reviewer",
}


def refusal_status(kind: SourceErrorKind) -> AllowlistStatus | None:
    """Map an allowlist error kind back to the host status it reports."""
    for status, refusal_kind in REFUSAL_KINDS.items():
        if refusal_kind == kind:
            return status
    return None


class AllowlistGate:
    """Evaluates hosts against the shared calendar_allowlist table."""

    def __init__(self, repository: AllowlistRepository | None = None):
        self.repository = repository or AllowlistRepository()

    async def evaluate(self, host: str) -> AllowlistEntry:
        """
        Return the approved entry for host.

        Raises:
            AllowlistRefused: allowlist_pending, allowlist_blocked or allowlist_denied
        """
        host = normalize_host(host)
        entry = await self.repository.get(host)

        if entry is None:
            entry = await self.repository.create_pending(host)
            if entry is None:
                # Lost the insert race; judge whatever the winner stored
                entry = await self.repository.get(host)
            if entry is None:
                raise AllowlistRefused(
                    f"Host {host!r} is awaiting review",
                    SourceErrorKind.ALLOWLIST_PENDING,
                    host=host,
                )

        if entry.status == AllowlistStatus.APPROVED:
            return entry

        logger.info("Allowlist refused host", host=host, allowlist_status=entry.status.value)
        raise AllowlistRefused(
            f"Host {host!r} {REFUSAL_MESSAGES[entry.status]}",
            REFUSAL_KINDS[entry.status],
            host=host,
        )
