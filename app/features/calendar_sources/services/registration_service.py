"""
Calendar source registration.

An organization submits a feed URL; it is normalized, its network target is
checked by the SSRF guard, and its host is run through the allowlist gate.
SSRF failures reject the registration outright (and block the host); an
allowlist refusal still stores the source, parked in the host's state, so the
UI can show "awaiting review", "blocked" or "rejected".
"""

from app.config import settings
from app.features.calendar_sources.domain import (
    AllowlistRefused,
    AllowlistStatus,
    CalendarSource,
    FetchError,
    RegistrationResult,
    SsrfViolation,
    UrlValidationError,
)
from app.features.calendar_sources.domain.errors import BLOCKING_KINDS
from app.features.calendar_sources.repository import CalendarSourceRepository
from app.features.calendar_sources.security import (
    AllowlistGate,
    SsrfGuard,
    mask_url,
    normalize_url,
)
from app.features.calendar_sources.security.allowlist import refusal_status
from app.features.calendar_sources.services.review_service import AllowlistReviewService
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def get_display_url(source: CalendarSource) -> str:
    """Masked feed URL for members who should not see the full token path."""
    return mask_url(source.normalized_url)


class CalendarSourceService:
    """Registers and lists organization calendar sources."""

    def __init__(
        self,
        sources: CalendarSourceRepository | None = None,
        guard: SsrfGuard | None = None,
        gate: AllowlistGate | None = None,
        review: AllowlistReviewService | None = None,
    ):
        self.sources = sources or CalendarSourceRepository()
        self.guard = guard or SsrfGuard(extra_allowed_ports=settings.CALENDAR_EXTRA_ALLOWED_PORTS)
        self.gate = gate or AllowlistGate()
        self.review = review or AllowlistReviewService(
            allowlist=self.gate.repository, sources=self.sources
        )

    async def register_source(self, organization_id: str, raw_url: str) -> RegistrationResult:
        """
        Register a feed URL for an organization.

        Returns:
            RegistrationResult with the stored source and, when the host is
            not approved, the allowlist error code for the UI

        Raises:
            UrlValidationError: invalid_url (also for hosts that do not resolve)
            SsrfViolation: private_ip, localhost or invalid_port
        """
        normalized_url = normalize_url(raw_url)

        try:
            target = await self.guard.check(normalized_url)
        except SsrfViolation as e:
            logger.info(
                "Calendar source rejected by SSRF guard",
                organization_id=organization_id,
                host=e.host,
                error_kind=e.kind.value,
            )
            if e.kind in BLOCKING_KINDS and e.host:
                await self.review.block_host(
                    e.host,
                    reason=f"{e.kind.value}: {e.message}",
                    metadata={"error_kind": e.kind.value, "organization_id": organization_id},
                )
            raise
        except FetchError as e:
            raise UrlValidationError(f"Host does not resolve: {e.message}", host=e.host) from e

        allowlist_error = None
        try:
            await self.gate.evaluate(target.host)
            status = AllowlistStatus.APPROVED
        except AllowlistRefused as e:
            status = refusal_status(e.kind)
            allowlist_error = e.kind.value

        source = await self.sources.create(
            organization_id=organization_id,
            raw_url=raw_url,
            normalized_url=normalized_url,
            host=target.host,
            allowlist_status=status,
        )
        logger.info(
            "Calendar source stored",
            source_id=source.id,
            organization_id=organization_id,
            display_url=get_display_url(source),
            allowlist_status=status.value,
        )
        return RegistrationResult(source=source, allowlist_error=allowlist_error)

    async def list_sources(self, organization_id: str) -> list[CalendarSource]:
        return await self.sources.list_for_organization(organization_id)
