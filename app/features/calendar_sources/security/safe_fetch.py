"""
SSRF-safe fetcher for calendar feeds.

Redirects are never followed by the HTTP client. Each hop is an explicit
iteration: the target is re-normalized, re-checked by the SSRF guard and the
allowlist gate, and only then contacted. Connections go to the address the
guard validated, with the original name kept in the Host header and TLS SNI.
"""

import asyncio
import time
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx

from app.config import Settings, settings
from app.features.calendar_sources.domain import (
    FetchAttempt,
    FetchError,
    GuardResult,
    SourceErrorKind,
    UrlValidationError,
)
from app.features.calendar_sources.security.allowlist import AllowlistGate
from app.features.calendar_sources.security.masking import mask_url
from app.features.calendar_sources.security.ssrf_guard import SsrfGuard, parse_ip
from app.features.calendar_sources.security.url import normalize_url, url_host
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
USER_AGENT = "CalendarSourceGate/1.0"
ACCEPT = "text/calendar, text/plain;q=0.9, */*;q=0.1"


@dataclass(slots=True, frozen=True)
class FetchPolicy:
    """Operator-set limits applied to every fetch."""

    max_redirects: int = 5
    max_bytes: int = 5 * 1024 * 1024
    timeout_seconds: float = 15.0
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, config: Settings) -> "FetchPolicy":
        return cls(
            max_redirects=config.CALENDAR_FETCH_MAX_REDIRECTS,
            max_bytes=config.CALENDAR_FETCH_MAX_BYTES,
            timeout_seconds=config.CALENDAR_FETCH_TIMEOUT_SECONDS,
            connect_timeout_seconds=config.CALENDAR_FETCH_CONNECT_TIMEOUT_SECONDS,
        )


class SafeFetcher:
    """
    Bounded, redirect-validating HTTP GET for untrusted feed URLs.

    Limits: policy.max_redirects hops, policy.max_bytes of decoded body and
    policy.timeout_seconds for the whole attempt including DNS and every hop.
    """

    def __init__(
        self,
        guard: SsrfGuard | None = None,
        gate: AllowlistGate | None = None,
        policy: FetchPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.guard = guard or SsrfGuard(extra_allowed_ports=settings.CALENDAR_EXTRA_ALLOWED_PORTS)
        self.gate = gate or AllowlistGate()
        self.policy = policy or FetchPolicy.from_settings(settings)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(
                self.policy.timeout_seconds, connect=self.policy.connect_timeout_seconds
            )
            # No keep-alive: a pooled TLS connection for one name must not be
            # reused for another name pinned to the same address.
            limits = httpx.Limits(max_keepalive_connections=0, max_connections=50)
            self._client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                follow_redirects=False,
                trust_env=False,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str) -> FetchAttempt:
        """
        Fetch url under the SSRF guard, allowlist gate and fetch policy.

        Raises:
            UrlValidationError: url or a redirect target is malformed
            SsrfViolation: a hop targets a disallowed port or address
            AllowlistRefused: a hop targets a host that is not approved
            FetchError: too_many_redirects, response_too_large or fetch_failed
        """
        started = time.monotonic()
        try:
            return await asyncio.wait_for(
                self._fetch(url, started), timeout=self.policy.timeout_seconds
            )
        except TimeoutError as e:
            logger.warning(
                "Calendar fetch timed out",
                url=mask_url(url),
                timeout_seconds=self.policy.timeout_seconds,
            )
            raise FetchError(
                f"Fetch timed out after {self.policy.timeout_seconds}s",
                SourceErrorKind.FETCH_FAILED,
                host=url_host(url),
            ) from e

    async def _fetch(self, url: str, started: float) -> FetchAttempt:
        requested_url = normalize_url(url)
        current_url = requested_url
        redirects = 0

        while True:
            target = await self.guard.check(current_url)
            await self.gate.evaluate(target.host)

            response = await self._send(current_url, target)
            try:
                if response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if not location:
                        raise FetchError(
                            f"HTTP {response.status_code} redirect without Location header",
                            SourceErrorKind.FETCH_FAILED,
                            host=target.host,
                        )

                    redirects += 1
                    if redirects > self.policy.max_redirects:
                        raise FetchError(
                            f"More than {self.policy.max_redirects} redirects",
                            SourceErrorKind.TOO_MANY_REDIRECTS,
                            host=target.host,
                        )

                    try:
                        joined = urljoin(current_url, location)
                    except ValueError as e:
                        raise UrlValidationError(f"Malformed redirect target: {e}") from e
                    current_url = normalize_url(joined)
                    logger.debug(
                        "Following calendar feed redirect",
                        hop=redirects,
                        status_code=response.status_code,
                        location=mask_url(current_url),
                    )
                    continue

                if not response.is_success:
                    raise FetchError(
                        f"Feed responded with HTTP {response.status_code}",
                        SourceErrorKind.FETCH_FAILED,
                        host=target.host,
                    )

                body = await self._read_body(response, target.host)
            finally:
                await response.aclose()

            elapsed_ms = (time.monotonic() - started) * 1000
            logger.info(
                "Calendar feed fetched",
                url=mask_url(current_url),
                byte_count=len(body),
                redirect_count=redirects,
                elapsed_ms=round(elapsed_ms, 2),
            )
            return FetchAttempt(
                requested_url=requested_url,
                final_url=current_url,
                status_code=response.status_code,
                body=body,
                byte_count=len(body),
                redirect_count=redirects,
                elapsed_ms=elapsed_ms,
                content_type=response.headers.get("content-type"),
            )

    async def _send(self, url: str, target: GuardResult) -> httpx.Response:
        """Issue one non-redirect-following GET pinned to a validated address."""
        try:
            original = httpx.URL(url)
            pinned = original.copy_with(host=target.addresses[0])
        except httpx.InvalidURL as e:
            raise UrlValidationError(f"URL cannot be requested: {e}", host=target.host) from e

        host_header = f"[{target.host}]" if ":" in target.host else target.host
        if original.port is not None:
            host_header = f"{host_header}:{original.port}"

        extensions = {}
        if original.scheme == "https" and parse_ip(target.host) is None:
            extensions["sni_hostname"] = target.host

        client = self._get_client()
        request = client.build_request(
            "GET",
            pinned,
            headers={"Host": host_header, "User-Agent": USER_AGENT, "Accept": ACCEPT},
            extensions=extensions,
        )
        try:
            return await client.send(request, stream=True, follow_redirects=False)
        except httpx.HTTPError as e:
            raise FetchError(
                f"Request to {target.host} failed: {type(e).__name__}: {e}",
                SourceErrorKind.FETCH_FAILED,
                host=target.host,
            ) from e

    async def _read_body(self, response: httpx.Response, host: str) -> bytes:
        """Stream the body, aborting as soon as it would exceed max_bytes."""
        limit = self.policy.max_bytes

        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise FetchError(
                f"Declared body of {declared} bytes exceeds {limit}",
                SourceErrorKind.RESPONSE_TOO_LARGE,
                host=host,
            )

        chunks: list[bytes] = []
        total = 0
        try:
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > limit:
                    raise FetchError(
                        f"Body exceeds {limit} bytes",
                        SourceErrorKind.RESPONSE_TOO_LARGE,
                        host=host,
                    )
                chunks.append(chunk)
        except httpx.HTTPError as e:
            raise FetchError(
                f"Reading body from {host} failed: {type(e).__name__}: {e}",
                SourceErrorKind.FETCH_FAILED,
                host=host,
            ) from e

        return b"".join(chunks)
