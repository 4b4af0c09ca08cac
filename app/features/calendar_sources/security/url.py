"""
URL canonicalization for calendar feed sources.

Subscription links are usually shared as webcal:// URLs; they are fetched
over https and stored in one canonical form so the same feed always maps to
the same allowlist host.
"""

from urllib.parse import urlsplit, urlunsplit

from app.features.calendar_sources.domain.errors import UrlValidationError

WEBCAL_PREFIX = "webcal:"
ALLOWED_SCHEMES = frozenset({"http", "https"})
DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_host(host: str) -> str:
    """Lowercase a hostname and drop the trailing root dot."""
    return host.strip().lower().rstrip(".")


def _encode_host(host: str) -> str:
    if host.isascii():
        return host
    try:
        return host.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise UrlValidationError(f"Host {host!r} is not a valid domain name") from e


def _format_host(host: str) -> str:
    # IPv6 literals need brackets inside a netloc
    return f"[{host}]" if ":" in host else host


def normalize_url(raw_url: str) -> str:
    """
    Canonicalize user input into an absolute http(s) URL.

    webcal: is rewritten to https:, scheme and host are lowercased, the
    scheme's default port is dropped, an empty path becomes "/" and the
    fragment is discarded. Normalizing an already-normalized URL returns it
    unchanged.

    Raises:
        UrlValidationError: input is empty, not absolute, or not http(s)
    """
    if not isinstance(raw_url, str):
        raise UrlValidationError("URL must be a string")

    candidate = raw_url.strip()
    if not candidate:
        raise UrlValidationError("URL is empty")

    if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in candidate):
        raise UrlValidationError("URL contains whitespace or control characters")

    if candidate[: len(WEBCAL_PREFIX)].lower() == WEBCAL_PREFIX:
        candidate = "https:" + candidate[len(WEBCAL_PREFIX) :]

    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as e:
        raise UrlValidationError(f"URL is malformed: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise UrlValidationError(f"URL scheme {parts.scheme or '(none)'!r} is not allowed")

    host = normalize_host(parts.hostname or "")
    if not parts.netloc or not host:
        raise UrlValidationError("URL must be absolute and include a host")
    host = _encode_host(host)

    userinfo, _, _ = parts.netloc.rpartition("@")
    netloc = _format_host(host)
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if userinfo:
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def url_host(url: str) -> str:
    """Host of an already-normalized URL, as stored on sources and allowlist entries."""
    return normalize_host(urlsplit(url).hostname or "")
