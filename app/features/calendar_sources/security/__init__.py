"""
Network-safety layer for calendar sources: normalizer, SSRF guard,
allowlist gate, safe fetcher and display masking.
"""

from .allowlist import AllowlistGate
from .masking import mask_url
from .safe_fetch import FetchPolicy, SafeFetcher
from .ssrf_guard import SsrfGuard, resolve_host
from .url import normalize_host, normalize_url

__all__ = [
    "AllowlistGate",
    "FetchPolicy",
    "SafeFetcher",
    "SsrfGuard",
    "mask_url",
    "normalize_host",
    "normalize_url",
    "resolve_host",
]
