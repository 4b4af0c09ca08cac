"""Display-safe rendering of feed URLs."""

from urllib.parse import urlsplit

HIDDEN = "hidden"
TAIL_LENGTH = 6


def mask_url(url: str) -> str:
    """
    Render a feed URL as "<host>/...<last 6 characters>".

    Feed paths often embed private tokens, so only the host and a short tail
    are shown. Anything that does not parse as an absolute URL is "hidden".
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except (TypeError, ValueError, AttributeError):
        return HIDDEN

    if not parts.scheme or not hostname:
        return HIDDEN

    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None:
        host = f"{host}:{port}"
    return f"{host}/...{url[-TAIL_LENGTH:]}"
