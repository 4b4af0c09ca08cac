import pytest

from app.features.calendar_sources.domain import SourceErrorKind, UrlValidationError
from app.features.calendar_sources.security import normalize_url
from app.features.calendar_sources.security.url import url_host


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("webcal://cal.example.com/feed.ics", "https://cal.example.com/feed.ics"),
        ("WEBCAL://cal.example.com/feed.ics", "https://cal.example.com/feed.ics"),
        ("  https://Cal.Example.COM/Feed.ics  ", "https://cal.example.com/Feed.ics"),
        ("https://cal.example.com:443/feed.ics", "https://cal.example.com/feed.ics"),
        ("http://cal.example.com:80/feed.ics", "http://cal.example.com/feed.ics"),
        ("https://cal.example.com:8443/feed.ics", "https://cal.example.com:8443/feed.ics"),
        ("https://cal.example.com", "https://cal.example.com/"),
        ("https://cal.example.com./feed.ics", "https://cal.example.com/feed.ics"),
        ("https://cal.example.com/feed.ics#section", "https://cal.example.com/feed.ics"),
        (
            "https://cal.example.com/feed.ics?token=abc&x=1",
            "https://cal.example.com/feed.ics?token=abc&x=1",
        ),
        ("https://[2001:DB8::1]/feed.ics", "https://[2001:db8::1]/feed.ics"),
        ("https://bücher.example/feed.ics", "https://xn--bcher-kva.example/feed.ics"),
    ],
)
def test_normalize_url_canonical_forms(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "https://cal.example.com/feed.ics",
        "webcal://cal.example.com:8443/a/b?c=d#e",
        "http://user:pw@Cal.Example.com/x",
    ],
)
def test_normalize_url_is_idempotent(raw):
    once = normalize_url(raw)
    assert normalize_url(once) == once


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "   ",
        "ftp://cal.example.com/feed.ics",
        "file:///etc/passwd",
        "javascript:alert(1)",
        "/relative/feed.ics",
        "cal.example.com/feed.ics",
        "https:///no-host",
        "https://cal.example.com/with space.ics",
        "https://cal.example.com/\x00",
        "https://cal.example.com:99999/feed.ics",
    ],
)
def test_normalize_url_rejects_invalid_input(raw):
    with pytest.raises(UrlValidationError) as exc_info:
        normalize_url(raw)

    assert exc_info.value.kind == SourceErrorKind.INVALID_URL
    assert exc_info.value.recoverable is False


def test_normalize_url_keeps_userinfo():
    assert normalize_url("https://user:pw@CAL.example.com/x") == "https://user:pw@cal.example.com/x"


def test_url_host_of_normalized_url():
    assert url_host("https://cal.example.com:8443/feed.ics") == "cal.example.com"
    assert url_host("https://[2001:db8::1]/feed.ics") == "2001:db8::1"


def test_normalize_url_keeps_explicit_port_zero():
    url = "https://cal.example.com:0/feed.ics"
    assert normalize_url(url) == url
