import pytest

from app.features.calendar_sources.domain import (
    AllowlistRefused,
    CalendarSourceError,
    FetchError,
    SourceErrorKind,
    SsrfViolation,
    UrlValidationError,
)


def test_error_kinds_are_a_closed_set():
    assert {kind.value for kind in SourceErrorKind} == {
        "invalid_url",
        "invalid_port",
        "private_ip",
        "localhost",
        "allowlist_pending",
        "allowlist_blocked",
        "allowlist_denied",
        "too_many_redirects",
        "response_too_large",
        "fetch_failed",
    }


@pytest.mark.parametrize(
    "error_cls, kind",
    [
        (SsrfViolation, SourceErrorKind.FETCH_FAILED),
        (AllowlistRefused, SourceErrorKind.PRIVATE_IP),
        (FetchError, SourceErrorKind.ALLOWLIST_PENDING),
    ],
)
def test_component_errors_only_accept_their_own_kinds(error_cls, kind):
    with pytest.raises(ValueError):
        error_cls("mismatch", kind)


@pytest.mark.parametrize(
    "kind, recoverable",
    [
        (SourceErrorKind.FETCH_FAILED, True),
        (SourceErrorKind.TOO_MANY_REDIRECTS, True),
        (SourceErrorKind.RESPONSE_TOO_LARGE, True),
        (SourceErrorKind.PRIVATE_IP, False),
        (SourceErrorKind.ALLOWLIST_BLOCKED, False),
        (SourceErrorKind.INVALID_URL, False),
    ],
)
def test_only_fetch_execution_errors_are_recoverable(kind, recoverable):
    assert CalendarSourceError("x", kind).recoverable is recoverable


def test_url_validation_error_payload():
    error = UrlValidationError("URL is empty")

    assert error.kind == SourceErrorKind.INVALID_URL
    assert error.to_dict() == {"error": "invalid_url", "message": "URL is empty"}
