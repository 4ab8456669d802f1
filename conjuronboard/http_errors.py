"""Error types and HTTP error formatting for Conjur responses."""

from __future__ import annotations

from http import HTTPStatus

_DETAIL_LIMIT = 2000


class OnboardError(Exception):
    """Raised when an onboarding step fails."""


class ConjurHTTPError(OnboardError):
    """An unexpected HTTP response from Conjur."""

    def __init__(self, message: str, status: int, body: bytes | str, hint: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.hint = hint


def _status_text(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


def response_detail(body: bytes | str | None) -> str:
    """Return the trimmed response text, a placeholder when empty, truncated when long."""
    if body is None:
        text = ""
    elif isinstance(body, bytes):
        text = body.decode("utf-8", errors="replace")
    else:
        text = body
    text = text.strip()
    if not text:
        return "<empty response>"
    if len(text) > _DETAIL_LIMIT:
        return text[:_DETAIL_LIMIT] + "...<truncated>"
    return text


def conjur_http_error(
    context: str, status: int, body: bytes | str | None, hint: str
) -> ConjurHTTPError:
    """Build a descriptive error for a Conjur HTTP response."""
    message = (
        f"{context} returned HTTP {status} {_status_text(status)}; "
        f"response: {response_detail(body)}"
    )
    if hint:
        message += "; hint: " + hint
    return ConjurHTTPError(message, status, body if body is not None else b"", hint)