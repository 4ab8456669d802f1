import pytest

from conjuronboard.http_errors import (
    ConjurHTTPError,
    OnboardError,
    conjur_http_error,
    response_detail,
)


@pytest.mark.parametrize("body", [b"", b"   \n\t", "", None])
def test_response_detail_empty(body):
    assert response_detail(body) == "<empty response>"


def test_response_detail_trims_whitespace():
    assert response_detail(b'  {"error":"forbidden"}\n') == '{"error":"forbidden"}'


def test_response_detail_truncates_long_text():
    detail = response_detail("a" * 2500)
    assert detail.endswith("...<truncated>")
    assert detail[:2000] == "a" * 2000
    assert len(detail) == 2000 + len("...<truncated>")


def test_response_detail_keeps_text_at_limit():
    text = "b" * 2000
    assert response_detail(text) == text


def test_conjur_http_error_includes_status_body_and_hint():
    hint = "check CONJUR_API_KEY and --username"
    err = conjur_http_error("Conjur operation", 401, b'{"error":"bad token"}', hint)
    message = str(err)
    assert "HTTP 401 Unauthorized" in message
    assert '{"error":"bad token"}' in message
    assert message.endswith("; hint: " + hint)
    assert err.status == 401
    assert err.hint == hint


def test_conjur_http_error_without_hint():
    err = conjur_http_error("Conjur operation", 404, b"{}", "")
    assert str(err) == "Conjur operation returned HTTP 404 Not Found; response: {}"
    assert "hint" not in str(err)


def test_conjur_http_error_is_an_onboard_error():
    err = conjur_http_error("ctx", 500, b"", "")
    assert isinstance(err, ConjurHTTPError)
    assert isinstance(err, OnboardError)
    assert err.status == 500
    assert str(err) == "ctx returned HTTP 500 Internal Server Error; response: <empty response>"