"""Unit tests for email-verification callback detection and parsing."""

from __future__ import annotations

import pytest

from idx_auth.email_verify import is_email_verify_callback, parse_email_verify_callback


@pytest.mark.parametrize(
    "query",
    [
        "state=abc&otp=123456",
        "?state=abc&otp=123456",
        "otp=123456&foo=bar&state=abc",
    ],
)
def test_callback_with_state_and_otp(query: str) -> None:
    assert is_email_verify_callback(query) is True
    assert parse_email_verify_callback(query) == {"state": "abc", "otp": "123456"}


@pytest.mark.parametrize(
    "query",
    ["", "state=abc", "otp=123456", "state=&otp=123456", "code=xyz&state=abc"],
)
def test_not_a_callback(query: str) -> None:
    assert is_email_verify_callback(query) is False


def test_parse_without_params_is_empty() -> None:
    assert parse_email_verify_callback("") == {}
    assert parse_email_verify_callback("foo=bar") == {}


def test_parse_keeps_present_field_only() -> None:
    assert parse_email_verify_callback("state=abc") == {"state": "abc"}
