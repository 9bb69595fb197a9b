"""Recognise and parse email-verification callback query strings."""

from __future__ import annotations

from typing import TypedDict
from urllib.parse import parse_qs


class EmailVerifyCallback(TypedDict, total=False):
    state: str
    otp: str


def _params(query: str) -> dict[str, list[str]]:
    return parse_qs((query or "").lstrip("?"), keep_blank_values=False)


def is_email_verify_callback(query: str) -> bool:
    """Return *True* iff *query* carries both ``state`` and ``otp``."""
    params = _params(query)
    return bool(params.get("state")) and bool(params.get("otp"))


def parse_email_verify_callback(query: str) -> EmailVerifyCallback:
    """Extract ``state`` and ``otp`` from *query*; absent keys are omitted."""
    params = _params(query)
    result: EmailVerifyCallback = {}
    if params.get("state"):
        result["state"] = params["state"][0]
    if params.get("otp"):
        result["otp"] = params["otp"][0]
    return result
