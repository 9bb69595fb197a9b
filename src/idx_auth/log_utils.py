"""Logging helpers that only ever attach non-secret context.

Interaction flows juggle passwords, passcodes, PKCE verifiers and tokens, so
records produced through :func:`get_auth_logger` carry a fixed set of
context fields and nothing else:

- ``state``          – transaction state, cut to its first 6 characters
- ``flow``           – ``authenticate``, ``register``, ``recoverPassword``…
- ``token_key``      – storage key of the token being managed
- ``correlation_id`` – per-request id set by the HTTP middleware

Usage
-----
>>> from idx_auth.log_utils import get_auth_logger
>>> log = get_auth_logger(base_logger_name="idx-auth.idx.run", state="9f2c1e7d", flow="register")
>>> log.info("Starting transaction")
INFO idx-auth.idx.run state=9f2c1e flow=register ...
"""

from __future__ import annotations

import logging
from typing import Any, Final, MutableMapping, Tuple

CONTEXT_FIELDS: Final[Tuple[str, ...]] = ("state", "flow", "token_key", "correlation_id")
_STATE_PREFIX: Final[int] = 6


class _AuthLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        # values passed at the call site take precedence
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _clean_context(context: dict[str, Any]) -> dict[str, Any]:
    cleaned = {k: context[k] for k in CONTEXT_FIELDS if context.get(k) is not None}
    if cleaned.get("state"):
        cleaned["state"] = str(cleaned["state"])[:_STATE_PREFIX]
    return cleaned


def get_auth_logger(
    *,
    base_logger_name: str = "idx-auth",
    state: str | None = None,
    flow: str | None = None,
    token_key: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Adapter over ``logging.getLogger(base_logger_name)`` with auth context."""
    context = _clean_context(
        {"state": state, "flow": flow, "token_key": token_key, "correlation_id": correlation_id}
    )
    return _AuthLoggerAdapter(logging.getLogger(base_logger_name), context)


def mask_sensitive(value: str | None, keep: int = 6) -> str:
    """Return *value* truncated to *keep* characters followed by ``****``."""
    if not value:
        return "-"
    return f"{value[:keep]}****"
