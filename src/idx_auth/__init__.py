"""Client-side engine for interaction-code sign-in flows.

This package drives the remediation conversation with an identity provider
(authenticate, register, recover password) and manages the lifecycle of the
tokens it yields.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
config
    Environment-driven configuration.
errors
    Exception types raised by the engine.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).
models
    Token records, transaction meta and caller-facing results.
pkce
    Proof-Key for Code Exchange helpers.
store
    Transaction-meta persistence.
email_verify
    Email-verification callback parsing.
idx
    The remediation engine and :class:`IdxClient`.
tokens
    :class:`TokenManager` and token storage.
servers
    Starlette routes for browser callbacks.

The most used public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, default_clock  # noqa: F401
from .config import IdxConfig, TokenManagerOptions  # noqa: F401
from .errors import AuthApiError, AuthSdkError, IdxResponseError, OAuthError  # noqa: F401
from .idx import IdxClient  # noqa: F401
from .log_utils import get_auth_logger  # noqa: F401
from .models import IdxFeature, IdxStatus, IdxTransaction, NextStep, Tokens  # noqa: F401
from .tokens import TokenManager  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "default_clock",
    # config
    "IdxConfig",
    "TokenManagerOptions",
    # errors
    "AuthApiError",
    "AuthSdkError",
    "IdxResponseError",
    "OAuthError",
    # engine
    "IdxClient",
    "TokenManager",
    # models
    "IdxFeature",
    "IdxStatus",
    "IdxTransaction",
    "NextStep",
    "Tokens",
    # logging helpers
    "get_auth_logger",
]
