"""PKCE (Proof Key for Code Exchange) pair for the ``interact`` call.

The interaction-code grant is PKCE-bound: the verifier is persisted in the
transaction meta and replayed when the interaction code is exchanged for
tokens, while only the S256 challenge is sent to the ``interact`` endpoint.

This module intentionally performs **no logging** of verifiers or challenges.
"""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from hashlib import sha256
from typing import Final

# RFC-7636 §4.1 bounds the verifier between 43 and 128 characters.
_MIN_LEN: Final[int] = 43
_MAX_LEN: Final[int] = 128
CHALLENGE_METHOD: Final[str] = "S256"


@dataclass(frozen=True, slots=True)
class PkcePair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = CHALLENGE_METHOD


def generate_code_verifier(length: int = 64) -> str:
    """Return a URL-safe verifier of exactly *length* characters."""
    if not _MIN_LEN <= length <= _MAX_LEN:
        raise ValueError("code verifier length must be 43-128 characters")
    # token_urlsafe yields ~1.3 chars per byte; trim to the requested size
    return secrets.token_urlsafe(length)[:length]


def code_challenge_s256(verifier: str) -> str:
    """Base64url(SHA-256(verifier)) without padding."""
    digest = sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def create_pkce_pair(length: int = 64) -> PkcePair:
    verifier = generate_code_verifier(length)
    return PkcePair(code_verifier=verifier, code_challenge=code_challenge_s256(verifier))
