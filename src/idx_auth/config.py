"""Environment-driven configuration for the IDX client and token manager."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Tuple

logger = logging.getLogger("idx-auth.config")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")

DEFAULT_SCOPES: Final[Tuple[str, ...]] = ("openid", "profile", "email")
DEFAULT_TOKEN_STORAGE_KEY: Final[str] = "idx-token-storage"
DEFAULT_TRANSACTION_TTL_SECONDS: Final[int] = 1800


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return _truthy(raw)


def _env_number(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _split_scopes(raw: str | None) -> Tuple[str, ...]:
    scopes = tuple(s for s in (raw or "").replace(",", " ").split() if s)
    return scopes or DEFAULT_SCOPES


@dataclass(frozen=True, slots=True)
class IdxConfig:
    """Client registration used to start and finish interaction-code flows."""

    issuer: str
    client_id: str
    redirect_uri: str = ""
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    storage_dir: Path | None = None
    transaction_ttl_seconds: int = DEFAULT_TRANSACTION_TTL_SECONDS
    # decode ID tokens without verifying their signature
    ignore_signature: bool = False

    @property
    def token_url(self) -> str:
        return f"{self.issuer.rstrip('/')}/v1/token"

    @property
    def interact_url(self) -> str:
        return f"{self.issuer.rstrip('/')}/v1/interact"

    @property
    def origin(self) -> str:
        """Scheme and host of the issuer (IDX endpoints live at the root)."""
        base = self.issuer.rstrip("/")
        marker = "/oauth2"
        return base.split(marker, 1)[0] if marker in base else base

    @classmethod
    def from_env(cls) -> IdxConfig:
        """Build configuration from ``IDX_*`` environment variables.

        Raises
        ------
        ValueError
            If ``IDX_ISSUER`` or ``IDX_CLIENT_ID`` is missing.
        """
        issuer = os.getenv("IDX_ISSUER", "").strip()
        client_id = os.getenv("IDX_CLIENT_ID", "").strip()
        if not issuer or not client_id:
            raise ValueError("IDX_ISSUER and IDX_CLIENT_ID must be set")

        storage_dir_raw = os.getenv("IDX_STORAGE_DIR")
        return cls(
            issuer=issuer,
            client_id=client_id,
            redirect_uri=os.getenv("IDX_REDIRECT_URI", "").strip(),
            scopes=_split_scopes(os.getenv("IDX_SCOPES")),
            storage_dir=Path(storage_dir_raw).expanduser() if storage_dir_raw else None,
            transaction_ttl_seconds=int(
                _env_number(
                    "IDX_TRANSACTION_TTL_SECONDS", DEFAULT_TRANSACTION_TTL_SECONDS
                )
            ),
            ignore_signature=_env_flag("IDX_IGNORE_SIGNATURE", False),
        )


@dataclass(frozen=True, slots=True)
class TokenManagerOptions:
    """Behaviour switches for :class:`~idx_auth.tokens.manager.TokenManager`."""

    auto_renew: bool = True
    auto_remove: bool = True
    expire_early_seconds: int = 30
    storage_key: str = DEFAULT_TOKEN_STORAGE_KEY
    # Delay before a cross-context storage change is processed; storage
    # backends with lagging reads need a larger value.
    storage_event_delay: float = 0.0

    @classmethod
    def from_env(cls) -> TokenManagerOptions:
        return cls(
            auto_renew=_env_flag("IDX_TOKEN_AUTO_RENEW", True),
            auto_remove=_env_flag("IDX_TOKEN_AUTO_REMOVE", True),
            expire_early_seconds=int(_env_number("IDX_TOKEN_EXPIRE_EARLY_SECONDS", 30)),
            storage_key=os.getenv("IDX_TOKEN_STORAGE_KEY") or DEFAULT_TOKEN_STORAGE_KEY,
            storage_event_delay=_env_number("IDX_TOKEN_STORAGE_EVENT_DELAY", 0.0),
        )
