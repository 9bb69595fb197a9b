"""Typed records shared by the interaction engine and the token manager."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, Literal, Mapping, Tuple, Union

from idx_auth.clock import Clock, default_clock
from idx_auth.errors import AuthSdkError

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.types import IdxMessage, IdxResponse


# --------------------------------------------------------------------------- #
# Tokens                                                                      #
# --------------------------------------------------------------------------- #
TokenKind = Literal["id_token", "access_token", "refresh_token"]

TOKEN_KINDS: Final[Tuple[TokenKind, ...]] = ("id_token", "access_token", "refresh_token")

# Storage keys used when no token of the kind is stored under a custom key
ID_TOKEN_STORAGE_KEY: Final[str] = "id_token"
ACCESS_TOKEN_STORAGE_KEY: Final[str] = "access_token"
REFRESH_TOKEN_STORAGE_KEY: Final[str] = "refresh_token"


@dataclass(frozen=True, slots=True)
class IDToken:
    """OpenID Connect ID token plus its decoded claims."""

    id_token: str
    expires_at: int | None = None
    scopes: list[str] = field(default_factory=list)
    claims: dict[str, Any] = field(default_factory=dict)
    issuer: str = ""
    client_id: str = ""


@dataclass(frozen=True, slots=True)
class AccessToken:
    access_token: str
    expires_at: int | None = None
    scopes: list[str] = field(default_factory=list)
    token_type: str = "Bearer"
    user_info_url: str = ""


@dataclass(frozen=True, slots=True)
class RefreshToken:
    refresh_token: str
    expires_at: int | None = None
    scopes: list[str] = field(default_factory=list)
    token_url: str = ""
    issuer: str = ""


Token = Union[IDToken, AccessToken, RefreshToken]

_TOKEN_CLASSES: Final[dict[str, type]] = {
    "id_token": IDToken,
    "access_token": AccessToken,
    "refresh_token": RefreshToken,
}


def token_kind(token: object) -> TokenKind | None:
    """Return the kind of *token* or ``None`` when it is not a token."""
    if isinstance(token, IDToken):
        return "id_token"
    if isinstance(token, AccessToken):
        return "access_token"
    if isinstance(token, RefreshToken):
        return "refresh_token"
    return None


def validate_token(token: object) -> None:
    """Raise :class:`AuthSdkError` unless *token* is a well-formed token.

    A valid token carries non-empty ``scopes``, a numeric ``expires_at``
    (``0`` allowed) and is exactly one of the id/access/refresh kinds.
    """
    kind = token_kind(token)
    expires_at = getattr(token, "expires_at", None)
    if (
        kind is None
        or not getattr(token, "scopes", None)
        or isinstance(expires_at, bool)
        or not isinstance(expires_at, (int, float))
    ):
        raise AuthSdkError(
            "Token must be an object with scopes, expires_at, and one of: "
            "an id_token, access_token, or refresh_token property"
        )


def token_to_dict(token: Token) -> dict[str, Any]:
    return asdict(token)


def token_from_dict(data: Mapping[str, Any]) -> Token:
    """Rebuild a token from its stored mapping (kind taken from its value key)."""
    for kind in TOKEN_KINDS:
        if data.get(kind):
            cls = _TOKEN_CLASSES[kind]
            known = {f.name for f in fields(cls)}
            return cls(**{k: v for k, v in data.items() if k in known})
    raise AuthSdkError("Stored value is not an id, access or refresh token")


def serialize_token_map(tokens: Mapping[str, Token]) -> str:
    """Serialise a storage mapping the way token storage persists it."""
    return json.dumps(
        {key: token_to_dict(tok) for key, tok in tokens.items()},
        separators=(",", ":"),
        sort_keys=True,
    )


def tokens_from_storage_value(value: str | None) -> dict[str, Any]:
    """Parse a serialised storage value; unparsable input yields ``{}``."""
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass(frozen=True, slots=True)
class Tokens:
    """The id/access/refresh set produced by one grant."""

    id_token: IDToken | None = None
    access_token: AccessToken | None = None
    refresh_token: RefreshToken | None = None

    def get(self, kind: TokenKind) -> Token | None:
        return getattr(self, kind)


# --------------------------------------------------------------------------- #
# Transaction meta                                                            #
# --------------------------------------------------------------------------- #
@dataclass(frozen=True, slots=True)
class TransactionMeta:
    """Durable record of one in-progress interaction-code transaction."""

    interaction_handle: str
    state: str
    code_verifier: str
    client_id: str
    issuer: str = ""
    redirect_uri: str = ""
    scopes: Tuple[str, ...] = ()
    code_challenge: str = ""
    code_challenge_method: str = "S256"
    token_url: str = ""
    flow: str | None = None
    sso: bool = False
    ignore_signature: bool = False
    # Remediation and action names proceeded during this transaction
    remediations: Tuple[str, ...] = ()
    # Last raw IDX payload, reused instead of introspecting again
    idx_response: dict[str, Any] | None = None
    created_at: int = field(default_factory=lambda: int(default_clock()))
    ttl_seconds: int = 1800

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the transaction exceeded its TTL."""
        return (clock() - self.created_at) > self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scopes"] = list(self.scopes)
        data["remediations"] = list(self.remediations)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TransactionMeta:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["scopes"] = tuple(values.get("scopes") or ())
        values["remediations"] = tuple(values.get("remediations") or ())
        return cls(**values)


# --------------------------------------------------------------------------- #
# Caller-facing transaction                                                   #
# --------------------------------------------------------------------------- #
class IdxStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TERMINAL = "TERMINAL"
    CANCELED = "CANCELED"


class IdxFeature(str, Enum):
    PASSWORD_RECOVERY = "recover-password"
    REGISTRATION = "enroll-profile"
    SOCIAL_IDP = "redirect-idp"


@dataclass(frozen=True, slots=True)
class NextStepInput:
    name: str
    type: str = "text"
    label: str | None = None
    required: bool = False


@dataclass(frozen=True, slots=True)
class NextStepOption:
    label: str
    value: str


@dataclass(frozen=True, slots=True)
class NextStepSelect:
    name: str
    options: Tuple[NextStepOption, ...] = ()


@dataclass(frozen=True, slots=True)
class NextStep:
    """UI-facing description of what the user must supply next."""

    name: str
    label: str | None = None
    inputs: Tuple[NextStepInput, ...] = ()
    select: NextStepSelect | None = None
    type: str | None = None
    context: dict[str, Any] | None = None
    href: str | None = None
    idp: dict[str, Any] | None = None
    can_skip: bool = False

    def as_dict(self) -> dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v not in (None, ())}
        if not self.can_skip:
            data.pop("can_skip", None)
        return data


@dataclass(slots=True)
class IdxTransaction:
    """Result of one orchestrator step.

    Optional attributes stay ``None`` when they do not apply, and
    :meth:`as_dict` omits them entirely.
    """

    status: IdxStatus
    idx_response: IdxResponse | None = None
    meta: TransactionMeta | None = None
    enabled_features: list[IdxFeature] | None = None
    available_steps: list[NextStep] | None = None
    tokens: Tokens | None = None
    next_step: NextStep | None = None
    messages: list[IdxMessage] | None = None
    error: BaseException | None = None

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly view without secrets (tokens are reported by kind)."""
        data: dict[str, Any] = {"status": self.status.value}
        if self.enabled_features is not None:
            data["enabled_features"] = [f.value for f in self.enabled_features]
        if self.available_steps is not None:
            data["available_steps"] = [s.as_dict() for s in self.available_steps]
        if self.next_step is not None:
            data["next_step"] = self.next_step.as_dict()
        if self.messages is not None:
            data["messages"] = [m.message for m in self.messages]
        if self.tokens is not None:
            data["tokens"] = [k for k in TOKEN_KINDS if self.tokens.get(k)]
        if self.error is not None:
            to_payload = getattr(self.error, "to_payload", None)
            data["error"] = (
                to_payload()
                if callable(to_payload)
                else {"error": type(self.error).__name__, "message": str(self.error)}
            )
        return data
