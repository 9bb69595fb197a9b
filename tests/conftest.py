"""Shared pytest configuration and fixtures."""

from __future__ import annotations

from typing import Callable

import pytest

from idx_auth.config import IdxConfig
from idx_auth.errors import OAuthError
from idx_auth.idx.client import IdxClient
from idx_auth.idx.transport import InteractResult
from idx_auth.idx.types import parse_idx_response
from idx_auth.models import AccessToken, IDToken, RefreshToken, Tokens, TransactionMeta
from idx_auth.store import MemoryTransactionStorage


def pytest_addoption(parser):
    """Add integration option to pytest."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests",
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Mutable clock; tests move time with :meth:`advance`."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_clock_factory() -> Callable[[float], Callable[[], float]]:
    """Return a factory of clocks frozen at a given instant."""

    def _factory(now: float) -> Callable[[], float]:
        return lambda now=now: now

    return _factory


# --------------------------------------------------------------------------- #
# IDX payloads                                                                #
# --------------------------------------------------------------------------- #
ISSUER = "https://idp.example.com/oauth2/default"
CLIENT_ID = "client-1"
REDIRECT_URI = "https://app.example.com/callback"
IDX_BASE = "https://idp.example.com/idp/idx"


def _state_handle_input(handle: str = "sh-1") -> dict:
    return {
        "name": "stateHandle",
        "required": True,
        "value": handle,
        "visible": False,
        "mutable": False,
    }


def _remediation(name: str, value: list, **extra) -> dict:
    return {
        "rel": ["create-form"],
        "name": name,
        "href": f"{IDX_BASE}/{name}",
        "method": "POST",
        "accepts": "application/json; okta-version=1.0.0",
        "value": value + [_state_handle_input()],
        **extra,
    }


def _action(name: str) -> dict:
    return {
        "rel": ["create-form"],
        "name": name,
        "href": f"{IDX_BASE}/{name}",
        "method": "POST",
        "value": [_state_handle_input()],
    }


def _idx(*remediations: dict, **extra) -> dict:
    raw = {
        "version": "1.0.0",
        "stateHandle": "sh-1",
        "cancel": _action("cancel"),
        **extra,
    }
    if remediations:
        raw["remediation"] = {"type": "array", "value": list(remediations)}
    return raw


class Payloads:
    """Builders for raw IDX states used across the test-suite."""

    @staticmethod
    def identify(*, recover: bool = True, register: bool = True, idp: bool = True) -> dict:
        remediations = [
            _remediation(
                "identify",
                [
                    {"name": "identifier", "label": "Username", "required": True},
                    {
                        "name": "credentials",
                        "type": "object",
                        "required": True,
                        "form": {
                            "value": [
                                {"name": "passcode", "label": "Password", "secret": True}
                            ]
                        },
                    },
                    {"name": "rememberMe", "type": "boolean", "label": "Remember this device"},
                ],
            )
        ]
        if register:
            remediations.append(_remediation("select-enroll-profile", []))
        if idp:
            remediations.append(
                {
                    "name": "redirect-idp",
                    "type": "GOOGLE",
                    "href": "https://idp.example.com/sso/idps/g1",
                    "method": "GET",
                    "idp": {"id": "g1", "name": "Google"},
                }
            )
        extra = {}
        if recover:
            extra["currentAuthenticator"] = {
                "type": "object",
                "value": {
                    "type": "password",
                    "key": "okta_password",
                    "id": "aut-pw",
                    "recover": _action("recover"),
                },
            }
        return _idx(*remediations, **extra)

    @staticmethod
    def identify_only() -> dict:
        return _idx(
            _remediation(
                "identify",
                [{"name": "identifier", "label": "Username", "required": True}],
            ),
            currentAuthenticator={
                "type": "object",
                "value": {"type": "password", "key": "okta_password", "recover": _action("recover")},
            },
        )

    @staticmethod
    def select_authenticator(name: str = "select-authenticator-authenticate") -> dict:
        def _option(label: str, index: int, auth_id: str, method: str) -> dict:
            return {
                "label": label,
                "value": {
                    "form": {
                        "value": [
                            {"name": "id", "required": True, "value": auth_id, "mutable": False},
                            {"name": "methodType", "required": False, "value": method, "mutable": False},
                        ]
                    }
                },
                "relatesTo": f"$.authenticators.value[{index}]",
            }

        return _idx(
            _remediation(
                name,
                [
                    {
                        "name": "authenticator",
                        "type": "object",
                        "required": True,
                        "options": [
                            _option("Email", 0, "aut-email", "email"),
                            _option("Password", 1, "aut-pw", "password"),
                        ],
                    }
                ],
            ),
            authenticators={
                "type": "array",
                "value": [
                    {"type": "email", "key": "okta_email", "id": "aut-email", "displayName": "Email"},
                    {"type": "password", "key": "okta_password", "id": "aut-pw", "displayName": "Password"},
                ],
            },
        )

    @staticmethod
    def challenge(authenticator_type: str = "email", *, name: str = "challenge-authenticator") -> dict:
        return _idx(
            _remediation(
                name,
                [
                    {
                        "name": "credentials",
                        "type": "object",
                        "required": True,
                        "form": {
                            "value": [
                                {
                                    "name": "passcode",
                                    "label": "Enter code" if authenticator_type != "password" else "Password",
                                    "secret": authenticator_type == "password",
                                }
                            ]
                        },
                    }
                ],
                relatesTo="$.currentAuthenticatorEnrollment",
            ),
            currentAuthenticatorEnrollment={
                "type": "object",
                "value": {
                    "type": authenticator_type,
                    "key": f"okta_{authenticator_type}",
                    "id": f"aut-{authenticator_type}",
                    "displayName": authenticator_type.title(),
                    "resend": _action("resend"),
                },
            },
        )

    @staticmethod
    def enroll_profile() -> dict:
        return _idx(
            _remediation(
                "enroll-profile",
                [
                    {
                        "name": "userProfile",
                        "required": True,
                        "form": {
                            "value": [
                                {"name": "firstName", "label": "First name", "required": True},
                                {"name": "lastName", "label": "Last name", "required": True},
                                {"name": "email", "label": "Email", "required": True},
                            ]
                        },
                    }
                ],
            )
        )

    @staticmethod
    def phone_enrollment_data() -> dict:
        return _idx(
            _remediation(
                "authenticator-enrollment-data",
                [
                    {
                        "name": "authenticator",
                        "required": True,
                        "form": {
                            "value": [
                                {"name": "id", "required": True, "value": "aut-phone", "mutable": False},
                                {
                                    "name": "methodType",
                                    "type": "string",
                                    "required": True,
                                    "options": [
                                        {"label": "SMS", "value": "sms"},
                                        {"label": "Voice call", "value": "voice"},
                                    ],
                                },
                                {"name": "phoneNumber", "label": "Phone number", "required": True},
                            ]
                        },
                    }
                ],
                relatesTo="$.currentAuthenticator",
            ),
            _remediation("skip", []),
            currentAuthenticator={
                "type": "object",
                "value": {"type": "phone", "key": "phone_number", "id": "aut-phone"},
            },
        )

    @staticmethod
    def success(code: str = "ic-123") -> dict:
        return {
            "version": "1.0.0",
            "stateHandle": "sh-1",
            "successWithInteractionCode": {
                "rel": ["create-form"],
                "name": "issue",
                "href": f"{ISSUER}/v1/token",
                "method": "POST",
                "value": [
                    {"name": "grant_type", "required": True, "value": "interaction_code"},
                    {"name": "interaction_code", "required": True, "value": code},
                ],
            },
        }

    @staticmethod
    def terminal(message: str = "Return to the original tab to continue.") -> dict:
        return {
            "version": "1.0.0",
            "stateHandle": "sh-1",
            "messages": {
                "type": "array",
                "value": [
                    {
                        "message": message,
                        "i18n": {"key": "idx.return.to.original.tab"},
                        "class": "INFO",
                    }
                ],
            },
        }

    @staticmethod
    def canceled() -> dict:
        return Payloads.terminal("The transaction was canceled.")


@pytest.fixture
def payloads() -> type[Payloads]:
    return Payloads


# --------------------------------------------------------------------------- #
# Fake transport / client                                                     #
# --------------------------------------------------------------------------- #
class FakeTransport:
    """Scripted :class:`~idx_auth.idx.transport.Transport`.

    ``proceed_responses`` / ``action_responses`` map a step name to a list of
    raw payloads (or exceptions) consumed in order.
    """

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.introspect_raw: dict = Payloads.identify()
        self.proceed_responses: dict[str, list] = {}
        self.action_responses: dict[str, list] = {}
        self.tokens = Tokens(
            id_token=IDToken(
                id_token="id.jwt",
                expires_at=2_000_000_000,
                scopes=["openid", "email"],
                claims={"sub": "u1"},
                issuer=ISSUER,
                client_id=CLIENT_ID,
            ),
            access_token=AccessToken(
                access_token="at-1", expires_at=2_000_000_000, scopes=["openid", "email"]
            ),
            refresh_token=RefreshToken(
                refresh_token="rt-1", expires_at=2_000_000_000, scopes=["openid", "email"]
            ),
        )

    def names(self, kind: str) -> list:
        return [c[1] for c in self.calls if c[0] == kind]

    def kinds(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def interact(self, *, state=None, scopes=None, sso=False):
        state = state or "state-generated"
        self.calls.append(("interact", state, sso))
        meta = TransactionMeta(
            interaction_handle="ih-1",
            state=state,
            code_verifier="verifier-1",
            client_id=CLIENT_ID,
            issuer=ISSUER,
            redirect_uri=REDIRECT_URI,
            scopes=tuple(scopes or ("openid", "email")),
            token_url=f"{ISSUER}/v1/token",
            sso=sso,
        )
        return InteractResult(interaction_handle="ih-1", meta=meta)

    async def introspect(self, *, interaction_handle, sso=False):
        self.calls.append(("introspect", interaction_handle))
        return parse_idx_response(self.introspect_raw)

    def _next(self, table: dict, name: str):
        item = table[name].pop(0)
        if isinstance(item, BaseException):
            raise item
        return parse_idx_response(item)

    async def proceed(self, idx_response, name, data):
        self.calls.append(("proceed", name, dict(data)))
        return self._next(self.proceed_responses, name)

    async def perform_action(self, idx_response, name, data=None):
        self.calls.append(("action", name))
        return self._next(self.action_responses, name)

    async def exchange_code_for_tokens(self, params, *, token_url=None):
        self.calls.append(("exchange", params.interaction_code, params))
        return self.tokens

    async def renew_tokens_with_refresh(self, *, scopes, refresh_token):
        self.calls.append(("refresh", refresh_token.refresh_token))
        return self.tokens

    async def renew_token(self, token):
        self.calls.append(("renew", token))
        raise OAuthError("login_required")


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def idx_config():
    return IdxConfig(issuer=ISSUER, client_id=CLIENT_ID, redirect_uri=REDIRECT_URI)


@pytest.fixture
def idx_client(idx_config, fake_transport):
    return IdxClient(
        idx_config, transport=fake_transport, storage=MemoryTransactionStorage()
    )
