"""Integration test: password sign-in with email MFA finished from a second tab.

The identity provider is a scripted in-process fake behind a mocked
``requests.Session``; everything from the HTTP transport up (disk-backed
transaction storage, remediation engine, file token storage, renewal) is real.
"""

from __future__ import annotations

import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from idx_auth.config import IdxConfig
from idx_auth.idx import transport as transport_module
from idx_auth.idx.client import IdxClient
from idx_auth.idx.transport import RequestsTransport
from idx_auth.models import IdxStatus
from idx_auth.pkce import code_challenge_s256
from idx_auth.store import DiskTransactionStorage
from idx_auth.tokens import FileTokenStorage, TokenManager

ISSUER = "https://idp.example.com/oauth2/default"
IDX_BASE = "https://idp.example.com/idp/idx"


class FakeIdentityProvider:
    """Answers interact / introspect / IDX steps / token grants by URL."""

    def __init__(self, payloads, signing_key) -> None:
        self.payloads = payloads
        self.signing_key = signing_key
        self.state = payloads.identify()
        self.requests: list[tuple[str, dict]] = []

    @staticmethod
    def _response(body: dict, status: int = 200) -> MagicMock:
        resp = MagicMock()
        resp.status_code = status
        resp.ok = status < 400
        resp.json.return_value = body
        resp.text = str(body)
        return resp

    def _token_body(self, grant: str) -> dict:
        now = int(time.time())
        body = {
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid email",
            "access_token": "at-1" if grant == "interaction_code" else "at-2",
        }
        if grant == "interaction_code":
            body["refresh_token"] = "rt-1"
            body["id_token"] = jwt.encode(
                {"sub": "u1", "iss": ISSUER, "aud": "client-1", "iat": now, "exp": now + 3600},
                self.signing_key,
                algorithm="RS256",
            )
        return body

    def post(self, url: str, **kwargs) -> MagicMock:
        self.requests.append((url, kwargs))
        if url.endswith("/v1/interact"):
            return self._response({"interaction_handle": "ih-1"})
        if url.endswith("/v1/token"):
            return self._response(self._token_body(kwargs["data"]["grant_type"]))
        if url == f"{IDX_BASE}/introspect":
            return self._response(self.state)
        step = url.rsplit("/", 1)[1]
        if step == "identify":
            self.state = self.payloads.challenge("email")
        elif step == "challenge-authenticator":
            self.state = self.payloads.success("ic-777")
        return self._response(self.state)


@pytest.mark.integration
@pytest.mark.ci_safe
@pytest.mark.anyio
async def test_email_mfa_finished_in_another_tab(tmp_path, monkeypatch, payloads):
    # ------------------------------------------------------------------ #
    # 1. Identity provider and signing keys                              #
    # ------------------------------------------------------------------ #
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwks_client = MagicMock()
    jwks_client.get_signing_key_from_jwt.return_value = SimpleNamespace(
        key=private_key.public_key()
    )
    monkeypatch.setattr(transport_module, "_get_jwks_client", lambda url: jwks_client)

    idp = FakeIdentityProvider(payloads, private_key)
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = idp.post

    config = IdxConfig(
        issuer=ISSUER,
        client_id="client-1",
        redirect_uri="https://app.example.com/callback",
        scopes=("openid", "email"),
    )
    transport = RequestsTransport(config, session=session)
    manager = TokenManager(FileTokenStorage(tmp_path), transport)
    added: list[str] = []
    manager.on("added", lambda key, token: added.append(key))

    def _tab(context_id: str) -> IdxClient:
        return IdxClient(
            config,
            transport=transport,
            storage=DiskTransactionStorage(tmp_path / "txn", context_id=context_id),
            token_manager=manager,
        )

    first_tab, second_tab = _tab("tab-1"), _tab("tab-2")

    try:
        # ------------------------------------------------------------------ #
        # 2. Password sign-in stops at the email challenge                   #
        # ------------------------------------------------------------------ #
        txn = await first_tab.authenticate(state="state-e2e", username="alice", password="pw")
        assert txn.status is IdxStatus.PENDING
        assert txn.next_step.name == "challenge-authenticator"
        assert txn.next_step.type == "email"

        identify_url, identify_kwargs = idp.requests[2]
        assert identify_url == f"{IDX_BASE}/identify"
        assert identify_kwargs["json"] == {
            "stateHandle": "sh-1",
            "identifier": "alice",
            "credentials": {"passcode": "pw"},
        }

        # ------------------------------------------------------------------ #
        # 3. The email link is opened in a second tab sharing the storage    #
        # ------------------------------------------------------------------ #
        assert second_tab.can_proceed() is False
        assert second_tab.can_proceed(state="state-e2e") is True

        txn = await second_tab.handle_email_verify_callback("state=state-e2e&otp=123456")
        assert txn.status is IdxStatus.SUCCESS, txn.error
        assert txn.tokens.id_token.claims["sub"] == "u1"
        assert second_tab.can_proceed(state="state-e2e") is False

        token_request = idp.requests[-1][1]["data"]
        assert token_request["interaction_code"] == "ic-777"
        interact_form = idp.requests[0][1]["data"]
        assert code_challenge_s256(token_request["code_verifier"]) == interact_form["code_challenge"]

        # ------------------------------------------------------------------ #
        # 4. Tokens landed in file storage and can be refreshed              #
        # ------------------------------------------------------------------ #
        assert sorted(added) == ["access_token", "id_token", "refresh_token"]
        on_disk = FileTokenStorage(tmp_path).get_storage()
        assert on_disk["access_token"].access_token == "at-1"

        fresh = await manager.renew("access_token")
        assert fresh.access_token == "at-2"
        stored = FileTokenStorage(tmp_path).get_storage()
        assert stored["access_token"].access_token == "at-2"
        assert stored["refresh_token"].refresh_token == "rt-1"
    finally:
        manager.stop()
