"""HTTP collaborator for the interaction engine and the token manager.

:class:`Transport` is the narrow async contract the engine depends on;
:class:`RequestsTransport` implements it with :mod:`requests`, running each
blocking call in a worker thread via :func:`asyncio.to_thread`.

Endpoints
---------
``{issuer}/v1/interact``        start a transaction (PKCE challenge attached)
``{origin}/idp/idx/introspect`` fetch the IDX state for an interaction handle
remediation / action ``href``   submit a step
``{issuer}/v1/token``           ``interaction_code`` and ``refresh_token`` grants
``{issuer}/v1/keys``            signing keys used to verify ID tokens
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, Tuple, runtime_checkable

import jwt
import requests

from idx_auth.clock import Clock, default_clock
from idx_auth.config import IdxConfig
from idx_auth.errors import AuthApiError, AuthSdkError, IdxResponseError, OAuthError
from idx_auth.idx.types import IdxResponse, parse_idx_response
from idx_auth.log_utils import mask_sensitive
from idx_auth.models import (
    AccessToken,
    IDToken,
    RefreshToken,
    Token,
    Tokens,
    TransactionMeta,
)
from idx_auth.pkce import create_pkce_pair

_LOG = logging.getLogger("idx-auth.idx.transport")

IDX_MEDIA_TYPE = "application/ion+json; okta-version=1.0.0"
_DEFAULT_TIMEOUT: Tuple[int, int] = (5, 20)

# JWKS clients are cached per keys URL
_jwks_clients: dict = {}


def _get_jwks_client(jwks_url: str, cache_ttl: int = 3600) -> jwt.PyJWKClient:
    key = (jwks_url, cache_ttl)
    if key not in _jwks_clients:
        _jwks_clients[key] = jwt.PyJWKClient(
            jwks_url, cache_jwk_set=True, lifespan=cache_ttl
        )
    return _jwks_clients[key]


@dataclass(frozen=True, slots=True)
class InteractResult:
    interaction_handle: str
    meta: TransactionMeta


@dataclass(frozen=True, slots=True)
class CodeExchangeParams:
    """Everything the token endpoint needs to redeem an interaction code."""

    interaction_code: str
    client_id: str
    code_verifier: str
    redirect_uri: str = ""
    scopes: Tuple[str, ...] = ()
    ignore_signature: bool = False


@runtime_checkable
class Transport(Protocol):
    """Async operations the engine performs against the identity provider."""

    async def interact(
        self,
        *,
        state: str | None = None,
        scopes: Sequence[str] | None = None,
        sso: bool = False,
    ) -> InteractResult: ...

    async def introspect(
        self, *, interaction_handle: str, sso: bool = False
    ) -> IdxResponse: ...

    async def proceed(
        self, idx_response: IdxResponse, name: str, data: Mapping[str, Any]
    ) -> IdxResponse: ...

    async def perform_action(
        self,
        idx_response: IdxResponse,
        name: str,
        data: Mapping[str, Any] | None = None,
    ) -> IdxResponse: ...

    async def exchange_code_for_tokens(
        self, params: CodeExchangeParams, *, token_url: str | None = None
    ) -> Tokens: ...

    async def renew_tokens_with_refresh(
        self, *, scopes: Sequence[str], refresh_token: RefreshToken
    ) -> Tokens: ...

    async def renew_token(self, token: Token) -> Token: ...


class RequestsTransport(Transport):
    """:class:`Transport` backed by a :class:`requests.Session`."""

    def __init__(
        self,
        config: IdxConfig,
        *,
        session: requests.Session | None = None,
        clock: Clock = default_clock,
        timeout: Tuple[int, int] = _DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._clock = clock
        self._timeout = timeout

    # ------------------------------------------------------------------ #
    # low-level                                                          #
    # ------------------------------------------------------------------ #
    async def _post(self, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self._timeout)
        try:
            return await asyncio.to_thread(self.session.post, url, **kwargs)
        except requests.RequestException as exc:
            raise AuthApiError(f"Request to {url} failed: {exc}") from exc

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    def _idx_result(self, resp: requests.Response) -> IdxResponse:
        body = self._json(resp)
        if resp.ok and isinstance(body, Mapping):
            return parse_idx_response(body)
        if isinstance(body, Mapping) and (
            "messages" in body or "remediation" in body or "version" in body
        ):
            raise IdxResponseError(parse_idx_response(body))
        raise AuthApiError(
            f"IDX endpoint returned {resp.status_code}: {resp.text[:200]}",
            status_code=resp.status_code,
        )

    def _token_result(self, resp: requests.Response) -> Mapping[str, Any]:
        body = self._json(resp)
        if resp.ok and isinstance(body, Mapping):
            return body
        if isinstance(body, Mapping) and body.get("error"):
            raise OAuthError(str(body["error"]), body.get("error_description"))
        raise AuthApiError(
            f"Token endpoint returned {resp.status_code}: {resp.text[:200]}",
            status_code=resp.status_code,
        )

    # ------------------------------------------------------------------ #
    # interaction                                                        #
    # ------------------------------------------------------------------ #
    async def interact(
        self,
        *,
        state: str | None = None,
        scopes: Sequence[str] | None = None,
        sso: bool = False,
    ) -> InteractResult:
        state = state or secrets.token_hex(16)
        scopes = tuple(scopes or self.config.scopes)
        pkce = create_pkce_pair()
        payload = {
            "client_id": self.config.client_id,
            "scope": " ".join(scopes),
            "redirect_uri": self.config.redirect_uri,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": pkce.code_challenge_method,
            "state": state,
        }
        resp = await self._post(self.config.interact_url, data=payload)
        body = self._token_result(resp)
        handle = body.get("interaction_handle")
        if not handle:
            raise AuthApiError("Interact response missing interaction_handle")

        meta = TransactionMeta(
            interaction_handle=handle,
            state=state,
            code_verifier=pkce.code_verifier,
            client_id=self.config.client_id,
            issuer=self.config.issuer,
            redirect_uri=self.config.redirect_uri,
            scopes=scopes,
            code_challenge=pkce.code_challenge,
            code_challenge_method=pkce.code_challenge_method,
            token_url=self.config.token_url,
            sso=sso,
            ignore_signature=self.config.ignore_signature,
            created_at=int(self._clock()),
            ttl_seconds=self.config.transaction_ttl_seconds,
        )
        _LOG.debug("Started transaction state=%s", mask_sensitive(state))
        return InteractResult(interaction_handle=handle, meta=meta)

    async def introspect(self, *, interaction_handle: str, sso: bool = False) -> IdxResponse:
        resp = await self._post(
            f"{self.config.origin}/idp/idx/introspect",
            json={"interactionHandle": interaction_handle},
            headers={"Content-Type": IDX_MEDIA_TYPE, "Accept": IDX_MEDIA_TYPE},
        )
        return self._idx_result(resp)

    async def _submit(
        self,
        idx_response: IdxResponse,
        href: str | None,
        accepts: str | None,
        data: Mapping[str, Any] | None,
        label: str,
    ) -> IdxResponse:
        if not href:
            raise AuthSdkError(f"Unable to proceed: {label} has no href")
        body: dict[str, Any] = {"stateHandle": idx_response.state_handle}
        body.update(data or {})
        resp = await self._post(
            href,
            json=body,
            headers={
                "Content-Type": accepts or IDX_MEDIA_TYPE,
                "Accept": IDX_MEDIA_TYPE,
            },
        )
        return self._idx_result(resp)

    async def proceed(
        self, idx_response: IdxResponse, name: str, data: Mapping[str, Any]
    ) -> IdxResponse:
        remediation = idx_response.get_remediation(name)
        if remediation is None:
            raise AuthSdkError(f"Unable to proceed: {name} is not available")
        return await self._submit(
            idx_response, remediation.href, remediation.accepts, data, name
        )

    async def perform_action(
        self,
        idx_response: IdxResponse,
        name: str,
        data: Mapping[str, Any] | None = None,
    ) -> IdxResponse:
        action = idx_response.actions.get(name)
        if action is None:
            raise AuthSdkError(f"Unable to run action: {name} is not available")
        return await self._submit(idx_response, action.href, action.accepts, data, name)

    # ------------------------------------------------------------------ #
    # tokens                                                             #
    # ------------------------------------------------------------------ #
    async def _decode_id_token(self, id_token: str, *, verify: bool) -> dict[str, Any]:
        try:
            if not verify:
                return jwt.decode(id_token, options={"verify_signature": False})
            jwks_client = _get_jwks_client(f"{self.config.issuer.rstrip('/')}/v1/keys")
            signing_key = await asyncio.to_thread(
                jwks_client.get_signing_key_from_jwt, id_token
            )
            return jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.config.client_id,
                issuer=self.config.issuer,
            )
        except jwt.PyJWTError as exc:
            raise AuthSdkError(f"Invalid id_token: {exc}") from exc

    async def _build_tokens(
        self,
        body: Mapping[str, Any],
        scopes: Sequence[str],
        *,
        token_url: str,
        verify_id_token: bool,
    ) -> Tokens:
        now = int(self._clock())
        expires_at = now + int(body.get("expires_in", 3600))
        granted = str(body.get("scope") or "").split() or list(scopes)
        issuer = self.config.issuer

        access_token = None
        if body.get("access_token"):
            access_token = AccessToken(
                access_token=body["access_token"],
                expires_at=expires_at,
                scopes=granted,
                token_type=body.get("token_type", "Bearer"),
                user_info_url=f"{issuer.rstrip('/')}/v1/userinfo",
            )

        id_token = None
        if body.get("id_token"):
            claims = await self._decode_id_token(body["id_token"], verify=verify_id_token)
            id_token = IDToken(
                id_token=body["id_token"],
                expires_at=int(claims.get("exp", expires_at)),
                scopes=granted,
                claims=claims,
                issuer=claims.get("iss", issuer),
                client_id=self.config.client_id,
            )

        refresh_token = None
        if body.get("refresh_token"):
            refresh_token = RefreshToken(
                refresh_token=body["refresh_token"],
                expires_at=expires_at,
                scopes=granted,
                token_url=token_url,
                issuer=issuer,
            )
        return Tokens(
            id_token=id_token, access_token=access_token, refresh_token=refresh_token
        )

    async def exchange_code_for_tokens(
        self, params: CodeExchangeParams, *, token_url: str | None = None
    ) -> Tokens:
        token_url = token_url or self.config.token_url
        payload = {
            "grant_type": "interaction_code",
            "client_id": params.client_id,
            "interaction_code": params.interaction_code,
            "code_verifier": params.code_verifier,
        }
        if params.redirect_uri:
            payload["redirect_uri"] = params.redirect_uri
        resp = await self._post(token_url, data=payload)
        body = self._token_result(resp)
        _LOG.info("Exchanged interaction code (expires in %ss)", body.get("expires_in"))
        return await self._build_tokens(
            body,
            params.scopes,
            token_url=token_url,
            verify_id_token=not params.ignore_signature,
        )

    async def renew_tokens_with_refresh(
        self, *, scopes: Sequence[str], refresh_token: RefreshToken
    ) -> Tokens:
        token_url = refresh_token.token_url or self.config.token_url
        payload = {
            "grant_type": "refresh_token",
            "client_id": self.config.client_id,
            "refresh_token": refresh_token.refresh_token,
            "scope": " ".join(scopes),
        }
        resp = await self._post(token_url, data=payload)
        body = self._token_result(resp)
        _LOG.info(
            "Refreshed tokens with refresh_token=%s", mask_sensitive(refresh_token.refresh_token)
        )
        # servers that do not rotate refresh tokens omit them from the response
        merged = dict(body)
        merged.setdefault("refresh_token", refresh_token.refresh_token)
        return await self._build_tokens(
            merged, scopes, token_url=token_url, verify_id_token=False
        )

    async def renew_token(self, token: Token) -> Token:
        """Renew without a refresh token; needs an interactive session here."""
        raise OAuthError(
            "login_required",
            "The client cannot renew tokens without a refresh token",
        )
