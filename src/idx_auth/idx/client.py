"""Caller-facing entry point tying config, storage, transport and tokens together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Sequence

from idx_auth.config import IdxConfig
from idx_auth.email_verify import is_email_verify_callback, parse_email_verify_callback
from idx_auth.errors import AuthSdkError
from idx_auth.idx.flow import get_flow_specification
from idx_auth.idx.proceed import can_proceed as _can_proceed
from idx_auth.idx.proceed import proceed as _proceed
from idx_auth.idx.run import run as _run
from idx_auth.idx.transport import RequestsTransport, Transport
from idx_auth.models import IdxStatus, IdxTransaction
from idx_auth.store import (
    DiskTransactionStorage,
    MemoryTransactionStorage,
    TransactionStorage,
    get_saved_transaction_meta,
)

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.tokens.manager import TokenManager

_LOG = logging.getLogger("idx-auth.idx.client")


def _default_storage(config: IdxConfig) -> TransactionStorage:
    if config.storage_dir is not None:
        return DiskTransactionStorage(config.storage_dir)
    return MemoryTransactionStorage(ttl_seconds=config.transaction_ttl_seconds)


class IdxClient:
    """Drive authenticate / register / recover-password transactions.

    Every method returns an :class:`~idx_auth.models.IdxTransaction`; failures
    are reported through its ``FAILURE`` status rather than raised, except
    :meth:`proceed` without a saved transaction.
    """

    def __init__(
        self,
        config: IdxConfig,
        *,
        transport: Transport | None = None,
        storage: TransactionStorage | None = None,
        token_manager: TokenManager | None = None,
    ) -> None:
        self.config = config
        self.transport: Transport = transport or RequestsTransport(config)
        self.storage: TransactionStorage = storage or _default_storage(config)
        self.token_manager = token_manager

    @classmethod
    def from_env(cls, **kwargs: Any) -> IdxClient:
        return cls(IdxConfig.from_env(), **kwargs)

    # ------------------------------------------------------------------ #
    # generic                                                            #
    # ------------------------------------------------------------------ #
    async def run(self, **options: Any) -> IdxTransaction:
        return await _run(self, **options)

    async def proceed(self, *, state: str | None = None, **values: Any) -> IdxTransaction:
        return await _proceed(self, state=state, **values)

    def can_proceed(self, *, state: str | None = None) -> bool:
        return _can_proceed(self, state=state)

    async def start_transaction(
        self,
        *,
        flow: str | None = None,
        state: str | None = None,
        scopes: Sequence[str] | None = None,
    ) -> IdxTransaction:
        """Begin a transaction and report the enabled features and entry steps."""
        spec = get_flow_specification(flow)
        return await _run(self, flow=flow, state=state, scopes=scopes, sso=spec.sso)

    # ------------------------------------------------------------------ #
    # flows                                                              #
    # ------------------------------------------------------------------ #
    async def _run_flow(
        self, flow: str, *, state: str | None, values: dict[str, Any]
    ) -> IdxTransaction:
        spec = get_flow_specification(flow, self.storage, state=state)
        return await _run(
            self,
            flow=flow,
            state=state,
            sso=spec.sso,
            remediators=spec.remediators,
            flow_monitor=spec.flow_monitor,
            actions=spec.actions,
            values=values,
        )

    async def authenticate(self, *, state: str | None = None, **values: Any) -> IdxTransaction:
        return await self._run_flow("authenticate", state=state, values=values)

    async def register(self, *, state: str | None = None, **values: Any) -> IdxTransaction:
        return await self._run_flow("register", state=state, values=values)

    async def recover_password(
        self, *, state: str | None = None, **values: Any
    ) -> IdxTransaction:
        return await self._run_flow("recoverPassword", state=state, values=values)

    async def cancel(self, *, state: str | None = None) -> IdxTransaction:
        """Cancel the saved transaction on the server and forget it locally."""
        meta = get_saved_transaction_meta(self.storage, self.config, state=state)
        spec = get_flow_specification(meta.flow if meta else None, self.storage, state=state)
        return await _run(
            self,
            state=state,
            sso=spec.sso,
            remediators=spec.remediators,
            flow_monitor=spec.flow_monitor,
            actions=("cancel",),
        )

    # ------------------------------------------------------------------ #
    # email verification links                                           #
    # ------------------------------------------------------------------ #
    async def handle_email_verify_callback(self, query: str) -> IdxTransaction:
        """Continue a transaction from an email-verification link.

        When the link is opened in a context that cannot resume the
        transaction, the OTP is returned in the error so the user can type it
        into the original context.
        """
        if not is_email_verify_callback(query):
            raise AuthSdkError("Query string is not an email verification callback")
        params = parse_email_verify_callback(query)
        state, otp = params["state"], params["otp"]
        if self.can_proceed(state=state):
            return await self.proceed(state=state, otp=otp)
        _LOG.info("Email verification opened outside the original context")
        return IdxTransaction(
            status=IdxStatus.FAILURE,
            error=AuthSdkError(f"Enter the OTP code in the original tab: {otp}"),
        )
