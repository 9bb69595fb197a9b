"""Continue a saved transaction with the flow it was started for."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from idx_auth.errors import AuthSdkError
from idx_auth.idx.flow import get_flow_specification
from idx_auth.idx.run import run
from idx_auth.models import IdxTransaction
from idx_auth.store import get_saved_transaction_meta

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.client import IdxClient


def can_proceed(client: IdxClient, *, state: str | None = None) -> bool:
    """Return *True* when a resumable transaction exists for *state*."""
    return get_saved_transaction_meta(client.storage, client.config, state=state) is not None


async def proceed(
    client: IdxClient, *, state: str | None = None, **values: Any
) -> IdxTransaction:
    """Resume the saved transaction, submitting *values* to its next step.

    Raises
    ------
    AuthSdkError
        If no transaction is saved for *state*.
    """
    meta = get_saved_transaction_meta(client.storage, client.config, state=state)
    if meta is None:
        raise AuthSdkError("Unable to proceed: saved transaction could not be loaded")

    spec = get_flow_specification(meta.flow, client.storage, state=meta.state)
    return await run(
        client,
        state=state,
        sso=spec.sso,
        remediators=spec.remediators,
        flow_monitor=spec.flow_monitor,
        actions=spec.actions,
        values=values,
    )
