"""Top-level interaction state machine.

One call to :func:`run` advances a transaction by as many steps as the
supplied values allow:

1. resume the saved transaction (or start one with ``interact``),
2. obtain the IDX state (saved response or ``introspect``),
3. either report a snapshot of what is possible (no flow options given) or
   remediate with the flow's remediators,
4. map the outcome to an :class:`~idx_auth.models.IdxStatus`, exchanging the
   interaction code for tokens once the flow monitor agrees the flow is done.

Failures never escape: they are reported as a ``FAILURE`` transaction with
the original exception attached, and the saved transaction is cleared.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from idx_auth.errors import AuthSdkError
from idx_auth.idx.flow import FlowMonitor, RemediationFlow, get_flow_specification
from idx_auth.idx.remediate import RemediateOptions, remediate
from idx_auth.idx.remediators import REMEDIATORS
from idx_auth.idx.transport import CodeExchangeParams
from idx_auth.idx.types import IdxResponse, parse_idx_response
from idx_auth.log_utils import get_auth_logger
from idx_auth.models import (
    IdxFeature,
    IdxStatus,
    IdxTransaction,
    NextStep,
    Tokens,
    TransactionMeta,
)
from idx_auth.store import get_saved_transaction_meta

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.client import IdxClient

UNSUPPORTED_FLOW_MESSAGE = "Current flow is not supported, check policy settings in your org."


def get_enabled_features(idx_response: IdxResponse) -> list[IdxFeature]:
    features: list[IdxFeature] = []
    names = idx_response.remediation_names()
    if "currentAuthenticator-recover" in idx_response.actions:
        features.append(IdxFeature.PASSWORD_RECOVERY)
    if "select-enroll-profile" in names:
        features.append(IdxFeature.REGISTRATION)
    if "redirect-idp" in names:
        features.append(IdxFeature.SOCIAL_IDP)
    return features


def get_available_steps(idx_response: IdxResponse) -> list[NextStep]:
    """One next step per remediation that has a registered remediator."""
    steps: list[NextStep] = []
    for remediation in idx_response.needed_to_proceed:
        cls = REMEDIATORS.get(remediation.name)
        if cls is not None:
            steps.append(cls(remediation).get_next_step())
    return steps


async def _start_or_resume(
    client: IdxClient,
    *,
    flow: str | None,
    state: str | None,
    scopes: Sequence[str] | None,
    sso: bool,
) -> TransactionMeta:
    meta = get_saved_transaction_meta(client.storage, client.config, state=state)
    if meta is None:
        client.storage.clear(state=state)
        result = await client.transport.interact(state=state, scopes=scopes, sso=sso)
        meta = replace(result.meta, flow=flow)
        client.storage.save(meta)
    elif flow and meta.flow != flow:
        # only one flow is active per transaction; the latest request wins
        meta = replace(meta, flow=flow)
        client.storage.save(meta)
    return meta


async def _current_response(client: IdxClient, meta: TransactionMeta) -> IdxResponse:
    if meta.idx_response:
        return parse_idx_response(meta.idx_response)
    return await client.transport.introspect(
        interaction_handle=meta.interaction_handle, sso=meta.sso
    )


async def run(
    client: IdxClient,
    *,
    flow: str | None = None,
    state: str | None = None,
    scopes: Sequence[str] | None = None,
    sso: bool = True,
    remediators: RemediationFlow | None = None,
    flow_monitor: FlowMonitor | None = None,
    actions: Sequence[str] | None = None,
    values: Mapping[str, Any] | None = None,
) -> IdxTransaction:
    """Advance the transaction and return its :class:`IdxTransaction`."""
    log = get_auth_logger(base_logger_name="idx-auth.idx.run", state=state, flow=flow)

    status = IdxStatus.PENDING
    idx_response: IdxResponse | None = None
    meta: TransactionMeta | None = None
    saved: TransactionMeta | None = None
    enabled_features = available_steps = None
    tokens: Tokens | None = None
    next_step = messages = None
    error: BaseException | None = None
    should_clear = False
    clear_shared_storage = True

    try:
        saved = await _start_or_resume(
            client, flow=flow, state=state, scopes=scopes, sso=sso
        )
        idx_response = await _current_response(client, saved)

        if remediators is None and not actions:
            meta = saved
            enabled_features = get_enabled_features(idx_response)
            available_steps = get_available_steps(idx_response)
        else:
            spec = get_flow_specification(saved.flow)
            monitor = flow_monitor or spec.flow_monitor
            monitor.attach(client.storage, saved.state)
            resolved = await remediate(
                client.transport,
                idx_response,
                values or {},
                RemediateOptions(
                    remediators=remediators or spec.remediators,
                    flow_monitor=monitor,
                    actions=tuple(actions or ()),
                ),
            )
            next_step = resolved.next_step
            messages = resolved.messages
            if resolved.idx_response is not None:
                idx_response = resolved.idx_response

            if next_step is not None and resolved.idx_response is not None:
                client.storage.save_idx_response(resolved.idx_response.raw_idx_state)

            if resolved.terminal:
                status = IdxStatus.TERMINAL
                should_clear = True
                # another context may still continue this transaction
                clear_shared_storage = False
            elif resolved.canceled:
                status = IdxStatus.CANCELED
                should_clear = True
            elif resolved.idx_response is not None and resolved.idx_response.interaction_code:
                if not await monitor.is_finished():
                    raise AuthSdkError(UNSUPPORTED_FLOW_MESSAGE)
                tokens = await client.transport.exchange_code_for_tokens(
                    CodeExchangeParams(
                        interaction_code=resolved.idx_response.interaction_code,
                        client_id=saved.client_id,
                        code_verifier=saved.code_verifier,
                        redirect_uri=saved.redirect_uri,
                        scopes=saved.scopes,
                        ignore_signature=saved.ignore_signature,
                    ),
                    token_url=saved.token_url or None,
                )
                if client.token_manager is not None:
                    client.token_manager.set_tokens(tokens)
                status = IdxStatus.SUCCESS
                should_clear = True
                log.info("Transaction finished with tokens")
    except Exception as exc:  # broad: reported as a FAILURE transaction
        log.warning("Transaction failed: %s", exc)
        error = exc
        status = IdxStatus.FAILURE
        should_clear = True

    if should_clear:
        client.storage.clear(
            state=saved.state if saved else state,
            clear_shared_storage=clear_shared_storage,
        )

    return IdxTransaction(
        status=status,
        idx_response=idx_response,
        meta=meta,
        enabled_features=enabled_features,
        available_steps=available_steps,
        tokens=tokens,
        next_step=next_step,
        messages=messages,
        error=error,
    )
