"""Resolve one or more remediation steps against the current IDX response.

The resolver keeps proceeding while the caller's values satisfy a step and
stops as soon as:

* the response carries an interaction code,
* the response is terminal (nothing left to remediate),
* an action cancels the transaction, or
* no permitted step can be satisfied, in which case the caller gets the
  :class:`~idx_auth.models.NextStep` to prompt for.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Mapping, Tuple

from idx_auth.errors import AuthSdkError, IdxResponseError
from idx_auth.idx.flow import FlowMonitor, RemediationFlow, unmatched_remediations_error
from idx_auth.idx.remediators import Remediator
from idx_auth.idx.types import IdxMessage, IdxResponse
from idx_auth.models import NextStep

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.transport import Transport

_LOG = logging.getLogger("idx-auth.idx.remediate")

# value-bag flags that trigger a side-action by name suffix
_VALUE_ACTIONS: Mapping[str, str] = {"resend": "-resend"}


@dataclass(slots=True)
class RemediationResponse:
    idx_response: IdxResponse | None = None
    next_step: NextStep | None = None
    messages: list[IdxMessage] | None = None
    terminal: bool = False
    canceled: bool = False


@dataclass(slots=True)
class RemediateOptions:
    remediators: RemediationFlow
    flow_monitor: FlowMonitor
    actions: Tuple[str, ...] = ()


def get_remediator(
    idx_response: IdxResponse,
    values: Mapping[str, Any],
    remediators: RemediationFlow,
) -> Remediator | None:
    """Pick the first permitted remediation the values can satisfy.

    Falls back to the first permitted remediation so its next step can be
    reported; returns ``None`` when the flow permits none of them.
    """
    fallback: Remediator | None = None
    for remediation in idx_response.needed_to_proceed:
        cls = remediators.get(remediation.name)
        if cls is None:
            continue
        remediator = cls(remediation, values)
        if remediator.can_remediate():
            return remediator
        if fallback is None:
            fallback = remediator
    return fallback


def _messages(idx_response: IdxResponse) -> list[IdxMessage] | None:
    return list(idx_response.messages) or None


def _next_step(remediator: Remediator, idx_response: IdxResponse) -> NextStep:
    step = remediator.get_next_step()
    if idx_response.get_remediation("skip") is not None:
        step = replace(step, can_skip=True)
    return step


def _pending_actions(
    idx_response: IdxResponse, values: Mapping[str, Any], actions: list[str]
) -> list[str]:
    pending = list(actions)
    for flag, suffix in _VALUE_ACTIONS.items():
        if values.get(flag):
            pending.extend(a for a in idx_response.actions if a.endswith(suffix))
    return pending


def _from_error(
    exc: IdxResponseError,
    remediator: Remediator | None,
    values: Mapping[str, Any],
) -> RemediationResponse:
    """Turn an error IDX payload into a resolver result, or re-raise."""
    error_response = exc.idx_response
    messages = _messages(error_response)
    if error_response.is_terminal:
        return RemediationResponse(
            idx_response=error_response, terminal=True, messages=messages
        )
    if messages and remediator is not None:
        remediation = error_response.get_remediation(remediator.get_name())
        if remediation is not None:
            remediator = type(remediator)(remediation, values)
        return RemediationResponse(
            idx_response=error_response,
            next_step=_next_step(remediator, error_response),
            messages=messages,
        )
    raise exc


async def remediate(
    transport: Transport,
    idx_response: IdxResponse,
    values: Mapping[str, Any],
    options: RemediateOptions,
) -> RemediationResponse:
    """Drive *idx_response* forward as far as *values* allow."""
    values = dict(values)
    remaining = list(options.actions)
    monitor = options.flow_monitor

    while True:
        if idx_response.interaction_code:
            return RemediationResponse(idx_response=idx_response)

        if idx_response.is_terminal:
            return RemediationResponse(
                idx_response=idx_response,
                terminal=True,
                messages=_messages(idx_response),
            )

        # side-actions run before any form is submitted
        executed: str | None = None
        for action in _pending_actions(idx_response, values, remaining):
            if action in idx_response.actions:
                _LOG.debug("Running action %s", action)
                try:
                    idx_response = await transport.perform_action(idx_response, action)
                except IdxResponseError as exc:
                    return _from_error(exc, None, values)
                if action == "cancel":
                    return RemediationResponse(idx_response=idx_response, canceled=True)
                executed = action
                break
            if idx_response.get_remediation(action) is not None:
                _LOG.debug("Proceeding with remediation action %s", action)
                try:
                    idx_response = await transport.proceed(idx_response, action, {})
                except IdxResponseError as exc:
                    return _from_error(exc, None, values)
                executed = action
                break
        if executed is not None:
            if executed in remaining:
                remaining.remove(executed)
            for flag, suffix in _VALUE_ACTIONS.items():
                if executed.endswith(suffix):
                    values.pop(flag, None)
            monitor.track_remediation(executed)
            continue

        remediator = get_remediator(idx_response, values, options.remediators)
        if remediator is None:
            raise unmatched_remediations_error(idx_response.remediation_names())

        if not remediator.can_remediate():
            return RemediationResponse(
                idx_response=idx_response,
                next_step=_next_step(remediator, idx_response),
                messages=_messages(idx_response),
            )

        if monitor.loop_detected(remediator):
            raise AuthSdkError(
                f"Remediation loop detected at step {remediator.get_name()}"
            )

        name = remediator.get_name()
        _LOG.debug("Proceeding with remediation %s", name)
        try:
            idx_response = await transport.proceed(
                idx_response, name, remediator.get_data()
            )
        except IdxResponseError as exc:
            return _from_error(exc, remediator, values)
        monitor.track_remediation(name)
        values = remediator.get_values_after_proceed()
