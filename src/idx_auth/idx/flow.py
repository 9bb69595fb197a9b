"""Named flows: which remediators apply and when a flow may finish.

A flow identifier (``authenticate``, ``register``, ``recoverPassword``…) is
resolved by :func:`get_flow_specification` into a :class:`FlowSpecification`
bundling the permitted remediators, a :class:`FlowMonitor`, the side-actions
to trigger automatically and whether SSO is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import ClassVar, Mapping, Tuple

from idx_auth.errors import AuthSdkError
from idx_auth.idx.remediators import REMEDIATORS, Remediator
from idx_auth.store import TransactionStorage

_LOG = logging.getLogger("idx-auth.idx.flow")

RemediationFlow = Mapping[str, "type[Remediator]"]

RECOVER_ACTIONS: Tuple[str, ...] = (
    "currentAuthenticator-recover",
    "currentAuthenticatorEnrollment-recover",
)


def _flow(*names: str) -> dict[str, type[Remediator]]:
    return {name: REMEDIATORS[name] for name in names}


AUTHENTICATION_FLOW: RemediationFlow = _flow(
    "identify",
    "select-authenticator-authenticate",
    "select-authenticator-enroll",
    "challenge-authenticator",
    "enroll-authenticator",
    "authenticator-verification-data",
    "authenticator-enrollment-data",
    "reset-authenticator",
    "redirect-idp",
    "skip",
)

REGISTRATION_FLOW: RemediationFlow = _flow(
    "select-enroll-profile",
    "enroll-profile",
    "select-authenticator-enroll",
    "enroll-authenticator",
    "authenticator-enrollment-data",
    "authenticator-verification-data",
    "skip",
)

PASSWORD_RECOVERY_FLOW: RemediationFlow = _flow(
    "identify",
    "select-authenticator-authenticate",
    "challenge-authenticator",
    "authenticator-verification-data",
    "reset-authenticator",
)


# --------------------------------------------------------------------------- #
# Monitors                                                                    #
# --------------------------------------------------------------------------- #
class FlowMonitor:
    """Tracks proceeded steps and decides whether the flow may finish.

    Every entry of :attr:`required_steps` is a group of step names of which
    at least one must have been proceeded before :meth:`is_finished` allows
    the interaction code to be exchanged.
    """

    required_steps: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    def __init__(
        self, storage: TransactionStorage | None = None, *, state: str | None = None
    ) -> None:
        self.storage = storage
        self.state = state
        self._previous: str | None = None

    def attach(self, storage: TransactionStorage, state: str | None) -> None:
        """Bind the monitor to the storage and transaction it reports on."""
        self.storage = storage
        self.state = state

    def loop_detected(self, remediator: Remediator) -> bool:
        """Return *True* if *remediator* would repeat the step just proceeded."""
        return remediator.get_name() == self._previous

    def track_remediation(self, name: str) -> None:
        self._previous = name
        if self.storage is None:
            return
        meta = self.storage.load(self.state)
        if meta is None:
            _LOG.debug("No transaction to record step %s against", name)
            return
        self.storage.save(replace(meta, remediations=meta.remediations + (name,)))

    async def is_finished(self) -> bool:
        if not self.required_steps:
            return True
        if self.storage is None:
            return False
        try:
            meta = self.storage.load(self.state)
        except (OSError, ValueError, TypeError):
            _LOG.warning("Could not read transaction while checking flow", exc_info=True)
            return False
        if meta is None:
            return False
        done = set(meta.remediations)
        return all(done.intersection(group) for group in self.required_steps)


class AuthenticationFlowMonitor(FlowMonitor):
    """Any interaction code ends an authentication."""


class RegistrationFlowMonitor(FlowMonitor):
    required_steps = (("enroll-profile",),)


class PasswordRecoveryFlowMonitor(FlowMonitor):
    required_steps = (RECOVER_ACTIONS,)


# --------------------------------------------------------------------------- #
# Specification                                                               #
# --------------------------------------------------------------------------- #
@dataclass(slots=True)
class FlowSpecification:
    flow: str
    remediators: RemediationFlow
    flow_monitor: FlowMonitor
    actions: Tuple[str, ...] = ()
    sso: bool = True


def get_flow_specification(
    flow: str | None = "proceed",
    storage: TransactionStorage | None = None,
    *,
    state: str | None = None,
) -> FlowSpecification:
    """Resolve *flow*; unknown identifiers fall back to authentication."""
    if flow in ("register", "signup", "enrollProfile"):
        return FlowSpecification(
            flow=flow,
            remediators=REGISTRATION_FLOW,
            flow_monitor=RegistrationFlowMonitor(storage, state=state),
            sso=False,
        )
    if flow in ("recoverPassword", "resetPassword"):
        return FlowSpecification(
            flow=flow,
            remediators=PASSWORD_RECOVERY_FLOW,
            flow_monitor=PasswordRecoveryFlowMonitor(storage, state=state),
            actions=RECOVER_ACTIONS,
            sso=False,
        )
    return FlowSpecification(
        flow=flow or "proceed",
        remediators=AUTHENTICATION_FLOW,
        flow_monitor=AuthenticationFlowMonitor(storage, state=state),
        sso=True,
    )


def unmatched_remediations_error(names: Tuple[str, ...] | list[str]) -> AuthSdkError:
    """Error raised when none of *names* has a remediator in the active flow."""
    listed = ", ".join(names) or "none"
    return AuthSdkError(
        f"No remediation can match current flow, check policy settings in your org. "
        f"Remediations: [{listed}]"
    )
