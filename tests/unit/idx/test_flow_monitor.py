"""Unit tests for flow specifications and completion monitors."""

from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from idx_auth.errors import AuthSdkError
from idx_auth.idx.flow import (
    AUTHENTICATION_FLOW,
    PASSWORD_RECOVERY_FLOW,
    RECOVER_ACTIONS,
    REGISTRATION_FLOW,
    AuthenticationFlowMonitor,
    PasswordRecoveryFlowMonitor,
    RegistrationFlowMonitor,
    get_flow_specification,
    unmatched_remediations_error,
)
from idx_auth.idx.remediators import Identify
from idx_auth.idx.types import parse_idx_response
from idx_auth.models import TransactionMeta
from idx_auth.store import MemoryTransactionStorage


def _storage_with(*remediations: str) -> MemoryTransactionStorage:
    storage = MemoryTransactionStorage()
    meta = TransactionMeta(
        interaction_handle="ih", state="s1", code_verifier="v", client_id="cid"
    )
    storage.save(replace(meta, remediations=remediations))
    return storage


# --------------------------------------------------------------------------- #
# Specification selector                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.parametrize("flow", ["register", "signup", "enrollProfile"])
def test_registration_flow_selected(flow: str) -> None:
    spec = get_flow_specification(flow)
    assert spec.flow == flow
    assert spec.remediators is REGISTRATION_FLOW
    assert isinstance(spec.flow_monitor, RegistrationFlowMonitor)
    assert spec.sso is False
    assert spec.actions == ()


@pytest.mark.parametrize("flow", ["recoverPassword", "resetPassword"])
def test_recovery_flow_selected(flow: str) -> None:
    spec = get_flow_specification(flow)
    assert spec.remediators is PASSWORD_RECOVERY_FLOW
    assert isinstance(spec.flow_monitor, PasswordRecoveryFlowMonitor)
    assert spec.actions == RECOVER_ACTIONS
    assert spec.sso is False


@pytest.mark.parametrize("flow", ["authenticate", "login", None])
def test_authentication_is_the_default(flow) -> None:
    spec = get_flow_specification(flow)
    assert spec.remediators is AUTHENTICATION_FLOW
    assert isinstance(spec.flow_monitor, AuthenticationFlowMonitor)
    assert spec.sso is True
    assert spec.flow == (flow or "proceed")


def test_flows_restrict_remediators() -> None:
    assert "identify" not in REGISTRATION_FLOW
    assert "enroll-profile" not in AUTHENTICATION_FLOW
    assert "redirect-idp" not in PASSWORD_RECOVERY_FLOW


def test_unmatched_error_lists_remediations() -> None:
    err = unmatched_remediations_error(["identify", "redirect-idp"])
    assert isinstance(err, AuthSdkError)
    assert str(err).endswith("Remediations: [identify, redirect-idp]")


# --------------------------------------------------------------------------- #
# Monitors                                                                    #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_authentication_monitor_always_finishes() -> None:
    assert await AuthenticationFlowMonitor().is_finished() is True


@pytest.mark.anyio
async def test_registration_monitor_requires_enroll_profile() -> None:
    assert await RegistrationFlowMonitor(_storage_with(), state="s1").is_finished() is False
    assert (
        await RegistrationFlowMonitor(
            _storage_with("select-enroll-profile", "enroll-profile"), state="s1"
        ).is_finished()
        is True
    )


@pytest.mark.anyio
@pytest.mark.parametrize("action", RECOVER_ACTIONS)
async def test_recovery_monitor_requires_a_recover_action(action: str) -> None:
    monitor = PasswordRecoveryFlowMonitor(_storage_with("identify", action), state="s1")
    assert await monitor.is_finished() is True

    available_only = PasswordRecoveryFlowMonitor(_storage_with("identify"), state="s1")
    assert await available_only.is_finished() is False


@pytest.mark.anyio
async def test_monitor_fails_closed() -> None:
    assert await PasswordRecoveryFlowMonitor().is_finished() is False
    assert await PasswordRecoveryFlowMonitor(
        MemoryTransactionStorage(), state="s1"
    ).is_finished() is False

    broken = MagicMock()
    broken.load.side_effect = OSError("disk gone")
    assert await PasswordRecoveryFlowMonitor(broken, state="s1").is_finished() is False


def test_track_remediation_records_in_meta(payloads) -> None:
    storage = _storage_with()
    monitor = RegistrationFlowMonitor()
    monitor.attach(storage, "s1")

    monitor.track_remediation("select-enroll-profile")
    monitor.track_remediation("enroll-profile")

    assert storage.load("s1").remediations == ("select-enroll-profile", "enroll-profile")

    identify = Identify(parse_idx_response(payloads.identify()).get_remediation("identify"))
    assert monitor.loop_detected(identify) is False
    monitor.track_remediation("identify")
    assert monitor.loop_detected(identify) is True


def test_track_without_storage_only_remembers_previous() -> None:
    monitor = AuthenticationFlowMonitor()
    monitor.track_remediation("identify")
    assert monitor._previous == "identify"  # type: ignore[attr-defined]
