"""Interaction-code (IDX) remediation engine.

Sub-modules
-----------
types
    Parsed view of IDX responses.
remediators
    One handler per remediation the engine knows how to satisfy.
flow
    Flow specifications and the monitors guarding flow completion.
remediate
    Step resolver.
run / proceed
    Transaction orchestration.
transport
    HTTP collaborator contract and its ``requests`` implementation.
client
    :class:`IdxClient` façade.
"""

from __future__ import annotations

from .client import IdxClient  # noqa: F401
from .flow import FlowSpecification, get_flow_specification  # noqa: F401
from .remediators import REMEDIATORS, Remediator  # noqa: F401
from .transport import RequestsTransport, Transport  # noqa: F401
from .types import IdxResponse, parse_idx_response  # noqa: F401

__all__ = [
    "IdxClient",
    "FlowSpecification",
    "get_flow_specification",
    "REMEDIATORS",
    "Remediator",
    "RequestsTransport",
    "Transport",
    "IdxResponse",
    "parse_idx_response",
]
