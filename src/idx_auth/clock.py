"""Injected time source for expiry, throttling and transaction TTLs.

Nothing in the engine reads ``time.time()`` directly; objects take a
:class:`Clock` (any zero-argument callable returning epoch seconds) so tests
can freeze or advance time.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def __call__(self) -> float: ...


def default_clock() -> float:
    return time.time()


def seconds_until(deadline: float, *, clock: Clock = default_clock) -> float:
    """Non-negative delay from now until *deadline* (epoch seconds)."""
    return max(deadline - clock(), 0.0)
