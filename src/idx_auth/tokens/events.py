"""Per-instance publish/subscribe for token lifecycle events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Final, Tuple

_LOG = logging.getLogger("idx-auth.tokens.events")

EVENT_ADDED: Final[str] = "added"
EVENT_RENEWED: Final[str] = "renewed"
EVENT_REMOVED: Final[str] = "removed"
EVENT_EXPIRED: Final[str] = "expired"
EVENT_ERROR: Final[str] = "error"

TOKEN_EVENTS: Final[Tuple[str, ...]] = (
    EVENT_ADDED,
    EVENT_RENEWED,
    EVENT_REMOVED,
    EVENT_EXPIRED,
    EVENT_ERROR,
)

Handler = Callable[..., Any]


class TokenEventEmitter:
    """Synchronous emitter; handlers run in subscription order.

    A handler that raises does not stop the remaining handlers; the failure
    is logged.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        if event not in TOKEN_EVENTS:
            raise ValueError(f"Unknown token event: {event}")
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        """Unsubscribe *handler*, or every handler of *event* when omitted."""
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:  # broad: one listener must not break the others
                _LOG.warning("Token %s handler failed", event, exc_info=True)
