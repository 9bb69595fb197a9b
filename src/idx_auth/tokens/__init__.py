"""Token lifecycle: storage adapters, events and the :class:`TokenManager`."""

from __future__ import annotations

from .events import TOKEN_EVENTS, TokenEventEmitter  # noqa: F401
from .manager import TokenManager  # noqa: F401
from .storage import (  # noqa: F401
    FileTokenStorage,
    MemoryTokenStorage,
    StorageChange,
    TokenStorage,
    watch_storage,
)

__all__ = [
    "TOKEN_EVENTS",
    "TokenEventEmitter",
    "TokenManager",
    "FileTokenStorage",
    "MemoryTokenStorage",
    "StorageChange",
    "TokenStorage",
    "watch_storage",
]
