"""Token storage adapters and cross-process change notification.

Storage hands out a mapping of *storage key* → token.  Two implementations:

* :class:`MemoryTokenStorage` – process-local dict.
* :class:`FileTokenStorage` – one JSON document (the serialised token map)
  per storage key, written atomically under an advisory lock so several
  processes can share it.

:func:`watch_storage` polls a :class:`FileTokenStorage` and reports
:class:`StorageChange` records when another process rewrites the file.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Protocol, runtime_checkable

from idx_auth.config import DEFAULT_TOKEN_STORAGE_KEY
from idx_auth.errors import AuthSdkError
from idx_auth.models import (
    Token,
    token_from_dict,
    token_to_dict,
    tokens_from_storage_value,
)
from idx_auth.store import _atomic_write, _file_lock, _slug

_LOG = logging.getLogger("idx-auth.tokens.storage")

# marks "nothing written by this instance since the last poll"
_NOT_WRITTEN = object()


@runtime_checkable
class TokenStorage(Protocol):
    def get_storage(self) -> dict[str, Token]: ...
    def set_storage(self, tokens: Mapping[str, Token]) -> None: ...
    def clear_storage(self) -> None: ...


@dataclass(frozen=True, slots=True)
class StorageChange:
    """A storage key changed in another execution context.

    ``key`` is ``None`` when the whole storage area was cleared.
    """

    key: str | None
    old_value: str | None
    new_value: str | None


def _decode(value: str | None) -> dict[str, Token]:
    tokens: dict[str, Token] = {}
    for key, data in tokens_from_storage_value(value).items():
        if not isinstance(data, Mapping):
            continue
        try:
            tokens[key] = token_from_dict(data)
        except (AuthSdkError, TypeError):
            _LOG.warning("Ignoring unreadable stored token key=%s", key)
    return tokens


class MemoryTokenStorage(TokenStorage):
    def __init__(self, tokens: Mapping[str, Token] | None = None) -> None:
        self._tokens: dict[str, Token] = dict(tokens or {})

    def get_storage(self) -> dict[str, Token]:
        return dict(self._tokens)

    def set_storage(self, tokens: Mapping[str, Token]) -> None:
        self._tokens = dict(tokens)

    def clear_storage(self) -> None:
        self._tokens = {}


class FileTokenStorage(TokenStorage):
    """JSON-file token storage shared between processes.

    Environment variables
    ---------------------
    IDX_STORAGE_DIR
        Base directory; tokens live in ``<dir>/tokens/<storage_key>.json``.
        Defaults to ``~/.idx-auth``.
    """

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        storage_key: str = DEFAULT_TOKEN_STORAGE_KEY,
    ) -> None:
        root = Path(
            base_dir or os.getenv("IDX_STORAGE_DIR") or Path.home() / ".idx-auth"
        ).expanduser()
        self.storage_key = storage_key
        self.path = root / "tokens" / f"{_slug(storage_key)}.json"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._own_value: object = _NOT_WRITTEN

    def _lock_path(self) -> Path:
        return self.path.with_suffix(".lock")

    def raw_value(self) -> str | None:
        """Serialised token map as stored, or ``None`` when absent."""
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def get_storage(self) -> dict[str, Token]:
        return _decode(self.raw_value())

    def set_storage(self, tokens: Mapping[str, Token]) -> None:
        with _file_lock(self._lock_path()):
            _atomic_write(self.path, {k: token_to_dict(t) for k, t in tokens.items()})
            self._own_value = self.raw_value()

    def clear_storage(self) -> None:
        with _file_lock(self._lock_path()):
            self.path.unlink(missing_ok=True)
            self._own_value = None

    def is_own_write(self, value: str | None) -> bool:
        """True once when *value* is what this instance last wrote or cleared."""
        own, self._own_value = self._own_value, _NOT_WRITTEN
        return own is not _NOT_WRITTEN and own == value


async def watch_storage(
    storage: FileTokenStorage,
    on_change: Callable[[StorageChange], object],
    *,
    interval: float = 1.0,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Poll *storage* and call *on_change* whenever its file content changes.

    Values written by *storage* itself are skipped. Runs until *stop_event*
    is set (or the task is cancelled).
    """
    stop_event = stop_event or asyncio.Event()
    last = storage.raw_value()
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        else:
            break
        current = storage.raw_value()
        if current != last:
            if storage.is_own_write(current):
                last = current
                continue
            _LOG.debug("Token storage %s changed on disk", storage.storage_key)
            on_change(StorageChange(storage.storage_key, last, current))
            last = current
