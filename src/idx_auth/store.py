"""Transaction-meta persistence for interaction-code flows.

This module introduces a *narrow* persistence interface
(:class:`TransactionStorage`) plus two implementations:

* :class:`MemoryTransactionStorage` – process-local, TTL-bounded via
  :class:`cachetools.TTLCache`.
* :class:`DiskTransactionStorage` – JSON files, shared between processes.

Every store keeps two views of the meta:

* **local** – the transaction of *this* execution context, including the last
  raw IDX response so the next step can skip an introspection.
* **shared** – keyed by ``state`` so another context (tab, process, device
  callback handler) can resume the same transaction, e.g. after following an
  email-verification link.  The shared copy never carries an IDX response.

The disk implementation follows three rules:

* **Atomicity** – writes use *temp-file + os.replace*.
* **Concurrency** – writers hold an advisory lock file.
* **Filename safety** – ``state`` values are hashed before hitting disk.

Environment variables
---------------------
IDX_STORAGE_DIR
    Base directory for persisted transactions.
    Defaults to ``~/.idx-auth/transactions`` when unset.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import replace
from hashlib import sha256
from pathlib import Path
from typing import Any, Mapping, Protocol, runtime_checkable

from cachetools import TTLCache

from idx_auth.clock import Clock, default_clock
from idx_auth.config import DEFAULT_TRANSACTION_TTL_SECONDS, IdxConfig
from idx_auth.models import TransactionMeta

_LOG = logging.getLogger("idx-auth.store")

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def _hash(text: str, length: int = 16) -> str:
    return sha256(text.encode()).hexdigest()[:length]


def _slug(text: str, max_len: int = 80) -> str:
    """Filesystem-safe slug."""
    text = (text or "").strip().lower()
    text = re.sub(r"[^a-z0-9._-]+", "-", text)
    text = re.sub(r"-{2,}", "-", text).strip("-")
    return text[:max_len] or "unknown"


def _atomic_write(path: Path, data: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


@contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.02):
    """Advisory file lock using ``os.O_EXCL`` temp-file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


def _read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    with path.open(encoding="utf-8") as fh:
        return json.load(fh)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class TransactionStorage(Protocol):
    """Minimal persistence contract for transaction meta."""

    def load(self, state: str | None = None) -> TransactionMeta | None: ...
    def save(self, meta: TransactionMeta) -> None: ...
    def save_idx_response(self, raw: Mapping[str, Any]) -> None: ...
    def clear(
        self, *, state: str | None = None, clear_shared_storage: bool = True
    ) -> None: ...


# --------------------------------------------------------------------------- #
# Memory implementation                                                       #
# --------------------------------------------------------------------------- #


class MemoryTransactionStorage(TransactionStorage):
    """Process-local storage; shared entries expire after *ttl_seconds*."""

    def __init__(
        self,
        *,
        ttl_seconds: int = DEFAULT_TRANSACTION_TTL_SECONDS,
        maxsize: int = 256,
        clock: Clock = default_clock,
    ) -> None:
        self._clock = clock
        self._local: TransactionMeta | None = None
        self._shared: TTLCache[str, TransactionMeta] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=clock
        )

    def load(self, state: str | None = None) -> TransactionMeta | None:
        local = self._local
        if local is not None and local.is_expired(clock=self._clock):
            self._local = local = None
        if state is None:
            return local
        if local is not None and local.state == state:
            return local
        return self._shared.get(state)

    def save(self, meta: TransactionMeta) -> None:
        self._local = meta
        self._shared[meta.state] = replace(meta, idx_response=None)

    def save_idx_response(self, raw: Mapping[str, Any]) -> None:
        if self._local is None:
            return
        self._local = replace(self._local, idx_response=dict(raw))

    def clear(self, *, state: str | None = None, clear_shared_storage: bool = True) -> None:
        local_state = self._local.state if self._local else None
        self._local = None
        if clear_shared_storage:
            for key in {state, local_state} - {None}:
                self._shared.pop(key, None)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskTransactionStorage(TransactionStorage):
    """JSON-file implementation of :class:`TransactionStorage`.

    *context_id* names the local slot so several processes can share one
    base directory while keeping their own current transaction.
    """

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        context_id: str = "default",
        clock: Clock = default_clock,
    ) -> None:
        self.base_dir = Path(
            base_dir
            or os.getenv("IDX_STORAGE_DIR")
            or Path.home() / ".idx-auth" / "transactions"
        ).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.context_id = context_id
        self._clock = clock

    # ---------------- paths ---------------------------------------------- #
    def _local_path(self) -> Path:
        return self.base_dir / "local" / f"{_slug(self.context_id)}.json"

    def _shared_path(self, state: str) -> Path:
        return self.base_dir / "shared" / f"{_hash(state)}.json"

    def _lock_path(self) -> Path:
        return self.base_dir / ".lock"

    def _load_path(self, path: Path) -> TransactionMeta | None:
        data = _read_json(path)
        if data is None:
            return None
        meta = TransactionMeta.from_dict(data)
        if meta.is_expired(clock=self._clock):
            path.unlink(missing_ok=True)
            return None
        return meta

    # ---------------- contract ------------------------------------------- #
    def load(self, state: str | None = None) -> TransactionMeta | None:
        local = self._load_path(self._local_path())
        if state is None:
            return local
        if local is not None and local.state == state:
            return local
        return self._load_path(self._shared_path(state))

    def save(self, meta: TransactionMeta) -> None:
        with _file_lock(self._lock_path()):
            _atomic_write(self._local_path(), meta.to_dict())
            _atomic_write(
                self._shared_path(meta.state),
                replace(meta, idx_response=None).to_dict(),
            )

    def save_idx_response(self, raw: Mapping[str, Any]) -> None:
        with _file_lock(self._lock_path()):
            local = self._load_path(self._local_path())
            if local is None:
                return
            _atomic_write(
                self._local_path(), replace(local, idx_response=dict(raw)).to_dict()
            )

    def clear(self, *, state: str | None = None, clear_shared_storage: bool = True) -> None:
        local_path = self._local_path()
        with _file_lock(self._lock_path()):
            data = _read_json(local_path)
            local_state = data.get("state") if data else None
            local_path.unlink(missing_ok=True)
            if clear_shared_storage:
                for key in {state, local_state} - {None}:
                    self._shared_path(key).unlink(missing_ok=True)

    # ---------------- maintenance ---------------------------------------- #
    def cleanup_expired(self) -> int:
        """Delete expired shared entries; returns how many were removed."""
        shared_dir = self.base_dir / "shared"
        if not shared_dir.exists():
            return 0
        removed = 0
        now = self._clock()
        for p in shared_dir.glob("*.json"):
            try:
                data = _read_json(p) or {}
            except ValueError:
                _LOG.warning("Removing unreadable transaction file %s", p.name)
                p.unlink(missing_ok=True)
                removed += 1
                continue
            ttl = int(data.get("ttl_seconds", DEFAULT_TRANSACTION_TTL_SECONDS))
            created = int(data.get("created_at", 0))
            if (now - created) > ttl:
                p.unlink(missing_ok=True)
                removed += 1
        return removed


# --------------------------------------------------------------------------- #
# Lookup helper                                                               #
# --------------------------------------------------------------------------- #

_META_CONFIG_KEYS = ("issuer", "client_id", "redirect_uri")


def is_transaction_meta_valid(meta: TransactionMeta, config: IdxConfig | None) -> bool:
    """Return *False* when *meta* was written for a different client config."""
    if config is None:
        return True
    for key in _META_CONFIG_KEYS:
        expected = getattr(config, key)
        actual = getattr(meta, key)
        if expected and actual and expected != actual:
            return False
    return True


def get_saved_transaction_meta(
    storage: TransactionStorage,
    config: IdxConfig | None = None,
    *,
    state: str | None = None,
) -> TransactionMeta | None:
    """Return the resumable meta for *state* (or the local one), if any."""
    try:
        meta = storage.load(state)
    except (OSError, ValueError, TypeError):
        _LOG.warning("Saved transaction meta could not be read", exc_info=True)
        return None
    if meta is None:
        return None
    if is_transaction_meta_valid(meta, config):
        return meta
    _LOG.warning(
        "Saved transaction meta does not match the current configuration. "
        "This may indicate that two apps are sharing a storage location."
    )
    return None
