"""Token lifecycle management: storage, expiry timers, renewal and sync.

Expiry timers are scheduled on the running asyncio loop; the delay is
computed from the injected :class:`~idx_auth.clock.Clock`, so tests drive
expiry by moving a fake clock rather than sleeping.

Events (see :mod:`idx_auth.tokens.events`)::

    added    (key, token)
    renewed  (key, fresh_token, old_token)
    removed  (key, token_or_None)
    expired  (key, token)
    error    (exc)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Callable, Final, Mapping

from idx_auth.clock import Clock, default_clock, seconds_until
from idx_auth.config import TokenManagerOptions
from idx_auth.errors import AuthSdkError, OAuthError
from idx_auth.log_utils import get_auth_logger
from idx_auth.models import (
    ACCESS_TOKEN_STORAGE_KEY,
    ID_TOKEN_STORAGE_KEY,
    REFRESH_TOKEN_STORAGE_KEY,
    TOKEN_KINDS,
    IDToken,
    RefreshToken,
    Token,
    TokenKind,
    Tokens,
    serialize_token_map,
    token_kind,
    tokens_from_storage_value,
    validate_token,
)
from idx_auth.tokens.events import (
    EVENT_ADDED,
    EVENT_ERROR,
    EVENT_EXPIRED,
    EVENT_REMOVED,
    EVENT_RENEWED,
    Handler,
    TokenEventEmitter,
)
from idx_auth.tokens.storage import (
    FileTokenStorage,
    MemoryTokenStorage,
    StorageChange,
    TokenStorage,
    watch_storage,
)

if TYPE_CHECKING:  # pragma: no cover
    from idx_auth.idx.transport import Transport

_LOG = logging.getLogger("idx-auth.tokens.manager")

_DEFAULT_KEYS: Final[dict[str, str]] = {
    "id_token": ID_TOKEN_STORAGE_KEY,
    "access_token": ACCESS_TOKEN_STORAGE_KEY,
    "refresh_token": REFRESH_TOKEN_STORAGE_KEY,
}
# renewal throttling: at most this many attempts within the window
_RENEW_BURST: Final[int] = 10
_RENEW_WINDOW_SECONDS: Final[float] = 30.0

TokenCallback = Callable[[str, Token], Any]


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class TokenManager:
    """Store tokens and keep them fresh.

    Parameters
    ----------
    storage
        Where tokens live; defaults to :class:`MemoryTokenStorage`.
    transport
        Used for renewal (refresh grant or plain re-authentication).
    options
        Behaviour switches, see :class:`~idx_auth.config.TokenManagerOptions`.
    clock
        Time source for expiry and throttling decisions.
    """

    def __init__(
        self,
        storage: TokenStorage | None = None,
        transport: Transport | None = None,
        options: TokenManagerOptions | None = None,
        *,
        clock: Clock = default_clock,
        emitter: TokenEventEmitter | None = None,
    ) -> None:
        self.storage: TokenStorage = storage or MemoryTokenStorage()
        self.transport = transport
        self.options = options or TokenManagerOptions()
        self.clock = clock
        self.emitter = emitter or TokenEventEmitter()

        self._expire_timers: dict[str, asyncio.TimerHandle] = {}
        self._renew_tasks: dict[str, asyncio.Task] = {}
        self._renew_times: deque[float] = deque()
        self._storage_handles: set[asyncio.TimerHandle] = set()
        self._watch_task: asyncio.Task | None = None
        self._watch_stop: asyncio.Event | None = None

        self.on(EVENT_EXPIRED, self._on_token_expired)

    # ------------------------------------------------------------------ #
    # events                                                             #
    # ------------------------------------------------------------------ #
    def on(self, event: str, handler: Handler) -> None:
        self.emitter.on(event, handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        self.emitter.off(event, handler)

    # ------------------------------------------------------------------ #
    # expiry timers                                                      #
    # ------------------------------------------------------------------ #
    def _expire_time(self, token: Token) -> float:
        return (token.expires_at or 0) - self.options.expire_early_seconds

    def has_expired(self, token: Token) -> bool:
        return self._expire_time(token) <= self.clock()

    def _emit_expired(self, key: str, token: Token) -> None:
        self._expire_timers.pop(key, None)
        self.emitter.emit(EVENT_EXPIRED, key, token)

    def _clear_expire_timer(self, key: str) -> None:
        handle = self._expire_timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _clear_expire_timers(self) -> None:
        for key in list(self._expire_timers):
            self._clear_expire_timer(key)

    def _set_expire_timer(self, key: str, token: Token) -> None:
        self._clear_expire_timer(key)
        if token.expires_at is None:
            return
        loop = _running_loop()
        if loop is None:
            _LOG.debug("No running loop, expiry timer for %s not scheduled", key)
            return
        delay = seconds_until(self._expire_time(token), clock=self.clock)
        self._expire_timers[key] = loop.call_later(delay, self._emit_expired, key, token)

    def _set_expire_timers(self) -> None:
        try:
            tokens = self.storage.get_storage()
        except (OSError, ValueError) as exc:
            self.emitter.emit(EVENT_ERROR, exc)
            return
        for key, token in tokens.items():
            self._set_expire_timer(key, token)

    def _reset_expire_timers(self) -> None:
        self._clear_expire_timers()
        self._set_expire_timers()

    def _on_token_expired(self, key: str, token: Token) -> None:
        if self.options.auto_renew:
            if self._should_throttle_renew():
                _LOG.warning("Throttling renewal of %s", key)
                self.emitter.emit(
                    EVENT_ERROR, AuthSdkError("Too many token renew requests", token_key=key)
                )
                return
            try:
                task = self.renew(key)
            except AuthSdkError:
                _LOG.debug("Expired token %s is no longer stored", key)
                return
            # failures already reached listeners through the "error" event
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
        elif self.options.auto_remove:
            self.remove(key)

    def _should_throttle_renew(self) -> bool:
        self._renew_times.append(self.clock())
        if len(self._renew_times) >= _RENEW_BURST:
            first = self._renew_times.popleft()
            return self._renew_times[-1] - first < _RENEW_WINDOW_SECONDS
        return False

    # ------------------------------------------------------------------ #
    # storage access                                                     #
    # ------------------------------------------------------------------ #
    def _tokens_by_kind(self) -> Tokens:
        found: dict[str, Token] = {}
        for token in self.storage.get_storage().values():
            kind = token_kind(token)
            if kind is not None:
                found[kind] = token
        return Tokens(**found)

    def get_storage_key_by_type(self, kind: TokenKind) -> str | None:
        """Return the key under which a token of *kind* is stored, if any."""
        for key, token in self.storage.get_storage().items():
            if token_kind(token) == kind:
                return key
        return None

    def get_options(self) -> TokenManagerOptions:
        return replace(self.options)

    async def get(self, key: str) -> Token | None:
        return self.storage.get_storage().get(key)

    async def get_tokens(self) -> Tokens:
        return self._tokens_by_kind()

    def _add(self, key: str, token: Token) -> None:
        validate_token(token)
        tokens = self.storage.get_storage()
        tokens[key] = token
        self.storage.set_storage(tokens)
        self.emitter.emit(EVENT_ADDED, key, token)
        self._set_expire_timer(key, token)

    def add(self, key: str, token: Token) -> None:
        """Validate and store *token* under *key*.

        Prefer :meth:`set_tokens` for a whole token set: it writes storage
        once instead of once per token.
        """
        self._add(key, token)

    def set_tokens(
        self,
        tokens: Tokens | Mapping[str, Token | None],
        callbacks: Mapping[str, TokenCallback] | None = None,
    ) -> None:
        """Replace the stored id/access/refresh set in a single write."""
        if not isinstance(tokens, Tokens):
            tokens = Tokens(**{k: tokens.get(k) for k in TOKEN_KINDS})
        callbacks = callbacks or {}
        for kind in ("id_token", "access_token"):
            token = tokens.get(kind)
            if token is not None:
                validate_token(token)

        previous = self._tokens_by_kind()
        keys = {
            kind: self.get_storage_key_by_type(kind) or _DEFAULT_KEYS[kind]
            for kind in TOKEN_KINDS
        }
        self.storage.set_storage(
            {keys[kind]: tokens.get(kind) for kind in TOKEN_KINDS if tokens.get(kind)}
        )

        for kind in TOKEN_KINDS:
            key, callback = keys[kind], callbacks.get(kind)
            token, old = tokens.get(kind), previous.get(kind)
            if token is not None:
                self._set_expire_timer(key, token)
                if token == old:
                    continue
                self.emitter.emit(EVENT_ADDED, key, token)
                if callback:
                    callback(key, token)
            elif old is not None:
                self._clear_expire_timer(key)
                self.emitter.emit(EVENT_REMOVED, key, old)
                if callback:
                    callback(key, old)

    def remove(self, key: str) -> None:
        self._clear_expire_timer(key)
        tokens = self.storage.get_storage()
        removed = tokens.pop(key, None)
        self.storage.set_storage(tokens)
        self.emitter.emit(EVENT_REMOVED, key, removed)

    def clear(self) -> None:
        self._clear_expire_timers()
        self.storage.clear_storage()

    # ------------------------------------------------------------------ #
    # renewal                                                            #
    # ------------------------------------------------------------------ #
    def renew(self, key: str) -> asyncio.Task:
        """Renew the token stored under *key*.

        Returns an awaitable task; concurrent callers for the same key share
        one task and therefore one network request.

        Raises
        ------
        AuthSdkError
            Immediately, if nothing is stored under *key*.
        """
        pending = self._renew_tasks.get(key)
        if pending is not None and not pending.done():
            return pending

        token = self.storage.get_storage().get(key)
        if token is None:
            raise AuthSdkError(f"The token manager has no token for the key: {key}", token_key=key)

        self._clear_expire_timer(key)
        task = asyncio.get_running_loop().create_task(self._renew(key, token))
        self._renew_tasks[key] = task

        def _forget(done: asyncio.Task) -> None:
            if self._renew_tasks.get(key) is done:
                del self._renew_tasks[key]

        task.add_done_callback(_forget)
        return task

    async def _renew_token(self, token: Token) -> Token:
        if self.transport is None:
            raise AuthSdkError("A transport is required to renew tokens")
        refresh = self._tokens_by_kind().refresh_token
        if refresh is None:
            return await self.transport.renew_token(token)

        fresh = await self.transport.renew_tokens_with_refresh(
            scopes=token.scopes, refresh_token=refresh
        )
        if fresh.refresh_token is not None and not isinstance(token, RefreshToken):
            self._store_rotated_refresh_token(refresh, fresh.refresh_token)
        if isinstance(token, IDToken):
            picked = fresh.id_token
        elif isinstance(token, RefreshToken):
            picked = fresh.refresh_token
        else:
            picked = fresh.access_token
        if picked is None:
            raise AuthSdkError("Renewed token set does not contain the requested token")
        return picked

    def _store_rotated_refresh_token(self, old: RefreshToken, fresh: RefreshToken) -> None:
        if fresh.refresh_token == old.refresh_token:
            return
        key = self.get_storage_key_by_type("refresh_token") or REFRESH_TOKEN_STORAGE_KEY
        tokens = self.storage.get_storage()
        tokens[key] = fresh
        self.storage.set_storage(tokens)
        self._set_expire_timer(key, fresh)
        self.emitter.emit(EVENT_RENEWED, key, fresh, old)

    async def _renew(self, key: str, token: Token) -> Token:
        log = get_auth_logger(base_logger_name="idx-auth.tokens.manager", token_key=key)
        try:
            fresh = await self._renew_token(token)
        except (OAuthError, AuthSdkError) as exc:
            log.info("Renewal rejected: %s", exc)
            self._handle_renew_failure(key, exc)
            raise

        old = self.storage.get_storage().get(key)
        self.remove(key)
        self._add(key, fresh)
        self.emitter.emit(EVENT_RENEWED, key, fresh, old)
        log.info("Renewed token")
        return fresh

    def _handle_renew_failure(self, key: str, exc: OAuthError | AuthSdkError) -> None:
        tokens = self.storage.get_storage()
        current = tokens.get(key)
        if current is not None and self.has_expired(current):
            del tokens[key]
            self._clear_expire_timer(key)
            self.storage.set_storage(tokens)
            self.emitter.emit(EVENT_REMOVED, key, current)
        else:
            # already gone, most likely removed by another context
            self.emitter.emit(EVENT_REMOVED, key, None)
        exc.token_key = key
        self.emitter.emit(EVENT_ERROR, exc)

    # ------------------------------------------------------------------ #
    # cross-context synchronisation                                      #
    # ------------------------------------------------------------------ #
    def handle_storage_change(
        self, key: str | None, new_value: str | None, old_value: str | None
    ) -> None:
        """React to another context rewriting the token storage.

        ``key=None`` means the storage was cleared wholesale and is always
        handled; other keys are ignored unless they are the configured
        storage key and the value actually changed.
        """
        if key and (key != self.options.storage_key or new_value == old_value):
            return
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._storage_handles.discard(handle)
            self._sync_from_storage(new_value, old_value)

        handle = loop.call_later(self.options.storage_event_delay, _fire)
        self._storage_handles.add(handle)

    def on_storage_change(self, change: StorageChange) -> None:
        self.handle_storage_change(change.key, change.new_value, change.old_value)

    def _sync_from_storage(self, new_value: str | None, old_value: str | None) -> None:
        self._reset_expire_timers()
        old_raw = tokens_from_storage_value(old_value)
        new_raw = tokens_from_storage_value(new_value)
        current = self.storage.get_storage()
        for key, data in new_raw.items():
            if json.dumps(old_raw.get(key), sort_keys=True) != json.dumps(data, sort_keys=True):
                self.emitter.emit(EVENT_ADDED, key, current.get(key, data))
        for key, data in old_raw.items():
            if key not in new_raw:
                self.emitter.emit(EVENT_REMOVED, key, data)

    # ------------------------------------------------------------------ #
    # lifecycle                                                          #
    # ------------------------------------------------------------------ #
    def start(self, *, watch_interval: float | None = None) -> None:
        """Schedule timers for stored tokens; optionally watch file storage."""
        self._set_expire_timers()
        if watch_interval and isinstance(self.storage, FileTokenStorage):
            self._watch_stop = asyncio.Event()
            self._watch_task = asyncio.get_running_loop().create_task(
                watch_storage(
                    self.storage,
                    self.on_storage_change,
                    interval=watch_interval,
                    stop_event=self._watch_stop,
                )
            )

    def stop(self) -> None:
        self._clear_expire_timers()
        for handle in list(self._storage_handles):
            handle.cancel()
        self._storage_handles.clear()
        if self._watch_stop is not None:
            self._watch_stop.set()
        self._watch_task = None
        self._watch_stop = None

    def serialize(self) -> str:
        """Current storage content in its persisted form."""
        return serialize_token_map(self.storage.get_storage())
