"""Optimistic updates and save-state tracking.

A write issued through the filesystem with ``optimistic=True`` is recorded
here before the store call starts, so readers of the tracker see the new value
immediately (``Pending``).  The command executor then either confirms the
update (``Confirmed``) or rolls it back to the last known-good value
(``RolledBack``) and the failure reason stays visible until the next write to
that path.

At most one update is pending per ``(workspace, path)``.  A newer update
supersedes the older one but keeps the older one's last known-good value, so a
failure of the newer write restores what the store actually held.

Every committed command calls ``forget`` for the paths it changed, which drops
their confirmed and rolled-back state and repoints pending updates at the new
stored value.  Both maps are bounded by ``max_entries``.

Connection listeners are notified on every transition, and
``mark_reconnected`` discards every pending update for a workspace because
their outcome is unknown.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger

from treechat.data_runtime import paths
from treechat.data_runtime.cache import Cache
from treechat.data_runtime.models.document import utcnow
from treechat.data_runtime.models.enums import ConnectionState, ErrorKind, SaveState

# -- Display state -------------------------------------------------------------


@dataclass(frozen=True)
class Confirmed:
    value: Any


@dataclass(frozen=True)
class Pending:
    value: Any
    since: datetime
    update_id: str


@dataclass(frozen=True)
class RolledBack:
    reason: str
    value: Any
    error_kind: ErrorKind | None = None
    retryable: bool = False


DisplayState = Confirmed | Pending | RolledBack


@dataclass
class OptimisticUpdate:
    id: str
    workspace: str
    path: str
    value: Any
    previous: Any
    applied_at: datetime


@dataclass(frozen=True)
class SaveStatus:
    state: SaveState
    error_kind: ErrorKind | None = None
    retryable: bool = False
    message: str | None = None


ConnectionListener = Callable[[ConnectionState], None]

_Key = tuple[str, str]

_UNKNOWN: Any = object()

DEFAULT_MAX_ENTRIES = 1000


class SyncTracker:
    """In-process record of pending, confirmed and rolled-back updates."""

    def __init__(
        self,
        cache: Cache | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        self._cache = cache
        self._clock = clock
        self._max_entries = max_entries
        self._updates: dict[str, OptimisticUpdate] = {}
        self._pending: dict[_Key, OptimisticUpdate] = {}
        self._confirmed: dict[_Key, Any] = {}
        self._rolled_back: dict[_Key, RolledBack] = {}
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[ConnectionListener] = []
        self.last_sync: datetime | None = None

    # -- Optimistic updates ----------------------------------------------------

    def add_optimistic_update(self, workspace: str, path: str, value: Any, *, previous: Any = _UNKNOWN) -> str:
        """Mask reads of *path* with *value* until confirmed or rolled back.

        *previous* is the value the store holds now.  Without it the last
        confirmed or cached value is used.
        """
        key = (workspace, path)
        current = self._pending.get(key)
        if current is not None:
            previous = current.previous
        elif previous is _UNKNOWN:
            previous = self._last_known_good(key)
        update = OptimisticUpdate(
            id=uuid.uuid4().hex,
            workspace=workspace,
            path=path,
            value=value,
            previous=previous,
            applied_at=self._clock(),
        )
        self._updates[update.id] = update
        self._pending[key] = update
        self._rolled_back.pop(key, None)
        return update.id

    def confirm(self, update_id: str, value: Any = None) -> bool:
        """Record that *update_id* committed, with *value* as the stored value."""
        update = self._updates.pop(update_id, None)
        if update is None:
            return False
        key = (update.workspace, update.path)
        self._remember(self._confirmed, key, value)
        current = self._pending.get(key)
        if current is update:
            del self._pending[key]
            self._rolled_back.pop(key, None)
        elif current is not None:
            # Superseded: the newer update now falls back to this value.
            current.previous = value
        if self._cache is not None:
            self._cache.set(update.workspace, update.path, value)
        self.last_sync = self._clock()
        return True

    def rollback_optimistic_update(
        self,
        update_id: str,
        reason: str,
        error_kind: ErrorKind | None = None,
        *,
        retryable: bool = False,
    ) -> bool:
        """Restore last known-good for *update_id*'s path.  False if unknown."""
        update = self._updates.pop(update_id, None)
        if update is None:
            return False
        key = (update.workspace, update.path)
        if self._pending.get(key) is update:
            del self._pending[key]
            self._remember(
                self._rolled_back,
                key,
                RolledBack(reason=reason, value=update.previous, error_kind=error_kind, retryable=retryable),
            )
            logger.warning("Rolled back optimistic update {}{}: {}", update.workspace, update.path, reason)
        return True

    def rollback_all_optimistic_updates(self, workspace: str, reason: str = "Connection lost") -> int:
        ids = [u.id for u in self._updates.values() if u.workspace == workspace]
        pending = {u.id for u in self._pending.values() if u.workspace == workspace}
        for update_id in ids:
            self.rollback_optimistic_update(update_id, reason, retryable=True)
        return len(pending)

    def pending(self, workspace: str | None = None) -> list[OptimisticUpdate]:
        return [u for u in self._pending.values() if workspace is None or u.workspace == workspace]

    def forget(self, workspace: str, path: str, *, recursive: bool = False, value: Any = None) -> None:
        """Drop what is known about *path* after a committed change to it.

        Pending updates in scope fall back to *value*, the value the store now
        holds at the exact path (``None`` below it or after a removal).
        """

        def in_scope(key: _Key) -> bool:
            return key[0] == workspace and (key[1] == path or (recursive and paths.is_within(key[1], path)))

        for mapping in (self._confirmed, self._rolled_back):
            for key in [k for k in mapping if in_scope(k)]:
                del mapping[key]
        for key, update in self._pending.items():
            if in_scope(key):
                update.previous = value if key[1] == path else None

    def _remember(self, mapping: dict[_Key, Any], key: _Key, value: Any) -> None:
        mapping.pop(key, None)
        mapping[key] = value
        while len(mapping) > self._max_entries:
            del mapping[next(iter(mapping))]

    # -- Views -----------------------------------------------------------------

    def view(self, workspace: str, path: str) -> DisplayState | None:
        """What a reader should display for *path*; ``None`` if nothing is known."""
        key = (workspace, path)
        if key in self._pending:
            update = self._pending[key]
            return Pending(value=update.value, since=update.applied_at, update_id=update.id)
        if key in self._rolled_back:
            return self._rolled_back[key]
        if key in self._confirmed:
            return Confirmed(self._confirmed[key])
        return None

    def masked_value(self, workspace: str, path: str, default: Any = None) -> Any:
        state = self.view(workspace, path)
        return default if state is None else state.value

    def save_status(self, workspace: str, path: str) -> SaveStatus | None:
        state = self.view(workspace, path)
        match state:
            case Pending():
                return SaveStatus(SaveState.SAVING)
            case RolledBack(reason=reason, error_kind=kind, retryable=retryable):
                return SaveStatus(SaveState.SAVE_FAILED, error_kind=kind, retryable=retryable, message=reason)
            case Confirmed():
                return SaveStatus(SaveState.SAVED)
        return None

    def _last_known_good(self, key: _Key) -> Any:
        if key in self._confirmed:
            return self._confirmed[key]
        if self._cache is not None:
            entry = self._cache.get(*key)
            if entry is not None:
                return entry.value
        return None

    # -- Connection ------------------------------------------------------------

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    def on_connection_change(self, listener: ConnectionListener) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def set_connection_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info("Connection state {} -> {}", self._state, state)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Connection listener failed")

    def mark_reconnected(self, workspace: str) -> int:
        """Discard pending updates and cached state after a reconnect."""
        discarded = self.rollback_all_optimistic_updates(workspace, reason="Reconnected before save completed")
        for key in [k for k in self._confirmed if k[0] == workspace]:
            del self._confirmed[key]
        if self._cache is not None:
            self._cache.clear(workspace)
        self.set_connection_state(ConnectionState.CONNECTED)
        self.last_sync = self._clock()
        return discarded
