"""Mutating commands and cache invalidation.

Every mutation (write, mkdir, rm, mv) goes through ``CommandExecutor.execute``
so that a committed change always invalidates the cache entries it could have
made stale.  What to invalidate is decided by ``affected_cache_keys``, a pure
function of the command alone -- it never looks at store or cache state.

Lifecycle of one execution::

    CREATED -> EXECUTING -> COMMITTED   invalidate, confirm optimistic update, notify
                         -> FAILED      roll back optimistic update, notify, re-raise

No invalidation happens on failure since the store did not change, except
for ``PartialFailureError``, where some of the change already landed.
"""

from __future__ import annotations

import inspect
import re
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

from loguru import logger

from treechat.data_runtime import paths
from treechat.data_runtime.errors import DataAccessError, DataValidationError, PartialFailureError
from treechat.data_runtime.models.document import utcnow
from treechat.data_runtime.models.enums import CommandStatus, CommandType

if TYPE_CHECKING:
    from treechat.data_runtime.cache import Cache
    from treechat.data_runtime.models.session import SessionContext
    from treechat.data_runtime.sync import SyncTracker

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    """A requested mutation.  ``target`` is used by mv, ``value`` by write."""

    type: CommandType
    path: str
    target: str | None = None
    value: Any = None
    recursive: bool = True

    def __post_init__(self) -> None:
        if self.type == CommandType.MV and not self.target:
            raise DataValidationError("mv requires a target path", path=self.path)

    @classmethod
    def write(cls, path: str, value: Any) -> Command:
        return cls(CommandType.WRITE, path, value=value)

    @classmethod
    def mkdir(cls, path: str) -> Command:
        return cls(CommandType.MKDIR, path)

    @classmethod
    def rm(cls, path: str, *, recursive: bool = True) -> Command:
        return cls(CommandType.RM, path, recursive=recursive)

    @classmethod
    def mv(cls, path: str, target: str) -> Command:
        return cls(CommandType.MV, path, target=target)


@dataclass(frozen=True)
class InvalidationTarget:
    """Invalidate *path* (and with ``recursive`` everything below it)."""

    path: str
    recursive: bool = False


def affected_cache_keys(command: Command) -> list[InvalidationTarget]:
    """Cache scopes a committed *command* could have made stale.

    Parent listings, tree reads and existence checks of ancestors are covered
    by ``Cache.invalidate_path`` for every target.
    """
    match command.type:
        case CommandType.WRITE | CommandType.MKDIR:
            return [InvalidationTarget(command.path)]
        case CommandType.RM:
            return [InvalidationTarget(command.path, recursive=True)]
        case CommandType.MV:
            return [
                InvalidationTarget(command.path, recursive=True),
                InvalidationTarget(command.target or command.path, recursive=True),
            ]
    raise DataValidationError(f"Unknown command type: {command.type}")


@dataclass
class CommandExecution:
    """One run of a command (or the writes of one batch) to its terminal state."""

    commands: tuple[Command, ...]
    workspace: str
    actor_id: str | None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: CommandStatus = CommandStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    result: Any = None
    error: Exception | None = None
    update_id: str | None = None

    @property
    def command(self) -> Command:
        return self.commands[0]

    @property
    def paths(self) -> list[str]:
        found: list[str] = []
        for command in self.commands:
            found.extend(p for p in (command.path, command.target) if p and p not in found)
        return found


@dataclass(frozen=True)
class CommandEvent:
    """Delivered to subscribers once an execution reaches a terminal state."""

    execution: CommandExecution

    @property
    def command(self) -> Command:
        return self.execution.command

    @property
    def workspace(self) -> str:
        return self.execution.workspace

    @property
    def status(self) -> CommandStatus:
        return self.execution.status

    @property
    def committed(self) -> bool:
        return self.execution.status == CommandStatus.COMMITTED

    @property
    def paths(self) -> list[str]:
        return self.execution.paths


Subscriber = Callable[[CommandEvent], Awaitable[None] | None]

# ---------------------------------------------------------------------------
# Glob patterns for watch()
# ---------------------------------------------------------------------------


def compile_glob(pattern: str) -> re.Pattern[str]:
    """``*`` matches within one segment, ``**`` matches any number of segments."""
    regex = ""
    for segment in paths.split_path(pattern):
        if segment == "**":
            regex += "(?:/[^/]+)*"
        else:
            regex += "/" + "".join("[^/]*" if ch == "*" else re.escape(ch) for ch in segment)
    return re.compile(f"^{regex or '/'}$")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class CommandExecutor:
    """Runs commands and keeps the cache and sync tracker consistent with them."""

    def __init__(self, cache: Cache, tracker: SyncTracker | None = None, max_failures: int = 1000) -> None:
        self._cache = cache
        self._tracker = tracker
        self._subscribers: list[Subscriber] = []
        self._failed: dict[tuple[str, str], CommandExecution] = {}
        self._max_failures = max_failures

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register *subscriber* for every terminal event; returns an unsubscribe function."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def watch(self, pattern: str, callback: Subscriber) -> Callable[[], None]:
        """Subscribe to committed commands touching a path that matches *pattern*."""
        regex = compile_glob(pattern)

        async def on_event(event: CommandEvent) -> None:
            if event.committed and any(regex.match(p) for p in event.paths):
                result = callback(event)
                if inspect.isawaitable(result):
                    await result

        return self.subscribe(on_event)

    def last_failure(self, workspace: str, path: str) -> CommandExecution | None:
        """Most recent failed single-command execution for *path* not yet superseded."""
        return self._failed.get((workspace, path))

    async def execute(
        self,
        command: Command | Sequence[Command],
        session: SessionContext,
        run: Callable[[], Awaitable[T]],
        *,
        update_id: str | None = None,
    ) -> T:
        """Run *run* as the store effect of *command*.

        A sequence of commands is treated as one unit (the writes of a batch):
        one execution, one event, the union of their invalidation targets.
        """
        commands = (command,) if isinstance(command, Command) else tuple(command)
        if not commands:
            raise DataValidationError("At least one command is required")
        workspace = session.workspace
        execution = CommandExecution(commands, workspace, session.actor_id, update_id=update_id)
        execution.status = CommandStatus.EXECUTING
        logger.debug("{} {}{} started", execution.command.type, workspace, execution.command.path)
        try:
            result = await run()
        except Exception as exc:
            execution.status = CommandStatus.FAILED
            execution.error = exc
            execution.finished_at = utcnow()
            if len(commands) == 1:
                self._record_failure(execution)
            if isinstance(exc, PartialFailureError):
                # Part of the change reached the store.
                self._invalidate(execution)
            self._on_failure(execution, exc)
            await self._notify(CommandEvent(execution))
            raise

        execution.status = CommandStatus.COMMITTED
        execution.result = result
        execution.finished_at = utcnow()
        self._invalidate(execution)
        if update_id is not None and self._tracker is not None:
            self._tracker.confirm(update_id, execution.command.value)
        logger.debug("{} {}{} committed", execution.command.type, workspace, execution.command.path)
        await self._notify(CommandEvent(execution))
        return result

    def _invalidate(self, execution: CommandExecution) -> None:
        workspace = execution.workspace
        for command in execution.commands:
            for target in affected_cache_keys(command):
                self._cache.invalidate_path(workspace, target.path, recursive=target.recursive)
                if self._tracker is not None:
                    # Only a write leaves a value at its own path.
                    value = command.value if target.path == command.path else None
                    self._tracker.forget(workspace, target.path, recursive=target.recursive, value=value)
                if execution.status == CommandStatus.COMMITTED:
                    self._drop_failures(workspace, target)

    def _record_failure(self, execution: CommandExecution) -> None:
        key = (execution.workspace, execution.command.path)
        self._failed.pop(key, None)
        self._failed[key] = execution
        while len(self._failed) > self._max_failures:
            del self._failed[next(iter(self._failed))]

    def _drop_failures(self, workspace: str, target: InvalidationTarget) -> None:
        """A committed change supersedes earlier failures in its scope."""
        for key in list(self._failed):
            ws, path = key
            if ws == workspace and (path == target.path or (target.recursive and paths.is_within(path, target.path))):
                del self._failed[key]

    def _on_failure(self, execution: CommandExecution, exc: Exception) -> None:
        command = execution.command
        if isinstance(exc, DataAccessError):
            logger.warning("{} {}{} failed: {} ({})", command.type, execution.workspace, command.path, exc.kind, exc)
            kind, retryable = exc.kind, exc.retryable
        else:
            logger.warning("{} {}{} failed: {!r}", command.type, execution.workspace, command.path, exc)
            kind, retryable = None, False
        if execution.update_id is not None and self._tracker is not None:
            self._tracker.rollback_optimistic_update(execution.update_id, str(exc), kind, retryable=retryable)

    async def _notify(self, event: CommandEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Command subscriber failed for {}", event.command.path)
