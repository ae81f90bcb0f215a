"""Filesystem semantics over the flat document store.

Directories are never stored as containers.  A path "is a directory" if a
directory marker sits at it or any document exists below it at a segment
boundary; ``ls`` derives child names from a prefix scan.

Reads go through the shared ``Cache``; every mutation goes through the
``CommandExecutor`` so its invalidation set is applied on commit.

``rm`` and ``mv`` touch one document per descendant.  When the whole write set
fits in a single transaction (``TRANSACTION_LIMIT``) it is applied atomically.
Otherwise it is applied in chunks; a failure after some chunks committed is
reported as ``PartialFailureError`` with the applied/remaining paths, never
as success.
"""

from __future__ import annotations

import copy
from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import TYPE_CHECKING, Any

import anyio
from loguru import logger

from treechat.data_runtime import cache as cache_keys
from treechat.data_runtime import paths
from treechat.data_runtime.commands import Command, CommandExecutor, Subscriber
from treechat.data_runtime.errors import (
    ConflictError,
    DataAccessError,
    DataValidationError,
    NotFoundError,
    PartialFailureError,
)
from treechat.data_runtime.models.api import BatchOperation, BatchResult, ReadWithDefault, WriteResult
from treechat.data_runtime.models.document import Document
from treechat.data_runtime.models.enums import BatchOperationType, CommandType
from treechat.data_runtime.store.base import TRANSACTION_LIMIT, DeleteMutation, PutMutation
from treechat.data_runtime.sync import Pending

if TYPE_CHECKING:
    from treechat.data_runtime.cache import Cache
    from treechat.data_runtime.client import DataClient
    from treechat.data_runtime.models.session import SessionContext
    from treechat.data_runtime.sync import SyncTracker


def _chunks(items: Sequence[Any], size: int = TRANSACTION_LIMIT) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _deepest_first(documents: list[Document]) -> list[Document]:
    return sorted(documents, key=lambda d: (-paths.depth(d.path), d.path))


class ReadRequest:
    """A read that the caller may abandon.

    After ``cancel()``, ``result()`` returns ``None`` and ``cancelled`` is
    True; the abandoned read never fills the cache.
    """

    def __init__(self, read: Callable[[], Awaitable[Any]]) -> None:
        self._read = read
        self._scope = anyio.CancelScope()
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        self.cancelled = True
        self._scope.cancel()

    async def result(self) -> Any:
        if self.cancelled:
            return None
        with self._scope:
            value = await self._read()
            self.done = True
            return value
        return None


class FileSystem:
    """Directory-style operations for one process, shared across sessions."""

    def __init__(
        self,
        client: DataClient,
        cache: Cache,
        commands: CommandExecutor,
        tracker: SyncTracker | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.commands = commands
        self.tracker = tracker

    # -- Queries ---------------------------------------------------------------

    async def exists(self, session: SessionContext, path: str) -> bool:
        """True if a document sits at *path* or anywhere below it."""
        workspace = session.workspace
        path = paths.validate_path(path, allow_root=True)
        if path == paths.ROOT:
            return True

        async def load() -> bool:
            if await self.client.read_document(workspace, path, session) is not None:
                return True
            return await self.client.has_descendants(workspace, path, session)

        return await self._cached(workspace, cache_keys.query_key(path, cache_keys.EXISTS), load)

    async def ls(self, session: SessionContext, path: str) -> list[str]:
        """Sorted names of the immediate children of *path*.

        Directory markers count as children; children holding only a
        tombstone do not.  A missing path lists as empty.
        """
        workspace = session.workspace
        path = paths.validate_path(path, allow_root=True)

        async def load() -> list[str]:
            documents = await self.client.scan(workspace, path, session)
            names = {
                paths.child_name(path, doc.path)
                for doc in documents
                if doc.path != path and not doc.is_tombstone
            }
            names.discard(None)
            exact = next((doc for doc in documents if doc.path == path), None)
            if not names and exact is not None and not exact.is_directory:
                raise ConflictError("Not a directory", path=path)
            return sorted(names)

        return await self._cached(workspace, cache_keys.query_key(path, cache_keys.LIST), load)

    async def read(self, session: SessionContext, path: str) -> Any:
        workspace = session.workspace
        path = paths.validate_path(path)
        if self.tracker is not None:
            state = self.tracker.view(workspace, path)
            if isinstance(state, Pending):
                return copy.deepcopy(state.value)
        return await self._cached(workspace, path, partial(self.client.read, workspace, path, session))

    async def read_with_default(self, session: SessionContext, path: str, default: Any) -> ReadWithDefault:
        value = await self.read(session, path)
        if value is None:
            return ReadWithDefault(value=default, was_default=True)
        return ReadWithDefault(value=value, was_default=False)

    async def read_tree(self, session: SessionContext, prefix: str) -> dict[str, Any]:
        workspace = session.workspace
        prefix = paths.validate_path(prefix, allow_root=True)
        return await self._cached(
            workspace,
            cache_keys.query_key(prefix, cache_keys.TREE),
            partial(self.client.read_tree, workspace, prefix, session),
        )

    def open_read(self, session: SessionContext, path: str) -> ReadRequest:
        return ReadRequest(partial(self.read, session, path))

    async def _cached(self, workspace: str, cache_key: str, load: Callable[[], Awaitable[Any]]) -> Any:
        entry = self.cache.get(workspace, cache_key)
        if entry is not None:
            return copy.deepcopy(entry.value)
        token = self.cache.token(workspace)
        value = await load()
        self.cache.set(workspace, cache_key, copy.deepcopy(value), token=token)
        return value

    # -- Mutations -------------------------------------------------------------

    async def write(
        self,
        session: SessionContext,
        path: str,
        value: Any,
        *,
        optimistic: bool = False,
        expected_version: int | None = None,
    ) -> WriteResult:
        """Write *value* at *path*.

        With ``optimistic`` the sync tracker shows the new value at once and
        rolls it back if the write fails.
        """
        workspace = session.workspace
        path = paths.validate_path(path)
        update_id = None
        if optimistic and self.tracker is not None:
            # What a failed write rolls back to: the stored value, not the masked one.
            previous = await self._cached(workspace, path, partial(self.client.read, workspace, path, session))
            update_id = self.tracker.add_optimistic_update(workspace, path, value, previous=previous)
        return await self.commands.execute(
            Command.write(path, value),
            session,
            partial(self.client.write, workspace, path, value, session, expected_version=expected_version),
            update_id=update_id,
        )

    async def batch(
        self,
        session: SessionContext,
        operations: Sequence[BatchOperation | dict[str, Any]],
    ) -> list[BatchResult]:
        """Atomic batch through the data client; written paths are invalidated on commit."""
        workspace = session.workspace
        ops = self.client.parse_operations(operations)
        run = partial(self.client.batch, workspace, ops, session)
        writes = [Command.write(op.path, op.value) for op in ops if op.type == BatchOperationType.WRITE]
        if not writes:
            return await run()
        return await self.commands.execute(writes, session, run)

    async def mkdir(self, session: SessionContext, path: str) -> bool:
        """Create a directory marker.  Returns False if *path* already was a directory."""
        workspace = session.workspace
        path = paths.validate_path(path)

        async def run() -> bool:
            existing = await self.client.read_document(workspace, path, session)
            if existing is not None:
                if existing.is_directory:
                    return False
                raise ConflictError("A value already exists at this path", path=path)
            await self.client.mark_directory(workspace, path, session)
            return True

        return await self.commands.execute(Command.mkdir(path), session, run)

    async def rm(self, session: SessionContext, path: str, *, recursive: bool = True) -> list[str]:
        """Remove *path* and everything below it.  Returns removed paths, deepest first."""
        workspace = session.workspace
        path = paths.validate_path(path)

        async def run() -> list[str]:
            documents = await self.client.scan(workspace, path, session)
            if not documents:
                raise NotFoundError("No such file or directory", path=path)
            if not recursive and any(doc.path != path for doc in documents):
                raise ConflictError("Directory not empty", path=path)
            ordered = _deepest_first(documents)
            removed: list[str] = []
            for chunk in _chunks(ordered):
                try:
                    await self.client.apply(workspace, [DeleteMutation(doc.id) for doc in chunk], session)
                except DataAccessError as exc:
                    if not removed:
                        raise
                    remaining = [doc.path for doc in ordered[len(removed) :]]
                    msg = f"rm {path} stopped after removing {len(removed)} of {len(ordered)} documents"
                    raise PartialFailureError(msg, removed=removed, remaining=remaining, cause=exc.to_dict()) from exc
                removed.extend(doc.path for doc in chunk)
            logger.debug("rm {}{} removed {} documents", workspace, path, len(removed))
            return removed

        return await self.commands.execute(Command.rm(path, recursive=recursive), session, run)

    async def mv(self, session: SessionContext, path: str, target: str) -> dict[str, str]:
        """Move *path* and its descendants to *target*.  Returns old -> new paths."""
        workspace = session.workspace
        path = paths.validate_path(path)
        target = paths.validate_path(target)
        if paths.is_within(target, path):
            raise DataValidationError("Cannot move a path into itself", path=path, target=target)

        async def run() -> dict[str, str]:
            documents = await self.client.scan(workspace, path, session)
            if not documents:
                raise NotFoundError("No such file or directory", path=path)
            if await self.client.read_document(workspace, target, session) is not None or (
                await self.client.has_descendants(workspace, target, session)
            ):
                raise ConflictError("Target already exists", target=target)

            rebased = {doc.path: paths.rebase(doc.path, path, target) for doc in documents}
            for old, new in rebased.items():
                try:
                    paths.validate_path(new)
                except DataValidationError as exc:
                    raise DataValidationError(
                        f"Cannot move {old} to {new}: {exc.message}", path=old, target=new
                    ) from None

            copies = [
                self.client.make_document(
                    workspace,
                    rebased[doc.path],
                    data=doc.data,
                    kind=doc.kind,
                    actor=session,
                    previous=doc,
                )
                for doc in documents
            ]
            moved = {doc.path: new.path for doc, new in zip(documents, copies, strict=True)}
            puts = [PutMutation(new, expected_version=0) for new in copies]
            deletes = [DeleteMutation(doc.id) for doc in _deepest_first(documents)]

            if len(puts) + len(deletes) <= TRANSACTION_LIMIT:
                await self.client.apply(workspace, [*puts, *deletes], session)
                return moved

            await self._copy_all(workspace, session, puts)
            await self._delete_sources(workspace, session, path, deletes)
            return moved

        return await self.commands.execute(Command.mv(path, target), session, run)

    async def _copy_all(self, workspace: str, session: SessionContext, puts: list[PutMutation]) -> None:
        copied: list[PutMutation] = []
        for chunk in _chunks(puts):
            try:
                await self.client.apply(workspace, list(chunk), session)
            except DataAccessError:
                await self._undo_copies(workspace, session, copied)
                raise
            copied.extend(chunk)

    async def _undo_copies(self, workspace: str, session: SessionContext, copied: list[PutMutation]) -> None:
        undone = 0
        for chunk in _chunks(copied):
            try:
                await self.client.apply(workspace, [DeleteMutation(put.key) for put in chunk], session)
            except DataAccessError as exc:
                orphaned = [put.document.path for put in copied[undone:]]
                msg = f"mv failed and {len(orphaned)} copied documents could not be removed"
                raise PartialFailureError(msg, orphaned=orphaned, cause=exc.to_dict()) from exc
            undone += len(chunk)
        if copied:
            logger.warning("mv rolled back {} copied documents in {}", len(copied), workspace)

    async def _delete_sources(
        self,
        workspace: str,
        session: SessionContext,
        path: str,
        deletes: list[DeleteMutation],
    ) -> None:
        done = 0
        for chunk in _chunks(deletes):
            try:
                await self.client.apply(workspace, list(chunk), session)
            except DataAccessError as exc:
                remaining = [paths.path_from_key(workspace, d.key) for d in deletes[done:]]
                msg = f"mv {path} copied every document but {len(remaining)} sources remain"
                raise PartialFailureError(msg, remaining=remaining, cause=exc.to_dict()) from exc
            done += len(chunk)

    # -- Subscriptions and recovery --------------------------------------------

    def watch(self, pattern: str, callback: Subscriber) -> Callable[[], None]:
        """Call *callback* for committed commands on paths matching the glob *pattern*."""
        return self.commands.watch(pattern, callback)

    async def retry(self, session: SessionContext, path: str) -> Any:
        """Re-issue the last failed command for *path* unchanged."""
        workspace = session.workspace
        path = paths.validate_path(path)
        failed = self.commands.last_failure(workspace, path)
        if failed is None:
            raise NotFoundError("No failed command to retry", path=path)
        return await self.run(session, failed.command)

    async def run(self, session: SessionContext, command: Command) -> Any:
        match command.type:
            case CommandType.WRITE:
                return await self.write(session, command.path, command.value)
            case CommandType.MKDIR:
                return await self.mkdir(session, command.path)
            case CommandType.RM:
                return await self.rm(session, command.path, recursive=command.recursive)
            case CommandType.MV:
                return await self.mv(session, command.path, command.target or "")
        raise DataValidationError(f"Unknown command type: {command.type}")
