"""Path-addressed data client.

The consumer-facing API over a ``DocumentStore``: read, read_with_default,
read_tree, write, batch.  Every call is scoped to one workspace and checked
against the caller's ``SessionContext`` before any validation or store access.

Failure semantics:

- malformed input -> ``DataValidationError`` immediately;
- workspace mismatch -> ``AccessDeniedError`` immediately, never retried;
- transient store failures and per-attempt timeouts are retried with bounded
  exponential backoff, then surfaced as ``DataTimeoutError``.

Every put is conditioned on the version read just before it, so ``version``
only ever increases.  A plain write that loses a race re-reads and tries again
(last commit wins).  A batch that loses a race fails as a whole with
``TransactionFailedError``.

The client holds no cache.  Caching and invalidation live one layer up, in
the filesystem and command layer, so that every mutation path invalidates.
"""

from __future__ import annotations

import json
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import anyio
import pydantic
from loguru import logger

from treechat.data_runtime import paths
from treechat.data_runtime.errors import (
    BatchSizeExceededError,
    ConflictError,
    DataAccessError,
    DataTimeoutError,
    DataValidationError,
    TooManyItemsError,
    TransientStoreError,
)
from treechat.data_runtime.models.api import BatchOperation, BatchResult, ReadWithDefault, WriteResult
from treechat.data_runtime.models.document import Document, utcnow
from treechat.data_runtime.models.enums import BatchOperationType, DocumentKind
from treechat.data_runtime.store.base import TRANSACTION_LIMIT, Mutation, PutMutation, check_transaction

if TYPE_CHECKING:
    from treechat.data_runtime.models.session import SessionContext
    from treechat.data_runtime.store.base import DocumentStore

T = TypeVar("T")

DEFAULT_MAX_TREE_ITEMS = 1000
DEFAULT_MAX_VALUE_BYTES = 350 * 1024
MAX_WRITE_RACES = 5


def _version_of(document: Document | None) -> int:
    return document.version if document is not None else 0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.  Each attempt gets its own timeout."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    attempt_timeout: float = 10.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt + 1`` (``attempt`` is 0-based)."""
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5  # noqa: S311
        return delay


class DataClient:
    """Workspace-scoped document access with retry and per-call timeouts."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        retry: RetryPolicy | None = None,
        max_tree_items: int = DEFAULT_MAX_TREE_ITEMS,
        max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._retry = retry or RetryPolicy()
        self._max_tree_items = max_tree_items
        self._max_value_bytes = max_value_bytes
        self._clock = clock

    @property
    def max_tree_items(self) -> int:
        return self._max_tree_items

    # -- Read ------------------------------------------------------------------

    async def read_document(self, workspace: str, path: str, actor: SessionContext) -> Document | None:
        """Raw document at *path* (metadata included), or ``None``."""
        workspace, path = self._check(workspace, path, actor)
        return await self._call("read", self._store.get, paths.to_key(workspace, path))

    async def read(self, workspace: str, path: str, actor: SessionContext) -> Any:
        """Value at *path*.  Absent documents and directory markers yield ``None``."""
        document = await self.read_document(workspace, path, actor)
        logger.debug("read {}{} (found={})", workspace, path, document is not None)
        return document.value if document is not None else None

    async def read_with_default(
        self,
        workspace: str,
        path: str,
        default: Any,
        actor: SessionContext,
    ) -> ReadWithDefault:
        value = await self.read(workspace, path, actor)
        if value is None:
            return ReadWithDefault(value=default, was_default=True)
        return ReadWithDefault(value=value, was_default=False)

    async def scan(
        self,
        workspace: str,
        prefix: str,
        actor: SessionContext,
    ) -> list[Document]:
        """Every document at *prefix* or below it at a segment boundary.

        Directory markers and tombstones are included.  Raises
        ``TooManyItemsError`` past ``max_tree_items`` rather than truncating.
        """
        workspace, prefix = self._check(workspace, prefix, actor, allow_root=True)
        limit = self._max_tree_items + 1
        documents = await self._call(
            "scan",
            self._store.query_by_prefix,
            paths.descendant_prefix(workspace, prefix),
            limit=limit,
        )
        if prefix != paths.ROOT:
            exact = await self._call("scan", self._store.get, paths.to_key(workspace, prefix))
            if exact is not None:
                documents.insert(0, exact)
        if len(documents) > self._max_tree_items:
            msg = f"More than {self._max_tree_items} documents under {prefix}; narrow the prefix"
            raise TooManyItemsError(msg, prefix=prefix, limit=self._max_tree_items)
        return documents

    async def read_tree(self, workspace: str, prefix: str, actor: SessionContext) -> dict[str, Any]:
        """Map of full path -> value for every value document under *prefix*.

        ``/ab`` never matches prefix ``/a``.  Tombstones and directory markers
        are left out.
        """
        documents = await self.scan(workspace, prefix, actor)
        tree = {
            doc.path: doc.data
            for doc in documents
            if doc.kind == DocumentKind.VALUE and doc.data is not None
        }
        logger.debug("read_tree {}{} -> {} items", workspace, prefix, len(tree))
        return tree

    async def has_descendants(self, workspace: str, path: str, actor: SessionContext) -> bool:
        workspace, path = self._check(workspace, path, actor, allow_root=True)
        found = await self._call(
            "scan",
            self._store.query_by_prefix,
            paths.descendant_prefix(workspace, path),
            limit=1,
        )
        return bool(found)

    # -- Write -----------------------------------------------------------------

    async def write(
        self,
        workspace: str,
        path: str,
        value: Any,
        actor: SessionContext,
        *,
        expected_version: int | None = None,
    ) -> WriteResult:
        """Store *value* at *path*.  ``None`` writes a tombstone, not a delete.

        ``expected_version`` enables an optimistic-concurrency check (``0``
        means the document must not exist yet).
        """
        workspace, path = self._check(workspace, path, actor)
        self._check_value(value, path)
        return await self._put(workspace, path, value, DocumentKind.VALUE, actor, expected_version)

    async def mark_directory(self, workspace: str, path: str, actor: SessionContext) -> WriteResult:
        """Write a directory marker at *path*."""
        workspace, path = self._check(workspace, path, actor)
        return await self._put(workspace, path, None, DocumentKind.DIRECTORY, actor, None)

    async def _put(
        self,
        workspace: str,
        path: str,
        data: Any,
        kind: DocumentKind,
        actor: SessionContext,
        expected_version: int | None,
    ) -> WriteResult:
        key = paths.to_key(workspace, path)
        races = 0
        while True:
            existing = await self._call("write", self._store.get, key)
            document = self.make_document(workspace, path, data=data, kind=kind, actor=actor, previous=existing)
            # Conditioned on the version just read so versions stay monotonic.
            condition = expected_version if expected_version is not None else _version_of(existing)
            try:
                await self._call("write", self._store.put, document, expected_version=condition)
            except ConflictError:
                races += 1
                if expected_version is not None or races >= MAX_WRITE_RACES:
                    raise
                logger.debug("write {}{} raced a concurrent writer; re-reading", workspace, path)
                continue
            logger.debug("write {}{} (kind={}, version={})", workspace, path, kind, document.version)
            return WriteResult(version=document.version, created=existing is None)

    def make_document(
        self,
        workspace: str,
        path: str,
        *,
        data: Any,
        kind: DocumentKind,
        actor: SessionContext,
        previous: Document | None = None,
    ) -> Document:
        """Build the next stored version of a document.

        ``created_at``/``created_by`` carry over from *previous*;
        ``updated_at``/``updated_by`` are refreshed.
        """
        now = self._clock()
        return Document(
            id=paths.to_key(workspace, path),
            workspace_id=workspace,
            path=path,
            kind=kind,
            data=data,
            version=previous.version + 1 if previous is not None else 1,
            created_at=previous.created_at if previous is not None else now,
            created_by=previous.created_by if previous is not None else actor.actor_id,
            updated_at=now,
            updated_by=actor.actor_id,
        )

    # -- Batch -----------------------------------------------------------------

    async def batch(
        self,
        workspace: str,
        operations: Sequence[BatchOperation | dict[str, Any]],
        actor: SessionContext,
    ) -> list[BatchResult]:
        """Run 1..25 read/write operations; all writes commit atomically or none do.

        Every operation is validated before the store is contacted.  Reads
        observe pre-batch state.  Results come back in request order.
        """
        workspace = self._check_workspace(workspace, actor)
        ops = self.parse_operations(operations)

        # Pre-batch snapshot of every referenced path.
        before: dict[str, Document | None] = {}
        for op in ops:
            if op.path not in before:
                before[op.path] = await self._call("batch", self._store.get, paths.to_key(workspace, op.path))

        results: list[BatchResult] = []
        mutations: list[Mutation] = []
        for index, op in enumerate(ops):
            existing = before[op.path]
            if op.type == BatchOperationType.READ:
                value = existing.value if existing is not None else None
                was_default = value is None and op.default_value is not None
                results.append(
                    BatchResult(
                        index=index,
                        type=op.type,
                        path=op.path,
                        value=op.default_value if was_default else value,
                        was_default=was_default,
                    )
                )
            else:
                document = self.make_document(
                    workspace, op.path, data=op.value, kind=DocumentKind.VALUE, actor=actor, previous=existing
                )
                mutations.append(PutMutation(document, expected_version=_version_of(existing)))
                results.append(BatchResult(index=index, type=op.type, path=op.path, version=document.version))

        if mutations:
            await self._call("batch", self._store.transact_write, mutations)
        logger.debug("batch {} -> {} reads, {} writes", workspace, len(ops) - len(mutations), len(mutations))
        return results

    def parse_operations(self, operations: Sequence[BatchOperation | dict[str, Any]]) -> list[BatchOperation]:
        """Validate a whole batch up front.  Paths come back normalized."""
        if not operations:
            raise DataValidationError("At least one operation is required")
        if len(operations) > TRANSACTION_LIMIT:
            msg = f"Too many operations: {len(operations)}. Maximum is {TRANSACTION_LIMIT}"
            raise BatchSizeExceededError(msg, count=len(operations), limit=TRANSACTION_LIMIT)

        ops = [self._parse_operation(i, op) for i, op in enumerate(operations)]
        written = [op.path for op in ops if op.type == BatchOperationType.WRITE]
        if len(set(written)) != len(written):
            raise DataValidationError("The same path may be written at most once per batch")
        for op in ops:
            if op.type == BatchOperationType.WRITE:
                self._check_value(op.value, op.path)
        return ops

    async def apply(self, workspace: str, mutations: list[Mutation], actor: SessionContext) -> None:
        """Apply raw document puts/deletes in one transaction (≤ 25)."""
        workspace = self._check_workspace(workspace, actor)
        check_transaction(mutations)
        for mutation in mutations:
            if not mutation.key.startswith(workspace + "/"):
                raise DataValidationError("Mutation key outside workspace", key=mutation.key)
        await self._call("apply", self._store.transact_write, mutations)

    # -- Retry -----------------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke a store coroutine under the retry policy.

        Only ``TransientStoreError`` and per-attempt timeouts are retried.
        """
        policy = self._retry
        last_error: Exception | None = None
        for attempt in range(policy.max_attempts):
            try:
                with anyio.fail_after(policy.attempt_timeout):
                    return await fn(*args, **kwargs)
            except DataAccessError as exc:
                if not isinstance(exc, TransientStoreError):
                    raise
                last_error = exc
            except TimeoutError as exc:
                last_error = exc

            if attempt + 1 < policy.max_attempts:
                delay = policy.delay(attempt)
                logger.warning(
                    "{} attempt {}/{} failed ({}); retrying in {:.2f}s",
                    operation,
                    attempt + 1,
                    policy.max_attempts,
                    type(last_error).__name__,
                    delay,
                )
                await anyio.sleep(delay)

        msg = f"{operation} failed after {policy.max_attempts} attempts"
        raise DataTimeoutError(msg, operation=operation, attempts=policy.max_attempts) from last_error

    # -- Validation ------------------------------------------------------------

    def _check_workspace(self, workspace: str, actor: SessionContext) -> str:
        actor.authorize(workspace)
        return paths.validate_workspace(workspace)

    def _check(
        self,
        workspace: str,
        path: str,
        actor: SessionContext,
        *,
        allow_root: bool = False,
    ) -> tuple[str, str]:
        workspace = self._check_workspace(workspace, actor)
        return workspace, paths.validate_path(path, allow_root=allow_root)

    def _check_value(self, value: Any, path: str) -> None:
        try:
            encoded = json.dumps(value, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise DataValidationError("Value must be JSON-serializable", path=path) from exc
        size = len(encoded.encode("utf-8"))
        if size > self._max_value_bytes:
            msg = f"Value size ({size // 1024}KB) exceeds limit ({self._max_value_bytes // 1024}KB)"
            raise DataValidationError(msg, path=path, size=size, limit=self._max_value_bytes)

    @staticmethod
    def _parse_operation(index: int, op: BatchOperation | dict[str, Any]) -> BatchOperation:
        if not isinstance(op, BatchOperation):
            try:
                op = BatchOperation.model_validate(op)
            except pydantic.ValidationError as exc:
                msg = f"Invalid operation at index {index}"
                errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]
                raise DataValidationError(msg, index=index, errors=errors) from None
        try:
            path = paths.validate_path(op.path)
        except DataValidationError as exc:
            msg = f"Invalid path at operation index {index}: {exc.message}"
            raise DataValidationError(msg, index=index, path=op.path) from None
        return op.model_copy(update={"path": path}) if path != op.path else op
