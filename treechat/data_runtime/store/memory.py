"""In-process document store.

Keeps documents in a dict keyed by store key.  Used by tests and by the
``memory`` backend setting for local development.  Documents are deep-copied
on the way in and out so callers can never mutate stored state in place.

Transactions validate every condition before applying anything, under a lock,
so a rejected transaction leaves the store exactly as it was.
"""

from __future__ import annotations

import anyio

from treechat.data_runtime.errors import ConflictError, TransactionFailedError
from treechat.data_runtime.models.document import Document
from treechat.data_runtime.store.base import DeleteMutation, Mutation, PutMutation, check_transaction


class InMemoryDocumentStore:
    """Dict-backed implementation of the DocumentStore protocol."""

    def __init__(self) -> None:
        self._items: dict[str, Document] = {}
        self._lock = anyio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> dict[str, Document]:
        """Copy of every stored document, keyed by store key."""
        return {key: doc.model_copy(deep=True) for key, doc in self._items.items()}

    # -- Read ------------------------------------------------------------------

    async def get(self, key: str) -> Document | None:
        doc = self._items.get(key)
        return doc.model_copy(deep=True) if doc is not None else None

    async def query_by_prefix(self, prefix: str, *, limit: int | None = None) -> list[Document]:
        keys = sorted(k for k in self._items if k.startswith(prefix))
        if limit is not None:
            keys = keys[:limit]
        return [self._items[k].model_copy(deep=True) for k in keys]

    # -- Write -----------------------------------------------------------------

    async def put(self, document: Document, *, expected_version: int | None = None) -> None:
        async with self._lock:
            self._check_version(document.id, expected_version)
            self._items[document.id] = document.model_copy(deep=True)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._items.pop(key, None)

    async def transact_write(self, mutations: list[Mutation]) -> None:
        check_transaction(mutations)
        async with self._lock:
            try:
                for mutation in mutations:
                    if isinstance(mutation, PutMutation):
                        self._check_version(mutation.key, mutation.expected_version)
            except ConflictError as exc:
                raise TransactionFailedError(
                    "Transaction cancelled: condition check failed", reason=exc.message
                ) from exc

            for mutation in mutations:
                if isinstance(mutation, PutMutation):
                    self._items[mutation.key] = mutation.document.model_copy(deep=True)
                elif isinstance(mutation, DeleteMutation):
                    self._items.pop(mutation.key, None)

    # -- Helpers ---------------------------------------------------------------

    def _check_version(self, key: str, expected_version: int | None) -> None:
        if expected_version is None:
            return
        current = self._items.get(key)
        current_version = current.version if current is not None else 0
        if current_version != expected_version:
            msg = f"Version mismatch: expected {expected_version}, got {current_version}"
            raise ConflictError(msg, key=key, expected=expected_version, actual=current_version)
