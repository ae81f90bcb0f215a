"""Document store interface.

The backend natively supports only flat key lookup, prefix scans, and small
atomic transactions.  Everything hierarchical (trees, listings, directories)
is built above this interface by the data client and the filesystem.

Keys are produced by ``treechat.data_runtime.paths.to_key``.  A transaction
holds at most ``TRANSACTION_LIMIT`` mutations; larger requests are rejected
with ``BatchSizeExceededError`` before the backend is contacted -- never
silently truncated or split.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from treechat.data_runtime.errors import BatchSizeExceededError, DataValidationError
from treechat.data_runtime.models.document import Document

TRANSACTION_LIMIT = 25


@dataclass(frozen=True)
class PutMutation:
    """Store *document*.  ``expected_version=0`` requires that it not exist yet."""

    document: Document
    expected_version: int | None = None

    @property
    def key(self) -> str:
        return self.document.id


@dataclass(frozen=True)
class DeleteMutation:
    key: str


Mutation = PutMutation | DeleteMutation


def check_transaction(mutations: list[Mutation]) -> None:
    """Reject transactions the backend could not apply atomically."""
    if not mutations:
        raise DataValidationError("Transaction must contain at least one mutation")
    if len(mutations) > TRANSACTION_LIMIT:
        msg = f"Too many operations: {len(mutations)}. Maximum is {TRANSACTION_LIMIT}"
        raise BatchSizeExceededError(msg, count=len(mutations), limit=TRANSACTION_LIMIT)
    keys = [m.key for m in mutations]
    if len(set(keys)) != len(keys):
        raise DataValidationError("A transaction may touch each key at most once")


@runtime_checkable
class DocumentStore(Protocol):
    """Async protocol over the flat key/value backend."""

    async def get(self, key: str) -> Document | None:
        """Return the document at *key*, or ``None`` if absent."""
        ...

    async def put(self, document: Document, *, expected_version: int | None = None) -> None:
        """Store a document.  Raises ``ConflictError`` on version mismatch."""
        ...

    async def delete(self, key: str) -> None:
        """Delete a document.  No-op if absent."""
        ...

    async def query_by_prefix(self, prefix: str, *, limit: int | None = None) -> list[Document]:
        """Return documents whose key starts with *prefix*, ordered by key."""
        ...

    async def transact_write(self, mutations: list[Mutation]) -> None:
        """Apply all mutations atomically or none.

        Raises ``BatchSizeExceededError`` above ``TRANSACTION_LIMIT`` and
        ``TransactionFailedError`` if the backend rejects the transaction.
        """
        ...
