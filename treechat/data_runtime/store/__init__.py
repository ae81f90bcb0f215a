"""Document store implementations."""

from treechat.data_runtime.store.base import (
    TRANSACTION_LIMIT,
    DeleteMutation,
    DocumentStore,
    Mutation,
    PutMutation,
)
from treechat.data_runtime.store.memory import InMemoryDocumentStore

__all__ = [
    "TRANSACTION_LIMIT",
    "DeleteMutation",
    "DocumentStore",
    "InMemoryDocumentStore",
    "Mutation",
    "PutMutation",
]
