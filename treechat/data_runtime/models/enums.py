"""Shared enumerations used across the data runtime."""

from __future__ import annotations

from enum import StrEnum

# -- Errors ------------------------------------------------------------------


class ErrorKind(StrEnum):
    """Machine-readable error kind carried by every data-layer error."""

    VALIDATION = "ValidationError"
    UNAUTHENTICATED = "Unauthenticated"
    ACCESS_DENIED = "AccessDenied"
    NOT_FOUND = "NotFound"
    TOO_MANY_ITEMS = "TooManyItems"
    BATCH_SIZE_EXCEEDED = "BatchSizeExceeded"
    TRANSACTION_FAILED = "TransactionFailed"
    TIMEOUT = "Timeout"
    CONFLICT = "Conflict"
    PARTIAL_FAILURE = "PartialFailure"
    STORE_ERROR = "StoreError"


# -- Documents ---------------------------------------------------------------


class DocumentKind(StrEnum):
    """Persisted document kind.  ``DIRECTORY`` is the directory-marker sentinel."""

    VALUE = "value"
    DIRECTORY = "directory"


class BatchOperationType(StrEnum):
    READ = "read"
    WRITE = "write"


# -- Commands ----------------------------------------------------------------


class CommandType(StrEnum):
    WRITE = "write"
    MKDIR = "mkdir"
    RM = "rm"
    MV = "mv"


class CommandStatus(StrEnum):
    """Command lifecycle: created -> executing -> committed | failed."""

    CREATED = "created"
    EXECUTING = "executing"
    COMMITTED = "committed"
    FAILED = "failed"


# -- Sync --------------------------------------------------------------------


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SaveState(StrEnum):
    """User-facing save indicator derived from a path's display state."""

    SAVING = "saving"
    SAVED = "saved"
    SAVE_FAILED = "save_failed"
