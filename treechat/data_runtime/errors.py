"""Error taxonomy for the data-access layer.

Every error raised by the store adapter, data client, and filesystem carries a
machine-readable ``kind`` plus a human-readable message.  Domain code raises
these; the HTTP layer maps ``kind`` to a status code in a single exception
handler (see ``app.py``).

Only ``TransientStoreError`` and per-attempt timeouts are retried by the data
client.  Everything else surfaces immediately.
"""

from __future__ import annotations

from typing import Any

from treechat.data_runtime.models.enums import ErrorKind


class DataAccessError(Exception):
    """Base class for all data-layer errors."""

    kind: ErrorKind = ErrorKind.STORE_ERROR
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class DataValidationError(DataAccessError, ValueError):
    """Malformed path, workspace, value, or missing field.  Never retried."""

    kind = ErrorKind.VALIDATION


class UnauthenticatedError(DataAccessError):
    """The call carries no authenticated workspace."""

    kind = ErrorKind.UNAUTHENTICATED


class AccessDeniedError(DataAccessError, PermissionError):
    """Requested workspace differs from the authenticated one.  Fatal."""

    kind = ErrorKind.ACCESS_DENIED


class NotFoundError(DataAccessError, LookupError):
    """Target of rm/mv is absent.  Reads never raise this; they yield ``None``."""

    kind = ErrorKind.NOT_FOUND


class TooManyItemsError(DataAccessError):
    """Scope is too large; the caller must narrow it."""

    kind = ErrorKind.TOO_MANY_ITEMS


class BatchSizeExceededError(TooManyItemsError):
    """More operations than one transaction can hold."""

    kind = ErrorKind.BATCH_SIZE_EXCEEDED


class TransactionFailedError(DataAccessError):
    """Atomic batch rejected by the store.  Nothing was applied."""

    kind = ErrorKind.TRANSACTION_FAILED


class ConflictError(DataAccessError):
    """Version mismatch or a path of the wrong kind (file vs directory)."""

    kind = ErrorKind.CONFLICT


class PartialFailureError(DataAccessError):
    """A multi-transaction rm/mv stopped halfway.

    ``details`` lists what was applied and what remains so callers can re-run
    from a known state instead of assuming success.
    """

    kind = ErrorKind.PARTIAL_FAILURE


class DataTimeoutError(DataAccessError, TimeoutError):
    """Transient failures persisted past the retry budget."""

    kind = ErrorKind.TIMEOUT
    retryable = True


class TransientStoreError(DataAccessError):
    """Throttling, 5xx, or connection failure reported by the backend."""

    kind = ErrorKind.STORE_ERROR
    retryable = True
