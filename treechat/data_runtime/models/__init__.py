"""Data models for the data runtime.

``SessionContext`` lives in ``models.session`` and is not re-exported here:
it depends on ``errors``, which itself imports ``models.enums``.
"""

from treechat.data_runtime.models.api import (
    BatchOperation,
    BatchResult,
    ReadWithDefault,
    WriteResult,
)
from treechat.data_runtime.models.document import Document
from treechat.data_runtime.models.enums import (
    BatchOperationType,
    CommandStatus,
    CommandType,
    ConnectionState,
    DocumentKind,
    ErrorKind,
    SaveState,
)

__all__ = [
    # API schemas
    "BatchOperation",
    # Enums
    "BatchOperationType",
    "BatchResult",
    "CommandStatus",
    "CommandType",
    "ConnectionState",
    # Documents
    "Document",
    "DocumentKind",
    "ErrorKind",
    "ReadWithDefault",
    "SaveState",
    "WriteResult",
]
