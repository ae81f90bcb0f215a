"""Persisted document model.

One document per ``(workspace, path)``.  ``kind`` distinguishes directory
markers from value holders; ``data`` of a value document may be ``None``
(a tombstone: "exists but cleared", distinct from never written).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from treechat.data_runtime.models.enums import DocumentKind


def utcnow() -> datetime:
    return datetime.now(UTC)


class Document(BaseModel):
    """A stored item as the document store adapter sees it."""

    id: str = Field(description="Store key: workspace id followed by the path.")
    workspace_id: str
    path: str
    kind: DocumentKind = DocumentKind.VALUE
    data: Any = None
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)
    updated_by: str | None = None

    @property
    def is_directory(self) -> bool:
        return self.kind == DocumentKind.DIRECTORY

    @property
    def is_tombstone(self) -> bool:
        return self.kind == DocumentKind.VALUE and self.data is None

    @property
    def value(self) -> Any:
        """User-visible value.  Directory markers have none."""
        return None if self.is_directory else self.data
