"""Request / response schemas for the data client and the HTTP API.

Operation results (``WriteResult``, ``BatchResult`` ...) are returned by the
data client directly and serialized unchanged by the routers.  Request bodies
mirror the consumer-facing RPC endpoints under ``/api/data`` and ``/api/fs``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

from treechat.data_runtime.models.enums import BatchOperationType

# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ReadWithDefault(BaseModel):
    value: Any = None
    was_default: bool


class WriteResult(BaseModel):
    success: bool = True
    version: int
    created: bool = Field(description="True if the document did not exist before this write.")


class BatchOperation(BaseModel):
    """One entry of an atomic batch.  Writes must carry ``value`` (``None`` allowed)."""

    type: BatchOperationType
    path: str
    value: Any = None
    default_value: Any = None

    @model_validator(mode="after")
    def _write_needs_value(self) -> BatchOperation:
        if self.type == BatchOperationType.WRITE and "value" not in self.model_fields_set:
            msg = "Write operation must include 'value'"
            raise ValueError(msg)
        return self

    @classmethod
    def read(cls, path: str, default_value: Any = None) -> BatchOperation:
        return cls(type=BatchOperationType.READ, path=path, default_value=default_value)

    @classmethod
    def write(cls, path: str, value: Any) -> BatchOperation:
        return cls(type=BatchOperationType.WRITE, path=path, value=value)


class BatchResult(BaseModel):
    index: int
    type: BatchOperationType
    path: str
    success: bool = True
    value: Any = None
    was_default: bool | None = None
    version: int | None = None


# ---------------------------------------------------------------------------
# HTTP request bodies
# ---------------------------------------------------------------------------


class WorkspaceRequest(BaseModel):
    workspace_id: str


class PathRequest(WorkspaceRequest):
    path: str


class WriteRequest(PathRequest):
    value: Any = None
    expected_version: int | None = None


class ReadTreeRequest(WorkspaceRequest):
    path_prefix: str


class ReadWithDefaultRequest(PathRequest):
    default_value: Any = None


class BatchRequest(WorkspaceRequest):
    operations: list[dict[str, Any]] = Field(description="Validated by the data client, not by request parsing.")


class RmRequest(PathRequest):
    recursive: bool = True


class MvRequest(PathRequest):
    target: str


# ---------------------------------------------------------------------------
# HTTP responses
# ---------------------------------------------------------------------------


class ReadResponse(BaseModel):
    data: Any = None


class TreeResponse(BaseModel):
    data: dict[str, Any]
    item_count: int


class BatchResponse(BaseModel):
    results: list[BatchResult]
    operation_count: int


class ExistsResponse(BaseModel):
    exists: bool


class ListResponse(BaseModel):
    entries: list[str]


class MkdirResponse(BaseModel):
    created: bool


class RemoveResponse(BaseModel):
    removed: list[str]


class MoveResponse(BaseModel):
    moved: dict[str, str]
