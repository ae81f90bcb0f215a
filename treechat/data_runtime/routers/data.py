"""Document endpoints (RPC-style, all POST).

Each handler checks the body's ``workspace_id`` against the caller's session
before doing anything else.  Domain errors propagate to the exception handler
registered in ``app.py``.
"""

from __future__ import annotations

from fastapi import APIRouter

from treechat.data_runtime.deps import Fs, Session
from treechat.data_runtime.models.api import (
    BatchRequest,
    BatchResponse,
    PathRequest,
    ReadResponse,
    ReadTreeRequest,
    ReadWithDefault,
    ReadWithDefaultRequest,
    TreeResponse,
    WriteRequest,
    WriteResult,
)

router = APIRouter(prefix="/data", tags=["data"])


@router.post("/read", response_model=ReadResponse)
async def read(body: PathRequest, fs: Fs, session: Session) -> ReadResponse:
    """Read the value at a path; ``data`` is null when absent."""
    session.authorize(body.workspace_id)
    return ReadResponse(data=await fs.read(session, body.path))


@router.post("/write", response_model=WriteResult)
async def write(body: WriteRequest, fs: Fs, session: Session) -> WriteResult:
    session.authorize(body.workspace_id)
    return await fs.write(session, body.path, body.value, expected_version=body.expected_version)


@router.post("/readTree", response_model=TreeResponse)
async def read_tree(body: ReadTreeRequest, fs: Fs, session: Session) -> TreeResponse:
    """Every value at or below ``path_prefix``, keyed by full path."""
    session.authorize(body.workspace_id)
    tree = await fs.read_tree(session, body.path_prefix)
    return TreeResponse(data=tree, item_count=len(tree))


@router.post("/readWithDefault", response_model=ReadWithDefault)
async def read_with_default(body: ReadWithDefaultRequest, fs: Fs, session: Session) -> ReadWithDefault:
    session.authorize(body.workspace_id)
    return await fs.read_with_default(session, body.path, body.default_value)


@router.post("/batch", response_model=BatchResponse)
async def batch(body: BatchRequest, fs: Fs, session: Session) -> BatchResponse:
    """Up to 25 reads/writes; writes commit atomically."""
    session.authorize(body.workspace_id)
    results = await fs.batch(session, body.operations)
    return BatchResponse(results=results, operation_count=len(results))
