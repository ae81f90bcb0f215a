"""Filesystem endpoints (RPC-style, all POST)."""

from __future__ import annotations

from fastapi import APIRouter

from treechat.data_runtime.deps import Fs, Session
from treechat.data_runtime.models.api import (
    ExistsResponse,
    ListResponse,
    MkdirResponse,
    MoveResponse,
    MvRequest,
    PathRequest,
    RemoveResponse,
    RmRequest,
)

router = APIRouter(prefix="/fs", tags=["fs"])


@router.post("/exists", response_model=ExistsResponse)
async def exists(body: PathRequest, fs: Fs, session: Session) -> ExistsResponse:
    session.authorize(body.workspace_id)
    return ExistsResponse(exists=await fs.exists(session, body.path))


@router.post("/ls", response_model=ListResponse)
async def ls(body: PathRequest, fs: Fs, session: Session) -> ListResponse:
    """Immediate child names, sorted.  A missing path lists as empty."""
    session.authorize(body.workspace_id)
    return ListResponse(entries=await fs.ls(session, body.path))


@router.post("/mkdir", response_model=MkdirResponse)
async def mkdir(body: PathRequest, fs: Fs, session: Session) -> MkdirResponse:
    """Create a directory.  Succeeds (``created=false``) if it already is one."""
    session.authorize(body.workspace_id)
    return MkdirResponse(created=await fs.mkdir(session, body.path))


@router.post("/rm", response_model=RemoveResponse)
async def rm(body: RmRequest, fs: Fs, session: Session) -> RemoveResponse:
    session.authorize(body.workspace_id)
    return RemoveResponse(removed=await fs.rm(session, body.path, recursive=body.recursive))


@router.post("/mv", response_model=MoveResponse)
async def mv(body: MvRequest, fs: Fs, session: Session) -> MoveResponse:
    """Move a path and everything below it to ``target``."""
    session.authorize(body.workspace_id)
    return MoveResponse(moved=await fs.mv(session, body.path, body.target))
