"""FastAPI dependencies: caller session and the shared filesystem.

Usage in route handlers::

    @router.post("/read")
    async def read(body: PathRequest, fs: Fs, session: Session) -> ReadResponse:
        ...

The session comes from headers set by the upstream session provider:
``Authorization: Bearer <token>``, ``X-Actor-Id`` and ``X-Workspace-Id``.
A missing workspace header is not rejected here; the data layer raises
``UnauthenticatedError`` for it on first use.
"""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from treechat.data_runtime.filesystem import FileSystem
from treechat.data_runtime.models.session import SessionContext


def get_fs(request: Request) -> FileSystem:
    fs: FileSystem | None = getattr(request.app.state, "fs", None)
    if fs is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Data runtime not initialised.",
        )
    return fs


def get_session(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_actor_id: Annotated[str | None, Header()] = None,
    x_workspace_id: Annotated[str | None, Header()] = None,
) -> SessionContext:
    """Build the caller's session after checking the shared bearer token."""
    expected: str | None = getattr(request.app.state, "auth_token", None)
    if expected:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing bearer token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
    return SessionContext(actor_id=x_actor_id, workspace_id=x_workspace_id)


# -- Annotated type aliases for concise route signatures ---------------------

Fs = Annotated[FileSystem, Depends(get_fs)]
"""Annotated dependency: the process-wide FileSystem."""

Session = Annotated[SessionContext, Depends(get_session)]
"""Annotated dependency: the authenticated caller."""
