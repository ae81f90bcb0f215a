"""Caller identity supplied by the session collaborator.

The authentication provider is external; it hands us an actor and the
workspace the actor is authenticated into.  Every data call checks the
requested workspace against it -- a mismatch is rejected, never substituted.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from treechat.data_runtime.errors import AccessDeniedError, UnauthenticatedError


class SessionContext(BaseModel):
    """Authenticated ``{actor, workspace}`` pair for one call."""

    model_config = ConfigDict(frozen=True)

    actor_id: str | None = None
    workspace_id: str | None = None

    def authorize(self, workspace: str | None) -> str:
        """Return the workspace if this session may act on it."""
        if not self.workspace_id:
            raise UnauthenticatedError("Workspace context required")
        if workspace != self.workspace_id:
            raise AccessDeniedError(
                "Access denied to workspace",
                requested=workspace,
                authenticated=self.workspace_id,
            )
        return workspace

    @property
    def workspace(self) -> str:
        """The authenticated workspace.  Raises if the session carries none."""
        if not self.workspace_id:
            raise UnauthenticatedError("Workspace context required")
        return self.workspace_id
