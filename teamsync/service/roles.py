from __future__ import annotations

from teamsync.logging import get_logger
from teamsync.service.permissions import Role
from teamsync.service.results import ErrorKind, Result
from teamsync.storage.common import AuthStore
from teamsync.storage.errors import StoreUnavailable

logger = get_logger(__name__)

NOT_A_MEMBER = "You are not a member of this workspace"
WORKSPACE_NOT_FOUND = "Workspace not found"


class RoleResolver:
    """Maps (identity, workspace) to the identity's role in that workspace."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def resolve_role(self, identity_id: str, workspace_id: str) -> Result[Role]:
        try:
            workspace = self.store.get_workspace(workspace_id)
            if workspace is None:
                return Result.failure(ErrorKind.NOT_FOUND, WORKSPACE_NOT_FOUND)
            membership = self.store.get_membership(identity_id, workspace_id)
        except StoreUnavailable as exc:
            logger.error("role_resolution_unavailable", backend=exc.backend)
            return Result.failure(ErrorKind.UNAVAILABLE, "workspace store unavailable")
        if membership is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, NOT_A_MEMBER)
        return Result.success(Role(membership.role))
