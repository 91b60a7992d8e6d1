from __future__ import annotations

from dataclasses import dataclass
from typing import List, Union

from teamsync.logging import get_logger
from teamsync.service.permissions import Role
from teamsync.service.results import ErrorKind, Result, unavailable_as_failure
from teamsync.storage.common import AuthStore
from teamsync.storage.errors import ConstraintViolation
from teamsync.storage.models import Identity, Membership, Workspace

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkspaceMember:
    membership: Membership
    identity: Identity

    def to_dict(self) -> dict:
        return {
            "id": self.identity.id,
            "email": self.identity.email,
            "name": self.identity.name,
            "profile_picture": self.identity.profile_picture,
            "role": self.membership.role,
            "joined_at": self.membership.joined_at.isoformat()
            if self.membership.joined_at
            else None,
        }


class WorkspaceService:
    """Membership management on top of the auth store.

    Callers are expected to have passed the workspace permission guard
    already; these methods only enforce data-level rules.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    @unavailable_as_failure
    async def join_workspace(self, identity_id: str, invite_code: str) -> Result[Workspace]:
        workspace = self.store.get_workspace_by_invite_code(invite_code.strip())
        if workspace is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Invalid invite code or workspace not found")
        if self.store.get_membership(identity_id, workspace.id) is not None:
            return Result.failure(ErrorKind.CONFLICT, "You are already a member of this workspace")
        try:
            self.store.add_membership(identity_id, workspace.id, Role.MEMBER.value)
        except ConstraintViolation:
            # lost a race with a concurrent join
            return Result.failure(ErrorKind.CONFLICT, "You are already a member of this workspace")
        logger.info("workspace_joined", identity_id=identity_id, workspace_id=workspace.id)
        return Result.success(workspace)

    @unavailable_as_failure
    async def list_members(self, workspace_id: str) -> Result[List[WorkspaceMember]]:
        members: List[WorkspaceMember] = []
        for membership in self.store.list_workspace_members(workspace_id):
            identity = self.store.find_identity_by_id(membership.identity_id)
            if identity is None:
                continue
            members.append(WorkspaceMember(membership=membership, identity=identity))
        return Result.success(members)

    @unavailable_as_failure
    async def change_member_role(
        self, workspace_id: str, member_id: str, role: Union[Role, str]
    ) -> Result[Membership]:
        try:
            new_role = Role(role)
        except ValueError:
            return Result.failure(ErrorKind.INVALID, "Unknown role")
        workspace = self.store.get_workspace(workspace_id)
        if workspace is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Workspace not found")
        membership = self.store.get_membership(member_id, workspace_id)
        if membership is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Member not found in the workspace")
        if member_id == workspace.owner_id:
            return Result.failure(ErrorKind.INVALID, "The workspace owner's role cannot be changed")
        previous_role = membership.role
        updated = self.store.update_membership_role(member_id, workspace_id, new_role.value)
        if updated is None:
            return Result.failure(ErrorKind.NOT_FOUND, "Member not found in the workspace")
        logger.info(
            "member_role_changed",
            workspace_id=workspace_id,
            member_id=member_id,
            previous_role=previous_role,
            role=new_role.value,
        )
        return Result.success(updated)

    @unavailable_as_failure
    async def select_workspace(self, identity_id: str, workspace_id: str) -> Result[Identity]:
        if self.store.get_membership(identity_id, workspace_id) is None:
            return Result.failure(ErrorKind.UNAUTHORIZED, "You are not a member of this workspace")
        identity = self.store.set_current_workspace(identity_id, workspace_id)
        if identity is None:
            return Result.failure(ErrorKind.NOT_FOUND, "User not found")
        logger.info("workspace_selected", identity_id=identity_id, workspace_id=workspace_id)
        return Result.success(identity)
