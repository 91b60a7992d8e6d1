"""Role -> permission table and the permission guard.

The table is fixed at import time. Each role enumerates its permissions
explicitly; OWNER holds every permission, ADMIN manages projects, tasks and
membership intake, MEMBER works on tasks.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Union

from teamsync.service.results import ErrorKind, Result


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class Permission(str, Enum):
    CREATE_WORKSPACE = "CREATE_WORKSPACE"
    DELETE_WORKSPACE = "DELETE_WORKSPACE"
    EDIT_WORKSPACE = "EDIT_WORKSPACE"
    MANAGE_WORKSPACE_SETTINGS = "MANAGE_WORKSPACE_SETTINGS"

    ADD_MEMBER = "ADD_MEMBER"
    CHANGE_MEMBER_ROLE = "CHANGE_MEMBER_ROLE"
    REMOVE_MEMBER = "REMOVE_MEMBER"

    CREATE_PROJECT = "CREATE_PROJECT"
    EDIT_PROJECT = "EDIT_PROJECT"
    DELETE_PROJECT = "DELETE_PROJECT"

    CREATE_TASK = "CREATE_TASK"
    EDIT_TASK = "EDIT_TASK"
    DELETE_TASK = "DELETE_TASK"

    VIEW_ONLY = "VIEW_ONLY"


ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.OWNER: frozenset(
            {
                Permission.CREATE_WORKSPACE,
                Permission.DELETE_WORKSPACE,
                Permission.EDIT_WORKSPACE,
                Permission.MANAGE_WORKSPACE_SETTINGS,
                Permission.ADD_MEMBER,
                Permission.CHANGE_MEMBER_ROLE,
                Permission.REMOVE_MEMBER,
                Permission.CREATE_PROJECT,
                Permission.EDIT_PROJECT,
                Permission.DELETE_PROJECT,
                Permission.CREATE_TASK,
                Permission.EDIT_TASK,
                Permission.DELETE_TASK,
                Permission.VIEW_ONLY,
            }
        ),
        Role.ADMIN: frozenset(
            {
                Permission.ADD_MEMBER,
                Permission.CREATE_PROJECT,
                Permission.EDIT_PROJECT,
                Permission.DELETE_PROJECT,
                Permission.CREATE_TASK,
                Permission.EDIT_TASK,
                Permission.DELETE_TASK,
                Permission.MANAGE_WORKSPACE_SETTINGS,
                Permission.VIEW_ONLY,
            }
        ),
        Role.MEMBER: frozenset(
            {
                Permission.VIEW_ONLY,
                Permission.CREATE_TASK,
                Permission.EDIT_TASK,
            }
        ),
    }
)

INSUFFICIENT_PERMISSIONS = "You do not have the necessary permissions to perform this action"


def permissions_of(role: Union[Role, str]) -> frozenset[Permission]:
    """Return the permission set granted to ``role``.

    Raises ValueError for a name outside the role enumeration; callers
    only ever pass roles read from a membership row.
    """
    return ROLE_PERMISSIONS[Role(role)]


def require_permissions(
    role: Union[Role, str], required: Iterable[Permission]
) -> Result[None]:
    """Succeed only if ``role`` grants every permission in ``required``."""
    granted = permissions_of(role)
    missing = {Permission(p) for p in required} - granted
    if missing:
        return Result.failure(ErrorKind.UNAUTHORIZED, INSUFFICIENT_PERMISSIONS)
    return Result.success(None)


__all__ = [
    "Role",
    "Permission",
    "ROLE_PERMISSIONS",
    "INSUFFICIENT_PERMISSIONS",
    "permissions_of",
    "require_permissions",
]
