"""
Actor identity and permissions.

Authentication happens upstream; the engine only sees an already resolved
actor carrying a permission set.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Union
from enum import Enum


class Permission(Enum):
    """Permissions checked by the engine and the HTTP layer"""
    WORKFLOW_CREATE = "workflow.create"
    WORKFLOW_EDIT = "workflow.edit"
    WORKFLOW_VIEW = "workflow.view"
    WORKFLOW_OVERRIDE = "workflow.override"
    WORKFLOW_ADMIN = "workflow.admin"
    REPORT_SYNC = "report.sync"
    REPORT_VIEW = "report.view"
    REPORT_SUBMIT = "report.submit"
    REPORT_APPROVE = "report.approve"
    REPORT_REJECT = "report.reject"
    REPORT_RETURN = "report.return"


@dataclass(frozen=True)
class Actor:
    """An authenticated caller"""
    id: str
    email: Optional[str] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    def has_permission(self, permission: Union[Permission, str]) -> bool:
        value = permission.value if isinstance(permission, Permission) else permission
        # workflow.admin implies every other permission
        return value in self.permissions or Permission.WORKFLOW_ADMIN.value in self.permissions

    @classmethod
    def with_permissions(cls, actor_id: str, permissions: Iterable[Union[Permission, str]],
                         email: Optional[str] = None) -> 'Actor':
        values = frozenset(p.value if isinstance(p, Permission) else p for p in permissions)
        return cls(id=actor_id, email=email, permissions=values)
