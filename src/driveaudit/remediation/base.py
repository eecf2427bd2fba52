"""
Base types for permission remediation.

This module defines the request filter and the per-file / per-call result
types shared by the bulk mutator and the folder-level removal.

Exception classes live in driveaudit.exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from driveaudit.adapters.base import PermissionEntry
from driveaudit.core.types import MutationOperation, PermissionRole, PrincipalType


@dataclass(frozen=True)
class PermissionFilter:
    """
    Selects which of a file's permissions a mutation applies to.

    ``email`` matches either the grantee's email address or, for domain
    grants, the domain name. Unset fields match anything. Owner
    permissions never match.
    """

    principal_type: PrincipalType | None = None
    email: str | None = None
    role: PermissionRole | None = None
    permission_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.principal_type is None
            and not self.email
            and self.role is None
            and self.permission_id is None
        )

    def matches(self, permission: PermissionEntry) -> bool:
        if permission.role == PermissionRole.OWNER:
            return False
        if self.permission_id is not None and permission.id != self.permission_id:
            return False
        if self.principal_type is not None and permission.type != self.principal_type:
            return False
        if self.email:
            wanted = self.email.lower()
            candidates = {
                (permission.email_address or "").lower(),
                (permission.domain or "").lower(),
            }
            if wanted not in candidates:
                return False
        if self.role is not None and permission.role != self.role:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.principal_type.value if self.principal_type else None,
            "email": self.email,
            "role": self.role.value if self.role else None,
            "permissionId": self.permission_id,
        }


@dataclass
class MutationItemResult:
    """Outcome for one file of a bulk request."""

    file_id: str
    file_name: str
    success: bool
    permission_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def ok(cls, file_id: str, file_name: str, permission_ids: list[str]) -> MutationItemResult:
        return cls(file_id=file_id, file_name=file_name, success=True, permission_ids=permission_ids)

    @classmethod
    def failure(
        cls,
        file_id: str,
        error: str,
        file_name: str | None = None,
        permission_ids: list[str] | None = None,
    ) -> MutationItemResult:
        return cls(
            file_id=file_id,
            file_name=file_name or file_id,
            success=False,
            permission_ids=permission_ids or [],
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileId": self.file_id,
            "fileName": self.file_name,
            "success": self.success,
            "permissionIds": list(self.permission_ids),
            "error": self.error,
        }


@dataclass
class BulkResult:
    """
    Result of one bulk mutation call.

    Every requested file appears exactly once in ``items``, so
    ``success + failed == total`` always holds.
    """

    operation: MutationOperation
    items: list[MutationItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def success(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.success)

    @property
    def permissions_changed(self) -> int:
        return sum(len(item.permission_ids) for item in self.items if item.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "details": [item.to_dict() for item in self.items],
        }
