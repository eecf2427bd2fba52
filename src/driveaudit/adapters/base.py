"""
Base types and protocols for file-store adapters.

An adapter hides one cloud file store behind the enumeration contract the
scan driver relies on:

- ``enumerate()`` yields pages of ``FileEntry`` records, each carrying its
  full permission list, and can be restarted from any page token it has
  previously returned.
- ``get_start_cursor()`` / ``enumerate_changes()`` expose an opaque change
  cursor for incremental scans.
- Mutations go through a separate ``PermissionMutator`` protocol so that
  read-only credentials never need write scopes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from driveaudit.core.types import (
    ChangeType,
    PermissionRole,
    PermissionStatus,
    PrincipalType,
)


def email_domain(email: str | None) -> str | None:
    """Lower-cased domain part of an email address."""
    if not email or "@" not in email:
        return None
    return email.rsplit("@", 1)[1].lower()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp as returned by the Drive API."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class PermissionEntry:
    """One grant on a file. Never mutated in place by the scanner."""

    id: str
    type: PrincipalType
    role: PermissionRole
    email_address: str | None = None
    domain: str | None = None
    display_name: str | None = None
    status: PermissionStatus = PermissionStatus.ACTIVE
    previous_role: PermissionRole | None = None
    applied_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == PermissionStatus.ACTIVE

    @property
    def principal_domain(self) -> str | None:
        """Domain the grantee belongs to (email domain for users and groups)."""
        if self.type == PrincipalType.DOMAIN:
            return self.domain.lower() if self.domain else None
        return email_domain(self.email_address)

    def is_external(self, organization_domain: str) -> bool:
        """True if the grantee is outside *organization_domain*.

        ``anyone`` is always external. A user or group without an email is
        treated as internal since nothing identifies it as outside.
        """
        if self.type == PrincipalType.ANYONE:
            return True
        if self.type == PrincipalType.USER or self.type == PrincipalType.GROUP:
            if not self.email_address:
                return False
        return self.principal_domain != organization_domain.lower()

    def with_status(self, status: PermissionStatus, applied_at: str) -> PermissionEntry:
        return replace(self, status=status, applied_at=applied_at)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "role": self.role.value,
            "emailAddress": self.email_address,
            "domain": self.domain,
            "displayName": self.display_name,
            "status": self.status.value,
        }
        if self.previous_role is not None:
            data["previousRole"] = self.previous_role.value
        if self.applied_at is not None:
            data["appliedAt"] = self.applied_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionEntry:
        previous = data.get("previousRole")
        return cls(
            id=data.get("id", ""),
            type=PrincipalType(data["type"]),
            role=PermissionRole(data["role"]),
            email_address=data.get("emailAddress"),
            domain=data.get("domain"),
            display_name=data.get("displayName"),
            status=PermissionStatus(data.get("status", PermissionStatus.ACTIVE.value)),
            previous_role=PermissionRole(previous) if previous else None,
            applied_at=data.get("appliedAt"),
        )


@dataclass
class FileEntry:
    """A file's metadata, owner, parent folder and full permission list."""

    id: str
    name: str
    mime_type: str = ""
    web_view_link: str | None = None
    icon_link: str | None = None
    created_time: datetime | None = None
    modified_time: datetime | None = None
    size: int | None = None
    owner_email: str | None = None
    owner_name: str | None = None
    parent_folder_id: str | None = None
    shared: bool = False
    permissions: list[PermissionEntry] = field(default_factory=list)

    @property
    def active_permissions(self) -> list[PermissionEntry]:
        return [p for p in self.permissions if p.is_active]

    def owner_is_internal(self, organization_domain: str) -> bool:
        return email_domain(self.owner_email) == organization_domain.lower()


@dataclass
class FileFailure:
    """A file the adapter listed but could not fully read."""

    file_id: str
    error: str


@dataclass
class EnumerationPage:
    """One page of enumeration output."""

    entries: list[FileEntry]
    next_page_token: str | None = None
    failures: list[FileFailure] = field(default_factory=list)


@dataclass
class FileChange:
    """One entry of a change list. ``entry`` is None for deletions."""

    file_id: str
    change_type: ChangeType
    entry: FileEntry | None = None


@dataclass
class ChangePage:
    changes: list[FileChange]
    next_page_token: str | None = None
    # Set only on the last page: cursor for the next incremental run
    new_cursor: str | None = None
    failures: list[FileFailure] = field(default_factory=list)


@dataclass
class FolderInfo:
    id: str
    name: str
    parent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "parentId": self.parent_id}


class FileEnumerator(Protocol):
    """Read side of a file-store adapter for one account."""

    async def count_files(self) -> int | None:
        """Best-effort file count for progress display."""
        ...

    def enumerate(self, page_token: str | None = None) -> AsyncIterator[EnumerationPage]:
        """Yield pages of file entries, starting at *page_token* if given."""
        ...

    async def get_start_cursor(self) -> str:
        """Opaque cursor marking 'now' for a later change enumeration."""
        ...

    def enumerate_changes(self, cursor: str) -> AsyncIterator[ChangePage]:
        """Yield pages of changes since *cursor*.

        Raises CursorExpiredError if the cursor is no longer accepted.
        """
        ...

    async def get_folder_names(self, folder_ids: list[str]) -> dict[str, str]:
        """Resolve folder ids to display names. Unresolvable ids are omitted."""
        ...

    async def get_folder_path(self, folder_id: str) -> list[FolderInfo]:
        """Ancestors of *folder_id*, root first, ending with the folder itself."""
        ...


@runtime_checkable
class PermissionMutator(Protocol):
    """Write side of a file-store adapter."""

    async def delete_permission(self, file_id: str, permission_id: str) -> None:
        ...

    async def update_permission_role(
        self, file_id: str, permission_id: str, role: PermissionRole
    ) -> PermissionEntry:
        ...

    async def create_permission(
        self, file_id: str, permission: PermissionEntry
    ) -> PermissionEntry:
        ...


def supports_mutation(adapter: object) -> bool:
    """Check if an adapter implements the PermissionMutator protocol."""
    return isinstance(adapter, PermissionMutator)
