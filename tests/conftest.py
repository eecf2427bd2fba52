"""
Shared test configuration for driveaudit.

Provides builders for file entries and permissions, an in-memory document
store, a fake file-store adapter, and resets the process-wide registries
(circuit breakers, rate-limit buckets, cached settings) between tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from driveaudit.adapters.base import (
    ChangePage,
    EnumerationPage,
    FileEntry,
    FolderInfo,
    PermissionEntry,
)
from driveaudit.adapters.drive_client import reset_shared_buckets
from driveaudit.config import get_settings
from driveaudit.core.circuit_breaker import CircuitBreaker
from driveaudit.core.types import PermissionRole, PrincipalType
from driveaudit.exceptions import CursorExpiredError, DriveAPIError
from driveaudit.storage.memory import MemoryStore

ORG_DOMAIN = "example.com"
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Clear breakers, shared rate buckets and cached settings between tests."""
    CircuitBreaker.reset_all()
    reset_shared_buckets()
    get_settings.cache_clear()
    yield
    CircuitBreaker.reset_all()
    reset_shared_buckets()
    get_settings.cache_clear()


# =============================================================================
# BUILDERS
# =============================================================================


def make_permission(
    pid: str,
    type: PrincipalType = PrincipalType.USER,
    role: PermissionRole = PermissionRole.READER,
    email: str | None = None,
    domain: str | None = None,
) -> PermissionEntry:
    return PermissionEntry(id=pid, type=type, role=role, email_address=email, domain=domain)


def owner(email: str = "alice@example.com") -> PermissionEntry:
    return make_permission("owner", role=PermissionRole.OWNER, email=email)


def anyone(role: PermissionRole = PermissionRole.READER) -> PermissionEntry:
    return make_permission("anyoneWithLink", type=PrincipalType.ANYONE, role=role)


def make_entry(
    file_id: str,
    name: str | None = None,
    permissions: list[PermissionEntry] | None = None,
    owner_email: str = "alice@example.com",
    mime_type: str = "text/plain",
    parent: str | None = "folder-1",
    modified: datetime | None = None,
    shared: bool | None = None,
) -> FileEntry:
    perms = [owner(owner_email)] + list(permissions or [])
    return FileEntry(
        id=file_id,
        name=name or f"{file_id}.txt",
        mime_type=mime_type,
        modified_time=modified or NOW - timedelta(days=3),
        owner_email=owner_email,
        owner_name=owner_email.split("@")[0],
        parent_folder_id=parent,
        shared=len(perms) > 1 if shared is None else shared,
        permissions=perms,
    )


# =============================================================================
# FAKE ADAPTER
# =============================================================================


class FakeDriveAdapter:
    """In-memory file-store adapter with page-level failure injection.

    ``pages`` is a list of entry lists; page tokens are the page index as a
    string. ``fail_at_page`` raises ``fail_error`` when that page is
    requested, once.
    """

    def __init__(
        self,
        pages: list[list[FileEntry]] | None = None,
        folders: dict[str, FolderInfo] | None = None,
        changes: list[list] | None = None,
        cursor: str = "cursor-1",
        new_cursor: str = "cursor-2",
    ):
        self.pages = pages or []
        self.folders = folders or {}
        self.changes = changes or []
        self.cursor = cursor
        self.new_cursor = new_cursor
        self.fail_at_page: int | None = None
        self.fail_error: Exception = DriveAPIError("backend unavailable", status_code=503)
        self.cursor_expired = False
        self.requested_tokens: list[str | None] = []
        self.deleted: list[tuple[str, str]] = []
        self.updated: list[tuple[str, str, PermissionRole]] = []
        self.created: list[tuple[str, PermissionEntry]] = []
        self.mutation_errors: dict[str, Exception] = {}

    async def count_files(self) -> int | None:
        return sum(len(p) for p in self.pages)

    async def enumerate(self, page_token: str | None = None):
        start = int(page_token) if page_token else 0
        for index in range(start, len(self.pages)):
            self.requested_tokens.append(str(index) if index else page_token)
            if self.fail_at_page == index:
                self.fail_at_page = None
                raise self.fail_error
            next_token = str(index + 1) if index + 1 < len(self.pages) else None
            yield EnumerationPage(entries=list(self.pages[index]), next_page_token=next_token)

    async def get_start_cursor(self) -> str:
        return self.cursor

    async def enumerate_changes(self, cursor: str):
        if self.cursor_expired:
            raise CursorExpiredError("cursor too old", status_code=410)
        for index, changes in enumerate(self.changes):
            last = index == len(self.changes) - 1
            yield ChangePage(
                changes=list(changes),
                next_page_token=None if last else str(index + 1),
                new_cursor=self.new_cursor if last else None,
            )
        if not self.changes:
            yield ChangePage(changes=[], new_cursor=self.new_cursor)

    async def get_folder_names(self, folder_ids: list[str]) -> dict[str, str]:
        return {fid: self.folders[fid].name for fid in folder_ids if fid in self.folders}

    async def get_folder_path(self, folder_id: str) -> list[FolderInfo]:
        path = []
        current = self.folders.get(folder_id)
        while current is not None:
            path.append(current)
            current = self.folders.get(current.parent_id) if current.parent_id else None
        return list(reversed(path))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None


class FakeMutatingAdapter(FakeDriveAdapter):
    """FakeDriveAdapter that also implements the permission mutator protocol."""

    async def delete_permission(self, file_id: str, permission_id: str) -> None:
        if permission_id in self.mutation_errors:
            raise self.mutation_errors[permission_id]
        self.deleted.append((file_id, permission_id))

    async def update_permission_role(self, file_id, permission_id, role):
        if permission_id in self.mutation_errors:
            raise self.mutation_errors[permission_id]
        self.updated.append((file_id, permission_id, role))
        return PermissionEntry(id=permission_id, type=PrincipalType.USER, role=role)

    async def create_permission(self, file_id, permission):
        if permission.id in self.mutation_errors:
            raise self.mutation_errors[permission.id]
        self.created.append((file_id, permission))
        return PermissionEntry(
            id=f"new-{permission.id}",
            type=permission.type,
            role=permission.role,
            email_address=permission.email_address,
            domain=permission.domain,
        )


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
async def store():
    """Fresh in-memory document store."""
    s = MemoryStore()
    yield s
    await s.close()


@pytest.fixture
def clock():
    """Deterministic clock returning NOW."""
    return lambda: NOW
