"""
Google Drive adapter.

Implements the enumeration contract (``FileEnumerator``) and permission
mutations (``PermissionMutator``) on top of the Drive v3 REST API:

- files.list with continuation tokens for full enumeration
- permissions.list as a second call when a listing does not inline them
- changes.getStartPageToken / changes.list for incremental scans
- permissions.delete / update / create for remediation
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from types import TracebackType
from typing import Any

import httpx

from driveaudit.adapters.base import (
    ChangePage,
    EnumerationPage,
    FileChange,
    FileEntry,
    FileFailure,
    FolderInfo,
    PermissionEntry,
    parse_timestamp,
)
from driveaudit.adapters.credentials import CredentialProvider
from driveaudit.adapters.drive_client import DriveClient, RateLimiterConfig
from driveaudit.core.circuit_breaker import CircuitBreakerConfig
from driveaudit.core.types import ChangeType, PermissionRole, PrincipalType
from driveaudit.exceptions import (
    CursorExpiredError,
    DriveAPIError,
    MutationError,
    PermanentFileError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

PERMISSION_FIELDS = "id,type,role,emailAddress,domain,displayName"
FILE_FIELDS = (
    "id,name,mimeType,webViewLink,iconLink,createdTime,modifiedTime,size,"
    "owners(emailAddress,displayName),parents,shared,trashed,permissionIds,"
    f"permissions({PERMISSION_FIELDS})"
)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
COUNT_PAGE_SIZE = 1000
# Stop counting after this many pages; the count is only a progress hint
MAX_COUNT_PAGES = 100
MAX_FOLDER_DEPTH = 20

# Status codes Drive uses when a change cursor is no longer valid
CURSOR_REJECTED_CODES = (400, 404, 410)


def is_fatal_error(error: DriveAPIError) -> bool:
    """Errors that no amount of skipping individual files will get past."""
    return isinstance(error, RateLimitedError) or error.status_code == 401


def parse_permission(item: dict[str, Any]) -> PermissionEntry:
    """Build a PermissionEntry from a Drive permission resource.

    Raises ValueError/KeyError for malformed resources.
    """
    return PermissionEntry(
        id=item["id"],
        type=PrincipalType(item["type"]),
        role=PermissionRole(item["role"]),
        email_address=item.get("emailAddress"),
        domain=item.get("domain"),
        display_name=item.get("displayName"),
    )


def parse_file(item: dict[str, Any], permissions: list[PermissionEntry]) -> FileEntry:
    owners = item.get("owners") or [{}]
    parents = item.get("parents") or []
    size = item.get("size")
    return FileEntry(
        id=item["id"],
        name=item.get("name", ""),
        mime_type=item.get("mimeType", ""),
        web_view_link=item.get("webViewLink"),
        icon_link=item.get("iconLink"),
        created_time=parse_timestamp(item.get("createdTime")),
        modified_time=parse_timestamp(item.get("modifiedTime")),
        size=int(size) if size is not None else None,
        owner_email=owners[0].get("emailAddress"),
        owner_name=owners[0].get("displayName"),
        parent_folder_id=parents[0] if parents else None,
        shared=bool(item.get("shared", False)),
        permissions=permissions,
    )


class GoogleDriveAdapter:
    """
    Drive v3 adapter for one account.

    The adapter owns its DriveClient unless one is injected. Folder names
    seen while enumerating are cached so the resolving phase only has to
    look up folders that were listed after their children (or not at all).
    """

    _adapter_type = "google_drive"

    def __init__(
        self,
        credential: CredentialProvider,
        page_size: int = DEFAULT_PAGE_SIZE,
        rate_config: RateLimiterConfig | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        client: DriveClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credential = credential
        self.page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self.rate_config = rate_config
        self.breaker_config = breaker_config
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport

        self._client = client
        self._owns_client = False
        self._folder_names: dict[str, str] = {}

    @property
    def adapter_type(self) -> str:
        return self._adapter_type

    @property
    def account(self) -> str | None:
        return self.credential.subject

    async def _get_client(self) -> DriveClient:
        if self._client is None:
            self._client = DriveClient(
                self.credential,
                rate_config=self.rate_config,
                breaker_config=self.breaker_config,
                timeout=self.timeout,
                connect_timeout=self.connect_timeout,
                transport=self._transport,
            )
            await self._client.__aenter__()
            self._owns_client = True
        return self._client

    async def __aenter__(self) -> GoogleDriveAdapter:
        await self._get_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client and self._owns_client:
            await self._client.__aexit__(None, None, None)
            self._client = None
            self._owns_client = False

    # =========================================================================
    # Enumeration
    # =========================================================================

    async def count_files(self) -> int | None:
        client = await self._get_client()
        total = 0
        page_token: str | None = None
        for _ in range(MAX_COUNT_PAGES):
            params: dict[str, Any] = {
                "q": "trashed = false",
                "pageSize": COUNT_PAGE_SIZE,
                "fields": "nextPageToken,files(id)",
            }
            if page_token:
                params["pageToken"] = page_token
            data = await client.get("/files", params=params)
            total += len(data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return total
        logger.debug(f"File count stopped after {MAX_COUNT_PAGES} pages at {total}")
        return total

    async def enumerate(self, page_token: str | None = None) -> AsyncIterator[EnumerationPage]:
        client = await self._get_client()
        while True:
            params: dict[str, Any] = {
                "q": "trashed = false",
                "pageSize": self.page_size,
                "fields": f"nextPageToken,files({FILE_FIELDS})",
            }
            if page_token:
                params["pageToken"] = page_token

            data = await client.get("/files", params=params)
            entries, failures = await self._parse_items(data.get("files", []))
            page_token = data.get("nextPageToken")
            yield EnumerationPage(entries=entries, next_page_token=page_token, failures=failures)
            if not page_token:
                return

    async def get_start_cursor(self) -> str:
        client = await self._get_client()
        data = await client.get("/changes/startPageToken")
        return data["startPageToken"]

    async def enumerate_changes(self, cursor: str) -> AsyncIterator[ChangePage]:
        client = await self._get_client()
        page_token: str | None = cursor
        first = True
        while page_token:
            params = {
                "pageToken": page_token,
                "pageSize": self.page_size,
                "includeRemoved": "true",
                "spaces": "drive",
                "fields": (
                    "nextPageToken,newStartPageToken,"
                    f"changes(fileId,removed,file({FILE_FIELDS}))"
                ),
            }
            try:
                data = await client.get("/changes", params=params)
            except DriveAPIError as e:
                if first and e.status_code in CURSOR_REJECTED_CODES:
                    raise CursorExpiredError(
                        "Change cursor was rejected",
                        status_code=e.status_code,
                        endpoint=e.endpoint,
                        context="cursor is too old or invalid; a full scan is required",
                    ) from e
                raise
            first = False

            changes: list[FileChange] = []
            live_items: list[dict] = []
            for change in data.get("changes", []):
                file_id = change.get("fileId")
                item = change.get("file")
                if change.get("removed") or not item or item.get("trashed"):
                    changes.append(FileChange(file_id=file_id, change_type=ChangeType.DELETED))
                else:
                    live_items.append(item)

            entries, failures = await self._parse_items(live_items)
            changes.extend(
                FileChange(file_id=e.id, change_type=ChangeType.MODIFIED, entry=e)
                for e in entries
            )
            page_token = data.get("nextPageToken")
            yield ChangePage(
                changes=changes,
                next_page_token=page_token,
                new_cursor=data.get("newStartPageToken"),
                failures=failures,
            )

    async def _parse_items(
        self, items: list[dict[str, Any]]
    ) -> tuple[list[FileEntry], list[FileFailure]]:
        entries: list[FileEntry] = []
        failures: list[FileFailure] = []
        for item in items:
            file_id = item.get("id", "")
            if item.get("mimeType") == FOLDER_MIME_TYPE and file_id:
                self._folder_names[file_id] = item.get("name", "")
            try:
                if "permissions" in item:
                    permissions = [parse_permission(p) for p in item["permissions"]]
                else:
                    permissions = await self.list_permissions(file_id)
                entries.append(parse_file(item, permissions))
            except PermanentFileError as e:
                logger.warning(f"Skipping file {file_id}: {e.message}")
                failures.append(FileFailure(file_id=file_id, error=e.message))
            except DriveAPIError as e:
                if is_fatal_error(e):
                    raise
                logger.warning(f"Skipping file {file_id} after API error: {e.message}")
                failures.append(FileFailure(file_id=file_id, error=e.message))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed file entry {file_id!r}: {e}")
                failures.append(FileFailure(file_id=file_id, error=f"malformed entry: {e}"))
        return entries, failures

    async def list_permissions(self, file_id: str) -> list[PermissionEntry]:
        """Fetch a file's full permission list (paginated)."""
        client = await self._get_client()
        permissions: list[PermissionEntry] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "fields": f"nextPageToken,permissions({PERMISSION_FIELDS})",
                "supportsAllDrives": "true",
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                data = await client.get(f"/files/{file_id}/permissions", params=params)
            except DriveAPIError as e:
                if e.status_code in (403, 404):
                    raise PermanentFileError(
                        "Permissions could not be read",
                        file_id=file_id,
                        status_code=e.status_code,
                        endpoint=e.endpoint,
                    ) from e
                raise
            permissions.extend(parse_permission(p) for p in data.get("permissions", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return permissions

    # =========================================================================
    # Folders
    # =========================================================================

    async def _get_folder(self, folder_id: str) -> FolderInfo | None:
        client = await self._get_client()
        try:
            data = await client.get(
                f"/files/{folder_id}",
                params={"fields": "id,name,parents", "supportsAllDrives": "true"},
            )
        except DriveAPIError as e:
            if is_fatal_error(e):
                raise
            logger.debug(f"Folder {folder_id} not resolvable: {e.message}")
            return None
        parents = data.get("parents") or []
        name = data.get("name", "")
        self._folder_names[folder_id] = name
        return FolderInfo(id=folder_id, name=name, parent_id=parents[0] if parents else None)

    async def get_folder_names(self, folder_ids: list[str]) -> dict[str, str]:
        names: dict[str, str] = {}
        for folder_id in dict.fromkeys(folder_ids):
            if folder_id in self._folder_names:
                names[folder_id] = self._folder_names[folder_id]
                continue
            folder = await self._get_folder(folder_id)
            if folder is not None:
                names[folder_id] = folder.name
        return names

    async def get_folder_path(self, folder_id: str) -> list[FolderInfo]:
        path: list[FolderInfo] = []
        current: str | None = folder_id
        seen: set[str] = set()
        while current and current not in seen and len(path) < MAX_FOLDER_DEPTH:
            seen.add(current)
            folder = await self._get_folder(current)
            if folder is None:
                break
            path.append(folder)
            current = folder.parent_id
        path.reverse()
        return path

    # =========================================================================
    # Mutations
    # =========================================================================

    async def delete_permission(self, file_id: str, permission_id: str) -> None:
        client = await self._get_client()
        try:
            await client.delete(
                f"/files/{file_id}/permissions/{permission_id}",
                params={"supportsAllDrives": "true"},
            )
        except DriveAPIError as e:
            raise MutationError(
                f"Failed to delete permission: {e.message}",
                file_id=file_id,
                permission_id=permission_id,
            ) from e

    async def update_permission_role(
        self, file_id: str, permission_id: str, role: PermissionRole
    ) -> PermissionEntry:
        client = await self._get_client()
        try:
            data = await client.patch(
                f"/files/{file_id}/permissions/{permission_id}",
                params={"fields": PERMISSION_FIELDS, "supportsAllDrives": "true"},
                json={"role": role.value},
            )
        except DriveAPIError as e:
            raise MutationError(
                f"Failed to update permission role: {e.message}",
                file_id=file_id,
                permission_id=permission_id,
            ) from e
        return parse_permission(data)

    async def create_permission(
        self, file_id: str, permission: PermissionEntry
    ) -> PermissionEntry:
        client = await self._get_client()
        body: dict[str, Any] = {"type": permission.type.value, "role": permission.role.value}
        params: dict[str, Any] = {"fields": PERMISSION_FIELDS, "supportsAllDrives": "true"}
        if permission.type in (PrincipalType.USER, PrincipalType.GROUP):
            body["emailAddress"] = permission.email_address
            params["sendNotificationEmail"] = "false"
        elif permission.type == PrincipalType.DOMAIN:
            body["domain"] = permission.domain
        try:
            data = await client.post(f"/files/{file_id}/permissions", params=params, json=body)
        except DriveAPIError as e:
            raise MutationError(
                f"Failed to recreate permission: {e.message}",
                file_id=file_id,
                permission_id=permission.id,
            ) from e
        return parse_permission(data)
