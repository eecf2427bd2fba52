"""
Bulk permission mutator.

Applies one operation to a set of a scan's files through the file-store
adapter, then soft-marks the scan's stored permission entries so the UI
reflects the change and deletions can be restored later.

Per file:
    1. the stored record must exist and be owned inside the organization
    2. matching permissions are selected (owner grants never match)
    3. each selected permission is mutated through the adapter
    4. applied changes are written back to the file record

A file with nothing to mutate, an external owner, or any failed adapter
call is reported as failed. Other files carry on regardless: one file's
failure never aborts the batch.

Scores on mutated records are left as the scan computed them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from driveaudit.adapters.base import PermissionEntry, PermissionMutator, format_timestamp
from driveaudit.core.cancellation import CancellationToken
from driveaudit.core.types import (
    ASSIGNABLE_ROLES,
    MutationOperation,
    PermissionRole,
    PermissionStatus,
    PrincipalType,
)
from driveaudit.exceptions import DriveAuditError, NotFoundError, ValidationError
from driveaudit.models import SCANS, ScannedFileRecord, ScanRun, files_collection, utcnow
from driveaudit.remediation.audit import record_action
from driveaudit.remediation.base import BulkResult, MutationItemResult, PermissionFilter
from driveaudit.reporting.listing import folder_filter
from driveaudit.storage.base import DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILES_PER_REQUEST = 100
DEFAULT_MAX_FOLDER_FILES = 10000

NO_MATCH = "no matching permission"
EXTERNAL_OWNER = "file is owned outside the organization and cannot be modified"
NOT_FOUND = "file not found in scan"
CANCELLED = "cancelled before this file was processed"


class BulkMutator:
    """
    Applies permission mutations to a scan's files.

    The adapter must act with write access on behalf of the files' owner
    (or a domain administrator).
    """

    def __init__(
        self,
        store: DocumentStore,
        mutator: PermissionMutator,
        max_files: int = DEFAULT_MAX_FILES_PER_REQUEST,
        max_folder_files: int = DEFAULT_MAX_FOLDER_FILES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.mutator = mutator
        self.max_files = max_files
        self.max_folder_files = max_folder_files
        self.clock = clock

    async def load_scan(self, scan_id: str) -> ScanRun:
        doc = await self.store.get(SCANS, scan_id)
        if doc is None:
            raise NotFoundError("Scan not found", resource_type="scan", resource_id=scan_id)
        return ScanRun.from_dict(doc)

    async def apply(
        self,
        scan_id: str,
        file_ids: list[str],
        operation: MutationOperation,
        permission_filter: PermissionFilter | None = None,
        role: PermissionRole | None = None,
        actor: str | None = None,
        token: CancellationToken | None = None,
    ) -> BulkResult:
        """Apply *operation* to each of *file_ids* and log one audit entry.

        Raises ValidationError for a malformed request; everything that
        goes wrong for an individual file is reported in the result.
        """
        file_ids = list(dict.fromkeys(file_ids))
        if not file_ids:
            raise ValidationError("At least one file id is required", field="file_ids")
        if len(file_ids) > self.max_files:
            raise ValidationError(
                f"At most {self.max_files} files can be changed per request",
                field="file_ids",
                value=len(file_ids),
            )
        permission_filter = self._validate(operation, permission_filter, role)
        scan = await self.load_scan(scan_id)

        result = await self._apply_files(scan, file_ids, operation, permission_filter, role, token)
        await record_action(
            self.store,
            scan.organization_id,
            actor,
            result,
            target_type="scan",
            target_id=scan.id,
            details={
                "filter": permission_filter.to_dict(),
                "newRole": self._target_role(operation, role),
            },
        )
        return result

    async def apply_to_folder(
        self,
        scan_id: str,
        folder_id: str,
        principal_type: PrincipalType,
        email: str | None = None,
        actor: str | None = None,
        token: CancellationToken | None = None,
    ) -> BulkResult:
        """Delete one principal's grants from every scanned file in a folder."""
        if principal_type != PrincipalType.ANYONE and not email:
            raise ValidationError(
                "An email address or domain is required unless removing public access",
                field="email",
            )
        permission_filter = PermissionFilter(principal_type=principal_type, email=email)
        scan = await self.load_scan(scan_id)

        collection = files_collection(scan.id)
        filters = [folder_filter(folder_id)]
        total = await self.store.count(collection, filters)
        if total > self.max_folder_files:
            raise ValidationError(
                f"Folder holds {total} files, more than {self.max_folder_files} can be changed at once",
                field="folder_id",
                value=folder_id,
            )
        docs = await self.store.query(collection, filters)
        file_ids = [doc["id"] for doc in docs]

        result = await self._apply_files(
            scan, file_ids, MutationOperation.DELETE_PERMISSION, permission_filter, None, token
        )
        await record_action(
            self.store,
            scan.organization_id,
            actor,
            result,
            target_type="folder",
            target_id=folder_id,
            details={"scanId": scan.id, "filter": permission_filter.to_dict()},
        )
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    @staticmethod
    def _validate(
        operation: MutationOperation,
        permission_filter: PermissionFilter | None,
        role: PermissionRole | None,
    ) -> PermissionFilter:
        permission_filter = permission_filter or PermissionFilter()
        if operation == MutationOperation.DELETE_PERMISSION and permission_filter.is_empty:
            raise ValidationError(
                "Deleting permissions requires a principal type, email or role filter",
                field="filter",
            )
        if operation == MutationOperation.UPDATE_ROLE and role not in ASSIGNABLE_ROLES:
            raise ValidationError(
                "Role must be one of: " + ", ".join(sorted(r.value for r in ASSIGNABLE_ROLES)),
                field="role",
                value=role.value if role else None,
            )
        if operation == MutationOperation.REMOVE_PUBLIC_ACCESS:
            permission_filter = PermissionFilter(principal_type=PrincipalType.ANYONE)
        return permission_filter

    @staticmethod
    def _target_role(operation: MutationOperation, role: PermissionRole | None) -> str | None:
        if operation == MutationOperation.DEMOTE_TO_READER:
            return PermissionRole.READER.value
        if operation == MutationOperation.UPDATE_ROLE and role is not None:
            return role.value
        return None

    @staticmethod
    def select(
        record: ScannedFileRecord,
        operation: MutationOperation,
        permission_filter: PermissionFilter,
        role: PermissionRole | None = None,
    ) -> list[PermissionEntry]:
        """Permissions on *record* that *operation* would touch."""
        selected = []
        for permission in record.permissions:
            if not permission_filter.matches(permission):
                continue
            if operation == MutationOperation.RESTORE:
                if not permission.is_active or permission.previous_role is not None:
                    selected.append(permission)
                continue
            if not permission.is_active:
                continue
            if operation == MutationOperation.DEMOTE_TO_READER and not permission.role.is_editor:
                continue
            if operation == MutationOperation.UPDATE_ROLE and permission.role == role:
                continue
            selected.append(permission)
        return selected

    async def _apply_files(
        self,
        scan: ScanRun,
        file_ids: list[str],
        operation: MutationOperation,
        permission_filter: PermissionFilter,
        role: PermissionRole | None,
        token: CancellationToken | None,
    ) -> BulkResult:
        result = BulkResult(operation=operation)
        collection = files_collection(scan.id)

        for index, file_id in enumerate(file_ids):
            if token is not None and await token.check():
                result.items.extend(
                    MutationItemResult.failure(remaining, CANCELLED) for remaining in file_ids[index:]
                )
                logger.info(f"Bulk {operation.value} on scan {scan.id} cancelled at file {index}")
                break
            try:
                item = await self._apply_file(collection, file_id, operation, permission_filter, role)
            except DriveAuditError as e:
                logger.error(f"{operation.value} failed for file {file_id}: {e}")
                item = MutationItemResult.failure(file_id, e.message)
            except Exception as e:
                logger.exception(f"{operation.value} failed unexpectedly for file {file_id}")
                item = MutationItemResult.failure(file_id, str(e) or type(e).__name__)
            result.items.append(item)

        logger.info(
            f"Bulk {operation.value} on scan {scan.id}: "
            f"{result.success} succeeded, {result.failed} failed of {result.total}"
        )
        return result

    async def _apply_file(
        self,
        collection: str,
        file_id: str,
        operation: MutationOperation,
        permission_filter: PermissionFilter,
        role: PermissionRole | None,
    ) -> MutationItemResult:
        doc = await self.store.get(collection, file_id)
        if doc is None:
            return MutationItemResult.failure(file_id, NOT_FOUND)
        record = ScannedFileRecord.from_dict(doc)
        if not record.is_internal_owner:
            return MutationItemResult.failure(file_id, EXTERNAL_OWNER, record.name)

        targets = self.select(record, operation, permission_filter, role)
        if not targets:
            return MutationItemResult.failure(file_id, NO_MATCH, record.name)

        applied_at = format_timestamp(self.clock())
        replacements: dict[str, PermissionEntry] = {}
        errors: list[str] = []
        for permission in targets:
            try:
                replacements[permission.id] = await self._mutate(
                    file_id, permission, operation, role, applied_at
                )
            except DriveAuditError as e:
                logger.warning(
                    f"{operation.value} failed for permission {permission.id} on file {file_id}: {e.message}"
                )
                errors.append(f"{permission.id}: {e.message}")
            except Exception as e:
                logger.exception(f"{operation.value} failed for permission {permission.id} on file {file_id}")
                errors.append(f"{permission.id}: {str(e) or type(e).__name__}")

        if replacements:
            try:
                await self._write_back(collection, file_id, replacements)
            except DriveAuditError as e:
                logger.error(f"Applied changes to file {file_id} could not be recorded: {e}")
                errors.append(f"changes applied but not recorded: {e.message}")

        if errors:
            return MutationItemResult.failure(
                file_id, "; ".join(errors), record.name, list(replacements)
            )
        return MutationItemResult.ok(file_id, record.name, list(replacements))

    async def _mutate(
        self,
        file_id: str,
        permission: PermissionEntry,
        operation: MutationOperation,
        role: PermissionRole | None,
        applied_at: str,
    ) -> PermissionEntry:
        """Call the adapter and return the entry to store in place of *permission*."""
        if operation in (MutationOperation.DELETE_PERMISSION, MutationOperation.REMOVE_PUBLIC_ACCESS):
            await self.mutator.delete_permission(file_id, permission.id)
            return permission.with_status(PermissionStatus.DELETED, applied_at)

        if operation in (MutationOperation.DEMOTE_TO_READER, MutationOperation.UPDATE_ROLE):
            new_role = PermissionRole.READER if operation == MutationOperation.DEMOTE_TO_READER else role
            await self.mutator.update_permission_role(file_id, permission.id, new_role)
            return replace(
                permission,
                role=new_role,
                previous_role=permission.previous_role or permission.role,
                applied_at=applied_at,
            )

        # Restore
        if not permission.is_active:
            original = replace(permission, role=permission.previous_role or permission.role)
            created = await self.mutator.create_permission(file_id, original)
            return replace(
                original,
                id=created.id or permission.id,
                status=PermissionStatus.ACTIVE,
                previous_role=None,
                applied_at=applied_at,
            )
        await self.mutator.update_permission_role(file_id, permission.id, permission.previous_role)
        return replace(
            permission,
            role=permission.previous_role,
            previous_role=None,
            applied_at=applied_at,
        )

    async def _write_back(
        self,
        collection: str,
        file_id: str,
        replacements: dict[str, PermissionEntry],
    ) -> None:
        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotFoundError("File record disappeared", resource_type="file", resource_id=file_id)
            permissions = []
            for item in current.get("permissions") or []:
                updated = replacements.get(item.get("id"))
                permissions.append(updated.to_dict() if updated else item)
            return {**current, "permissions": permissions}

        await self.store.transaction(collection, file_id, apply)
