"""
Action log for permission mutations.

One ``actionLogs/{id}`` document is written per mutation request, whether
it touched one file or a hundred.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from driveaudit.models import ACTION_LOGS, ActionLogEntry
from driveaudit.remediation.base import BulkResult
from driveaudit.reporting.listing import DEFAULT_MAX_IN_MEMORY_RECORDS, query_sorted
from driveaudit.storage.base import DocumentStore, Filter, OrderBy

logger = logging.getLogger(__name__)

ACTION_TYPES = {
    "delete_permission": "permission_bulk_delete",
    "remove_public_access": "permission_bulk_delete",
    "demote_to_reader": "permission_bulk_update",
    "update_role": "permission_bulk_update",
    "restore": "permission_restore",
}


async def record_action(
    store: DocumentStore,
    organization_id: str,
    actor: str | None,
    result: BulkResult,
    target_type: str,
    target_id: str,
    details: dict[str, Any] | None = None,
) -> ActionLogEntry:
    """Write the audit entry for one mutation request."""
    entry = ActionLogEntry(
        id=str(uuid.uuid4()),
        organization_id=organization_id,
        actor=actor,
        action_type=ACTION_TYPES[result.operation.value],
        target_type=target_type,
        target_id=target_id,
        details={
            "operation": result.operation.value,
            "fileIds": [item.file_id for item in result.items],
            "affectedCount": result.permissions_changed,
            "successCount": result.success,
            "failedCount": result.failed,
            **(details or {}),
        },
        success=result.success > 0,
        error_message=f"{result.failed} of {result.total} files failed" if result.failed else None,
    )
    await store.create(ACTION_LOGS, entry.to_dict(), doc_id=entry.id)
    logger.info(
        f"{entry.action_type} on {target_type} {target_id} by {actor or 'system'}: "
        f"{result.success}/{result.total} succeeded",
        extra={"action_log_id": entry.id},
    )
    return entry


async def list_actions(
    store: DocumentStore,
    organization_id: str,
    limit: int = 50,
) -> list[dict[str, Any]]:
    """Most recent action log entries for an organization."""
    filters = [Filter("organizationId", "==", organization_id)]
    total = await store.count(ACTION_LOGS, filters)
    return await query_sorted(
        store,
        ACTION_LOGS,
        filters,
        OrderBy("createdAt", descending=True),
        limit,
        0,
        total,
        DEFAULT_MAX_IN_MEMORY_RECORDS,
    )
