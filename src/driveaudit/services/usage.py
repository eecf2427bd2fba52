"""
Organization usage counters.

``organizations/{orgId}`` carries running totals that are only ever
changed through the store's atomic read-modify-write, so concurrent scan
completions never lose an increment.
"""

import logging
from typing import Any

from driveaudit.adapters.base import format_timestamp
from driveaudit.models import ORGANIZATIONS, utcnow
from driveaudit.storage.base import DocumentStore

logger = logging.getLogger(__name__)


async def increment_scan_stats(
    store: DocumentStore,
    organization_id: str,
    files_scanned: int,
) -> dict[str, Any]:
    """Count one completed scan of *files_scanned* files against the organization.

    The organization document is created on first use.
    """
    now = format_timestamp(utcnow())

    def apply(current: dict[str, Any] | None) -> dict[str, Any]:
        doc = dict(current or {"createdAt": now})
        doc["totalScans"] = int(doc.get("totalScans", 0)) + 1
        doc["totalFilesScanned"] = int(doc.get("totalFilesScanned", 0)) + files_scanned
        doc["lastScanAt"] = now
        doc["updatedAt"] = now
        return doc

    updated = await store.transaction(ORGANIZATIONS, organization_id, apply)
    logger.debug(
        f"Organization {organization_id} usage: {updated['totalScans']} scans, "
        f"{updated['totalFilesScanned']} files"
    )
    return updated


async def get_usage(store: DocumentStore, organization_id: str) -> dict[str, Any]:
    doc = await store.get(ORGANIZATIONS, organization_id) or {}
    return {
        "organizationId": organization_id,
        "totalScans": doc.get("totalScans", 0),
        "totalFilesScanned": doc.get("totalFilesScanned", 0),
        "lastScanAt": doc.get("lastScanAt"),
    }
