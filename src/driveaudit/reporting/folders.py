"""
Per-folder rollup of a scan's file records.

Records are grouped by ``parentFolderId`` (records without a parent fold
into the ``root`` sentinel) after optional filtering by minimum risk level
and owner type. Folders are sorted by summed risk score, highest first,
ties broken by folder name.

Records are streamed from the store in id order so only the per-folder
accumulators stay in memory. A store that cannot order while filtering
gets a single filtered read instead, bounded by ``max_in_memory_records``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from driveaudit.core.types import OwnerType, RiskLevel
from driveaudit.exceptions import UnsupportedQueryError, ValidationError
from driveaudit.models import (
    ROOT_FOLDER_ID,
    ROOT_FOLDER_NAME,
    FolderSummary,
    ScannedFileRecord,
    files_collection,
)
from driveaudit.reporting.listing import DEFAULT_MAX_IN_MEMORY_RECORDS, FilePage, owner_filters
from driveaudit.storage.base import DocumentStore, Filter, OrderBy, paginate

logger = logging.getLogger(__name__)

STREAM_PAGE_SIZE = 1000


def risk_level_filter(min_risk_level: RiskLevel) -> Filter:
    levels = [level.value for level in RiskLevel if level.rank >= min_risk_level.rank]
    return Filter("riskLevel", "in", levels)


def aggregate(records: list[ScannedFileRecord]) -> list[FolderSummary]:
    """Group records into folder summaries, sorted for display."""
    folders: dict[str, FolderSummary] = {}
    for record in records:
        _add(folders, record)
    return sort_folders(folders.values())


def _add(folders: dict[str, FolderSummary], record: ScannedFileRecord) -> None:
    folder_id = record.parent_folder_id or ROOT_FOLDER_ID
    summary = folders.get(folder_id)
    if summary is None:
        if folder_id == ROOT_FOLDER_ID:
            name = ROOT_FOLDER_NAME
        else:
            name = record.parent_folder_name or folder_id
        summary = folders[folder_id] = FolderSummary(folder_id=folder_id, folder_name=name)
    elif summary.folder_name == folder_id and record.parent_folder_name:
        summary.folder_name = record.parent_folder_name
    summary.add(record)


def sort_folders(folders) -> list[FolderSummary]:
    return sorted(folders, key=lambda f: (-f.total_risk_score, f.folder_name))


async def _stream(
    store: DocumentStore,
    collection: str,
    filters: list[Filter],
    max_in_memory_records: int,
) -> AsyncIterator[dict[str, Any]]:
    offset = 0
    order = OrderBy("id")
    while True:
        try:
            page = await store.query(collection, filters, order, STREAM_PAGE_SIZE, offset)
        except UnsupportedQueryError:
            if offset:
                raise
            total = await store.count(collection, filters)
            if total > max_in_memory_records:
                raise ValidationError(
                    "Too many records to aggregate in memory; narrow the filter",
                    field="min_risk_level",
                    details={"total": total, "max_in_memory_records": max_in_memory_records},
                ) from None
            logger.debug(f"Aggregating {total} records of {collection} in one read")
            for doc in await store.query(collection, filters):
                yield doc
            return
        for doc in page:
            yield doc
        if len(page) < STREAM_PAGE_SIZE:
            return
        offset += len(page)


async def summarize_folders(
    store: DocumentStore,
    scan_id: str,
    min_risk_level: RiskLevel | None = None,
    owner_type: OwnerType = OwnerType.ALL,
    limit: int = 20,
    offset: int = 0,
    max_in_memory_records: int = DEFAULT_MAX_IN_MEMORY_RECORDS,
) -> FilePage:
    """Folder summaries for one scan; items are ``FolderSummary.to_dict()`` dicts."""
    if limit < 1 or offset < 0:
        raise ValidationError("limit must be positive and offset non-negative", field="limit", value=limit)

    filters = owner_filters(owner_type)
    if min_risk_level is not None:
        filters.append(risk_level_filter(min_risk_level))

    folders: dict[str, FolderSummary] = {}
    async for doc in _stream(store, files_collection(scan_id), filters, max_in_memory_records):
        _add(folders, ScannedFileRecord.from_dict(doc))

    ordered = sort_folders(folders.values())
    page = paginate(ordered, limit, offset)
    return FilePage(
        items=[f.to_dict() for f in page],
        total=len(ordered),
        limit=limit,
        offset=offset,
    )
