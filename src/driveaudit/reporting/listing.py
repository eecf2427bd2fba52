"""
Filtered, sorted and paginated listing of a scan's file records.

The store is asked for filter + order + page in one query. Stores that
cannot combine a filter with an ordering on another field raise
UnsupportedQueryError; the listing then pulls the filtered records into
memory, sorts and slices them, but only up to ``max_in_memory_records``.
Beyond that bound the caller gets a ValidationError asking for a narrower
filter instead of an unbounded read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, Field

from driveaudit.core.types import OwnerType, RiskLevel
from driveaudit.exceptions import UnsupportedQueryError, ValidationError
from driveaudit.models import ROOT_FOLDER_ID, files_collection
from driveaudit.storage.base import DocumentStore, Filter, OrderBy, paginate, sort_documents

logger = logging.getLogger(__name__)

DEFAULT_MAX_IN_MEMORY_RECORDS = 10000


class FileQuery(BaseModel):
    """Caller-supplied listing parameters."""

    risk_level: RiskLevel | None = None
    owner_type: OwnerType = OwnerType.ALL
    sort_by: Literal["riskScore", "name", "modifiedTime"] = "riskScore"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(20, ge=1, le=500)
    offset: int = Field(0, ge=0)

    @classmethod
    def parse(cls, **params: Any) -> FileQuery:
        """Build from keyword arguments, dropping None values to keep defaults."""
        try:
            return cls(**{k: v for k, v in params.items() if v is not None})
        except pydantic.ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(p) for p in error["loc"])
            raise ValidationError(
                f"Invalid listing parameter: {error['msg']}",
                field=field,
                value=error.get("input"),
            ) from e

    @property
    def order(self) -> OrderBy:
        return OrderBy(self.sort_by, descending=self.sort_order == "desc")


@dataclass
class FilePage:
    items: list[dict[str, Any]]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def to_dict(self, key: str = "files") -> dict[str, Any]:
        return {
            key: self.items,
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "hasMore": self.has_more,
            },
        }


def owner_filters(owner_type: OwnerType) -> list[Filter]:
    if owner_type == OwnerType.INTERNAL:
        return [Filter("isInternalOwner", "==", True)]
    if owner_type == OwnerType.EXTERNAL:
        return [Filter("isInternalOwner", "==", False)]
    return []


def folder_filter(folder_id: str) -> Filter:
    """Filter on parent folder; the root sentinel matches records with no parent."""
    if folder_id == ROOT_FOLDER_ID:
        return Filter("parentFolderId", "==", None)
    return Filter("parentFolderId", "==", folder_id)


async def query_sorted(
    store: DocumentStore,
    collection: str,
    filters: list[Filter],
    order: OrderBy,
    limit: int | None,
    offset: int,
    total: int,
    max_in_memory_records: int,
) -> list[dict[str, Any]]:
    """One page of *filters* ordered by *order*, falling back to an in-memory sort."""
    try:
        return await store.query(collection, filters, order, limit, offset)
    except UnsupportedQueryError:
        if total > max_in_memory_records:
            raise ValidationError(
                "Too many records to sort in memory; narrow the filter",
                field="sort_by",
                value=order.field,
                details={"total": total, "max_in_memory_records": max_in_memory_records},
            ) from None
        logger.debug(f"Sorting {total} records of {collection} in memory by {order.field}")
        documents = await store.query(collection, filters)
        return paginate(sort_documents(documents, order), limit, offset)


async def list_files(
    store: DocumentStore,
    scan_id: str,
    query: FileQuery | None = None,
    folder_id: str | None = None,
    max_in_memory_records: int = DEFAULT_MAX_IN_MEMORY_RECORDS,
) -> FilePage:
    """List a scan's file records, optionally restricted to one parent folder."""
    query = query or FileQuery()
    collection = files_collection(scan_id)

    filters: list[Filter] = []
    if folder_id is not None:
        filters.append(folder_filter(folder_id))
    if query.risk_level is not None:
        filters.append(Filter("riskLevel", "==", query.risk_level.value))
    filters.extend(owner_filters(query.owner_type))

    total = await store.count(collection, filters)
    if total == 0:
        return FilePage(items=[], total=0, limit=query.limit, offset=query.offset)

    items = await query_sorted(
        store,
        collection,
        filters,
        query.order,
        query.limit,
        query.offset,
        total,
        max_in_memory_records,
    )
    return FilePage(items=items, total=total, limit=query.limit, offset=query.offset)
