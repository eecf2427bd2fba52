"""
Document store interface.

Every component receives a ``DocumentStore`` through its constructor; there
is no module-level client. Collections are slash-separated paths
(``scans/{scanId}/files``) and documents are JSON-compatible dicts.

The store offers:
- create / get / set / update / delete by id
- query with filters, a single ordering, limit and offset
- atomic batch writes
- an atomic read-modify-write primitive (``transaction``)

Filter and ordering evaluation helpers are shared by the in-memory store
and by callers that fall back to sorting in memory.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}

# Sentinel for "field missing" so missing fields never compare equal to None
_MISSING = object()


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, document: dict[str, Any]) -> bool:
        value = document.get(self.field, _MISSING)
        if value is _MISSING:
            value = None
        if self.op in ("<", "<=", ">", ">=") and (value is None or self.value is None):
            return False
        try:
            return OPERATORS[self.op](value, self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


def match_filters(document: dict[str, Any], filters: Iterable[Filter]) -> bool:
    return all(f.matches(document) for f in filters)


def sort_documents(
    documents: list[dict[str, Any]],
    order_by: OrderBy | None,
) -> list[dict[str, Any]]:
    """Stable sort; documents lacking the field sort last in either direction."""
    if order_by is None:
        return documents
    present = [d for d in documents if d.get(order_by.field) is not None]
    missing = [d for d in documents if d.get(order_by.field) is None]
    present.sort(key=lambda d: d[order_by.field], reverse=order_by.descending)
    return present + missing


def paginate(documents: list[Any], limit: int | None, offset: int = 0) -> list[Any]:
    if offset:
        documents = documents[offset:]
    if limit is not None:
        documents = documents[:limit]
    return documents


class DocumentStore(Protocol):
    """Document-oriented persistence used by every component."""

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        """Insert a new document, generating an id if none is given.

        Raises ConflictError if the id already exists.
        """
        ...

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Insert or replace a document."""
        ...

    async def update(
        self, collection: str, doc_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        """Shallow-merge *changes* into an existing document and return it.

        Raises NotFoundError if the document does not exist.
        """
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Raises UnsupportedQueryError if filters and order cannot be combined."""
        ...

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        ...

    async def batch_set(self, collection: str, documents: Sequence[dict[str, Any]]) -> None:
        """Atomically upsert documents keyed by their ``id`` field."""
        ...

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        """Atomic read-modify-write: store and return ``fn(current)``."""
        ...

    async def close(self) -> None:
        ...
