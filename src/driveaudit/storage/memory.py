"""
In-memory document store.

Used by tests and single-process runs. Documents are deep-copied on every
read and write so callers can never mutate stored state by accident.

``composite_queries=False`` makes the store reject a query whose filters
touch a field other than the ordering field, the way document databases
without a matching composite index do. This exercises the bounded
in-memory fallback in the listing and folder code paths.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from collections.abc import Callable, Sequence
from typing import Any

from driveaudit.exceptions import ConflictError, NotFoundError, UnsupportedQueryError
from driveaudit.storage.base import (
    Filter,
    OrderBy,
    match_filters,
    paginate,
    sort_documents,
)


class MemoryStore:
    """DocumentStore backed by nested dicts."""

    def __init__(self, composite_queries: bool = True):
        self.composite_queries = composite_queries
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        doc_id = doc_id or data.get("id") or uuid.uuid4().hex
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise ConflictError(
                    f"Document {doc_id} already exists in {collection}",
                    resource_type=collection,
                )
            docs[doc_id] = copy.deepcopy({**data, "id": doc_id})
        return doc_id

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy({**data, "id": doc_id})

    async def update(
        self, collection: str, doc_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id not in docs:
                raise NotFoundError(
                    f"Document not found in {collection}",
                    resource_type=collection,
                    resource_id=doc_id,
                )
            docs[doc_id].update(copy.deepcopy(changes))
            return copy.deepcopy(docs[doc_id])

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._collection(collection).pop(doc_id, None)

    def _check_supported(self, filters: Sequence[Filter], order_by: OrderBy | None) -> None:
        if self.composite_queries or order_by is None:
            return
        other = sorted({f.field for f in filters if f.field != order_by.field})
        if other:
            raise UnsupportedQueryError(
                f"Cannot order by {order_by.field} while filtering on {', '.join(other)}",
            )

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        self._check_supported(filters, order_by)
        docs = [d for d in self._collection(collection).values() if match_filters(d, filters)]
        docs = sort_documents(docs, order_by)
        return copy.deepcopy(paginate(docs, limit, offset))

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        return sum(1 for d in self._collection(collection).values() if match_filters(d, filters))

    async def batch_set(self, collection: str, documents: Sequence[dict[str, Any]]) -> None:
        staged = {doc["id"]: copy.deepcopy(doc) for doc in documents}
        async with self._lock:
            self._collection(collection).update(staged)

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        async with self._lock:
            docs = self._collection(collection)
            current = copy.deepcopy(docs.get(doc_id))
            updated = fn(current)
            docs[doc_id] = copy.deepcopy({**updated, "id": doc_id})
            return copy.deepcopy(docs[doc_id])

    async def close(self) -> None:
        pass
