"""
SQLAlchemy-backed document store.

All collections share one ``documents`` table keyed by (collection, doc_id)
with the document body in a JSON column (JSONB on PostgreSQL). Equality and
``in`` filters are pushed down to SQL through JSON path extraction; range
filters, ordering and pagination are applied to the narrowed row set.

``transaction`` takes a row lock (``SELECT ... FOR UPDATE``) where the
database supports it and is additionally serialized in-process, so SQLite
test databases behave the same as PostgreSQL for a single worker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, String, delete, func, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from driveaudit.exceptions import ConflictError, NotFoundError, StorageError
from driveaudit.storage.base import (
    Filter,
    OrderBy,
    match_filters,
    paginate,
    sort_documents,
)

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class Document(Base):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(512), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[dict] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


def _pushdown(flt: Filter):
    """SQL clause for filters the database can evaluate, else None."""
    column = Document.data[flt.field]
    if flt.op == "==":
        if flt.value is None:
            return column.as_string().is_(None)
        if isinstance(flt.value, bool):
            return column.as_boolean() == flt.value
        if isinstance(flt.value, (int, float)):
            return column.as_float() == flt.value
        if isinstance(flt.value, str):
            return column.as_string() == flt.value
    if flt.op == "in" and flt.value and all(isinstance(v, str) for v in flt.value):
        return column.as_string().in_(list(flt.value))
    return None


class SQLStore:
    """DocumentStore on top of an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._txn_lock = asyncio.Lock()

    @classmethod
    async def connect(cls, database_url: str, echo: bool = False) -> SQLStore:
        """Create the engine and the documents table if needed."""
        engine_kwargs: dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            # One shared connection so every session sees the same database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_async_engine(database_url, **engine_kwargs)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Document store ready ({engine.dialect.name})")
        return cls(engine)

    async def close(self) -> None:
        await self.engine.dispose()

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        doc_id = doc_id or data.get("id") or uuid.uuid4().hex
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    Document(collection=collection, doc_id=doc_id, data={**data, "id": doc_id})
                )
        except IntegrityError as e:
            raise ConflictError(
                f"Document {doc_id} already exists in {collection}",
                resource_type=collection,
            ) from e
        except SQLAlchemyError as e:
            raise StorageError("Insert failed", collection=collection, doc_id=doc_id) from e
        return doc_id

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(Document, (collection, doc_id))
                return dict(row.data) if row is not None else None
        except SQLAlchemyError as e:
            raise StorageError("Read failed", collection=collection, doc_id=doc_id) from e

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        await self.batch_set(collection, [{**data, "id": doc_id}])

    async def update(
        self, collection: str, doc_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        def merge(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                raise NotFoundError(
                    f"Document not found in {collection}",
                    resource_type=collection,
                    resource_id=doc_id,
                )
            return {**current, **changes}

        return await self.transaction(collection, doc_id, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    delete(Document).where(
                        Document.collection == collection,
                        Document.doc_id == doc_id,
                    )
                )
        except SQLAlchemyError as e:
            raise StorageError("Delete failed", collection=collection, doc_id=doc_id) from e

    async def _select(
        self, collection: str, filters: Sequence[Filter]
    ) -> list[dict[str, Any]]:
        stmt = select(Document.data).where(Document.collection == collection)
        remaining: list[Filter] = []
        for flt in filters:
            clause = _pushdown(flt)
            if clause is None:
                remaining.append(flt)
            else:
                stmt = stmt.where(clause)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                docs = [dict(data) for (data,) in result]
        except SQLAlchemyError as e:
            raise StorageError("Query failed", collection=collection) from e
        return [d for d in docs if match_filters(d, remaining)]

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        docs = await self._select(collection, filters)
        return paginate(sort_documents(docs, order_by), limit, offset)

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        if not filters:
            try:
                async with self._session_factory() as session:
                    result = await session.execute(
                        select(func.count()).select_from(Document).where(
                            Document.collection == collection
                        )
                    )
                    return result.scalar() or 0
            except SQLAlchemyError as e:
                raise StorageError("Count failed", collection=collection) from e
        return len(await self._select(collection, filters))

    async def batch_set(self, collection: str, documents: Sequence[dict[str, Any]]) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                for doc in documents:
                    await session.merge(
                        Document(collection=collection, doc_id=doc["id"], data=dict(doc))
                    )
        except SQLAlchemyError as e:
            raise StorageError(
                "Batch write failed",
                collection=collection,
                details={"documents": len(documents)},
            ) from e

    async def transaction(
        self,
        collection: str,
        doc_id: str,
        fn: Callable[[dict[str, Any] | None], dict[str, Any]],
    ) -> dict[str, Any]:
        async with self._txn_lock:
            try:
                async with self._session_factory() as session, session.begin():
                    row = await session.get(
                        Document, (collection, doc_id), with_for_update=True
                    )
                    current = dict(row.data) if row is not None else None
                    updated = {**fn(current), "id": doc_id}
                    if row is None:
                        session.add(
                            Document(collection=collection, doc_id=doc_id, data=updated)
                        )
                    else:
                        row.data = updated
                return updated
            except SQLAlchemyError as e:
                raise StorageError(
                    "Transaction failed", collection=collection, doc_id=doc_id
                ) from e
