"""
Persistence layer.

``DocumentStore`` is the interface; ``MemoryStore`` and ``SQLStore`` are
the implementations. ``open_store`` picks one from a URL.
"""

from driveaudit.storage.base import DocumentStore, Filter, OrderBy
from driveaudit.storage.memory import MemoryStore


async def open_store(url: str, echo: bool = False) -> DocumentStore:
    """Open a store: ``memory://`` or any SQLAlchemy async database URL."""
    if url.startswith("memory://"):
        return MemoryStore()
    from driveaudit.storage.sql import SQLStore

    return await SQLStore.connect(url, echo=echo)


__all__ = ["DocumentStore", "Filter", "MemoryStore", "OrderBy", "open_store"]
