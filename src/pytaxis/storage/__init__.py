"""Storage backends for orchestration state.

Provides multiple storage implementations behind a common interface:
    - StateStore: Abstract interface
    - InMemoryStateStore: In-memory storage for testing
    - SqliteStateStore: SQLite-backed storage
    - RedisStateStore: Redis-backed distributed storage

and the Blob Store collaborator:
    - BlobStore, InMemoryBlobStore, LocalBlobStore

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the StateStore interface.
    Clients depend on abstraction, not concrete implementations.
"""

from pytaxis.storage.base import StateStore
from pytaxis.storage.blob import BlobStore, InMemoryBlobStore, LocalBlobStore
from pytaxis.storage.memory import InMemoryStateStore

# Backends with optional third-party drivers are imported lazily so that
# importing pytaxis.storage does not open aiosqlite/redis unless used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "RedisStateStore":
        from pytaxis.storage.redis import RedisStateStore

        return RedisStateStore
    elif name == "SqliteStateStore":
        from pytaxis.storage.sqlite import SqliteStateStore

        return SqliteStateStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "StateStore",
    "BlobStore",
    "InMemoryBlobStore",
    "LocalBlobStore",
    "InMemoryStateStore",
    "SqliteStateStore",
    "RedisStateStore",
]
