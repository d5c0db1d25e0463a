"""
Profile store layer — credit profiles and score history.

In-memory (sharded) by default; SQLite via get_store(path). Backend is swappable.
"""

from backend_credit.database.store import (
    CommitGuard,
    InMemoryProfileStore,
    ProfileStore,
    SQLiteProfileStore,
    get_store,
    stable_hash,
)

__all__ = [
    "CommitGuard",
    "InMemoryProfileStore",
    "ProfileStore",
    "SQLiteProfileStore",
    "get_store",
    "stable_hash",
]
