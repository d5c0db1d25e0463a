"""
Profile store abstraction: credit profiles and score history per user.

Two implementations behind one interface: a sharded in-memory store (each
shard has its own lock) and SQLite (one connection per operation). The
scoring engine only talks to ProfileStore, so the backend is swappable.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import ContextManager, Iterable, Iterator

from backend_credit.analysis_engine.models import CreditProfile, Dimension, ScoreHistory
from backend_credit.core.exceptions import CommitAbandonedError, StoreError
from backend_credit.credit_logging import get_logger

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 1000
DEFAULT_SHARD_COUNT = 16

SCHEMA_CREDIT_PROFILES = """
CREATE TABLE IF NOT EXISTS credit_profiles (
    user_address TEXT PRIMARY KEY,
    profile_json TEXT NOT NULL,
    last_updated REAL NOT NULL,
    created_at INTEGER,
    updated_at INTEGER
);
CREATE INDEX IF NOT EXISTS ix_credit_profiles_last_updated ON credit_profiles(last_updated);
"""

SCHEMA_SCORE_HISTORY = """
CREATE TABLE IF NOT EXISTS score_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_address TEXT NOT NULL,
    dimension TEXT NOT NULL,
    score INTEGER NOT NULL,
    confidence INTEGER NOT NULL,
    trigger_reason TEXT,
    timestamp REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_score_history_user ON score_history(user_address);
CREATE INDEX IF NOT EXISTS ix_score_history_user_ts ON score_history(user_address, timestamp);
"""


def stable_hash(key: str) -> int:
    """Process-independent hash (builtin hash() is salted per process)."""
    return int.from_bytes(hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest(), "big")


def _in_range(entry: ScoreHistory, dimension: Dimension | None, since: float | None, until: float | None) -> bool:
    if dimension is not None and entry.dimension != dimension:
        return False
    if since is not None and entry.timestamp < since:
        return False
    if until is not None and entry.timestamp > until:
        return False
    return True


class CommitGuard:
    """
    Hand-off between a commit running on an I/O thread and the caller waiting
    on it. The store enters committing() around the moment its write becomes
    visible; a caller that gave up calls abandon() so a write that has not
    landed yet is rolled back instead of surfacing later.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._committed = False

    @property
    def committed(self) -> bool:
        with self._lock:
            return self._committed

    @contextmanager
    def committing(self) -> Iterator[None]:
        with self._lock:
            if self._abandoned:
                raise CommitAbandonedError("Commit abandoned by caller before it landed")
            yield
            self._committed = True

    def abandon(self) -> bool:
        """Veto the commit. Returns False when it already landed."""
        with self._lock:
            if self._committed:
                return False
            self._abandoned = True
            return True


def _committing(guard: CommitGuard | None) -> ContextManager[None]:
    return guard.committing() if guard is not None else nullcontext()


class ProfileStore(ABC):
    """Abstract store for profiles and history."""

    @abstractmethod
    def load_profile(self, user_address: str) -> CreditProfile | None:
        """Return the stored profile, or None for an unknown user."""

    @abstractmethod
    def save_profile(self, profile: CreditProfile) -> None:
        """Insert or replace the user's profile."""

    @abstractmethod
    def append_history(self, user_address: str, entries: Iterable[ScoreHistory]) -> None:
        """Append history entries; oldest are trimmed beyond history_limit."""

    @abstractmethod
    def commit(
        self,
        profile: CreditProfile,
        entries: Iterable[ScoreHistory],
        guard: CommitGuard | None = None,
    ) -> None:
        """
        Append entries to the profile's history and save the profile as one
        unit: either both are visible afterwards or neither is.
        """

    @abstractmethod
    def load_history(
        self,
        user_address: str,
        dimension: Dimension | None = None,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ScoreHistory]:
        """History ordered by timestamp ascending, optionally filtered."""

    @abstractmethod
    def list_users(self) -> list[str]:
        """Addresses with a stored profile."""

    def close(self) -> None:
        """Release resources. Default: nothing to do."""


class _Shard:
    __slots__ = ("lock", "profiles", "history")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.profiles: dict[str, CreditProfile] = {}
        self.history: dict[str, deque[ScoreHistory]] = {}


class InMemoryProfileStore(ProfileStore):
    """Sharded in-memory store; a user always maps to the same shard."""

    def __init__(
        self,
        *,
        shard_count: int = DEFAULT_SHARD_COUNT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._shards = [_Shard() for _ in range(shard_count)]
        self._history_limit = history_limit

    def _shard(self, user_address: str) -> _Shard:
        return self._shards[stable_hash(user_address) % len(self._shards)]

    def load_profile(self, user_address: str) -> CreditProfile | None:
        shard = self._shard(user_address)
        with shard.lock:
            profile = shard.profiles.get(user_address)
            return profile.snapshot() if profile is not None else None

    def save_profile(self, profile: CreditProfile) -> None:
        shard = self._shard(profile.user_address)
        with shard.lock:
            shard.profiles[profile.user_address] = profile.snapshot()

    def _history_buffer(self, shard: _Shard, user_address: str) -> deque[ScoreHistory]:
        buf = shard.history.get(user_address)
        if buf is None:
            buf = deque(maxlen=self._history_limit)
            shard.history[user_address] = buf
        return buf

    def append_history(self, user_address: str, entries: Iterable[ScoreHistory]) -> None:
        shard = self._shard(user_address)
        with shard.lock:
            self._history_buffer(shard, user_address).extend(entries)

    def commit(
        self,
        profile: CreditProfile,
        entries: Iterable[ScoreHistory],
        guard: CommitGuard | None = None,
    ) -> None:
        snapshot = profile.snapshot()
        entries = list(entries)
        shard = self._shard(profile.user_address)
        with shard.lock, _committing(guard):
            self._history_buffer(shard, profile.user_address).extend(entries)
            shard.profiles[profile.user_address] = snapshot

    def load_history(
        self,
        user_address: str,
        dimension: Dimension | None = None,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ScoreHistory]:
        shard = self._shard(user_address)
        with shard.lock:
            entries = list(shard.history.get(user_address, ()))
        out = [e for e in entries if _in_range(e, dimension, since, until)]
        out.sort(key=lambda e: e.timestamp)
        return out

    def list_users(self) -> list[str]:
        users: list[str] = []
        for shard in self._shards:
            with shard.lock:
                users.extend(shard.profiles.keys())
        return sorted(users)


class SQLiteProfileStore(ProfileStore):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(
        self,
        path: str | Path,
        *,
        timeout_sec: float = 5.0,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec
        self._history_limit = history_limit

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self, guard: CommitGuard | None = None) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open profile store: {e}", path=str(self._path)) from e
        try:
            cur = conn.cursor()
            yield cur
            with _committing(guard):
                conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Profile store operation failed: {e}", path=str(self._path)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            for stmt in (SCHEMA_CREDIT_PROFILES, SCHEMA_SCORE_HISTORY):
                cur.executescript(stmt)

    def load_profile(self, user_address: str) -> CreditProfile | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT profile_json FROM credit_profiles WHERE user_address = ?",
                (user_address,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return CreditProfile.from_dict(json.loads(row["profile_json"]))

    def _upsert_profile(self, cur: sqlite3.Cursor, profile: CreditProfile) -> None:
        now = int(time.time())
        cur.execute(
            """
            INSERT INTO credit_profiles (user_address, profile_json, last_updated, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_address) DO UPDATE SET
                profile_json = excluded.profile_json,
                last_updated = excluded.last_updated,
                updated_at = excluded.updated_at
            """,
            (
                profile.user_address,
                json.dumps(profile.to_dict()),
                profile.last_updated,
                now,
                now,
            ),
        )

    def _insert_history(self, cur: sqlite3.Cursor, user_address: str, entries: Iterable[ScoreHistory]) -> None:
        rows = [
            (user_address, e.dimension.value, e.score, e.confidence, e.trigger, e.timestamp)
            for e in entries
        ]
        if not rows:
            return
        cur.executemany(
            """
            INSERT INTO score_history (user_address, dimension, score, confidence, trigger_reason, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        # Keep the newest history_limit rows per user
        cur.execute(
            """
            DELETE FROM score_history
            WHERE user_address = ? AND id NOT IN (
                SELECT id FROM score_history WHERE user_address = ?
                ORDER BY id DESC LIMIT ?
            )
            """,
            (user_address, user_address, self._history_limit),
        )

    def save_profile(self, profile: CreditProfile) -> None:
        with self._cursor() as cur:
            self._upsert_profile(cur, profile)

    def append_history(self, user_address: str, entries: Iterable[ScoreHistory]) -> None:
        with self._cursor() as cur:
            self._insert_history(cur, user_address, entries)

    def commit(
        self,
        profile: CreditProfile,
        entries: Iterable[ScoreHistory],
        guard: CommitGuard | None = None,
    ) -> None:
        """History rows and the profile upsert share one transaction."""
        with self._cursor(guard) as cur:
            self._insert_history(cur, profile.user_address, entries)
            self._upsert_profile(cur, profile)

    def load_history(
        self,
        user_address: str,
        dimension: Dimension | None = None,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ScoreHistory]:
        sql = "SELECT dimension, score, confidence, trigger_reason, timestamp FROM score_history WHERE user_address = ?"
        params: list[object] = [user_address]
        if dimension is not None:
            sql += " AND dimension = ?"
            params.append(dimension.value)
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(since)
        if until is not None:
            sql += " AND timestamp <= ?"
            params.append(until)
        sql += " ORDER BY timestamp ASC, id ASC"
        with self._cursor() as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [
            ScoreHistory(
                timestamp=row["timestamp"],
                dimension=Dimension(row["dimension"]),
                score=row["score"],
                confidence=row["confidence"],
                trigger=row["trigger_reason"] or "",
            )
            for row in rows
        ]

    def list_users(self) -> list[str]:
        with self._cursor() as cur:
            cur.execute("SELECT user_address FROM credit_profiles ORDER BY user_address")
            return [row["user_address"] for row in cur.fetchall()]


def get_store(
    path: str | Path | None = None,
    *,
    timeout_sec: float = 5.0,
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> ProfileStore:
    """
    Return a ProfileStore.

    path: SQLite file (e.g. "data/credit.db"); None gives the in-memory store.
    """
    if path is None:
        return InMemoryProfileStore(history_limit=history_limit)
    store = SQLiteProfileStore(path, timeout_sec=timeout_sec, history_limit=history_limit)
    store.ensure_schema()
    logger.info("profile_store_ready", backend="sqlite", path=str(path))
    return store
