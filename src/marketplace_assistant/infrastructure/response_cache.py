"""Per-user response cache stored in SQLite.

Entries are keyed by ``(user_id, fingerprint)`` where the fingerprint is a
hash of the trimmed, lower-cased query. An entry is served only while
``now < expires_at``. Expired rows are swept lazily on every store and by the
maintenance job.

Optional semantic matching: when ``semantic_threshold`` is set, a fingerprint
miss falls back to the user's closest non-expired entry whose query embedding
has cosine similarity at or above the threshold. Degraded vectors never match.
"""

from __future__ import annotations

import asyncio
import hashlib
import sqlite3
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import sqlite_vec
from loguru import logger
from sqlite_vec import serialize_float32

from marketplace_assistant.application.exceptions import CacheUnavailableError, MissingUserError
from marketplace_assistant.domain.models import (
    CachedResponse,
    CacheEntry,
    CacheStats,
    EmbeddingResult,
    normalize_query,
)
from marketplace_assistant.infrastructure.knowledge_store import (
    from_db_time,
    to_db_time,
    unpack_vector,
)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS response_cache (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    query_fingerprint TEXT NOT NULL,
    query_text TEXT NOT NULL,
    query_embedding BLOB,
    response TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    hit_count INTEGER NOT NULL DEFAULT 0,
    last_hit_at TEXT,
    UNIQUE(user_id, query_fingerprint)
);

CREATE INDEX IF NOT EXISTS idx_response_cache_expires ON response_cache(expires_at);
"""

_COLUMNS = (
    "id, user_id, query_fingerprint, query_text, query_embedding, response, "
    "created_at, expires_at, hit_count, last_hit_at"
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def fingerprint(text: str) -> str:
    """Stable hash of the normalized query text."""
    return hashlib.sha256(normalize_query(text).encode("utf-8")).hexdigest()


def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        id=row["id"],
        user_id=row["user_id"],
        query_fingerprint=row["query_fingerprint"],
        query_text=row["query_text"],
        response=CachedResponse.model_validate_json(row["response"]),
        created_at=from_db_time(row["created_at"]),
        expires_at=from_db_time(row["expires_at"]),
        hit_count=row["hit_count"],
        last_hit_at=from_db_time(row["last_hit_at"]),
        query_embedding=unpack_vector(row["query_embedding"]),
    )


class ResponseCache:
    """TTL cache of generated answers, partitioned by user."""

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: int = 1800,
        semantic_threshold: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db_path = db_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self.semantic_threshold = semantic_threshold
        self._clock = clock
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open (or create) the cache database and ensure the schema exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.enable_load_extension(True)
        sqlite_vec.load(self.conn)
        self.conn.enable_load_extension(False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_SCHEMA_SQL)
        logger.info(
            "Response cache connected | path={} ttl={}s semantic_threshold={}",
            self.db_path,
            int(self.ttl.total_seconds()),
            self.semantic_threshold,
        )

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self.conn is None:
            raise CacheUnavailableError("response cache is not connected")
        with self._lock:
            try:
                return fn(self.conn, *args)
            except sqlite3.Error as exc:
                raise CacheUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def lookup(
        self,
        user_id: str,
        query_text: str,
        query_embedding: EmbeddingResult | None = None,
    ) -> CacheEntry | None:
        """Return the live entry for this user's query, or None on a miss."""
        if not user_id:
            raise MissingUserError("user_id is required")
        now = to_db_time(self._clock())
        entry = await self._run(self._lookup_exact_sync, user_id, fingerprint(query_text), now)
        if entry is not None:
            return entry

        if (
            self.semantic_threshold is None
            or query_embedding is None
            or query_embedding.degraded
            or not query_embedding.vector
        ):
            return None
        return await self._run(
            self._lookup_semantic_sync, user_id, query_embedding.vector, now
        )

    @staticmethod
    def _lookup_exact_sync(
        conn: sqlite3.Connection, user_id: str, fp: str, now: str
    ) -> CacheEntry | None:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM response_cache "
            "WHERE user_id = ? AND query_fingerprint = ? AND expires_at > ?",
            (user_id, fp, now),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def _lookup_semantic_sync(
        self, conn: sqlite3.Connection, user_id: str, vector: list[float], now: str
    ) -> CacheEntry | None:
        blob = serialize_float32(vector)
        row = conn.execute(
            f"SELECT {_COLUMNS}, 1.0 - vec_distance_cosine(query_embedding, ?) AS similarity "
            "FROM response_cache "
            "WHERE user_id = ? AND expires_at > ? "
            "AND query_embedding IS NOT NULL AND length(query_embedding) = ? "
            "ORDER BY similarity DESC LIMIT 1",
            (blob, user_id, now, len(blob)),
        ).fetchone()
        if row is None or row["similarity"] is None:
            return None
        if row["similarity"] < self.semantic_threshold:
            return None
        logger.debug(
            "Semantic cache match | user={} similarity={:.3f}", user_id, row["similarity"]
        )
        return _row_to_entry(row)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def store(
        self,
        user_id: str,
        query_text: str,
        response: CachedResponse,
        used_context_ids: list[str] | None = None,
        query_embedding: EmbeddingResult | None = None,
    ) -> CacheEntry:
        """Upsert the answer for this user's query with a fresh TTL."""
        if not user_id:
            raise MissingUserError("user_id is required")
        if used_context_ids is not None:
            response = response.model_copy(update={"source_ids": list(used_context_ids)})
        vector = None
        if query_embedding is not None and not query_embedding.degraded:
            vector = query_embedding.vector
        return await self._run(self._store_sync, user_id, query_text, response, vector)

    def _store_sync(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        query_text: str,
        response: CachedResponse,
        vector: list[float] | None,
    ) -> CacheEntry:
        now = self._clock()
        expires = now + self.ttl
        # Lazy sweep: expired rows are never served, so drop them here.
        conn.execute("DELETE FROM response_cache WHERE expires_at <= ?", (to_db_time(now),))
        conn.execute(
            "INSERT INTO response_cache "
            "(id, user_id, query_fingerprint, query_text, query_embedding, response, "
            " created_at, expires_at, hit_count, last_hit_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, NULL) "
            "ON CONFLICT(user_id, query_fingerprint) DO UPDATE SET "
            "query_text = excluded.query_text, query_embedding = excluded.query_embedding, "
            "response = excluded.response, created_at = excluded.created_at, "
            "expires_at = excluded.expires_at, hit_count = 0, last_hit_at = NULL",
            (
                uuid.uuid4().hex,
                user_id,
                fingerprint(query_text),
                query_text,
                serialize_float32(vector) if vector else None,
                response.model_dump_json(),
                to_db_time(now),
                to_db_time(expires),
            ),
        )
        conn.commit()
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM response_cache WHERE user_id = ? AND query_fingerprint = ?",
            (user_id, fingerprint(query_text)),
        ).fetchone()
        return _row_to_entry(row)

    # ------------------------------------------------------------------
    # Accounting and maintenance
    # ------------------------------------------------------------------

    async def record_hit(self, entry: CacheEntry) -> None:
        """Increment ``hit_count`` and stamp ``last_hit_at`` on *entry*."""
        now = self._clock()

        def _update(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE response_cache SET hit_count = hit_count + 1, last_hit_at = ? "
                "WHERE id = ? AND user_id = ?",
                (to_db_time(now), entry.id, entry.user_id),
            )
            conn.commit()

        await self._run(_update)
        entry.hit_count += 1
        entry.last_hit_at = now

    async def clear_user(self, user_id: str) -> int:
        """Drop every cached answer belonging to *user_id*."""
        if not user_id:
            raise MissingUserError("user_id is required")

        def _delete(conn: sqlite3.Connection) -> int:
            cursor = conn.execute("DELETE FROM response_cache WHERE user_id = ?", (user_id,))
            conn.commit()
            return cursor.rowcount

        return await self._run(_delete)

    async def sweep_expired(self) -> int:
        """Delete all expired entries. Returns the number removed."""
        now = to_db_time(self._clock())

        def _delete(conn: sqlite3.Connection) -> int:
            cursor = conn.execute("DELETE FROM response_cache WHERE expires_at <= ?", (now,))
            conn.commit()
            return cursor.rowcount

        removed = await self._run(_delete)
        if removed:
            logger.info("Response cache sweep | removed={}", removed)
        return removed

    async def stats(self, user_id: str) -> CacheStats:
        now = to_db_time(self._clock())

        def _stats(conn: sqlite3.Connection) -> CacheStats:
            row = conn.execute(
                "SELECT COUNT(*) AS entries, "
                "COALESCE(SUM(CASE WHEN expires_at > ? THEN 1 ELSE 0 END), 0) AS active, "
                "COALESCE(SUM(hit_count), 0) AS total_hits "
                "FROM response_cache WHERE user_id = ?",
                (now, user_id),
            ).fetchone()
            return CacheStats(
                entries=row["entries"], active=row["active"], total_hits=row["total_hits"]
            )

        return await self._run(_stats)
