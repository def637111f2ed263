"""Per-user knowledge base stored in SQLite.

Every statement is scoped by ``user_id``. Embeddings are stored as float32
blobs (``sqlite_vec.serialize_float32``) and compared in SQL with
``vec_distance_cosine`` so one query returns each item together with its
similarity to the query vector.

The connection is shared across requests; blocking calls run in worker
threads behind a lock.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from array import array
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import sqlite_vec
from loguru import logger
from sqlite_vec import serialize_float32

from marketplace_assistant.application.exceptions import (
    EmptyContentError,
    KnowledgeStoreUnavailableError,
    MissingUserError,
)
from marketplace_assistant.domain.models import ContentType, ItemMetadata, KnowledgeItem
from marketplace_assistant.domain.protocols import IEmbeddingProvider

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS knowledge_items (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    content_type TEXT NOT NULL CHECK(content_type IN
        ('conversation', 'document', 'preference', 'feedback', 'memory')),
    embedding BLOB,
    embedding_degraded INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    topics TEXT NOT NULL DEFAULT '[]',
    importance_score REAL NOT NULL DEFAULT 1.0,
    access_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed_at TEXT,
    UNIQUE(user_id, content, content_type)
);

CREATE INDEX IF NOT EXISTS idx_knowledge_user_created
    ON knowledge_items(user_id, created_at);
"""

_COLUMNS = (
    "id, user_id, content, content_type, embedding, embedding_degraded, metadata, "
    "topics, importance_score, access_count, created_at, updated_at, last_accessed_at"
)

# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


def to_db_time(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def unpack_vector(blob: bytes | None) -> list[float] | None:
    if blob is None:
        return None
    return array("f", blob).tolist()


def _row_to_item(row: sqlite3.Row) -> KnowledgeItem:
    return KnowledgeItem(
        id=row["id"],
        user_id=row["user_id"],
        content=row["content"],
        content_type=ContentType(row["content_type"]),
        embedding=unpack_vector(row["embedding"]),
        embedding_degraded=bool(row["embedding_degraded"]),
        metadata=ItemMetadata.from_dict(json.loads(row["metadata"] or "{}")),
        topics=set(json.loads(row["topics"] or "[]")),
        importance_score=row["importance_score"],
        access_count=row["access_count"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        last_accessed_at=from_db_time(row["last_accessed_at"]),
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class KnowledgeStore:
    """Durable, tenant-partitioned store of knowledge items.

    Parameters
    ----------
    db_path:
        SQLite file; created with its schema on ``connect()``.
    embedder:
        Used to vectorize items written without an embedding.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db_path: Path,
        embedder: IEmbeddingProvider,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.db_path = db_path
        self.embedder = embedder
        self._clock = clock
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open (or create) the database, load sqlite-vec and ensure the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.enable_load_extension(True)
        sqlite_vec.load(self.conn)
        self.conn.enable_load_extension(False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(_SCHEMA_SQL)
        logger.info("Knowledge store connected | path={}", self.db_path)

    def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self.conn is None:
            raise KnowledgeStoreUnavailableError("knowledge store is not connected")
        with self._lock:
            try:
                return fn(self.conn, *args)
            except sqlite3.Error as exc:
                raise KnowledgeStoreUnavailableError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def write(self, item: KnowledgeItem) -> str:
        """Persist *item* and return its id.

        Idempotent on ``(user_id, content, content_type)``: writing the same
        fact again bumps the existing row's access stats and returns its id.
        """
        if not item.user_id or not item.user_id.strip():
            raise MissingUserError("user_id is required")
        item.content = (item.content or "").strip()
        if not item.content:
            raise EmptyContentError("content must not be empty")

        if item.embedding is None:
            result = await self.embedder.embed(item.content)
            item.embedding = result.vector
            item.embedding_degraded = result.degraded

        item_id, created = await self._run(self._write_sync, item)
        logger.debug(
            "Knowledge write | user={} id={} type={} new={}",
            item.user_id,
            item_id,
            item.content_type.value,
            created,
        )
        return item_id

    def _write_sync(self, conn: sqlite3.Connection, item: KnowledgeItem) -> tuple[str, bool]:
        now = self._clock()
        item_id = item.id or uuid.uuid4().hex
        created_at = item.created_at or now
        cursor = conn.execute(
            f"INSERT OR IGNORE INTO knowledge_items ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item_id,
                item.user_id,
                item.content,
                item.content_type.value,
                serialize_float32(item.embedding) if item.embedding is not None else None,
                int(item.embedding_degraded),
                json.dumps(item.metadata.to_dict()),
                json.dumps(sorted(item.topics)),
                item.importance_score,
                item.access_count,
                to_db_time(created_at),
                to_db_time(now),
                to_db_time(item.last_accessed_at) if item.last_accessed_at else None,
            ),
        )
        if cursor.rowcount == 1:
            conn.commit()
            item.id = item_id
            return item_id, True

        row = conn.execute(
            "SELECT id FROM knowledge_items WHERE user_id = ? AND content = ? AND content_type = ?",
            (item.user_id, item.content, item.content_type.value),
        ).fetchone()
        if row is None:
            # Primary key collision with another user's row, never a dedup hit.
            raise KnowledgeStoreUnavailableError(f"id conflict for knowledge item {item_id}")
        conn.execute(
            "UPDATE knowledge_items SET access_count = access_count + 1, "
            "last_accessed_at = ?, updated_at = ?, "
            "importance_score = MAX(importance_score, ?) "
            "WHERE id = ? AND user_id = ?",
            (to_db_time(now), to_db_time(now), item.importance_score, row["id"], item.user_id),
        )
        if item.embedding is not None and not item.embedding_degraded:
            # A row written during an embedding outage gets the fresh vector.
            repaired = conn.execute(
                "UPDATE knowledge_items SET embedding = ?, embedding_degraded = 0 "
                "WHERE id = ? AND user_id = ? AND embedding_degraded = 1",
                (serialize_float32(item.embedding), row["id"], item.user_id),
            ).rowcount
            if repaired:
                logger.info("Re-embedded degraded knowledge item | user={} id={}", item.user_id, row["id"])
        conn.commit()
        item.id = row["id"]
        return row["id"], False

    async def touch(self, user_id: str, ids: Iterable[str]) -> int:
        """Bump ``access_count`` and ``last_accessed_at`` for a batch of ids."""
        id_list = [i for i in ids if i]
        if not id_list:
            return 0
        return await self._run(self._touch_sync, user_id, id_list)

    def _touch_sync(self, conn: sqlite3.Connection, user_id: str, ids: list[str]) -> int:
        now = to_db_time(self._clock())
        placeholders = ", ".join("?" for _ in ids)
        cursor = conn.execute(
            "UPDATE knowledge_items SET access_count = access_count + 1, last_accessed_at = ? "
            f"WHERE user_id = ? AND id IN ({placeholders})",
            (now, user_id, *ids),
        )
        conn.commit()
        return cursor.rowcount

    async def purge_older_than(self, user_id: str, age: timedelta) -> int:
        """Delete one user's items created more than *age* ago."""
        if not user_id:
            raise MissingUserError("user_id is required")
        cutoff = to_db_time(self._clock() - age)
        return await self._run(
            self._delete_sync,
            "DELETE FROM knowledge_items WHERE user_id = ? AND created_at < ?",
            (user_id, cutoff),
        )

    async def purge_all_older_than(self, age: timedelta) -> int:
        """Retention sweep across all users. Maintenance job only."""
        cutoff = to_db_time(self._clock() - age)
        return await self._run(
            self._delete_sync, "DELETE FROM knowledge_items WHERE created_at < ?", (cutoff,)
        )

    async def reembed_degraded(self, batch_size: int = 100) -> int:
        """Retry the embedding of rows written during an outage (all users).

        Returns the number of rows that now carry a real vector; rows whose
        embedding degrades again stay flagged for the next run.
        """
        rows = await self._run(self._degraded_rows_sync, batch_size)
        repaired = 0
        for item_id, user_id, content in rows:
            result = await self.embedder.embed(content)
            if result.degraded:
                continue
            repaired += await self._run(self._set_embedding_sync, item_id, user_id, result.vector)
        if rows:
            logger.info("Degraded embeddings retried | found={} repaired={}", len(rows), repaired)
        return repaired

    @staticmethod
    def _degraded_rows_sync(conn: sqlite3.Connection, batch_size: int) -> list[tuple[str, str, str]]:
        rows = conn.execute(
            "SELECT id, user_id, content FROM knowledge_items "
            "WHERE embedding_degraded = 1 ORDER BY created_at LIMIT ?",
            (batch_size,),
        ).fetchall()
        return [(r["id"], r["user_id"], r["content"]) for r in rows]

    @staticmethod
    def _set_embedding_sync(conn: sqlite3.Connection, item_id: str, user_id: str, vector: list[float]) -> int:
        cursor = conn.execute(
            "UPDATE knowledge_items SET embedding = ?, embedding_degraded = 0 "
            "WHERE id = ? AND user_id = ? AND embedding_degraded = 1",
            (serialize_float32(vector), item_id, user_id),
        )
        conn.commit()
        return cursor.rowcount

    @staticmethod
    def _delete_sync(conn: sqlite3.Connection, sql: str, params: tuple) -> int:
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        user_id: str,
        predicate: Callable[[KnowledgeItem], bool] | None = None,
        content_types: Iterable[ContentType] | None = None,
    ) -> list[KnowledgeItem]:
        """Return the user's items, newest first, optionally filtered."""
        if not user_id:
            raise MissingUserError("user_id is required")
        types = [ContentType(t).value for t in content_types] if content_types else []
        items = await self._run(self._query_sync, user_id, types)
        if predicate is not None:
            items = [i for i in items if predicate(i)]
        return items

    @staticmethod
    def _query_sync(conn: sqlite3.Connection, user_id: str, types: list[str]) -> list[KnowledgeItem]:
        sql = f"SELECT {_COLUMNS} FROM knowledge_items WHERE user_id = ?"
        params: list[Any] = [user_id]
        if types:
            sql += f" AND content_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        sql += " ORDER BY created_at DESC, id"
        return [_row_to_item(r) for r in conn.execute(sql, params).fetchall()]

    async def similarity_scan(
        self, user_id: str, query_vector: list[float] | None
    ) -> list[tuple[KnowledgeItem, float]]:
        """Every item of the user paired with its cosine similarity to *query_vector*.

        Similarity is 0.0 when the query vector is None, the item has no
        embedding, the item's embedding is degraded, or dimensions differ.
        """
        if not user_id:
            raise MissingUserError("user_id is required")
        return await self._run(self._similarity_scan_sync, user_id, query_vector)

    @staticmethod
    def _similarity_scan_sync(
        conn: sqlite3.Connection, user_id: str, query_vector: list[float] | None
    ) -> list[tuple[KnowledgeItem, float]]:
        blob = serialize_float32(query_vector) if query_vector else None
        rows = conn.execute(
            f"SELECT {_COLUMNS}, "
            "CASE WHEN ? IS NULL OR embedding IS NULL OR embedding_degraded = 1 "
            "          OR length(embedding) != ? THEN 0.0 "
            "     ELSE COALESCE(1.0 - vec_distance_cosine(embedding, ?), 0.0) "
            "END AS similarity "
            "FROM knowledge_items WHERE user_id = ?",
            (blob, len(blob) if blob else 0, blob, user_id),
        ).fetchall()
        return [(_row_to_item(r), float(r["similarity"])) for r in rows]

    async def get(self, user_id: str, item_id: str) -> KnowledgeItem | None:
        rows = await self._run(
            lambda conn: conn.execute(
                f"SELECT {_COLUMNS} FROM knowledge_items WHERE user_id = ? AND id = ?",
                (user_id, item_id),
            ).fetchall()
        )
        return _row_to_item(rows[0]) if rows else None

    async def count(self, user_id: str) -> int:
        row = await self._run(
            lambda conn: conn.execute(
                "SELECT COUNT(*) AS n FROM knowledge_items WHERE user_id = ?", (user_id,)
            ).fetchone()
        )
        return int(row["n"])
