"""Hybrid retrieval over a user's knowledge base.

Ranking combines three signals in one pass over the user's items:

* exact, case-insensitive substring match of the query in the item content;
* recency, with an extra boost for preference/memory facts;
* cosine similarity against the query embedding.

Items are ordered by ``(priority desc, similarity desc, created_at desc)`` so
exact and recent matches survive even when the embedding call degraded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from loguru import logger

from marketplace_assistant.application.background import BackgroundTasks
from marketplace_assistant.application.exceptions import (
    EmptyQueryError,
    KnowledgeStoreUnavailableError,
    MissingUserError,
)
from marketplace_assistant.domain.models import (
    EmbeddingResult,
    KnowledgeItem,
    RetrievalResult,
    ScoredItem,
    normalize_query,
)
from marketplace_assistant.domain.protocols import IEmbeddingProvider, IKnowledgeStore

# ---------------------------------------------------------------------------
# Scoring constants
# ---------------------------------------------------------------------------

PRIORITY_EXACT = 3.0
PRIORITY_RECENT_FACT = 2.5
PRIORITY_LAST_DAY = 1.5
PRIORITY_LAST_WEEK = 1.0
PRIORITY_OLDER = 0.5

CONFIDENCE_EXACT = 1.0
CONFIDENCE_RECENT_FACT = 0.3
# (minimum similarity, confidence) checked top-down; the floor band comes last.
CONFIDENCE_BANDS = ((0.7, 0.9), (0.5, 0.7))
CONFIDENCE_ABOVE_FLOOR = 0.4

ONE_DAY = timedelta(days=1)
ONE_WEEK = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RetrievalEngine:
    """Ranks a user's knowledge items against a query.

    Parameters
    ----------
    store:
        Knowledge store; only ``similarity_scan`` and ``touch`` are used.
    embedder:
        Provider for the query embedding. Degraded vectors zero out similarity.
    similarity_floor:
        Similarity at or below which a non-exact, non-recent item is dropped.
    default_limit:
        Result cap when the caller does not pass one.
    store_timeout_seconds:
        Bound on the knowledge-store read; exceeding it raises
        ``KnowledgeStoreUnavailableError``. None waits indefinitely.
    """

    def __init__(
        self,
        store: IKnowledgeStore,
        embedder: IEmbeddingProvider,
        *,
        similarity_floor: float = 0.25,
        default_limit: int = 8,
        store_timeout_seconds: float | None = None,
        background: BackgroundTasks | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.similarity_floor = similarity_floor
        self.default_limit = default_limit
        self.store_timeout_seconds = store_timeout_seconds
        self.background = background or BackgroundTasks()
        self._clock = clock

    async def retrieve(
        self,
        user_id: str,
        query_text: str,
        limit: int | None = None,
        query_embedding: EmbeddingResult | None = None,
    ) -> RetrievalResult:
        """Return the top-ranked items for *query_text* within *user_id*'s partition.

        *query_embedding* is the caller's embedding of *query_text*, when it
        already has one; the query is then not embedded again.

        Raises:
            MissingUserError: If *user_id* is empty.
            EmptyQueryError: If *query_text* is empty or whitespace.
            ValueError: If *limit* is below 1.
        """
        if not user_id:
            raise MissingUserError("user_id is required")
        if not query_text or not query_text.strip():
            raise EmptyQueryError("query text must not be empty")
        if limit is None:
            limit = self.default_limit
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")

        embedding = query_embedding or await self.embedder.embed(query_text)
        query_vector = None if embedding.degraded else embedding.vector
        candidates = await self._scan(user_id, query_vector)

        now = self._clock()
        needle = normalize_query(query_text)
        scored = [
            self.score(item, similarity, needle, now)
            for item, similarity in candidates
            if item.user_id == user_id
        ]
        kept = [s for s in scored if self._keep(s, now)]
        kept.sort(key=_sort_key)
        top = kept[:limit]

        result = RetrievalResult(items=top, degraded_query=embedding.degraded)
        if result.ids:
            self.background.spawn(self.store.touch(user_id, result.ids), name="knowledge-touch")

        logger.info(
            "Retrieval | user={} candidates={} kept={} returned={} degraded={}",
            user_id,
            len(candidates),
            len(kept),
            len(top),
            embedding.degraded,
        )
        return result

    async def _scan(self, user_id: str, query_vector: list[float] | None) -> list[tuple[KnowledgeItem, float]]:
        try:
            return await asyncio.wait_for(
                self.store.similarity_scan(user_id, query_vector), timeout=self.store_timeout_seconds
            )
        except TimeoutError as exc:
            raise KnowledgeStoreUnavailableError(
                f"knowledge store read exceeded {self.store_timeout_seconds}s"
            ) from exc

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, item: KnowledgeItem, similarity: float, needle: str, now: datetime) -> ScoredItem:
        """Priority and confidence for one item."""
        if item.embedding is None or item.embedding_degraded:
            similarity = 0.0
        exact = bool(needle) and needle in normalize_query(item.content)
        recent_fact = self._is_recent_fact(item, now)

        if exact:
            priority = PRIORITY_EXACT
        elif recent_fact:
            priority = PRIORITY_RECENT_FACT
        elif _age(item, now) <= ONE_DAY:
            priority = PRIORITY_LAST_DAY
        elif _age(item, now) <= ONE_WEEK:
            priority = PRIORITY_LAST_WEEK
        else:
            priority = PRIORITY_OLDER

        return ScoredItem(
            item=item,
            similarity=similarity,
            priority=priority,
            confidence=self._confidence(exact, similarity, recent_fact),
            exact_match=exact,
        )

    def _confidence(self, exact: bool, similarity: float, recent_fact: bool) -> float:
        if exact:
            return CONFIDENCE_EXACT
        if similarity > self.similarity_floor:
            for threshold, confidence in CONFIDENCE_BANDS:
                if similarity >= threshold:
                    return confidence
            return CONFIDENCE_ABOVE_FLOOR
        if recent_fact:
            return CONFIDENCE_RECENT_FACT
        return 0.0

    def _keep(self, scored: ScoredItem, now: datetime) -> bool:
        if scored.confidence <= 0.0:
            return False
        return (
            scored.exact_match
            or scored.similarity > self.similarity_floor
            or self._is_recent_fact(scored.item, now)
        )

    @staticmethod
    def _is_recent_fact(item: KnowledgeItem, now: datetime) -> bool:
        return item.is_user_fact and _age(item, now) <= ONE_WEEK


def _age(item: KnowledgeItem, now: datetime) -> timedelta:
    if item.created_at is None:
        return timedelta.max
    return now - item.created_at


def _sort_key(scored: ScoredItem) -> tuple:
    created = scored.item.created_at.timestamp() if scored.item.created_at else 0.0
    return (-scored.priority, -scored.similarity, -created, scored.item.id or "")


# ---------------------------------------------------------------------------
# Prompt rendering
# ---------------------------------------------------------------------------


def format_context(result: RetrievalResult) -> str:
    """Render retrieved items as a numbered context block for the prompt."""
    if not result.items:
        return ""
    lines = []
    for i, scored in enumerate(result.items, start=1):
        item = scored.item
        lines.append(f"[{i}] ({item.content_type.value}) {item.content}")
    return "\n".join(lines)
