"""Domain service interfaces (ports).

These protocols define the contracts that infrastructure implementations
must satisfy.  The application layer depends on these abstractions,
not on concrete classes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from datetime import timedelta
from typing import Any, Protocol, runtime_checkable

from marketplace_assistant.domain.models import (
    CachedResponse,
    CacheEntry,
    CacheStats,
    ChatMessage,
    ContentType,
    EmbeddingResult,
    KnowledgeItem,
    ToolResult,
)

# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


@runtime_checkable
class IEmbeddingProvider(Protocol):
    """Turns text into a fixed-length vector.

    Implementations: AzureEmbeddingProvider, HashingEmbeddingProvider.
    Must never raise for upstream failures; return a degraded result instead.
    """

    @property
    def dimensions(self) -> int: ...

    async def embed(self, text: str) -> EmbeddingResult: ...


# ---------------------------------------------------------------------------
# Knowledge store
# ---------------------------------------------------------------------------


@runtime_checkable
class IKnowledgeStore(Protocol):
    """Per-user durable store of knowledge items.

    Implementations: KnowledgeStore (SQLite-backed).
    """

    async def write(self, item: KnowledgeItem) -> str: ...

    async def query(
        self,
        user_id: str,
        predicate: Callable[[KnowledgeItem], bool] | None = None,
        content_types: Iterable[ContentType] | None = None,
    ) -> list[KnowledgeItem]: ...

    async def similarity_scan(
        self, user_id: str, query_vector: list[float] | None
    ) -> list[tuple[KnowledgeItem, float]]: ...

    async def touch(self, user_id: str, ids: Iterable[str]) -> int: ...

    async def purge_older_than(self, user_id: str, age: timedelta) -> int: ...


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------


@runtime_checkable
class IResponseCache(Protocol):
    """Per-user memo of generated answers with TTL.

    Implementations: ResponseCache (SQLite-backed).
    """

    async def lookup(
        self, user_id: str, query_text: str, query_embedding: EmbeddingResult | None = None
    ) -> CacheEntry | None: ...

    async def store(
        self,
        user_id: str,
        query_text: str,
        response: CachedResponse,
        used_context_ids: list[str] | None = None,
        query_embedding: EmbeddingResult | None = None,
    ) -> CacheEntry: ...

    async def record_hit(self, entry: CacheEntry) -> None: ...

    async def clear_user(self, user_id: str) -> int: ...

    async def stats(self, user_id: str) -> CacheStats: ...


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@runtime_checkable
class ITextGenerator(Protocol):
    """Streams assistant prose for a prompt.

    Implementations: AgentTextGenerator (PydanticAI).
    """

    def stream(
        self,
        user_message: str,
        context: str,
        history: list[ChatMessage],
        current_filters: dict[str, Any] | None = None,
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class IToolDecider(Protocol):
    """Returns the raw structured tool-analysis payload for a turn.

    Implementations: AgentToolDecider (PydanticAI). The payload is parsed and
    validated by the caller, so it may be malformed.
    """

    async def decide(
        self,
        user_message: str,
        assistant_text: str,
        context: str,
        current_filters: dict[str, Any],
    ) -> str: ...


@runtime_checkable
class IValueClassifier(Protocol):
    """Optional YES/NO classifier asked whether a turn is worth remembering."""

    async def is_valuable(self, user_message: str, assistant_text: str) -> bool: ...


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@runtime_checkable
class IToolRegistry(Protocol):
    """Executes marketplace tools by name.

    Implementations: ToolRegistry.
    """

    @property
    def names(self) -> list[str]: ...

    def validate(self, name: str, parameters: dict[str, Any]) -> dict[str, Any]: ...

    async def execute(self, name: str, parameters: dict[str, Any]) -> ToolResult: ...
