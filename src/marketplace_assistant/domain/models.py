"""Domain entities and value objects.

These are the core data structures of the marketplace assistant,
independent of any infrastructure or framework concerns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def normalize_query(text: str) -> str:
    """Collapse whitespace and casefold.

    Shared by exact-match retrieval and cache fingerprints so both agree on
    when two queries are the same text.
    """
    return " ".join(text.split()).casefold()


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


class ContentType(StrEnum):
    CONVERSATION = "conversation"
    DOCUMENT = "document"
    PREFERENCE = "preference"
    FEEDBACK = "feedback"
    MEMORY = "memory"


# Content types that count as durable user facts for recency boosting.
USER_FACT_TYPES = frozenset({ContentType.PREFERENCE, ContentType.MEMORY})


@dataclass
class ItemMetadata:
    """Typed metadata with a few well-known keys and an open extension bag."""

    source: str | None = None
    category: str | None = None
    importance_hint: str | None = None
    session_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN = ("source", "category", "importance_hint", "session_id")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {k: getattr(self, k) for k in self._KNOWN if getattr(self, k)}
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ItemMetadata:
        data = dict(data or {})
        extra = dict(data.pop("extra", {}) or {})
        known = {k: data.pop(k) for k in cls._KNOWN if k in data}
        # Unknown top-level keys are folded into the extension bag.
        extra.update(data)
        return cls(**known, extra=extra)


@dataclass
class KnowledgeItem:
    """One durable fact or conversation fragment owned by a single user."""

    user_id: str
    content: str
    content_type: ContentType = ContentType.CONVERSATION
    id: str | None = None
    embedding: list[float] | None = None
    embedding_degraded: bool = False
    metadata: ItemMetadata = field(default_factory=ItemMetadata)
    topics: set[str] = field(default_factory=set)
    importance_score: float = 1.0
    access_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @property
    def is_user_fact(self) -> bool:
        return self.content_type in USER_FACT_TYPES


@dataclass
class EmbeddingResult:
    """A vector plus a flag telling callers whether it can be trusted."""

    vector: list[float]
    degraded: bool = False
    model: str = ""


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


@dataclass
class ScoredItem:
    item: KnowledgeItem
    similarity: float
    priority: float
    confidence: float
    exact_match: bool = False


@dataclass
class RetrievalResult:
    """Ranked context for one query. Not persisted."""

    items: list[ScoredItem] = field(default_factory=list)
    degraded_query: bool = False

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    @property
    def ids(self) -> list[str]:
        return [s.item.id for s in self.items if s.item.id]


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------


class CachedResponse(BaseModel):
    """The answer stored for a (user, query) pair."""

    text: str = Field(description="Assistant prose as streamed to the user")
    source_ids: list[str] = Field(default_factory=list)


@dataclass
class CacheEntry:
    id: str
    user_id: str
    query_fingerprint: str
    query_text: str
    response: CachedResponse
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    last_hit_at: datetime | None = None
    query_embedding: list[float] | None = None


@dataclass
class CacheStats:
    entries: int
    active: int
    total_hits: int


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """Client directive produced by a tool run."""

    success: bool
    action: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ToolInvocation:
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    result: ToolResult | None = None
    error: str | None = None
    source: str = "model"  # "model" or "heuristic"


# ---------------------------------------------------------------------------
# Chat turn
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """A single prior message in the conversation."""

    role: str = Field(description="Message role: 'user' or 'assistant'")
    content: str = Field(description="Message content")


@dataclass
class TurnRequest:
    """Input for one orchestrated chat turn."""

    user_id: str
    message: str
    history: list[ChatMessage] = field(default_factory=list)
    current_filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatTurn:
    """State of one request, built up while streaming."""

    user_id: str
    user_message: str
    assistant_text: str = ""
    tool_invocation: ToolInvocation | None = None
    used_context_ids: list[str] = field(default_factory=list)
    cache_eligible: bool = True
    cache_hit: bool = False
    states: list[TurnState] = field(default_factory=list)

    @property
    def state(self) -> TurnState:
        return self.states[-1] if self.states else TurnState.IDLE

    @property
    def tool_ran(self) -> bool:
        return self.tool_invocation is not None and self.tool_invocation.result is not None


@dataclass
class ValueAssessment:
    should_store: bool
    content_type: ContentType = ContentType.CONVERSATION
    importance_score: float = 1.0
    content: str = ""
    topics: set[str] = field(default_factory=set)
    reason: str = ""


# ---------------------------------------------------------------------------
# Turn state and stream events (what the client sees)
# ---------------------------------------------------------------------------


class TurnState(StrEnum):
    IDLE = "idle"
    CONTEXT_GATHERING = "context_gathering"
    STREAMING = "streaming"
    TOOL_DECISION = "tool_decision"
    TOOL_EXECUTING = "tool_executing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class ContentEvent:
    text: str

    def to_payload(self) -> dict[str, Any]:
        return {"type": "content", "text": self.text}


@dataclass
class ToolEvent:
    name: str
    result: ToolResult | None = None
    error: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": "tool", "name": self.name, "parameters": self.parameters}
        if self.result is not None:
            payload["result"] = self.result.model_dump()
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class DoneEvent:
    cached: bool = False
    context_ids: list[str] = field(default_factory=list)
    tool: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "done",
            "cached": self.cached,
            "context_ids": self.context_ids,
            "tool": self.tool,
        }


StreamEvent = ContentEvent | ToolEvent | DoneEvent
