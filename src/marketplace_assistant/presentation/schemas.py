"""HTTP request/response schemas (Pydantic models) for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from marketplace_assistant.domain.models import ChatMessage, ContentType, KnowledgeItem

# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """Request body for POST /chat/stream.

    ``user_id`` is taken from the JWT, never from the body. History is owned
    by the client and replayed on every turn.
    """

    message: str = Field(description="The new user message")
    history: list[ChatMessage] = Field(
        default_factory=list, description="Prior turns of this conversation, oldest first"
    )
    current_filters: dict[str, Any] = Field(
        default_factory=dict,
        alias="currentFilters",
        description="Publisher filters currently applied in the UI (camelCase keys)",
    )

    model_config = {"populate_by_name": True}


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


class KnowledgeCreateRequest(BaseModel):
    """Request body for POST /knowledge (explicit profile facts)."""

    content: str = Field(description="The fact to remember")
    content_type: ContentType = Field(default=ContentType.PREFERENCE)
    category: str | None = None
    importance_score: float = Field(default=1.5, ge=0.0, le=5.0)


class KnowledgeItemResponse(BaseModel):
    id: str
    content: str
    content_type: ContentType
    importance_score: float
    access_count: int
    topics: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    last_accessed_at: datetime | None = None

    @classmethod
    def from_item(cls, item: KnowledgeItem) -> KnowledgeItemResponse:
        return cls(
            id=item.id or "",
            content=item.content,
            content_type=item.content_type,
            importance_score=item.importance_score,
            access_count=item.access_count,
            topics=sorted(item.topics),
            metadata=item.metadata.to_dict(),
            created_at=item.created_at,
            last_accessed_at=item.last_accessed_at,
        )


class KnowledgeCreateResponse(BaseModel):
    id: str


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheClearResponse(BaseModel):
    removed: int


class CacheStatsResponse(BaseModel):
    entries: int = Field(description="Rows stored for this user, expired included")
    active: int = Field(description="Rows that would still be served")
    total_hits: int
