"""Knowledge base and response cache routes, always scoped to the caller."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger

from marketplace_assistant.application.exceptions import (
    CacheUnavailableError,
    EmptyContentError,
    KnowledgeStoreUnavailableError,
)
from marketplace_assistant.application.value_analyzer import extract_topics
from marketplace_assistant.auth import AuthenticatedUser, get_current_user
from marketplace_assistant.domain.models import ContentType, ItemMetadata, KnowledgeItem
from marketplace_assistant.infrastructure.knowledge_store import KnowledgeStore
from marketplace_assistant.infrastructure.response_cache import ResponseCache
from marketplace_assistant.presentation.schemas import (
    CacheClearResponse,
    CacheStatsResponse,
    KnowledgeCreateRequest,
    KnowledgeCreateResponse,
    KnowledgeItemResponse,
)

router = APIRouter(tags=["knowledge"])


# ---------------------------------------------------------------------------
# Knowledge
# ---------------------------------------------------------------------------


@router.post("/knowledge", response_model=KnowledgeCreateResponse, status_code=201)
async def add_knowledge(
    request: KnowledgeCreateRequest,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Store an explicit profile fact. Writing the same fact twice returns the same id."""
    store: KnowledgeStore = raw_request.app.state.knowledge_store
    item = KnowledgeItem(
        user_id=current_user.user_id,
        content=request.content,
        content_type=request.content_type,
        metadata=ItemMetadata(source="profile", category=request.category),
        topics=extract_topics(request.content),
        importance_score=request.importance_score,
    )
    try:
        item_id = await store.write(item)
    except EmptyContentError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except KnowledgeStoreUnavailableError:
        logger.exception("Knowledge write failed | user={}", current_user.user_id)
        raise HTTPException(status_code=503, detail="Knowledge store unavailable")

    logger.info("POST /knowledge | user={} id={}", current_user.user_id, item_id)
    return KnowledgeCreateResponse(id=item_id)


@router.get("/knowledge", response_model=list[KnowledgeItemResponse])
async def list_knowledge(
    raw_request: Request,
    content_type: list[ContentType] | None = Query(default=None),
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """List the caller's knowledge items, newest first."""
    store: KnowledgeStore = raw_request.app.state.knowledge_store
    try:
        items = await store.query(current_user.user_id, content_types=content_type)
    except KnowledgeStoreUnavailableError:
        logger.exception("Knowledge listing failed | user={}", current_user.user_id)
        raise HTTPException(status_code=503, detail="Knowledge store unavailable")
    return [KnowledgeItemResponse.from_item(i) for i in items]


@router.get("/knowledge/{item_id}", response_model=KnowledgeItemResponse)
async def get_knowledge_item(
    item_id: str,
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    store: KnowledgeStore = raw_request.app.state.knowledge_store
    try:
        item = await store.get(current_user.user_id, item_id)
    except KnowledgeStoreUnavailableError:
        logger.exception("Knowledge read failed | user={}", current_user.user_id)
        raise HTTPException(status_code=503, detail="Knowledge store unavailable")
    if item is None:
        raise HTTPException(status_code=404, detail="Knowledge item not found")
    return KnowledgeItemResponse.from_item(item)


# ---------------------------------------------------------------------------
# Response cache
# ---------------------------------------------------------------------------


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Drop every cached answer belonging to the caller."""
    cache: ResponseCache = raw_request.app.state.response_cache
    try:
        removed = await cache.clear_user(current_user.user_id)
    except CacheUnavailableError:
        logger.exception("Cache clear failed | user={}", current_user.user_id)
        raise HTTPException(status_code=503, detail="Response cache unavailable")
    logger.info("DELETE /cache | user={} removed={}", current_user.user_id, removed)
    return CacheClearResponse(removed=removed)


@router.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats(
    raw_request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    cache: ResponseCache = raw_request.app.state.response_cache
    try:
        stats = await cache.stats(current_user.user_id)
    except CacheUnavailableError:
        logger.exception("Cache stats failed | user={}", current_user.user_id)
        raise HTTPException(status_code=503, detail="Response cache unavailable")
    return CacheStatsResponse(entries=stats.entries, active=stats.active, total_hits=stats.total_hits)
