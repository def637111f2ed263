"""FastAPI app for the marketplace assistant.

This module is a thin **presentation layer**: it wires services together in
the lifespan and mounts the routers. The turn logic lives in
``application.orchestrator`` so it can be tested without HTTP.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from marketplace_assistant.application.background import BackgroundTasks
from marketplace_assistant.application.orchestrator import StreamOrchestrator
from marketplace_assistant.application.retrieval import RetrievalEngine
from marketplace_assistant.application.value_analyzer import ValueAnalyzer
from marketplace_assistant.config import get_settings
from marketplace_assistant.infrastructure.embedding_provider import build_embedder
from marketplace_assistant.infrastructure.generation import (
    AgentTextGenerator,
    AgentToolDecider,
    AgentValueClassifier,
    create_chat_agent,
    create_tool_agent,
    create_value_agent,
)
from marketplace_assistant.infrastructure.knowledge_store import KnowledgeStore
from marketplace_assistant.infrastructure.response_cache import ResponseCache
from marketplace_assistant.infrastructure.tools import ToolRegistry
from marketplace_assistant.logging_config import setup_logging
from marketplace_assistant.presentation.routes.chat import router as chat_router
from marketplace_assistant.presentation.routes.knowledge import router as knowledge_router
from marketplace_assistant.telemetry import SERVICE_VERSION, setup_telemetry

# Configure loguru before anything else
setup_logging(
    level=get_settings().log_level,
    json=get_settings().log_json,
    file=get_settings().log_file,
)


# ---------------------------------------------------------------------------
# Lifespan: initialise shared resources once at startup
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Set up and tear down services around the application lifetime."""
    settings = get_settings()
    settings.validate_runtime()

    background = BackgroundTasks()
    embedder = build_embedder(settings)

    knowledge_store = KnowledgeStore(settings.knowledge_db_path, embedder)
    knowledge_store.connect()

    response_cache = ResponseCache(
        settings.cache_db_path,
        ttl_seconds=settings.cache_ttl_seconds,
        semantic_threshold=settings.semantic_cache_threshold,
    )
    response_cache.connect()

    retrieval = RetrievalEngine(
        knowledge_store,
        embedder,
        similarity_floor=settings.similarity_floor,
        default_limit=settings.retrieval_limit,
        store_timeout_seconds=settings.retrieval_timeout_seconds,
        background=background,
    )

    classifier = None
    if settings.value_classifier_enabled:
        classifier = AgentValueClassifier(create_value_agent(settings))
    value_analyzer = ValueAnalyzer(
        knowledge_store,
        classifier=classifier,
        min_message_length=settings.min_message_length,
        min_useful_answer_length=settings.min_useful_answer_length,
        background=background,
    )

    # Wire up the orchestrator with all its dependencies
    app.state.settings = settings
    app.state.background = background
    app.state.knowledge_store = knowledge_store
    app.state.response_cache = response_cache
    app.state.orchestrator = StreamOrchestrator(
        retrieval=retrieval,
        cache=response_cache,
        value_analyzer=value_analyzer,
        generator=AgentTextGenerator(
            create_chat_agent(settings), timeout_seconds=settings.generation_timeout_seconds
        ),
        tool_decider=AgentToolDecider(
            create_tool_agent(settings), timeout_seconds=settings.generation_timeout_seconds
        ),
        tools=ToolRegistry(settings.enabled_tools),
        embedder=embedder,
        retrieval_limit=settings.retrieval_limit,
    )

    logger.info(
        "Application startup complete | tools={} offline_embeddings={}",
        settings.enabled_tools,
        settings.offline_embeddings,
    )
    yield

    await background.drain()
    response_cache.close()
    knowledge_store.close()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Marketplace Assistant",
    description="Streaming chat with per-user memory and publisher-marketplace tools.",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat_router)
app.include_router(knowledge_router)

# Instrument FastAPI with observability (no-op when OBSERVABILITY=off)
setup_telemetry(app, get_settings())


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("marketplace_assistant.main:app", host="0.0.0.0", port=8000, reload=True)
