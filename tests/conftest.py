"""Shared fixtures for marketplace assistant tests."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from marketplace_assistant.config import Settings
from marketplace_assistant.domain.models import EmbeddingResult
from marketplace_assistant.infrastructure.embedding_provider import HashingEmbeddingProvider
from marketplace_assistant.infrastructure.knowledge_store import KnowledgeStore
from marketplace_assistant.infrastructure.response_cache import ResponseCache

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def pytest_configure(config):
    """Set pytest-asyncio mode to auto so async test functions work without markers."""
    config.option.asyncio_mode = "auto"


class FakeClock:
    """Settable UTC clock shared by stores and the retrieval engine."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class DegradedEmbedder:
    """Always returns a degraded vector, like an upstream outage."""

    def __init__(self, dimensions: int = 256) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=[0.0] * self._dimensions, degraded=True, model="degraded-fallback")


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Settings for tests.

    Uses ``_env_file=None`` so a developer's .env is never loaded.
    """
    values = dict(
        azure_openai_api_key="test-key",
        azure_openai_endpoint="https://test.openai.azure.com/",
        azure_openai_api_version="2024-02-01",
        azure_openai_chat_deployment="gpt-4o-mini",
        azure_openai_embedding_deployment="",
        knowledge_db_path=tmp_path / "knowledge.sqlite",
        cache_db_path=tmp_path / "cache.sqlite",
        auth_enabled=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def embedder() -> HashingEmbeddingProvider:
    return HashingEmbeddingProvider()


@pytest.fixture()
def knowledge_store(tmp_path: Path, embedder, clock) -> KnowledgeStore:
    """A KnowledgeStore on a temporary SQLite file."""
    store = KnowledgeStore(tmp_path / "knowledge.sqlite", embedder, clock=clock)
    store.connect()
    yield store
    store.close()


@pytest.fixture()
def response_cache(tmp_path: Path, clock) -> ResponseCache:
    """A ResponseCache on a temporary SQLite file (30 minute TTL)."""
    cache = ResponseCache(tmp_path / "cache.sqlite", ttl_seconds=1800, clock=clock)
    cache.connect()
    yield cache
    cache.close()


class StaticEmbedder:
    """Returns the same vector for every text."""

    def __init__(self, vector: list[float]) -> None:
        self.vector = vector

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    async def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(vector=list(self.vector), degraded=False, model="static")


# ---------------------------------------------------------------------------
# Model fakes
# ---------------------------------------------------------------------------

NO_TOOL = '{"shouldExecuteTool": false, "toolName": null, "parameters": {}, "confidence": 0.9}'
DA_ANSWER = ["Domain authority ", "is a 0-100 score ", "that predicts ranking strength."]


class FakeGenerator:
    """Streams fixed chunks, optionally failing after the last one."""

    def __init__(self, chunks=None, error=None):
        self.chunks = list(chunks if chunks is not None else DA_ANSWER)
        self.error = error
        self.calls = []

    async def stream(self, user_message, context, history, current_filters=None):
        self.calls.append({"message": user_message, "context": context, "filters": current_filters})
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


class FakeDecider:
    """Returns a canned raw tool decision."""

    def __init__(self, raw=NO_TOOL, error=None, delay=0.0):
        self.raw = raw
        self.error = error
        self.delay = delay
        self.calls = 0
        self.cancelled = False

    async def decide(self, user_message, assistant_text, context, current_filters):
        self.calls += 1
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.raw
