"""Embedding providers: Azure OpenAI with caching and a degraded fallback.

The Azure provider never raises on upstream trouble. Timeouts, API errors and
malformed payloads all produce a pseudo-random unit vector flagged
``degraded=True`` so callers can keep going and down-weight the similarity.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import random
import re

from loguru import logger
from openai import AsyncAzureOpenAI, OpenAIError

from marketplace_assistant.config import Settings
from marketplace_assistant.domain.models import EmbeddingResult
from marketplace_assistant.domain.protocols import IEmbeddingProvider
from marketplace_assistant.infrastructure.embedding_cache import EmbeddingCache

DEGRADED_MODEL = "degraded-fallback"

_TOKEN_RE = re.compile(r"[a-z0-9$]+")


def normalize(vector: list[float]) -> list[float]:
    """Scale *vector* to unit length (zero vectors are returned unchanged)."""
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0.0:
        return list(vector)
    return [x / norm for x in vector]


def degraded_vector(text: str, dimensions: int) -> list[float]:
    """Unit-length pseudo-random vector, reproducible for the same text."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = random.Random(seed)
    return normalize([rng.uniform(-1.0, 1.0) for _ in range(dimensions)])


class MalformedEmbeddingError(ValueError):
    """Upstream returned something that is not a usable vector."""


class AzureEmbeddingProvider:
    """Embeds text with an Azure OpenAI deployment.

    Parameters
    ----------
    client:
        An ``AsyncAzureOpenAI`` client.
    deployment:
        Embedding deployment name (e.g. ``text-embedding-3-small``).
    dimensions:
        Expected vector length; responses of any other length are rejected.
    timeout_seconds:
        Upper bound for one upstream call.
    cache:
        Optional ``EmbeddingCache``; a default one is created when omitted.
    """

    def __init__(
        self,
        client: AsyncAzureOpenAI,
        deployment: str,
        dimensions: int = 1536,
        *,
        timeout_seconds: float = 10.0,
        cache: EmbeddingCache | None = None,
    ) -> None:
        self.client = client
        self.deployment = deployment
        self._dimensions = dimensions
        self.timeout_seconds = timeout_seconds
        self.cache = cache if cache is not None else EmbeddingCache()

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding for *text*, degraded on any upstream failure."""
        cached = self.cache.get(text)
        if cached is not None:
            return EmbeddingResult(vector=cached, degraded=False, model=self.deployment)

        try:
            vector = await asyncio.wait_for(self._request(text), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "Embedding request timed out after {}s | chars={}", self.timeout_seconds, len(text)
            )
            return self._degraded(text)
        except OpenAIError as exc:
            logger.warning("Embedding request failed | error={}", exc)
            return self._degraded(text)
        except MalformedEmbeddingError as exc:
            logger.warning("Malformed embedding payload | error={}", exc)
            return self._degraded(text)

        self.cache.put(text, vector)
        return EmbeddingResult(vector=vector, degraded=False, model=self.deployment)

    async def _request(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(
            input=text,
            model=self.deployment,
            dimensions=self._dimensions,
        )
        try:
            raw = response.data[0].embedding
            vector = [float(x) for x in raw]
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise MalformedEmbeddingError(str(exc)) from exc
        if len(vector) != self._dimensions:
            raise MalformedEmbeddingError(
                f"expected {self._dimensions} dimensions, got {len(vector)}"
            )
        return vector

    def _degraded(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(
            vector=degraded_vector(text, self._dimensions),
            degraded=True,
            model=DEGRADED_MODEL,
        )


class HashingEmbeddingProvider:
    """Deterministic offline embeddings (hashed bag of words).

    Used when no embedding deployment is configured, and in tests. Texts sharing
    words get positive cosine similarity, which is enough for local runs.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> EmbeddingResult:
        counts = [0.0] * self._dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode("utf-8")).digest()
            counts[int.from_bytes(digest[:4], "big") % self._dimensions] += 1.0
        return EmbeddingResult(vector=normalize(counts), degraded=False, model="hashing")


def build_embedder(settings: Settings) -> IEmbeddingProvider:
    """Azure embeddings, or local hashing vectors when no deployment is set."""
    if settings.offline_embeddings:
        logger.warning("No embedding deployment configured, using offline hashing embeddings")
        return HashingEmbeddingProvider()

    client = AsyncAzureOpenAI(
        api_key=settings.azure_openai_embedding_api_key,
        azure_endpoint=settings.azure_openai_embedding_endpoint,
        api_version=settings.azure_openai_embedding_api_version,
    )
    return AzureEmbeddingProvider(
        client,
        settings.azure_openai_embedding_deployment,
        settings.embedding_dimensions,
        timeout_seconds=settings.embedding_timeout_seconds,
        cache=EmbeddingCache(
            capacity=settings.embedding_cache_size,
            ttl_seconds=settings.embedding_cache_ttl_seconds,
        ),
    )
