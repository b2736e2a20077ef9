"""Embedding providers and vector similarity."""

from abc import ABC, abstractmethod
import asyncio
import hashlib
import math
import random
import re
from collections.abc import Sequence
from typing import Any, Callable

import structlog
from openai import AsyncOpenAI, OpenAIError, RateLimitError

from kisanmitra.cache import EmbeddingCache
from kisanmitra.errors import ProviderError, ValidationError

logger = structlog.get_logger()

# Default embedding dimensions for text-embedding-3-small
EMBEDDING_DIMENSIONS = 1536

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, 0.0 if either has zero norm."""
    if len(a) != len(b):
        raise ValidationError(
            "Vectors must have the same dimension",
            expected=len(a),
            actual=len(b),
        )

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    # Rounding can push |a.a| / (|a||a|) a hair past 1
    return max(-1.0, min(1.0, dot_product / (norm_a * norm_b)))


class EmbeddingProvider(ABC):
    """Contract for turning text into a fixed-length vector."""

    dimensions: int = EMBEDDING_DIMENSIONS

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed a single text. Failures raise ProviderError."""
        pass

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts, preserving order."""
        return [await self.embed(text) for text in texts]


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embedding for tests and offline use.

    Each token is hashed into one signed bucket; the result is L2 normalised,
    so texts that share words have positive cosine similarity.
    """

    def __init__(self, dimensions: int = 256):
        if dimensions <= 0:
            raise ValidationError("dimensions must be positive", dimensions=dimensions)
        self.dimensions = dimensions

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % self.dimensions
        sign = 1.0 if digest[4] % 2 == 0 else -1.0
        return index, sign

    async def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            index, sign = self._bucket(token)
            vector[index] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Generate embeddings using OpenAI API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dimensions: int = EMBEDDING_DIMENSIONS,
        batch_size: int = 100,
        max_retries: int = 5,
        cache: EmbeddingCache | None = None,
    ):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.cache = cache

    async def _get_cached(self, text: str) -> list[float] | None:
        if not self.cache:
            return None
        try:
            return await self.cache.get_embedding(self.model, text)
        except Exception as e:
            logger.warning("Failed to retrieve from cache", error=str(e))
            return None

    async def _store_cached(self, text: str, embedding: list[float]) -> None:
        if not self.cache:
            return
        try:
            await self.cache.set_embedding(self.model, text, embedding)
        except Exception as e:
            logger.warning("Failed to write to cache", error=str(e))

    async def _with_retry(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute function with exponential backoff for rate limits."""
        base_delay = 1.0

        for attempt in range(self.max_retries):
            try:
                return await func(*args, **kwargs)
            except RateLimitError as e:
                if attempt == self.max_retries - 1:
                    raise ProviderError("Embedding rate limit exhausted") from e

                delay = base_delay * (2 ** attempt) + random.uniform(0, 0.1)
                logger.warning(
                    "Rate limit hit, retrying",
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
            except OpenAIError as e:
                logger.error("Failed to generate embedding", error=str(e))
                raise ProviderError(f"Embedding provider failed: {e}") from e
        raise ProviderError("Embedding provider made no attempt")

    def _check_dimensions(self, embedding: list[float]) -> list[float]:
        if len(embedding) != self.dimensions:
            raise ProviderError(
                "Embedding provider returned unexpected dimension",
                expected=self.dimensions,
                actual=len(embedding),
            )
        return embedding

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            return [0.0] * self.dimensions

        cached = await self._get_cached(text)
        if cached:
            return cached

        response = await self._with_retry(
            self.client.embeddings.create,
            model=self.model,
            input=text.strip()[:8000],  # Limit to ~8000 chars
        )
        embedding = self._check_dimensions(list(response.data[0].embedding))
        await self._store_cached(text, embedding)
        return embedding

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []

        results: list[list[float] | None] = [None] * len(texts)
        pending: list[int] = []

        for i, text in enumerate(texts):
            if not text or not text.strip():
                results[i] = [0.0] * self.dimensions
                continue
            cached = await self._get_cached(text)
            if cached:
                results[i] = cached
            else:
                pending.append(i)

        for batch_start in range(0, len(pending), self.batch_size):
            batch_indices = pending[batch_start:batch_start + self.batch_size]
            response = await self._with_retry(
                self.client.embeddings.create,
                model=self.model,
                input=[texts[i].strip()[:8000] for i in batch_indices],
            )
            for original_idx, embedding_data in zip(batch_indices, response.data):
                embedding = self._check_dimensions(list(embedding_data.embedding))
                results[original_idx] = embedding
                await self._store_cached(texts[original_idx], embedding)

            logger.debug(
                "Batch embeddings generated",
                batch_size=len(batch_indices),
                batch_start=batch_start,
            )

        missing = [i for i, r in enumerate(results) if r is None]
        if missing:
            raise ProviderError("Embedding provider returned too few vectors", missing=missing)
        return results  # type: ignore[return-value]
