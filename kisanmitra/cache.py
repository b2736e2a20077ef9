"""Redis-backed cache for embedding vectors."""

import hashlib
import json

import structlog
from redis.asyncio import Redis

from kisanmitra.errors import ProviderError

logger = structlog.get_logger()

# Embeddings for a fixed model never change, keep them for 30 days
DEFAULT_TTL_SECONDS = 60 * 60 * 24 * 30


class EmbeddingCache:
    """Redis cache keyed by model and text hash."""

    def __init__(self, redis_url: str, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds
        self.redis: Redis | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self.redis = Redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        await self.redis.ping()
        logger.info("Redis connected")

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis:
            await self.redis.close()
            self.redis = None
            logger.info("Redis disconnected")

    @staticmethod
    def key_for(model: str, text: str) -> str:
        """Deterministic cache key for a model/text pair."""
        text_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
        return f"embedding:{model}:{text_hash}"

    async def get_embedding(self, model: str, text: str) -> list[float] | None:
        """Return a cached vector or None."""
        if not self.redis:
            raise ProviderError("Redis not connected")
        raw = await self.redis.get(self.key_for(model, text))
        if raw is None:
            return None
        return json.loads(raw)

    async def set_embedding(self, model: str, text: str, embedding: list[float]) -> None:
        """Store a vector with the configured TTL."""
        if not self.redis:
            raise ProviderError("Redis not connected")
        await self.redis.set(
            self.key_for(model, text), json.dumps(embedding), ex=self.ttl_seconds
        )
