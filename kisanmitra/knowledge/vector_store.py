"""Similarity search over embedded text.

The store ranks by cosine similarity behind a `VectorIndex` interface:
- InMemoryVectorIndex scans the whole corpus per query
- PgVectorIndex delegates ranking to pgvector's cosine distance operator
"""

from abc import ABC, abstractmethod
import asyncio
import json
import math
import time
import uuid
from typing import Any

import structlog

from kisanmitra.database import Database, affected_rows
from kisanmitra.errors import DeadlineExceededError, ProviderError, ValidationError
from kisanmitra.knowledge.embeddings import EmbeddingProvider, cosine_similarity
from kisanmitra.knowledge.models import KnowledgeItem

logger = structlog.get_logger()

ScoredItem = tuple[KnowledgeItem, float]


def matches_filter(metadata: dict[str, Any], metadata_filter: dict[str, Any] | None) -> bool:
    """Exact-match conjunction over metadata keys."""
    if not metadata_filter:
        return True
    return all(
        key in metadata and metadata[key] == value
        for key, value in metadata_filter.items()
    )


# ============================================================================
# Index Implementations
# ============================================================================


class VectorIndex(ABC):
    """Storage and ranking contract behind the VectorStore."""

    @abstractmethod
    async def add(self, item: KnowledgeItem) -> None:
        pass

    @abstractmethod
    async def get(self, item_id: str) -> KnowledgeItem | None:
        pass

    @abstractmethod
    async def delete(self, item_id: str) -> bool:
        pass

    @abstractmethod
    async def query(
        self,
        vector: list[float],
        metadata_filter: dict[str, Any] | None,
        top_k: int,
        timeout: float | None = None,
    ) -> list[ScoredItem]:
        """Top matches, descending similarity, ties in insertion order."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryVectorIndex(VectorIndex):
    """Brute-force scan over an insertion-ordered dict."""

    # Items scored between deadline checks
    SCAN_CHUNK = 256

    def __init__(self) -> None:
        self._items: dict[str, KnowledgeItem] = {}

    async def add(self, item: KnowledgeItem) -> None:
        self._items[item.id] = item

    async def get(self, item_id: str) -> KnowledgeItem | None:
        return self._items.get(item_id)

    async def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    async def count(self) -> int:
        return len(self._items)

    async def query(
        self,
        vector: list[float],
        metadata_filter: dict[str, Any] | None,
        top_k: int,
        timeout: float | None = None,
    ) -> list[ScoredItem]:
        deadline = time.monotonic() + timeout if timeout is not None else None
        scored: list[ScoredItem] = []

        for n, item in enumerate(list(self._items.values())):
            if n % self.SCAN_CHUNK == 0:
                if deadline is not None and time.monotonic() >= deadline:
                    raise DeadlineExceededError(
                        "Similarity scan exceeded its deadline", scanned=n
                    )
                # Let other tasks run during long scans
                await asyncio.sleep(0)

            if not matches_filter(item.metadata, metadata_filter):
                continue
            scored.append((item, cosine_similarity(vector, item.embedding)))

        # list.sort is stable, equal similarities keep insertion order
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:top_k]


class PgVectorIndex(VectorIndex):
    """pgvector-backed index over the knowledge_items table."""

    def __init__(self, db: Database, dimensions: int):
        self.db = db
        self.dimensions = dimensions

    async def add(self, item: KnowledgeItem) -> None:
        query = """
        INSERT INTO knowledge_items (id, text, embedding, metadata, created_at)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (id) DO UPDATE SET
            text = EXCLUDED.text,
            embedding = EXCLUDED.embedding,
            metadata = EXCLUDED.metadata
        """
        await self.db.execute(
            query,
            item.id,
            item.text,
            item.embedding,
            json.dumps(item.metadata),
            item.created_at,
        )

    async def get(self, item_id: str) -> KnowledgeItem | None:
        query = """
        SELECT id, text, embedding, metadata, created_at
        FROM knowledge_items WHERE id = $1
        """
        row = await self.db.fetchrow(query, item_id)
        if row is None:
            return None
        return self._row_to_item(row)

    async def delete(self, item_id: str) -> bool:
        status = await self.db.execute(
            "DELETE FROM knowledge_items WHERE id = $1", item_id
        )
        return affected_rows(status) > 0

    async def count(self) -> int:
        return await self.db.fetchval("SELECT COUNT(*) FROM knowledge_items")

    async def query(
        self,
        vector: list[float],
        metadata_filter: dict[str, Any] | None,
        top_k: int,
        timeout: float | None = None,
    ) -> list[ScoredItem]:
        if len(vector) != self.dimensions:
            raise ValidationError(
                "Query vector dimension does not match the index",
                expected=self.dimensions,
                actual=len(vector),
            )

        filter_json = json.dumps(metadata_filter or {})

        if math.sqrt(sum(v * v for v in vector)) == 0:
            # Cosine distance is undefined for a zero query, every item scores 0
            query = """
            SELECT id, text, embedding, metadata, created_at, 0.0 AS similarity
            FROM knowledge_items
            WHERE metadata @> $1::jsonb
            ORDER BY seq
            LIMIT $2
            """
            rows = await self.db.fetch(query, filter_json, top_k, timeout=timeout)
        else:
            # <=> is NaN against a stored zero vector, score those 0
            query = """
            SELECT id, text, embedding, metadata, created_at,
                   CASE WHEN vector_norm(embedding) = 0 THEN 0
                        ELSE 1 - (embedding <=> $1) END AS similarity
            FROM knowledge_items
            WHERE metadata @> $2::jsonb
            ORDER BY similarity DESC, seq
            LIMIT $3
            """
            rows = await self.db.fetch(query, vector, filter_json, top_k, timeout=timeout)

        return [(self._row_to_item(row), _row_similarity(row)) for row in rows]

    def _row_to_item(self, row: Any) -> KnowledgeItem:
        """Convert database row to KnowledgeItem model."""
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return KnowledgeItem(
            id=row["id"],
            text=row["text"],
            embedding=[float(v) for v in row["embedding"]],
            metadata=metadata or {},
            created_at=row["created_at"],
        )


def _row_similarity(row: Any) -> float:
    """Similarity column as a float, 0 where the backend could not score."""
    similarity = row["similarity"]
    if similarity is None or math.isnan(float(similarity)):
        return 0.0
    return float(similarity)


# ============================================================================
# Vector Store
# ============================================================================


class VectorStore:
    """Stores (text, embedding, metadata) triples and ranks by cosine similarity."""

    def __init__(
        self,
        index: VectorIndex,
        provider: EmbeddingProvider | None = None,
        dimensions: int | None = None,
        default_timeout: float | None = None,
    ):
        self.index = index
        self.provider = provider
        self.dimensions = dimensions
        self.default_timeout = default_timeout

    async def put(
        self,
        text: str,
        embedding: list[float],
        metadata: dict[str, Any] | None = None,
        item_id: str | None = None,
    ) -> str:
        """Store a triple. Returns its id, generated when not supplied."""
        if not embedding:
            raise ValidationError("Embedding must not be empty")
        if self.dimensions is not None and len(embedding) != self.dimensions:
            raise ValidationError(
                "Embedding dimension does not match the store",
                expected=self.dimensions,
                actual=len(embedding),
            )

        item = KnowledgeItem(
            id=item_id or str(uuid.uuid4()),
            text=text,
            embedding=[float(v) for v in embedding],
            metadata=dict(metadata or {}),
        )
        await self.index.add(item)
        logger.debug("Knowledge item stored", id=item.id, dims=len(item.embedding))
        return item.id

    async def put_text(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        item_id: str | None = None,
    ) -> str:
        """Embed text with the provider, then store it."""
        embedding = await self._embed(text)
        return await self.put(text, embedding, metadata, item_id)

    async def get(self, item_id: str) -> KnowledgeItem | None:
        return await self.index.get(item_id)

    async def delete(self, item_id: str) -> bool:
        deleted = await self.index.delete(item_id)
        logger.debug("Knowledge item deleted", id=item_id, deleted=deleted)
        return deleted

    async def count(self) -> int:
        return await self.index.count()

    async def search_with_scores(
        self,
        query_vector: list[float],
        metadata_filter: dict[str, Any] | None = None,
        top_k: int = 5,
        timeout: float | None = None,
    ) -> list[ScoredItem]:
        """Ranked (item, similarity) pairs, at most top_k of them."""
        if top_k < 1:
            raise ValidationError("top_k must be at least 1", top_k=top_k)
        if not query_vector:
            raise ValidationError("Query vector must not be empty")

        results = await self.index.query(
            list(query_vector),
            metadata_filter,
            top_k,
            timeout if timeout is not None else self.default_timeout,
        )
        logger.debug(
            "Similarity search completed",
            top_k=top_k,
            returned=len(results),
            filtered=bool(metadata_filter),
        )
        return results

    async def search(
        self,
        query_vector: list[float],
        metadata_filter: dict[str, Any] | None = None,
        top_k: int = 5,
        timeout: float | None = None,
    ) -> list[KnowledgeItem]:
        """Items ranked by similarity to the query vector."""
        scored = await self.search_with_scores(query_vector, metadata_filter, top_k, timeout)
        return [item for item, _ in scored]

    async def search_by_text(
        self,
        text: str,
        metadata_filter: dict[str, Any] | None = None,
        top_k: int = 5,
        timeout: float | None = None,
    ) -> list[KnowledgeItem]:
        """Embed the text, then search. Provider failures are not retried here."""
        query_vector = await self._embed(text)
        return await self.search(query_vector, metadata_filter, top_k, timeout)

    async def _embed(self, text: str) -> list[float]:
        if self.provider is None:
            raise ProviderError("No embedding provider configured")
        try:
            return await self.provider.embed(text)
        except ProviderError:
            raise
        except Exception as e:
            logger.error("Embedding provider failed", error=str(e))
            raise ProviderError(f"Embedding provider failed: {e}") from e
