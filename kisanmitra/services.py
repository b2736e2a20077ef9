"""Wiring of backends, stores and the engine from Settings."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import structlog

from kisanmitra.cache import EmbeddingCache
from kisanmitra.config import Settings, load_knowledge_file
from kisanmitra.database import Database
from kisanmitra.ingestion.loader import IngestReport, KnowledgeLoader
from kisanmitra.knowledge.embeddings import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OpenAIEmbeddingProvider,
)
from kisanmitra.knowledge.graph import (
    InMemoryGraphBackend,
    PostgresGraphBackend,
    RelationshipGraph,
)
from kisanmitra.knowledge.timeseries import (
    InMemoryMetricBackend,
    MetricSeries,
    PostgresMetricBackend,
)
from kisanmitra.knowledge.vector_store import InMemoryVectorIndex, PgVectorIndex, VectorStore
from kisanmitra.recommendations.engine import RecommendationEngine

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything a command, job or server needs."""

    settings: Settings
    vectors: VectorStore
    graph: RelationshipGraph
    metrics: MetricSeries
    engine: RecommendationEngine
    loader: KnowledgeLoader
    db: Database | None = None
    cache: EmbeddingCache | None = None

    async def ingest_file(self, path: Path) -> IngestReport:
        """Load a YAML knowledge bundle into the stores."""
        return await self.loader.load(load_knowledge_file(path))


def build_provider(settings: Settings, cache: EmbeddingCache | None = None) -> EmbeddingProvider:
    """OpenAI embeddings when a key is configured, hashing embeddings otherwise."""
    if settings.mock_embeddings or not settings.openai_api_key:
        if not settings.mock_embeddings:
            logger.warning("OPENAI_API_KEY not set, using hashing embeddings")
        return HashEmbeddingProvider(settings.embedding_dimensions)

    return OpenAIEmbeddingProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        cache=cache,
    )


async def _connect_cache(settings: Settings) -> EmbeddingCache | None:
    if not settings.redis_url or settings.mock_embeddings or not settings.openai_api_key:
        return None
    cache = EmbeddingCache(settings.redis_url)
    try:
        await cache.connect()
    except Exception as e:
        logger.warning("Redis connection failed", error=str(e))
        return None
    return cache


@asynccontextmanager
async def open_services(settings: Settings | None = None) -> AsyncIterator[Services]:
    """Build the stores for the configured backend and close them afterwards."""
    settings = settings or Settings()
    db: Database | None = None
    cache = await _connect_cache(settings)
    provider = build_provider(settings, cache)

    try:
        if settings.storage_backend == "postgres":
            db = Database(settings.database_url)
            await db.connect()
            index = PgVectorIndex(db, settings.embedding_dimensions)
            graph_backend = PostgresGraphBackend(db)
            metric_backend = PostgresMetricBackend(db)
        else:
            index = InMemoryVectorIndex()
            graph_backend = InMemoryGraphBackend()
            metric_backend = InMemoryMetricBackend()

        vectors = VectorStore(
            index,
            provider,
            dimensions=settings.embedding_dimensions,
            default_timeout=settings.search_timeout_seconds,
        )
        graph = RelationshipGraph(graph_backend)
        metrics = MetricSeries(metric_backend, settings.retention)

        logger.info("Services ready", backend=settings.storage_backend)
        yield Services(
            settings=settings,
            vectors=vectors,
            graph=graph,
            metrics=metrics,
            engine=RecommendationEngine(vectors, graph, metrics),
            loader=KnowledgeLoader(vectors, graph, metrics),
            db=db,
            cache=cache,
        )
    finally:
        if db:
            await db.close()
        if cache:
            await cache.close()
