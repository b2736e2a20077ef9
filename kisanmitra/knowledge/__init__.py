"""Knowledge stores: embedded text, the entity graph and metric series."""

from kisanmitra.knowledge.embeddings import (
    EmbeddingProvider,
    HashEmbeddingProvider,
    OpenAIEmbeddingProvider,
    cosine_similarity,
)
from kisanmitra.knowledge.graph import (
    GraphBackend,
    InMemoryGraphBackend,
    PostgresGraphBackend,
    RelationshipGraph,
    default_crops,
)
from kisanmitra.knowledge.models import (
    EntityNode,
    EntityType,
    EntityWithRelationships,
    KnowledgeItem,
    RankedCrop,
    RelatedEntitySummary,
    RelationshipEdge,
    RelationshipType,
    make_node_id,
    slugify,
)
from kisanmitra.knowledge.timeseries import (
    InMemoryMetricBackend,
    MetricBackend,
    MetricBucket,
    MetricPoint,
    MetricSeries,
    PostgresMetricBackend,
    SeriesStatistics,
    SeriesTrend,
    WeatherMetric,
    market_price_metric_id,
    weather_metric_id,
)
from kisanmitra.knowledge.vector_store import (
    InMemoryVectorIndex,
    PgVectorIndex,
    VectorIndex,
    VectorStore,
)

__all__ = [
    # Embeddings
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "cosine_similarity",
    # Models
    "EntityNode",
    "EntityType",
    "EntityWithRelationships",
    "KnowledgeItem",
    "RankedCrop",
    "RelatedEntitySummary",
    "RelationshipEdge",
    "RelationshipType",
    "make_node_id",
    "slugify",
    # Vector Store
    "InMemoryVectorIndex",
    "PgVectorIndex",
    "VectorIndex",
    "VectorStore",
    # Relationship Graph
    "GraphBackend",
    "InMemoryGraphBackend",
    "PostgresGraphBackend",
    "RelationshipGraph",
    "default_crops",
    # Metric Series
    "InMemoryMetricBackend",
    "MetricBackend",
    "MetricBucket",
    "MetricPoint",
    "MetricSeries",
    "PostgresMetricBackend",
    "SeriesStatistics",
    "SeriesTrend",
    "WeatherMetric",
    "market_price_metric_id",
    "weather_metric_id",
]
