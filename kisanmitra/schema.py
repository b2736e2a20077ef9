"""SQL schema definitions for the knowledge stores."""

# Knowledge Schema for PostgreSQL
# Supports embedded text items, the entity graph and metric series

VECTOR_SCHEMA = """
-- ============================================================================
-- Embedded Knowledge Items
-- ============================================================================

CREATE EXTENSION IF NOT EXISTS vector;

CREATE TABLE IF NOT EXISTS knowledge_items (
    seq BIGSERIAL UNIQUE,                       -- Insertion order, tie-break for ranking
    id TEXT PRIMARY KEY,
    text TEXT NOT NULL,
    embedding vector({dimensions}) NOT NULL,
    metadata JSONB DEFAULT '{{}}'::jsonb,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

-- Exact-match metadata filters use containment
CREATE INDEX IF NOT EXISTS knowledge_items_metadata_idx
ON knowledge_items USING gin (metadata);
"""

GRAPH_SCHEMA = """
-- ============================================================================
-- Entity Graph Nodes
-- ============================================================================

-- Types: crop, disease, pest, treatment, weather, location, season,
-- market_factor, soil

CREATE TABLE IF NOT EXISTS graph_nodes (
    node_id TEXT PRIMARY KEY,                   -- type:slug(name)
    entity_type TEXT NOT NULL,
    name TEXT NOT NULL,
    properties JSONB DEFAULT '{{}}'::jsonb,
    confidence FLOAT DEFAULT 1.0 CHECK (confidence >= 0 AND confidence <= 1),
    source TEXT DEFAULT 'manual',
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS graph_nodes_type_idx ON graph_nodes (entity_type);


-- ============================================================================
-- Entity Graph Edges
-- ============================================================================

-- One row per edge. Reverse traversal goes through the covering index on
-- (target_node_id, relationship_type) instead of a duplicated reverse row.

CREATE TABLE IF NOT EXISTS graph_edges (
    seq BIGSERIAL UNIQUE,
    source_node_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    target_node_id TEXT NOT NULL,
    properties JSONB DEFAULT '{{}}'::jsonb,
    confidence FLOAT DEFAULT 1.0 CHECK (confidence >= 0 AND confidence <= 1),
    source TEXT DEFAULT 'manual',
    created_at TIMESTAMPTZ DEFAULT NOW(),

    PRIMARY KEY (source_node_id, relationship_type, target_node_id)
);

CREATE INDEX IF NOT EXISTS graph_edges_forward_idx
ON graph_edges (source_node_id, relationship_type, seq);
CREATE INDEX IF NOT EXISTS graph_edges_reverse_idx
ON graph_edges (target_node_id, relationship_type, seq)
INCLUDE (source_node_id, confidence);
"""

METRIC_SCHEMA = """
-- ============================================================================
-- Metric Series
-- ============================================================================

-- metric_id examples: weather:temperature:high:pune, market:price:wheat:nashik

CREATE TABLE IF NOT EXISTS metric_points (
    metric_id TEXT NOT NULL,
    ts BIGINT NOT NULL,                         -- Epoch milliseconds
    value DOUBLE PRECISION NOT NULL,
    location JSONB,
    source TEXT,
    unit TEXT,
    metadata JSONB,
    expires_at BIGINT,                          -- Epoch milliseconds, swept by the daemon

    PRIMARY KEY (metric_id, ts)
);

CREATE INDEX IF NOT EXISTS metric_points_expiry_idx
ON metric_points (expires_at) WHERE expires_at IS NOT NULL;
"""


def get_schema(dimensions: int) -> str:
    """Return the complete schema SQL for a deployment's embedding size."""
    return (
        VECTOR_SCHEMA.format(dimensions=dimensions)
        + GRAPH_SCHEMA.format()
        + METRIC_SCHEMA
    )
