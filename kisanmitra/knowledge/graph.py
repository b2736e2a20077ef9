"""Typed entity graph with forward and reverse traversal.

Every forward edge (A, R, B) is readable backwards as (B, "reverse:R", A).
Backends with a reverse index store one row per edge and synthesize the
reverse view on read; other backends get the reverse twin written explicitly.
"""

from abc import ABC, abstractmethod
import asyncio
import json
from typing import Any

import pydantic
import structlog

from kisanmitra.database import Database, affected_rows
from kisanmitra.errors import KnowledgeError, ValidationError, report_inconsistency
from kisanmitra.knowledge.models import (
    REVERSE_PREFIX,
    EntityNode,
    EntityType,
    EntityWithRelationships,
    RankedCrop,
    RelatedEntitySummary,
    RelationshipEdge,
    RelationshipType,
    make_node_id,
    reverse_type,
)

logger = structlog.get_logger()

# Suitability weights for crop recommendation
LOCATION_WEIGHT = 0.4
SEASON_WEIGHT = 0.4
SOIL_WEIGHT = 0.2

# Returned when the graph has no candidates at all (cold start)
DEFAULT_CROPS: list[tuple[str, float, str]] = [
    ("Wheat", 0.9, "Common crop for most regions"),
    ("Rice", 0.8, "Staple crop in many regions"),
    ("Maize", 0.7, "Versatile crop for various conditions"),
]


def _type_value(relationship_type: RelationshipType | str) -> str:
    if isinstance(relationship_type, RelationshipType):
        return relationship_type.value
    return relationship_type


# ============================================================================
# Backends
# ============================================================================


class GraphBackend(ABC):
    """Point and adjacency storage for nodes and edges."""

    # True when get_edges can answer reverse: queries without stored twins
    supports_reverse_lookup: bool = False

    @abstractmethod
    async def put_node_if_absent(self, node: EntityNode) -> bool:
        """Store the node unless its id exists. Returns True if stored."""
        pass

    @abstractmethod
    async def get_node(self, node_id: str) -> EntityNode | None:
        pass

    @abstractmethod
    async def put_edge(self, edge: RelationshipEdge) -> bool:
        """Store the edge unless its key exists. Returns True if stored."""
        pass

    @abstractmethod
    async def delete_edge(
        self, source_node_id: str, relationship_type: str, target_node_id: str
    ) -> bool:
        pass

    @abstractmethod
    async def get_edges(
        self, node_id: str, relationship_type: str | None = None
    ) -> list[RelationshipEdge]:
        """Edges leaving node_id in insertion order, optionally of one type."""
        pass


class InMemoryGraphBackend(GraphBackend):
    """Dict-backed graph.

    With reverse_index=True incoming edges are indexed by target and served
    as reverse: edges, otherwise the graph writes reverse twins itself.
    """

    def __init__(self, reverse_index: bool = False):
        self.supports_reverse_lookup = reverse_index
        self._nodes: dict[str, EntityNode] = {}
        self._outgoing: dict[str, dict[tuple[str, str, str], tuple[int, RelationshipEdge]]] = {}
        self._incoming: dict[str, dict[tuple[str, str, str], tuple[int, RelationshipEdge]]] = {}
        self._seq = 0

    async def put_node_if_absent(self, node: EntityNode) -> bool:
        if node.node_id in self._nodes:
            return False
        self._nodes[node.node_id] = node
        return True

    async def get_node(self, node_id: str) -> EntityNode | None:
        return self._nodes.get(node_id)

    async def put_edge(self, edge: RelationshipEdge) -> bool:
        outgoing = self._outgoing.setdefault(edge.source_node_id, {})
        if edge.key in outgoing:
            return False
        self._seq += 1
        outgoing[edge.key] = (self._seq, edge)
        if self.supports_reverse_lookup:
            self._incoming.setdefault(edge.target_node_id, {})[edge.key] = (self._seq, edge)
        return True

    async def delete_edge(
        self, source_node_id: str, relationship_type: str, target_node_id: str
    ) -> bool:
        key = (source_node_id, relationship_type, target_node_id)
        removed = self._outgoing.get(source_node_id, {}).pop(key, None)
        self._incoming.get(target_node_id, {}).pop(key, None)
        return removed is not None

    async def get_edges(
        self, node_id: str, relationship_type: str | None = None
    ) -> list[RelationshipEdge]:
        found: list[tuple[int, RelationshipEdge]] = []
        wants_reverse = relationship_type is not None and relationship_type.startswith(
            REVERSE_PREFIX
        )

        if not (wants_reverse and self.supports_reverse_lookup):
            for seq, edge in self._outgoing.get(node_id, {}).values():
                if relationship_type is None or edge.relationship_type == relationship_type:
                    found.append((seq, edge))

        if self.supports_reverse_lookup and (relationship_type is None or wants_reverse):
            for seq, edge in self._incoming.get(node_id, {}).values():
                twin = edge.reversed()
                if relationship_type is None or twin.relationship_type == relationship_type:
                    found.append((seq, twin))

        found.sort(key=lambda pair: pair[0])
        return [edge for _, edge in found]


class PostgresGraphBackend(GraphBackend):
    """Single edge table, reverse lookups through the covering target index."""

    supports_reverse_lookup = True

    _EDGE_COLUMNS = (
        "seq, source_node_id, relationship_type, target_node_id, "
        "properties, confidence, source, created_at"
    )

    def __init__(self, db: Database):
        self.db = db

    async def put_node_if_absent(self, node: EntityNode) -> bool:
        query = """
        INSERT INTO graph_nodes (node_id, entity_type, name, properties, confidence, source, created_at)
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        ON CONFLICT (node_id) DO NOTHING
        RETURNING node_id
        """
        inserted = await self.db.fetchval(
            query,
            node.node_id,
            node.entity_type.value,
            node.name,
            json.dumps(node.properties),
            node.confidence,
            node.source,
            node.created_at,
        )
        return inserted is not None

    async def get_node(self, node_id: str) -> EntityNode | None:
        query = """
        SELECT node_id, entity_type, name, properties, confidence, source, created_at
        FROM graph_nodes WHERE node_id = $1
        """
        row = await self.db.fetchrow(query, node_id)
        if row is None:
            return None
        return EntityNode(
            node_id=row["node_id"],
            entity_type=EntityType(row["entity_type"]),
            name=row["name"],
            properties=_load_json(row["properties"]),
            confidence=row["confidence"],
            source=row["source"],
            created_at=row["created_at"],
        )

    async def put_edge(self, edge: RelationshipEdge) -> bool:
        query = """
        INSERT INTO graph_edges (
            source_node_id, relationship_type, target_node_id,
            properties, confidence, source, created_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7)
        ON CONFLICT (source_node_id, relationship_type, target_node_id) DO NOTHING
        RETURNING seq
        """
        seq = await self.db.fetchval(
            query,
            edge.source_node_id,
            edge.relationship_type,
            edge.target_node_id,
            json.dumps(edge.properties),
            edge.confidence,
            edge.source,
            edge.created_at,
        )
        return seq is not None

    async def delete_edge(
        self, source_node_id: str, relationship_type: str, target_node_id: str
    ) -> bool:
        query = """
        DELETE FROM graph_edges
        WHERE source_node_id = $1 AND relationship_type = $2 AND target_node_id = $3
        """
        status = await self.db.execute(query, source_node_id, relationship_type, target_node_id)
        return affected_rows(status) > 0

    async def get_edges(
        self, node_id: str, relationship_type: str | None = None
    ) -> list[RelationshipEdge]:
        if relationship_type is None:
            query = f"""
            SELECT {self._EDGE_COLUMNS}, FALSE AS incoming
            FROM graph_edges WHERE source_node_id = $1
            UNION ALL
            SELECT {self._EDGE_COLUMNS}, TRUE AS incoming
            FROM graph_edges WHERE target_node_id = $1
            ORDER BY seq, incoming
            """
            rows = await self.db.fetch(query, node_id)
        elif relationship_type.startswith(REVERSE_PREFIX):
            query = f"""
            SELECT {self._EDGE_COLUMNS}, TRUE AS incoming
            FROM graph_edges
            WHERE target_node_id = $1 AND relationship_type = $2
            ORDER BY seq
            """
            rows = await self.db.fetch(
                query, node_id, relationship_type[len(REVERSE_PREFIX):]
            )
        else:
            query = f"""
            SELECT {self._EDGE_COLUMNS}, FALSE AS incoming
            FROM graph_edges
            WHERE source_node_id = $1 AND relationship_type = $2
            ORDER BY seq
            """
            rows = await self.db.fetch(query, node_id, relationship_type)

        return [self._row_to_edge(row) for row in rows]

    def _row_to_edge(self, row: Any) -> RelationshipEdge:
        """Convert database row to RelationshipEdge, flipping incoming rows."""
        edge = RelationshipEdge(
            source_node_id=row["source_node_id"],
            relationship_type=row["relationship_type"],
            target_node_id=row["target_node_id"],
            properties=_load_json(row["properties"]),
            confidence=row["confidence"],
            source=row["source"],
            created_at=row["created_at"],
        )
        return edge.reversed() if row["incoming"] else edge


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


# ============================================================================
# Relationship Graph
# ============================================================================


class RelationshipGraph:
    """Agricultural knowledge graph over a pluggable backend."""

    def __init__(self, backend: GraphBackend):
        self.backend = backend

    async def create_node(
        self,
        entity_type: EntityType | str,
        name: str,
        properties: dict[str, Any] | None = None,
        confidence: float = 1.0,
        source: str = "manual",
    ) -> str:
        """Create a node if absent. Existing nodes are never overwritten."""
        try:
            entity_type = EntityType(entity_type)
        except ValueError as e:
            raise ValidationError(f"Unknown entity type: {entity_type}") from e

        node_id = make_node_id(entity_type, name or "")
        if node_id.endswith(":"):
            raise ValidationError("Node name must not be empty", entity_type=entity_type.value)

        try:
            node = EntityNode(
                node_id=node_id,
                entity_type=entity_type,
                name=name.strip(),
                properties=dict(properties or {}),
                confidence=confidence,
                source=source,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid node: {e}", node_id=node_id) from e

        created = await self.backend.put_node_if_absent(node)
        logger.debug("Graph node stored", node_id=node_id, created=created)
        return node_id

    async def get_node(self, node_id: str) -> EntityNode | None:
        return await self.backend.get_node(node_id)

    async def create_edge(
        self,
        source_node_id: str,
        relationship_type: RelationshipType | str,
        target_node_id: str,
        properties: dict[str, Any] | None = None,
        confidence: float = 1.0,
        source: str = "manual",
    ) -> RelationshipEdge:
        """Create an edge and make it traversable in both directions.

        Without a reverse index this is two independent writes; a failed
        reverse write leaves the graph asymmetric and is reported as a
        ConsistencyWarning. Calling again repairs it.
        """
        rel_type = _type_value(relationship_type)
        if not rel_type:
            raise ValidationError("Relationship type must not be empty")
        if rel_type.startswith(REVERSE_PREFIX):
            raise ValidationError(
                "Reverse edges are maintained by the graph", relationship_type=rel_type
            )
        if not source_node_id or not target_node_id:
            raise ValidationError("Edge endpoints must not be empty")

        try:
            edge = RelationshipEdge(
                source_node_id=source_node_id,
                relationship_type=rel_type,
                target_node_id=target_node_id,
                properties=dict(properties or {}),
                confidence=confidence,
                source=source,
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid edge: {e}", relationship_type=rel_type) from e

        created = await self.backend.put_edge(edge)

        if not self.backend.supports_reverse_lookup:
            try:
                await self.backend.put_edge(edge.reversed())
            except KnowledgeError as e:
                report_inconsistency(
                    "Reverse edge write failed, graph is asymmetric",
                    source_node_id=source_node_id,
                    relationship_type=rel_type,
                    target_node_id=target_node_id,
                    error=str(e),
                )

        logger.debug(
            "Graph edge stored",
            source_node_id=source_node_id,
            relationship_type=rel_type,
            target_node_id=target_node_id,
            created=created,
        )
        return edge

    async def delete_edge(
        self,
        source_node_id: str,
        relationship_type: RelationshipType | str,
        target_node_id: str,
    ) -> bool:
        """Remove an edge in both directions. Returns True if it existed."""
        rel_type = _type_value(relationship_type)
        if rel_type.startswith(REVERSE_PREFIX):
            raise ValidationError(
                "Delete the forward edge instead", relationship_type=rel_type
            )

        deleted = await self.backend.delete_edge(source_node_id, rel_type, target_node_id)

        if not self.backend.supports_reverse_lookup:
            try:
                await self.backend.delete_edge(
                    target_node_id, reverse_type(rel_type), source_node_id
                )
            except KnowledgeError as e:
                report_inconsistency(
                    "Reverse edge delete failed, graph is asymmetric",
                    source_node_id=source_node_id,
                    relationship_type=rel_type,
                    target_node_id=target_node_id,
                    error=str(e),
                )
        return deleted

    async def get_edges(
        self,
        node_id: str,
        relationship_type: RelationshipType | str | None = None,
    ) -> list[RelationshipEdge]:
        """All edges leaving node_id, reverse twins included, in insertion order."""
        rel_type = _type_value(relationship_type) if relationship_type else None
        return await self.backend.get_edges(node_id, rel_type)

    async def traverse(
        self,
        node_id: str,
        relationship_type: RelationshipType | str,
        reverse: bool = False,
    ) -> list[str]:
        """Ids of nodes one hop away along relationship_type."""
        rel_type = _type_value(relationship_type)
        if reverse:
            rel_type = reverse_type(rel_type)
        edges = await self.backend.get_edges(node_id, rel_type)
        return [edge.target_node_id for edge in edges]

    async def get_entity_with_relationships(self, node_id: str) -> EntityWithRelationships:
        """Entity plus neighbours grouped by relationship type.

        Edges whose target node is missing are skipped.
        """
        entity = await self.backend.get_node(node_id)
        if entity is None:
            return EntityWithRelationships(entity=None)

        edges = await self.backend.get_edges(node_id)
        targets = await asyncio.gather(
            *(self.backend.get_node(edge.target_node_id) for edge in edges)
        )

        relationships: dict[str, list[RelatedEntitySummary]] = {}
        for edge, target in zip(edges, targets):
            if target is None:
                continue
            relationships.setdefault(edge.relationship_type, []).append(
                RelatedEntitySummary(
                    node_id=target.node_id,
                    name=target.name,
                    entity_type=target.entity_type,
                    confidence=edge.confidence,
                )
            )

        return EntityWithRelationships(entity=entity, relationships=relationships)

    async def find_disease_treatments(self, crop_name: str) -> dict[str, list[str]]:
        """Map each disease the crop is susceptible to onto its treatment names."""
        crop_id = make_node_id(EntityType.CROP, crop_name)
        disease_ids = await self.traverse(crop_id, RelationshipType.SUSCEPTIBLE_TO)

        async def _treatments_for(disease_id: str) -> tuple[EntityNode | None, list[str]]:
            disease, treatment_ids = await asyncio.gather(
                self.backend.get_node(disease_id),
                self.traverse(disease_id, RelationshipType.TREATED_WITH),
            )
            if disease is None:
                return None, []
            nodes = await asyncio.gather(
                *(self.backend.get_node(treatment_id) for treatment_id in treatment_ids)
            )
            return disease, [node.name for node in nodes if node is not None]

        results = await asyncio.gather(
            *(_treatments_for(disease_id) for disease_id in disease_ids)
        )
        return {
            disease.name: names for disease, names in results if disease is not None
        }

    async def get_recommended_crops(
        self,
        location: str,
        soil_type: str,
        season: str,
    ) -> list[RankedCrop]:
        """Rank crops by the criteria they match.

        Score is the sum of matched weights (location 0.4, season 0.4,
        soil 0.2), never normalised. With no candidates at all the fixed
        default list is returned, flagged with is_default.
        """
        location_id = make_node_id(EntityType.LOCATION, location)
        season_id = make_node_id(EntityType.SEASON, season)
        soil_id = make_node_id(EntityType.SOIL, soil_type)

        location_crops, season_crops, soil_crops = await asyncio.gather(
            self.traverse(location_id, RelationshipType.SUITABLE_FOR),
            self.traverse(season_id, RelationshipType.GROWN_DURING, reverse=True),
            self.traverse(soil_id, RelationshipType.SUITABLE_FOR),
        )

        # Union in first-seen order
        candidates = list(dict.fromkeys([*location_crops, *season_crops, *soil_crops]))
        nodes = await asyncio.gather(
            *(self.backend.get_node(crop_id) for crop_id in candidates)
        )

        location_set, season_set, soil_set = set(location_crops), set(season_crops), set(soil_crops)
        ranked: list[RankedCrop] = []

        for crop_id, node in zip(candidates, nodes):
            if node is None:
                logger.debug("Candidate crop has no node", crop_id=crop_id)
                continue

            score = 0.0
            reasons: list[str] = []
            if crop_id in location_set:
                score += LOCATION_WEIGHT
                reasons.append(f"Suitable for {location} region")
            if crop_id in season_set:
                score += SEASON_WEIGHT
                reasons.append(f"Ideal for {season} season")
            if crop_id in soil_set:
                score += SOIL_WEIGHT
                reasons.append(f"Well-suited for {soil_type} soil")

            if score > 0:
                ranked.append(
                    RankedCrop(
                        crop_id=node.node_id,
                        crop_name=node.name,
                        suitability_score=round(score, 2),
                        reasons=reasons,
                    )
                )

        if not ranked:
            logger.warning(
                "No crop candidates in graph, using default list",
                location=location,
                soil_type=soil_type,
                season=season,
            )
            return default_crops()

        ranked.sort(key=lambda crop: crop.suitability_score, reverse=True)
        return ranked


def default_crops() -> list[RankedCrop]:
    """The cold-start recommendation list."""
    return [
        RankedCrop(
            crop_id=make_node_id(EntityType.CROP, name),
            crop_name=name,
            suitability_score=score,
            reasons=[reason],
            is_default=True,
        )
        for name, score, reason in DEFAULT_CROPS
    ]
