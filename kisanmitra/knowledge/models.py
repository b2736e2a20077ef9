"""Data models for the knowledge stores."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

REVERSE_PREFIX = "reverse:"


def slugify(name: str) -> str:
    """Lowercase, trim and collapse whitespace runs to underscores."""
    return "_".join(name.strip().lower().split())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Vector Store
# ============================================================================


class KnowledgeItem(BaseModel):
    """A piece of text with its embedding and free-form metadata."""

    id: str
    text: str
    embedding: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Relationship Graph
# ============================================================================


class EntityType(str, Enum):
    """Types of entities in the agricultural graph."""

    CROP = "crop"
    DISEASE = "disease"
    PEST = "pest"
    TREATMENT = "treatment"
    WEATHER = "weather"
    LOCATION = "location"
    SEASON = "season"
    MARKET_FACTOR = "market_factor"
    SOIL = "soil"


class RelationshipType(str, Enum):
    """Well-known relationship types. Other strings are accepted too."""

    GROWS_IN = "grows_in"  # Crop -> Location
    SUSCEPTIBLE_TO = "susceptible_to"  # Crop -> Disease
    AFFECTED_BY = "affected_by"  # Crop -> Pest
    TREATED_WITH = "treated_with"  # Disease -> Treatment
    GROWN_DURING = "grown_during"  # Crop -> Season
    PRICE_AFFECTED_BY = "price_affected_by"  # Crop -> Market factor
    SUITABLE_FOR = "suitable_for"  # Location|Soil -> Crop
    TOLERANT_TO = "tolerant_to"  # Crop -> Weather condition
    HAS_PEST = "has_pest"  # Disease -> Pest
    PREVENTS = "prevents"  # Treatment -> Disease


def make_node_id(entity_type: EntityType | str, name: str) -> str:
    """Build the globally unique node id `type:slug(name)`."""
    type_value = entity_type.value if isinstance(entity_type, EntityType) else entity_type
    return f"{type_value}:{slugify(name)}"


def reverse_type(relationship_type: str) -> str:
    """Name of the companion edge type used for backward traversal."""
    return f"{REVERSE_PREFIX}{relationship_type}"


class EntityNode(BaseModel):
    """A typed agricultural entity."""

    node_id: str
    entity_type: EntityType
    name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: str = "manual"
    created_at: datetime = Field(default_factory=_utcnow)


class RelationshipEdge(BaseModel):
    """A typed, directed, confidence-scored link between two nodes."""

    source_node_id: str
    relationship_type: str
    target_node_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: str = "manual"
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_reverse(self) -> bool:
        return self.relationship_type.startswith(REVERSE_PREFIX)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_node_id, self.relationship_type, self.target_node_id)

    def reversed(self) -> "RelationshipEdge":
        """The companion edge pointing the other way with the same provenance."""
        if self.is_reverse:
            rel_type = self.relationship_type[len(REVERSE_PREFIX):]
        else:
            rel_type = reverse_type(self.relationship_type)
        return RelationshipEdge(
            source_node_id=self.target_node_id,
            relationship_type=rel_type,
            target_node_id=self.source_node_id,
            properties=dict(self.properties),
            confidence=self.confidence,
            source=self.source,
            created_at=self.created_at,
        )


class RelatedEntitySummary(BaseModel):
    """Short description of an entity reached through an edge."""

    node_id: str
    name: str
    entity_type: EntityType
    confidence: float


class EntityWithRelationships(BaseModel):
    """An entity plus its neighbours grouped by relationship type."""

    entity: EntityNode | None = None
    relationships: dict[str, list[RelatedEntitySummary]] = Field(default_factory=dict)


class RankedCrop(BaseModel):
    """A crop candidate with its suitability score and the reasons behind it."""

    crop_id: str
    crop_name: str
    suitability_score: float
    reasons: list[str] = Field(default_factory=list)
    is_default: bool = False  # True for the cold-start fallback list
