"""Knowledge bundle ingestion into the three stores."""

from datetime import UTC, date, datetime, time
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

from kisanmitra.errors import ValidationError
from kisanmitra.knowledge.graph import RelationshipGraph
from kisanmitra.knowledge.models import EntityType
from kisanmitra.knowledge.timeseries import (
    MetricPoint,
    MetricSeries,
    WeatherMetric,
    market_price_metric_id,
    weather_metric_id,
)
from kisanmitra.knowledge.vector_store import VectorStore

logger = structlog.get_logger()


# ============================================================================
# Bundle Records
# ============================================================================


class NodeRecord(BaseModel):
    type: EntityType
    name: str
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0
    source: str = "manual"


class EdgeRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_node: str = Field(alias="from")
    relationship: str
    to_node: str = Field(alias="to")
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = 1.0
    source: str = "manual"


class DocumentRecord(BaseModel):
    id: str | None = None
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class WeatherRecord(BaseModel):
    """One day of weather for a district. Absent fields are not written."""

    district: str
    day: date
    high: float | None = None
    low: float | None = None
    rainfall: float | None = None
    humidity: float | None = None
    wind_speed: float | None = None
    source: str | None = None


class PriceRecord(BaseModel):
    crop: str
    market: str | None = None
    day: date
    price: float
    unit: str = "INR/quintal"
    source: str | None = None


class IngestReport(BaseModel):
    """Counts of stored records and the records that were skipped."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    nodes: int = 0
    edges: int = 0
    documents: int = 0
    metric_points: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.nodes + self.edges + self.documents + self.metric_points


def day_timestamp(day: date) -> int:
    """UTC midnight of a calendar day in epoch milliseconds."""
    return int(datetime.combine(day, time(0, 0), tzinfo=UTC).timestamp() * 1000)


_WEATHER_FIELDS = {
    "high": (WeatherMetric.TEMPERATURE_HIGH, "celsius"),
    "low": (WeatherMetric.TEMPERATURE_LOW, "celsius"),
    "rainfall": (WeatherMetric.RAINFALL, "mm"),
    "humidity": (WeatherMetric.HUMIDITY, "percent"),
    "wind_speed": (WeatherMetric.WIND_SPEED, "km/h"),
}


# ============================================================================
# Loader
# ============================================================================


class KnowledgeLoader:
    """Write a knowledge bundle (as loaded from YAML) into the stores."""

    def __init__(self, vectors: VectorStore, graph: RelationshipGraph, metrics: MetricSeries):
        self.vectors = vectors
        self.graph = graph
        self.metrics = metrics

    async def load(self, bundle: dict[str, Any]) -> IngestReport:
        """Ingest every section of the bundle. Invalid records are skipped."""
        report = IngestReport()

        for i, raw in enumerate(bundle.get("nodes") or []):
            record = self._parse(NodeRecord, raw, f"nodes[{i}]", report)
            if record is None:
                continue
            try:
                await self.graph.create_node(
                    record.type, record.name, record.properties, record.confidence, record.source
                )
                report.nodes += 1
            except ValidationError as e:
                report.errors.append(f"nodes[{i}]: {e.message}")

        for i, raw in enumerate(bundle.get("edges") or []):
            record = self._parse(EdgeRecord, raw, f"edges[{i}]", report)
            if record is None:
                continue
            try:
                await self.graph.create_edge(
                    record.from_node,
                    record.relationship,
                    record.to_node,
                    record.properties,
                    record.confidence,
                    record.source,
                )
                report.edges += 1
            except ValidationError as e:
                report.errors.append(f"edges[{i}]: {e.message}")

        for i, raw in enumerate(bundle.get("documents") or []):
            record = self._parse(DocumentRecord, raw, f"documents[{i}]", report)
            if record is None:
                continue
            try:
                await self.vectors.put_text(record.text, record.metadata, record.id)
                report.documents += 1
            except ValidationError as e:
                report.errors.append(f"documents[{i}]: {e.message}")

        for i, raw in enumerate(bundle.get("weather") or []):
            record = self._parse(WeatherRecord, raw, f"weather[{i}]", report)
            if record is not None:
                report.metric_points += await self._load_weather(record, f"weather[{i}]", report)

        for i, raw in enumerate(bundle.get("market_prices") or []):
            record = self._parse(PriceRecord, raw, f"market_prices[{i}]", report)
            if record is None:
                continue
            try:
                await self.metrics.append(
                    MetricPoint(
                        metric_id=market_price_metric_id(record.crop, record.market),
                        timestamp=day_timestamp(record.day),
                        value=record.price,
                        unit=record.unit,
                        source=record.source,
                        metadata={"crop": record.crop, "market": record.market or "all"},
                    )
                )
                report.metric_points += 1
            except ValidationError as e:
                report.errors.append(f"market_prices[{i}]: {e.message}")

        report.completed_at = datetime.now(UTC)
        logger.info(
            "Knowledge bundle ingested",
            nodes=report.nodes,
            edges=report.edges,
            documents=report.documents,
            metric_points=report.metric_points,
            errors=len(report.errors),
        )
        return report

    async def _load_weather(self, record: WeatherRecord, label: str, report: IngestReport) -> int:
        """Five independent metric writes per day, not atomic."""
        timestamp = day_timestamp(record.day)
        points = []
        for field_name, (kind, unit) in _WEATHER_FIELDS.items():
            value = getattr(record, field_name)
            if value is None:
                continue
            points.append(
                MetricPoint(
                    metric_id=weather_metric_id(kind, record.district),
                    timestamp=timestamp,
                    value=value,
                    unit=unit,
                    source=record.source,
                    location={"district": record.district},
                )
            )
        if not points:
            report.errors.append(f"{label}: no weather values")
            return 0
        try:
            await self.metrics.append_many(points)
        except ValidationError as e:
            report.errors.append(f"{label}: {e.message}")
            return 0
        return len(points)

    def _parse(
        self,
        model: type[BaseModel],
        raw: Any,
        label: str,
        report: IngestReport,
    ) -> Any:
        try:
            return model.model_validate(raw)
        except pydantic.ValidationError as e:
            report.errors.append(f"{label}: {e.error_count()} validation error(s)")
            logger.warning("Skipping invalid record", record=label, error=str(e))
            return None
