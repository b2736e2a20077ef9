"""Time-stamped metric series with range queries, aggregation and trends."""

from abc import ABC, abstractmethod
import asyncio
import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, Field

from kisanmitra.config import DAY_MS, RetentionSettings
from kisanmitra.database import Database, affected_rows
from kisanmitra.errors import DeadlineExceededError, NotFoundError, ValidationError
from kisanmitra.knowledge.models import slugify

logger = structlog.get_logger()

# Upper bound for open-ended ranges (max BIGINT)
MAX_TIMESTAMP = 2**63 - 1

# Relative slope above which a series counts as trending
TREND_THRESHOLD = 0.05


# ============================================================================
# Models
# ============================================================================


class MetricPoint(BaseModel):
    """One measurement. (metric_id, timestamp) is the primary key."""

    metric_id: str
    timestamp: int  # Epoch milliseconds
    value: float
    location: dict[str, Any] | None = None
    source: str | None = None
    unit: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expires_at: int | None = None  # Epoch milliseconds


class SeriesTrend(str, Enum):
    """Direction of a regression slope."""

    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


@dataclass
class MetricBucket:
    """Aggregate over the points sharing one bucket key."""

    timestamp: int
    min: float
    max: float
    avg: float
    count: int


@dataclass
class SeriesStatistics:
    """Summary statistics over a range."""

    min: float
    max: float
    avg: float
    count: int
    std_dev: float
    trend: SeriesTrend
    slope_per_day: float = 0.0


class WeatherMetric(str, Enum):
    """Weather series kinds, as they appear inside metric ids."""

    TEMPERATURE_HIGH = "temperature:high"
    TEMPERATURE_LOW = "temperature:low"
    RAINFALL = "rainfall"
    HUMIDITY = "humidity"
    WIND_SPEED = "wind_speed"


def weather_metric_id(kind: WeatherMetric | str, district: str) -> str:
    """Build e.g. weather:temperature:high:pune."""
    kind_value = kind.value if isinstance(kind, WeatherMetric) else kind
    return f"weather:{kind_value}:{slugify(district)}"


def market_price_metric_id(crop: str, market: str | None = None) -> str:
    """Build market:price:<crop>[:<market>]. 'all' means no market segment."""
    metric_id = f"market:price:{slugify(crop)}"
    if market and market.strip().lower() != "all":
        metric_id = f"{metric_id}:{slugify(market)}"
    return metric_id


# ============================================================================
# Backends
# ============================================================================


class MetricBackend(ABC):
    """Keyed storage with ordered range reads per metric id."""

    @abstractmethod
    async def put(self, point: MetricPoint) -> None:
        """Write a point, replacing any point at the same key."""
        pass

    @abstractmethod
    async def get_range(self, metric_id: str, start: int, end: int) -> list[MetricPoint]:
        """Points with start <= timestamp <= end, ascending."""
        pass

    @abstractmethod
    async def get_latest(self, metric_id: str) -> MetricPoint | None:
        pass

    @abstractmethod
    async def delete(self, metric_id: str, timestamp: int) -> bool:
        pass

    @abstractmethod
    async def sweep_expired(self, now_ms: int) -> int:
        """Physically remove points whose expiry has passed."""
        pass


class InMemoryMetricBackend(MetricBackend):
    """Dict of metric id to {timestamp: point}."""

    def __init__(self) -> None:
        self._series: dict[str, dict[int, MetricPoint]] = {}

    async def put(self, point: MetricPoint) -> None:
        self._series.setdefault(point.metric_id, {})[point.timestamp] = point

    async def get_range(self, metric_id: str, start: int, end: int) -> list[MetricPoint]:
        points = self._series.get(metric_id, {})
        return [points[ts] for ts in sorted(points) if start <= ts <= end]

    async def get_latest(self, metric_id: str) -> MetricPoint | None:
        points = self._series.get(metric_id)
        if not points:
            return None
        return points[max(points)]

    async def delete(self, metric_id: str, timestamp: int) -> bool:
        return self._series.get(metric_id, {}).pop(timestamp, None) is not None

    async def sweep_expired(self, now_ms: int) -> int:
        removed = 0
        for points in self._series.values():
            expired = [
                ts for ts, point in points.items()
                if point.expires_at is not None and point.expires_at <= now_ms
            ]
            for ts in expired:
                del points[ts]
            removed += len(expired)
        return removed


class PostgresMetricBackend(MetricBackend):
    """metric_points table keyed by (metric_id, ts)."""

    def __init__(self, db: Database):
        self.db = db

    async def put(self, point: MetricPoint) -> None:
        query = """
        INSERT INTO metric_points (
            metric_id, ts, value, location, source, unit, metadata, expires_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        ON CONFLICT (metric_id, ts) DO UPDATE SET
            value = EXCLUDED.value,
            location = EXCLUDED.location,
            source = EXCLUDED.source,
            unit = EXCLUDED.unit,
            metadata = EXCLUDED.metadata,
            expires_at = EXCLUDED.expires_at
        """
        await self.db.execute(
            query,
            point.metric_id,
            point.timestamp,
            point.value,
            json.dumps(point.location) if point.location is not None else None,
            point.source,
            point.unit,
            json.dumps(point.metadata),
            point.expires_at,
        )

    async def get_range(self, metric_id: str, start: int, end: int) -> list[MetricPoint]:
        query = """
        SELECT metric_id, ts, value, location, source, unit, metadata, expires_at
        FROM metric_points
        WHERE metric_id = $1 AND ts BETWEEN $2 AND $3
        ORDER BY ts
        """
        rows = await self.db.fetch(query, metric_id, start, end)
        return [self._row_to_point(row) for row in rows]

    async def get_latest(self, metric_id: str) -> MetricPoint | None:
        query = """
        SELECT metric_id, ts, value, location, source, unit, metadata, expires_at
        FROM metric_points
        WHERE metric_id = $1
        ORDER BY ts DESC
        LIMIT 1
        """
        row = await self.db.fetchrow(query, metric_id)
        if row is None:
            return None
        return self._row_to_point(row)

    async def delete(self, metric_id: str, timestamp: int) -> bool:
        status = await self.db.execute(
            "DELETE FROM metric_points WHERE metric_id = $1 AND ts = $2",
            metric_id,
            timestamp,
        )
        return affected_rows(status) > 0

    async def sweep_expired(self, now_ms: int) -> int:
        status = await self.db.execute(
            "DELETE FROM metric_points WHERE expires_at IS NOT NULL AND expires_at <= $1",
            now_ms,
        )
        return affected_rows(status)

    def _row_to_point(self, row: Any) -> MetricPoint:
        """Convert database row to MetricPoint model."""
        location = row["location"]
        if isinstance(location, str):
            location = json.loads(location)
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return MetricPoint(
            metric_id=row["metric_id"],
            timestamp=row["ts"],
            value=row["value"],
            location=location,
            source=row["source"],
            unit=row["unit"],
            metadata=metadata or {},
            expires_at=row["expires_at"],
        )


# ============================================================================
# Metric Series
# ============================================================================


def now_ms() -> int:
    return int(time.time() * 1000)


class MetricSeries:
    """Append, range-read, aggregate and classify metric series."""

    def __init__(
        self,
        backend: MetricBackend,
        retention: RetentionSettings | None = None,
    ):
        self.backend = backend
        self.retention = retention or RetentionSettings()

    async def append(self, point: MetricPoint) -> MetricPoint:
        """Write a point. A second write at the same timestamp replaces it.

        Points without an expiry get timestamp + retention for their family.
        """
        if not point.metric_id or not point.metric_id.strip():
            raise ValidationError("metric_id must not be empty")
        if not math.isfinite(point.value):
            raise ValidationError(
                "Metric value must be finite", metric_id=point.metric_id
            )

        if point.expires_at is None:
            point = point.model_copy(
                update={
                    "expires_at": point.timestamp
                    + self.retention.retention_ms(point.metric_id)
                }
            )

        await self.backend.put(point)
        logger.debug(
            "Metric point stored",
            metric_id=point.metric_id,
            timestamp=point.timestamp,
        )
        return point

    async def record(self, metric_id: str, timestamp: int, value: float, **fields: Any) -> MetricPoint:
        """Build a MetricPoint from loose arguments and append it."""
        try:
            point = MetricPoint(metric_id=metric_id, timestamp=timestamp, value=value, **fields)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid metric point: {e}", metric_id=metric_id) from e
        return await self.append(point)

    async def append_many(self, points: list[MetricPoint]) -> list[MetricPoint]:
        """Independent writes issued concurrently. Not atomic."""
        return list(await asyncio.gather(*(self.append(point) for point in points)))

    async def range(self, metric_id: str, start: int, end: int) -> list[MetricPoint]:
        """Points in [start, end], ascending by timestamp."""
        if start > end:
            raise ValidationError("start must not be after end", start=start, end=end)
        return await self.backend.get_range(metric_id, start, end)

    async def latest(self, metric_id: str) -> MetricPoint | None:
        return await self.backend.get_latest(metric_id)

    async def multi_range(
        self, metric_ids: list[str], start: int, end: int
    ) -> dict[str, list[MetricPoint]]:
        """Range-read several series concurrently."""
        results = await asyncio.gather(
            *(self.range(metric_id, start, end) for metric_id in metric_ids)
        )
        return dict(zip(metric_ids, results))

    async def aggregate(
        self, metric_id: str, start: int, end: int, bucket_ms: int
    ) -> list[MetricBucket]:
        """Sparse buckets keyed by floor(timestamp / bucket_ms) * bucket_ms."""
        if bucket_ms <= 0:
            raise ValidationError("bucket_ms must be positive", bucket_ms=bucket_ms)

        points = await self.range(metric_id, start, end)

        grouped: dict[int, list[float]] = {}
        for point in points:
            key = (point.timestamp // bucket_ms) * bucket_ms
            grouped.setdefault(key, []).append(point.value)

        return [
            MetricBucket(
                timestamp=key,
                min=min(values),
                max=max(values),
                avg=sum(values) / len(values),
                count=len(values),
            )
            for key, values in sorted(grouped.items())
        ]

    async def statistics(self, metric_id: str, start: int, end: int) -> SeriesStatistics:
        """Min, max, mean, population std dev and regression trend over a range."""
        points = await self.range(metric_id, start, end)
        if not points:
            raise NotFoundError(
                f"No data found for metric {metric_id} in the specified time range",
                metric_id=metric_id,
                start=start,
                end=end,
            )

        values = [point.value for point in points]
        count = len(values)
        avg = sum(values) / count
        std_dev = math.sqrt(sum((v - avg) ** 2 for v in values) / count)

        # Least squares slope of value against days since the first point
        first = points[0].timestamp
        days = [(point.timestamp - first) / DAY_MS for point in points]
        t_avg = sum(days) / count
        numerator = sum((t - t_avg) * (v - avg) for t, v in zip(days, values))
        denominator = sum((t - t_avg) ** 2 for t in days)
        slope = numerator / denominator if denominator != 0 else 0.0

        threshold = TREND_THRESHOLD * abs(avg)
        if slope > threshold:
            trend = SeriesTrend.INCREASING
        elif slope < -threshold:
            trend = SeriesTrend.DECREASING
        else:
            trend = SeriesTrend.STABLE

        return SeriesStatistics(
            min=min(values),
            max=max(values),
            avg=avg,
            count=count,
            std_dev=std_dev,
            trend=trend,
            slope_per_day=slope,
        )

    async def delete_range(
        self,
        metric_id: str,
        start: int | None = None,
        end: int | None = None,
        timeout: float | None = None,
    ) -> int:
        """Enumerate matching points, then delete them one by one.

        An append landing mid-delete may or may not survive.
        """
        start = 0 if start is None else start
        end = MAX_TIMESTAMP if end is None else end
        deadline = time.monotonic() + timeout if timeout is not None else None

        points = await self.range(metric_id, start, end)
        deleted = 0
        for point in points:
            if deadline is not None and time.monotonic() >= deadline:
                raise DeadlineExceededError(
                    "Range delete exceeded its deadline",
                    metric_id=metric_id,
                    deleted=deleted,
                )
            if await self.backend.delete(metric_id, point.timestamp):
                deleted += 1

        logger.info("Metric range deleted", metric_id=metric_id, deleted=deleted)
        return deleted

    async def sweep_expired(self, now: int | None = None) -> int:
        """Remove points whose expiry is at or before now."""
        removed = await self.backend.sweep_expired(now if now is not None else now_ms())
        logger.info("Expired metric points swept", removed=removed)
        return removed
