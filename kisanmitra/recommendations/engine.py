"""Recommendation engine.

Composes the vector store, the relationship graph and metric series into
answers for the dialogue layer:
- Weather forecast with agricultural advisories
- Crop recommendations with cultivation practices
- Market price analysis with trend and marketing tips
- Government scheme lookup
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field

from kisanmitra.config import DAY_MS
from kisanmitra.errors import ValidationError
from kisanmitra.knowledge.graph import RelationshipGraph
from kisanmitra.knowledge.models import (
    EntityType,
    EntityWithRelationships,
    RankedCrop,
    make_node_id,
)
from kisanmitra.knowledge.timeseries import (
    MetricPoint,
    MetricSeries,
    WeatherMetric,
    market_price_metric_id,
    now_ms,
    weather_metric_id,
)
from kisanmitra.knowledge.vector_store import VectorStore
from kisanmitra.recommendations.schemes import (
    ADDITIONAL_RESOURCES,
    SchemeInfo,
    build_scheme_query,
    extract_scheme,
)

logger = structlog.get_logger()

MAX_FORECAST_DAYS = 30
TOP_CROPS_WITH_PRACTICES = 3
MAX_RECOMMENDATIONS = 5
SEARCH_TOP_K = 5

# Values used for a forecast day with no stored point
WEATHER_DEFAULTS: dict[WeatherMetric, float] = {
    WeatherMetric.TEMPERATURE_HIGH: 25.0,
    WeatherMetric.TEMPERATURE_LOW: 15.0,
    WeatherMetric.RAINFALL: 0.0,
    WeatherMetric.HUMIDITY: 50.0,
    WeatherMetric.WIND_SPEED: 5.0,
}

_FORECAST_FIELDS: dict[WeatherMetric, str] = {
    WeatherMetric.TEMPERATURE_HIGH: "high_temp",
    WeatherMetric.TEMPERATURE_LOW: "low_temp",
    WeatherMetric.RAINFALL: "rainfall",
    WeatherMetric.HUMIDITY: "humidity",
    WeatherMetric.WIND_SPEED: "wind_speed",
}

# Advisory thresholds
HEAT_STRESS_C = 35.0
FROST_RISK_C = 10.0
HEAVY_RAIN_MM = 50.0
DRY_SPELL_MM = 5.0
DRY_SPELL_MIN_DAYS = 7

# Relative change of recent vs older mean price that counts as a trend
PRICE_TREND_PCT = 3.0
PRICE_TREND_WINDOW = 7


class PriceTrend(str, Enum):
    """Direction of market prices."""

    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


PRICE_FORECAST_RANGES = {
    PriceTrend.RISING: "+5 to +10%",
    PriceTrend.FALLING: "-5 to -10%",
    PriceTrend.STABLE: "±2%",
}

MARKETING_TIPS = {
    PriceTrend.RISING: [
        "Consider phased selling to benefit from potential further price increases.",
        "Monitor daily market rates before selling large quantities.",
        "Explore nearby markets for better price options.",
    ],
    PriceTrend.FALLING: [
        "Consider selling soon if storage costs are high.",
        "Explore value-added processing options to increase returns.",
        "Check government procurement programs for minimum support price options.",
    ],
    PriceTrend.STABLE: [
        "Prices are stable. Good time for planned, gradual marketing.",
        "Compare prices across different markets before selling.",
        "Consider quality grading to fetch premium prices.",
    ],
}


# ============================================================================
# Result Models
# ============================================================================


class ForecastDay(BaseModel):
    """Weather for one UTC calendar day."""

    date: str
    high_temp: float
    low_temp: float
    rainfall: float
    humidity: float
    wind_speed: float
    defaulted: list[str] = Field(default_factory=list)  # Fields without data


class TemperatureSummary(BaseModel):
    min: float
    max: float
    avg: float


class WeatherSummary(BaseModel):
    temperature: TemperatureSummary
    total_rainfall: float
    rain_probability: float
    agricultural_implications: list[str]


class WeatherForecast(BaseModel):
    district: str
    days: int
    forecast: list[ForecastDay]
    summary: WeatherSummary
    data_available: bool


class CropRecommendations(BaseModel):
    district: str
    soil_type: str
    season: str
    recommendations: list[RankedCrop]
    cultivation_practices: dict[str, list[str]] = Field(default_factory=dict)
    used_default: bool = False  # True when the graph had no candidates


class MarketPrices(BaseModel):
    crop: str
    market_area: str
    data_available: bool
    current_price: float | None = None
    weekly_change: float | None = None  # Percent
    monthly_change: float | None = None  # Percent
    trend: PriceTrend | None = None
    price_forecast: str | None = None
    marketing_tips: list[str] | None = None
    points: int = 0


class SchemeLookup(BaseModel):
    query: str
    schemes: list[SchemeInfo]
    additional_resources: list[str]


class CropInformation(BaseModel):
    crop_id: str
    crop_name: str
    relationships: EntityWithRelationships
    details: list[str]
    disease_treatments: dict[str, list[str]] = Field(default_factory=dict)
    data_available: bool


class KnowledgeSnippet(BaseModel):
    id: str
    text: str
    metadata: dict[str, Any]


def _require(value: str | None, name: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required", field=name)
    return str(value).strip()


def percent_change(current: float, baseline: float | None) -> float | None:
    """Percent change rounded to 2 places, None without a usable baseline."""
    if baseline is None or baseline == 0:
        return None
    return round((current - baseline) / baseline * 100, 2)


def classify_price_trend(newest_first: list[float]) -> PriceTrend | None:
    """Compare the mean of the newest window against the oldest window."""
    if len(newest_first) < PRICE_TREND_WINDOW:
        return None

    recent = newest_first[:PRICE_TREND_WINDOW]
    older = newest_first[-PRICE_TREND_WINDOW:]
    recent_avg = sum(recent) / len(recent)
    older_avg = sum(older) / len(older)
    if older_avg == 0:
        return PriceTrend.STABLE

    change_pct = (recent_avg - older_avg) / older_avg * 100
    if change_pct > PRICE_TREND_PCT:
        return PriceTrend.RISING
    if change_pct < -PRICE_TREND_PCT:
        return PriceTrend.FALLING
    return PriceTrend.STABLE


def weather_advisories(
    max_temp: float, min_temp: float, total_rainfall: float, days: int
) -> list[str]:
    """Qualitative advice from fixed temperature and rainfall thresholds."""
    advisories: list[str] = []

    if max_temp > HEAT_STRESS_C:
        advisories.append(
            "High temperatures may cause heat stress in crops. Consider additional irrigation."
        )
    elif min_temp < FROST_RISK_C:
        advisories.append(
            "Low temperatures may affect sensitive crops. Monitor for frost damage."
        )
    else:
        advisories.append("Temperature conditions are favorable for most crops.")

    if total_rainfall > HEAVY_RAIN_MM:
        advisories.append("Heavy rainfall expected. Ensure proper drainage in fields.")
    elif total_rainfall < DRY_SPELL_MM and days >= DRY_SPELL_MIN_DAYS:
        advisories.append("Dry conditions expected. Plan for irrigation if available.")
    elif total_rainfall > 0:
        advisories.append("Moderate rainfall expected. Good conditions for most crops.")

    return advisories


# ============================================================================
# Recommendation Engine
# ============================================================================


class RecommendationEngine:
    """Stateless composition over the three knowledge stores."""

    def __init__(
        self,
        vectors: VectorStore,
        graph: RelationshipGraph,
        metrics: MetricSeries,
        clock: Callable[[], int] | None = None,
    ):
        self.vectors = vectors
        self.graph = graph
        self.metrics = metrics
        self.clock = clock or now_ms

    async def weather_forecast(self, district: str, days: int = 7) -> WeatherForecast:
        """Day-by-day forecast starting today (UTC), with defaults for gaps."""
        district = _require(district, "district")
        if not 1 <= days <= MAX_FORECAST_DAYS:
            raise ValidationError(
                f"days must be between 1 and {MAX_FORECAST_DAYS}", days=days
            )

        day_start = (self.clock() // DAY_MS) * DAY_MS
        window_end = day_start + days * DAY_MS - 1

        metric_ids = {kind: weather_metric_id(kind, district) for kind in WEATHER_DEFAULTS}
        series = await self.metrics.multi_range(
            list(metric_ids.values()), day_start, window_end
        )

        # Last point of each day wins
        by_day: dict[WeatherMetric, dict[int, float]] = {}
        for kind, metric_id in metric_ids.items():
            by_day[kind] = {
                (point.timestamp - day_start) // DAY_MS: point.value
                for point in series[metric_id]
            }
        data_available = any(by_day[kind] for kind in by_day)

        forecast: list[ForecastDay] = []
        for i in range(days):
            values: dict[str, float] = {}
            defaulted: list[str] = []
            for kind, field_name in _FORECAST_FIELDS.items():
                if i in by_day[kind]:
                    values[field_name] = by_day[kind][i]
                else:
                    values[field_name] = WEATHER_DEFAULTS[kind]
                    defaulted.append(field_name)

            date = datetime.fromtimestamp((day_start + i * DAY_MS) / 1000, tz=UTC)
            forecast.append(
                ForecastDay(date=date.date().isoformat(), defaulted=defaulted, **values)
            )

        temps = [d.high_temp for d in forecast] + [d.low_temp for d in forecast]
        temperature = TemperatureSummary(
            min=min(temps), max=max(temps), avg=sum(temps) / len(temps)
        )
        total_rainfall = sum(d.rainfall for d in forecast)
        rain_probability = sum(1 for d in forecast if d.rainfall > 0) / days

        summary = WeatherSummary(
            temperature=temperature,
            total_rainfall=total_rainfall,
            rain_probability=rain_probability,
            agricultural_implications=weather_advisories(
                temperature.max, temperature.min, total_rainfall, days
            ),
        )

        logger.info(
            "Weather forecast computed",
            district=district,
            days=days,
            data_available=data_available,
        )
        return WeatherForecast(
            district=district,
            days=days,
            forecast=forecast,
            summary=summary,
            data_available=data_available,
        )

    async def crop_recommendations(
        self,
        district: str,
        soil_type: str = "medium",
        season: str = "current",
    ) -> CropRecommendations:
        """Graph-ranked crops plus cultivation snippets for the top three."""
        district = _require(district, "district")
        soil_type = soil_type or "medium"
        season = season or "current"

        crops = await self.graph.get_recommended_crops(district, soil_type, season)
        top = crops[:TOP_CROPS_WITH_PRACTICES]

        practices = await asyncio.gather(
            *(
                self.vectors.search_by_text(
                    f"cultivation practices for {crop.crop_name}",
                    {"category": "crop_info"},
                    SEARCH_TOP_K,
                )
                for crop in top
            )
        )

        used_default = any(crop.is_default for crop in crops)
        logger.info(
            "Crop recommendations computed",
            district=district,
            soil_type=soil_type,
            season=season,
            count=len(crops),
            used_default=used_default,
        )
        return CropRecommendations(
            district=district,
            soil_type=soil_type,
            season=season,
            recommendations=crops[:MAX_RECOMMENDATIONS],
            cultivation_practices={
                crop.crop_id: [item.text for item in items]
                for crop, items in zip(top, practices)
            },
            used_default=used_default,
        )

    async def market_prices(
        self,
        crop: str,
        days: int = 30,
        market_area: str = "all",
    ) -> MarketPrices:
        """Current price, weekly and monthly change, trend and selling advice."""
        crop = _require(crop, "crop")
        market_area = market_area or "all"
        if days < 1:
            raise ValidationError("days must be at least 1", days=days)

        now = self.clock()
        metric_id = market_price_metric_id(crop, market_area)
        points = await self.metrics.range(metric_id, now - days * DAY_MS, now)

        if not points:
            logger.info("No market prices in window", crop=crop, market_area=market_area)
            return MarketPrices(crop=crop, market_area=market_area, data_available=False)

        newest_first: list[MetricPoint] = sorted(
            points, key=lambda point: point.timestamp, reverse=True
        )
        current_price = newest_first[0].value

        def baseline(cutoff: int) -> float | None:
            return next(
                (point.value for point in newest_first if point.timestamp <= cutoff),
                None,
            )

        trend = classify_price_trend([point.value for point in newest_first])
        price_forecast = None
        if trend is not None:
            price_forecast = (
                "Based on current trends, prices are expected to change by "
                f"{PRICE_FORECAST_RANGES[trend]} over the next 2 weeks."
            )

        result = MarketPrices(
            crop=crop,
            market_area=market_area,
            data_available=True,
            current_price=current_price,
            weekly_change=percent_change(current_price, baseline(now - 7 * DAY_MS)),
            monthly_change=percent_change(current_price, baseline(now - 30 * DAY_MS)),
            trend=trend,
            price_forecast=price_forecast,
            marketing_tips=list(MARKETING_TIPS[trend or PriceTrend.STABLE]),
            points=len(points),
        )
        logger.info(
            "Market prices computed",
            crop=crop,
            market_area=market_area,
            points=len(points),
            trend=trend.value if trend else None,
        )
        return result

    async def government_schemes(
        self,
        farmer_type: str = "all",
        crop_type: str = "all",
        state: str = "all",
    ) -> SchemeLookup:
        """Semantic scheme search with structured-first field extraction."""
        query = build_scheme_query(farmer_type, crop_type, state)
        items = await self.vectors.search_by_text(
            query, {"category": "government_scheme"}, SEARCH_TOP_K
        )
        schemes = [extract_scheme(item) for item in items]

        logger.info("Government schemes found", query=query, count=len(schemes))
        return SchemeLookup(
            query=query,
            schemes=schemes,
            additional_resources=list(ADDITIONAL_RESOURCES),
        )

    async def crop_information(self, crop_name: str) -> CropInformation:
        """Graph neighbourhood, disease treatments and text details for a crop."""
        crop_name = _require(crop_name, "crop_name")
        crop_id = make_node_id(EntityType.CROP, crop_name)

        relationships, treatments, details = await asyncio.gather(
            self.graph.get_entity_with_relationships(crop_id),
            self.graph.find_disease_treatments(crop_name),
            self.vectors.search_by_text(crop_name, {"category": "crop_info"}, SEARCH_TOP_K),
        )

        return CropInformation(
            crop_id=crop_id,
            crop_name=crop_name,
            relationships=relationships,
            details=[item.text for item in details],
            disease_treatments=treatments,
            data_available=relationships.entity is not None or bool(details),
        )

    async def search_knowledge(self, question: str, top_k: int = SEARCH_TOP_K) -> list[KnowledgeSnippet]:
        """Free semantic search over the whole corpus."""
        question = _require(question, "question")
        items = await self.vectors.search_by_text(question, None, top_k)
        return [
            KnowledgeSnippet(id=item.id, text=item.text, metadata=item.metadata)
            for item in items
        ]
