"""Tests for the recommendation engine."""

from unittest.mock import AsyncMock

import pytest

from kisanmitra.config import DAY_MS
from kisanmitra.errors import ProviderError, ValidationError
from kisanmitra.knowledge.embeddings import HashEmbeddingProvider
from kisanmitra.knowledge.graph import InMemoryGraphBackend, RelationshipGraph
from kisanmitra.knowledge.models import EntityType, KnowledgeItem, RelationshipType
from kisanmitra.knowledge.timeseries import (
    InMemoryMetricBackend,
    MetricSeries,
    WeatherMetric,
    weather_metric_id,
)
from kisanmitra.knowledge.vector_store import InMemoryVectorIndex, VectorStore
from kisanmitra.recommendations.engine import (
    PriceTrend,
    RecommendationEngine,
    classify_price_trend,
    percent_change,
    weather_advisories,
)
from kisanmitra.recommendations.schemes import (
    build_scheme_query,
    extract_scheme,
    split_name,
)

# 2024-03-15T10:00:00Z
NOW = 1_710_496_800_000
TODAY = (NOW // DAY_MS) * DAY_MS


@pytest.fixture
def engine():
    return RecommendationEngine(
        VectorStore(InMemoryVectorIndex(), HashEmbeddingProvider(dimensions=128)),
        RelationshipGraph(InMemoryGraphBackend()),
        MetricSeries(InMemoryMetricBackend()),
        clock=lambda: NOW,
    )


class TestHelpers:
    """Tests for the pure helper functions."""

    def test_percent_change(self):
        assert percent_change(2200, 2120) == 3.77
        assert percent_change(100, 100) == 0.0
        assert percent_change(90, 100) == -10.0

    def test_percent_change_without_baseline(self):
        """Missing or zero baselines give None."""
        assert percent_change(100, None) is None
        assert percent_change(100, 0) is None

    def test_classify_price_trend(self):
        """Newest window mean is compared to the oldest window mean."""
        assert classify_price_trend([100.0] * 6) is None
        assert classify_price_trend([110.0] * 7 + [100.0] * 7) == PriceTrend.RISING
        assert classify_price_trend([90.0] * 7 + [100.0] * 7) == PriceTrend.FALLING
        assert classify_price_trend([101.0] * 7 + [100.0] * 7) == PriceTrend.STABLE

    def test_weather_advisories(self):
        assert weather_advisories(38, 20, 60, 7) == [
            "High temperatures may cause heat stress in crops. Consider additional irrigation.",
            "Heavy rainfall expected. Ensure proper drainage in fields.",
        ]
        assert weather_advisories(30, 5, 2, 7) == [
            "Low temperatures may affect sensitive crops. Monitor for frost damage.",
            "Dry conditions expected. Plan for irrigation if available.",
        ]
        assert weather_advisories(30, 15, 20, 7) == [
            "Temperature conditions are favorable for most crops.",
            "Moderate rainfall expected. Good conditions for most crops.",
        ]

    def test_short_forecast_has_no_dry_advisory(self):
        """Dry spells need at least a week of forecast."""
        assert weather_advisories(30, 15, 0, 3) == [
            "Temperature conditions are favorable for most crops."
        ]


class TestWeatherForecast:
    """Tests for weather_forecast."""

    @pytest.mark.asyncio
    async def test_defaults_without_data(self, engine):
        """With no stored data every field takes its default."""
        result = await engine.weather_forecast("Pune", 3)

        assert result.data_available is False
        assert len(result.forecast) == 3
        day = result.forecast[0]
        assert (day.high_temp, day.low_temp, day.rainfall, day.humidity, day.wind_speed) == (
            25.0,
            15.0,
            0.0,
            50.0,
            5.0,
        )
        assert day.date == "2024-03-15"
        assert result.forecast[2].date == "2024-03-17"
        assert result.summary.temperature.min == 15.0
        assert result.summary.temperature.max == 25.0
        assert result.summary.agricultural_implications == [
            "Temperature conditions are favorable for most crops."
        ]

    @pytest.mark.asyncio
    async def test_stored_values_used(self, engine):
        """Stored points fill their day; gaps keep defaults."""
        high_id = weather_metric_id(WeatherMetric.TEMPERATURE_HIGH, "Pune")
        rain_id = weather_metric_id(WeatherMetric.RAINFALL, "Pune")
        await engine.metrics.record(high_id, TODAY + 1000, 38.0)
        await engine.metrics.record(rain_id, TODAY + DAY_MS + 1000, 12.0)

        result = await engine.weather_forecast("Pune", 2)

        assert result.data_available is True
        first, second = result.forecast
        assert first.high_temp == 38.0
        assert "high_temp" not in first.defaulted
        assert "rainfall" in first.defaulted
        assert second.rainfall == 12.0
        assert result.summary.total_rainfall == 12.0
        assert result.summary.rain_probability == 0.5
        assert result.summary.agricultural_implications[0].startswith("High temperatures")

    @pytest.mark.asyncio
    async def test_last_point_of_day_wins(self, engine):
        high_id = weather_metric_id(WeatherMetric.TEMPERATURE_HIGH, "Pune")
        await engine.metrics.record(high_id, TODAY + 1000, 30.0)
        await engine.metrics.record(high_id, TODAY + 5000, 31.0)

        result = await engine.weather_forecast("Pune", 1)
        assert result.forecast[0].high_temp == 31.0

    @pytest.mark.asyncio
    async def test_invalid_days(self, engine):
        with pytest.raises(ValidationError):
            await engine.weather_forecast("Pune", 0)
        with pytest.raises(ValidationError):
            await engine.weather_forecast("Pune", 31)

    @pytest.mark.asyncio
    async def test_missing_district(self, engine):
        with pytest.raises(ValidationError):
            await engine.weather_forecast("  ", 3)


class TestCropRecommendations:
    """Tests for crop_recommendations."""

    @pytest.mark.asyncio
    async def test_ranked_with_practices(self, engine):
        """Top crops get cultivation snippets from the crop_info category."""
        graph = engine.graph
        await graph.create_node(EntityType.CROP, "Wheat")
        await graph.create_node(EntityType.LOCATION, "Ludhiana")
        await graph.create_node(EntityType.SEASON, "Rabi")
        await graph.create_edge("location:ludhiana", RelationshipType.SUITABLE_FOR, "crop:wheat")
        await graph.create_edge("crop:wheat", RelationshipType.GROWN_DURING, "season:rabi")
        await engine.vectors.put_text(
            "Wheat cultivation practices: sow in November", {"category": "crop_info"}
        )
        await engine.vectors.put_text(
            "Wheat scheme subsidy", {"category": "government_scheme"}
        )

        result = await engine.crop_recommendations("Ludhiana", "Loamy", "Rabi")

        assert result.used_default is False
        assert result.recommendations[0].crop_name == "Wheat"
        assert result.recommendations[0].suitability_score == 0.8
        assert result.cultivation_practices == {
            "crop:wheat": ["Wheat cultivation practices: sow in November"]
        }

    @pytest.mark.asyncio
    async def test_cold_start(self, engine):
        """An empty graph falls back to the default list."""
        result = await engine.crop_recommendations("Nowhere")

        assert result.used_default is True
        assert [c.crop_name for c in result.recommendations] == ["Wheat", "Rice", "Maize"]
        assert result.soil_type == "medium"
        assert result.season == "current"
        assert set(result.cultivation_practices) == {"crop:wheat", "crop:rice", "crop:maize"}

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, engine):
        """Embedding failures are not hidden."""
        engine.vectors.search_by_text = AsyncMock(side_effect=ProviderError("down"))
        with pytest.raises(ProviderError):
            await engine.crop_recommendations("Ludhiana")


class TestMarketPrices:
    """Tests for market_prices."""

    @pytest.mark.asyncio
    async def test_weekly_change(self, engine):
        """A week of rising prices gives the expected weekly change."""
        prices = [2120, 2130, 2140, 2150, 2170, 2190, 2200]
        for i, price in enumerate(prices):
            await engine.metrics.record("market:price:wheat", NOW - (7 - i) * DAY_MS, price)

        result = await engine.market_prices("Wheat")

        assert result.data_available is True
        assert result.current_price == 2200
        assert result.weekly_change == 3.77
        assert result.monthly_change is None
        assert result.trend == PriceTrend.STABLE
        assert "±2%" in result.price_forecast
        assert result.points == 7

    @pytest.mark.asyncio
    async def test_rising_trend(self, engine):
        for i in range(14):
            price = 2000 if i < 7 else 2200
            await engine.metrics.record("market:price:wheat", NOW - (14 - i) * DAY_MS, price)

        result = await engine.market_prices("Wheat")

        assert result.trend == PriceTrend.RISING
        assert result.marketing_tips[0].startswith("Consider phased selling")

    @pytest.mark.asyncio
    async def test_market_segment(self, engine):
        """A named market reads its own series."""
        await engine.metrics.record("market:price:wheat:azadpur", NOW - DAY_MS, 2300)
        await engine.metrics.record("market:price:wheat", NOW - DAY_MS, 2100)

        result = await engine.market_prices("Wheat", market_area="Azadpur")
        assert result.current_price == 2300

    @pytest.mark.asyncio
    async def test_no_data(self, engine):
        """An empty window is reported without numbers."""
        result = await engine.market_prices("Quinoa")

        assert result.data_available is False
        assert result.current_price is None
        assert result.trend is None

    @pytest.mark.asyncio
    async def test_too_few_points_for_trend(self, engine):
        await engine.metrics.record("market:price:wheat", NOW - DAY_MS, 2100)

        result = await engine.market_prices("Wheat")

        assert result.trend is None
        assert result.price_forecast is None
        assert result.marketing_tips[0].startswith("Prices are stable")


class TestSchemes:
    """Tests for scheme extraction and lookup."""

    def test_split_name(self):
        assert split_name("PM-KISAN\nIncome support.") == ("PM-KISAN", "Income support.")
        assert split_name("Single line") == ("Single line", "Single line")

    def test_build_scheme_query(self):
        assert build_scheme_query() == "government scheme"
        assert build_scheme_query("small", "rice", "Punjab") == (
            "government scheme for small farmers growing rice in Punjab"
        )

    def test_structured_extraction(self):
        """Metadata fields win over text parsing."""
        item = KnowledgeItem(
            id="s1",
            text="PM-KISAN\nIncome support for farmers.",
            embedding=[1.0],
            metadata={
                "eligibility": "All landholding farmers",
                "benefits": "Rs 6000 per year",
                "application_process": "Register at pmkisan.gov.in",
            },
        )

        scheme = extract_scheme(item)

        assert scheme.name == "PM-KISAN"
        assert scheme.extraction == "structured"
        assert scheme.benefits == "Rs 6000 per year"

    def test_heuristic_extraction(self):
        """Section headers in free text are parsed."""
        item = KnowledgeItem(
            id="s2",
            text=(
                "Soil Health Card\n"
                "Eligibility: all farmers with land records. "
                "Benefits: free soil testing every two years. "
                "Apply: through the state agriculture department."
            ),
            embedding=[1.0],
        )

        scheme = extract_scheme(item)

        assert scheme.extraction == "heuristic"
        assert scheme.eligibility == "all farmers with land records"
        assert scheme.benefits == "free soil testing every two years"
        assert scheme.application_process == "through the state agriculture department"

    def test_mixed_extraction(self):
        item = KnowledgeItem(
            id="s3",
            text="Scheme\nNo sections here.",
            embedding=[1.0],
            metadata={"benefits": "Crop insurance", "name": "PMFBY"},
        )

        scheme = extract_scheme(item)

        assert scheme.name == "PMFBY"
        assert scheme.extraction == "mixed"
        assert scheme.eligibility == ""

    @pytest.mark.asyncio
    async def test_government_schemes(self, engine):
        """Only the government_scheme category is searched."""
        await engine.vectors.put_text(
            "PM-KISAN\nIncome support for small farmers.",
            {"category": "government_scheme"},
            "pm-kisan",
        )
        await engine.vectors.put_text(
            "Rice cultivation for small farmers", {"category": "crop_info"}, "rice"
        )

        result = await engine.government_schemes(farmer_type="small")

        assert result.query == "government scheme for small farmers"
        assert [s.id for s in result.schemes] == ["pm-kisan"]
        assert len(result.additional_resources) == 3


class TestCropInformation:
    """Tests for crop_information and search_knowledge."""

    @pytest.mark.asyncio
    async def test_crop_information(self, engine):
        await engine.graph.create_node(EntityType.CROP, "Wheat")
        await engine.graph.create_node(EntityType.DISEASE, "Rust")
        await engine.graph.create_edge(
            "crop:wheat", RelationshipType.SUSCEPTIBLE_TO, "disease:rust"
        )
        await engine.vectors.put_text("Wheat needs cool weather", {"category": "crop_info"})

        result = await engine.crop_information("Wheat")

        assert result.data_available is True
        assert result.relationships.entity.name == "Wheat"
        assert result.disease_treatments == {"Rust": []}
        assert result.details == ["Wheat needs cool weather"]

    @pytest.mark.asyncio
    async def test_unknown_crop(self, engine):
        result = await engine.crop_information("Quinoa")
        assert result.data_available is False

    @pytest.mark.asyncio
    async def test_search_knowledge(self, engine):
        await engine.vectors.put_text("Drip irrigation saves water", {"category": "irrigation"}, "drip")

        results = await engine.search_knowledge("drip irrigation", top_k=1)

        assert results[0].id == "drip"
        assert results[0].metadata == {"category": "irrigation"}
