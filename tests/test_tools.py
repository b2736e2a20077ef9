"""Tests for the tool layer."""

from unittest.mock import AsyncMock

import pytest

from kisanmitra.errors import ProviderError
from kisanmitra.knowledge.embeddings import HashEmbeddingProvider
from kisanmitra.knowledge.graph import InMemoryGraphBackend, RelationshipGraph
from kisanmitra.knowledge.timeseries import InMemoryMetricBackend, MetricSeries
from kisanmitra.knowledge.vector_store import InMemoryVectorIndex, VectorStore
from kisanmitra.recommendations.engine import RecommendationEngine
from kisanmitra.recommendations.tools import (
    TOOLS,
    ToolContext,
    execute_tool,
    tool_definitions,
)

NOW = 1_710_496_800_000


@pytest.fixture
def engine():
    return RecommendationEngine(
        VectorStore(InMemoryVectorIndex(), HashEmbeddingProvider(dimensions=64)),
        RelationshipGraph(InMemoryGraphBackend()),
        MetricSeries(InMemoryMetricBackend()),
        clock=lambda: NOW,
    )


class TestToolDefinitions:
    """Tests for tool metadata."""

    def test_all_tools_listed(self):
        names = [d["name"] for d in tool_definitions()]
        assert names == list(TOOLS)
        assert "get_weather_forecast" in names
        assert "search_agriculture_knowledge" in names

    def test_input_schema(self):
        """Schemas mark required arguments and carry bounds."""
        definitions = {d["name"]: d for d in tool_definitions()}
        schema = definitions["get_weather_forecast"]["input_schema"]

        assert schema["required"] == ["district"]
        assert schema["properties"]["days"]["maximum"] == 30


class TestExecuteTool:
    """Tests for execute_tool."""

    @pytest.mark.asyncio
    async def test_success(self, engine):
        """Results are returned as JSON-compatible data."""
        result = await execute_tool(engine, "get_weather_forecast", {"district": "Pune", "days": 3})

        assert result.ok
        assert result.data["district"] == "Pune"
        assert len(result.data["forecast"]) == 3

    @pytest.mark.asyncio
    async def test_list_results(self, engine):
        await engine.vectors.put_text("Drip irrigation saves water", item_id="drip")

        result = await execute_tool(
            engine, "search_agriculture_knowledge", {"question": "irrigation"}
        )

        assert result.ok
        assert result.data[0]["id"] == "drip"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, engine):
        result = await execute_tool(engine, "launch_rocket", {})

        assert not result.ok
        assert result.error.code == "unknown_tool"

    @pytest.mark.asyncio
    async def test_missing_argument(self, engine):
        """Missing required arguments are a validation error."""
        result = await execute_tool(engine, "get_weather_forecast", {})

        assert result.error.code == "validation_error"
        assert "district" in result.error.message

    @pytest.mark.asyncio
    async def test_out_of_range_argument(self, engine):
        result = await execute_tool(
            engine, "get_weather_forecast", {"district": "Pune", "days": 45}
        )
        assert result.error.code == "validation_error"

    @pytest.mark.asyncio
    async def test_empty_district(self, engine):
        """Blank strings are rejected by the engine."""
        result = await execute_tool(engine, "get_crop_recommendations", {"district": "  "})
        assert result.error.code == "validation_error"

    @pytest.mark.asyncio
    async def test_none_arguments(self, engine):
        result = await execute_tool(engine, "check_government_schemes", None)
        assert result.ok
        assert result.data["query"] == "government scheme"

    @pytest.mark.asyncio
    async def test_knowledge_error_reported(self, engine):
        """Domain errors keep their code."""
        engine.vectors.search_by_text = AsyncMock(side_effect=ProviderError("down"))

        result = await execute_tool(
            engine, "search_agriculture_knowledge", {"question": "wheat"}
        )

        assert result.error.code == "provider_error"
        assert result.error.message == "down"

    @pytest.mark.asyncio
    async def test_unexpected_error_reported(self, engine):
        """Unexpected exceptions become internal errors."""
        engine.vectors.search_by_text = AsyncMock(side_effect=RuntimeError("boom"))

        result = await execute_tool(
            engine,
            "search_agriculture_knowledge",
            {"question": "wheat"},
            ToolContext(session_id="s-1"),
        )

        assert result.error.code == "internal_error"
        assert "boom" in result.error.message

    def test_context_request_ids_unique(self):
        assert ToolContext().request_id != ToolContext().request_id
