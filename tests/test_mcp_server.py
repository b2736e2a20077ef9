"""Tests for MCP Server integration."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from kisanmitra.config import Settings
from kisanmitra.knowledge.models import EntityType, RelationshipType
from kisanmitra.outputs.mcp_server import KisanMitraMCPServer
from kisanmitra.services import open_services


def _settings() -> Settings:
    return Settings(
        _env_file=None,
        storage_backend="memory",
        mock_embeddings=True,
        embedding_dimensions=32,
        redis_url="",
    )


class TestKisanMitraMCPServer:
    """Tests for KisanMitraMCPServer."""

    def test_list_tools(self):
        """All tools are exposed with their schemas."""
        server = KisanMitraMCPServer(settings=_settings())

        tools = server.list_tools()

        names = [tool.name for tool in tools]
        assert "get_weather_forecast" in names
        assert "get_crop_recommendations" in names
        assert "get_market_prices" in names
        assert "check_government_schemes" in names
        weather = next(tool for tool in tools if tool.name == "get_weather_forecast")
        assert weather.inputSchema["required"] == ["district"]

    @pytest.mark.asyncio
    async def test_call_tool(self):
        """Tool results come back as JSON text."""
        async with open_services(_settings()) as services:
            await services.graph.create_node(EntityType.CROP, "Wheat")
            await services.graph.create_node(EntityType.LOCATION, "Pune")
            await services.graph.create_edge(
                "location:pune", RelationshipType.SUITABLE_FOR, "crop:wheat"
            )
            server = KisanMitraMCPServer(settings=_settings(), services=services)

            content = await server.call_tool("get_crop_recommendations", {"district": "Pune"})

        assert content[0].type == "text"
        payload = json.loads(content[0].text)
        assert payload["error"] is None
        assert payload["data"]["recommendations"][0]["crop_name"] == "Wheat"

    @pytest.mark.asyncio
    async def test_call_tool_error(self):
        """Errors are returned in the payload, not raised."""
        async with open_services(_settings()) as services:
            server = KisanMitraMCPServer(settings=_settings(), services=services)

            content = await server.call_tool("get_weather_forecast", {"days": 3})

        payload = json.loads(content[0].text)
        assert payload["data"] is None
        assert payload["error"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_connects_lazily(self, tmp_path):
        """Stores are opened and the knowledge file loaded on first call."""
        path = tmp_path / "knowledge.yaml"
        path.write_text(
            "documents:\n"
            "  - id: drip\n"
            "    text: Drip irrigation saves water\n"
        )
        server = KisanMitraMCPServer(settings=_settings(), knowledge_file=path)

        content = await server.call_tool(
            "search_agriculture_knowledge", {"question": "irrigation"}
        )
        await server.close()

        payload = json.loads(content[0].text)
        assert payload["data"][0]["id"] == "drip"
        assert server._services is None

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_share_one_connect(self, tmp_path):
        """Calls racing the first connect wait for the knowledge file to load."""
        yesterday = (datetime.now(UTC).date() - timedelta(days=1)).isoformat()
        path = tmp_path / "knowledge.yaml"
        path.write_text(yaml.safe_dump({
            "weather": [
                {"district": "Pune", "day": yesterday, "high": 31, "low": 19, "rainfall": 2},
            ],
            "market_prices": [{"crop": "Wheat", "day": yesterday, "price": 2150}],
        }))
        server = KisanMitraMCPServer(settings=_settings(), knowledge_file=path)

        with patch(
            "kisanmitra.outputs.mcp_server.open_services", wraps=open_services
        ) as mock_open:
            first, second = await asyncio.gather(
                server.call_tool("get_market_prices", {"crop": "Wheat"}),
                server.call_tool("get_market_prices", {"crop": "Wheat"}),
            )
            await server.close()

        assert mock_open.call_count == 1
        for content in (first, second):
            payload = json.loads(content[0].text)
            assert payload["data"]["data_available"] is True
            assert payload["data"]["current_price"] == 2150

    @pytest.mark.asyncio
    async def test_main_closes_server(self):
        """The entry point closes connections after the server stops."""
        with patch.object(KisanMitraMCPServer, "run", new_callable=AsyncMock) as mock_run, \
             patch.object(KisanMitraMCPServer, "close", new_callable=AsyncMock) as mock_close:
            from kisanmitra.outputs.mcp_server import main

            await main()

        mock_run.assert_awaited_once()
        mock_close.assert_awaited_once()
