"""MCP Server exposing the agricultural tools.

Provides the tools consumed by a dialogue agent:
- get_weather_forecast: District forecast with advisories
- get_crop_recommendations: Ranked crops with cultivation practices
- get_market_prices: Price change, trend and marketing tips
- check_government_schemes: Scheme lookup
- get_crop_information: Crop details and disease treatments
- search_agriculture_knowledge: Free semantic search
"""

import asyncio
import json
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

import structlog
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from kisanmitra.config import Settings
from kisanmitra.logs import configure_logging
from kisanmitra.recommendations.tools import ToolContext, execute_tool, tool_definitions
from kisanmitra.services import Services, open_services

logger = structlog.get_logger()


class KisanMitraMCPServer:
    """MCP Server for the Kisan Mitra knowledge core."""

    def __init__(
        self,
        settings: Settings | None = None,
        services: Services | None = None,
        knowledge_file: Path | None = None,
    ):
        """Initialize the MCP server.

        Args:
            settings: Application settings. Defaults to environment.
            services: Pre-built services, mainly for tests.
            knowledge_file: Optional YAML bundle loaded on first connect.
        """
        self.settings = settings or Settings()
        self.knowledge_file = knowledge_file
        self._services = services
        self._stack: AsyncExitStack | None = None
        self._connect_lock = asyncio.Lock()

        self.server = Server("kisanmitra")
        self._setup_handlers()

    async def _ensure_connected(self) -> Services:
        """Open the stores and load the knowledge file once, on first use.

        Concurrent first calls wait for the same connect, and no caller sees
        the stores before the knowledge file has finished loading.
        """
        if self._services is not None:
            return self._services

        async with self._connect_lock:
            if self._services is None:
                stack = AsyncExitStack()
                try:
                    services = await stack.enter_async_context(open_services(self.settings))
                    if self.knowledge_file:
                        report = await services.ingest_file(self.knowledge_file)
                        logger.info("Knowledge file loaded", records=report.total)
                except Exception:
                    await stack.aclose()
                    raise
                self._stack = stack
                self._services = services
                logger.info("MCP server connected to stores")
        return self._services

    def list_tools(self) -> list[Tool]:
        """Tool descriptors with JSON schemas."""
        return [
            Tool(
                name=definition["name"],
                description=definition["description"],
                inputSchema=definition["input_schema"],
            )
            for definition in tool_definitions()
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        """Run a tool and return its result as JSON text."""
        services = await self._ensure_connected()
        result = await execute_tool(services.engine, name, arguments, ToolContext())
        return [TextContent(
            type="text",
            text=json.dumps(result.model_dump(mode="json"), indent=2, default=str),
        )]

    def _setup_handlers(self) -> None:
        """Setup MCP tool handlers."""

        @self.server.list_tools()
        async def list_tools() -> list[Tool]:
            """List available tools."""
            return self.list_tools()

        @self.server.call_tool()
        async def call_tool(
            name: str,
            arguments: dict[str, Any],
        ) -> list[TextContent]:
            """Handle tool calls."""
            return await self.call_tool(name, arguments)

    async def run(self) -> None:
        """Run the MCP server."""
        logger.info("Starting Kisan Mitra MCP server")
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options(),
            )

    async def close(self) -> None:
        """Close store connections."""
        if self._stack:
            await self._stack.aclose()
            self._stack = None
            self._services = None
            logger.info("MCP server connections closed")


# ============================================================================
# Entry Point
# ============================================================================


async def main(knowledge_file: Path | None = None) -> None:
    """Main entry point for the MCP server."""
    settings = Settings()
    configure_logging(settings.log_level)
    server = KisanMitraMCPServer(settings=settings, knowledge_file=knowledge_file)
    try:
        await server.run()
    finally:
        await server.close()


if __name__ == "__main__":
    asyncio.run(main())
