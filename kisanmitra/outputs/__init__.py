"""MCP integration."""

from kisanmitra.outputs.mcp_server import KisanMitraMCPServer

__all__ = ["KisanMitraMCPServer"]
