"""Recommendation engine and the tool surface for the dialogue layer."""

from kisanmitra.recommendations.engine import (
    CropInformation,
    CropRecommendations,
    ForecastDay,
    KnowledgeSnippet,
    MarketPrices,
    PriceTrend,
    RecommendationEngine,
    SchemeLookup,
    WeatherForecast,
)
from kisanmitra.recommendations.schemes import SchemeInfo, extract_scheme
from kisanmitra.recommendations.tools import (
    TOOLS,
    ToolContext,
    ToolError,
    ToolResult,
    execute_tool,
    tool_definitions,
)

__all__ = [
    # Engine
    "CropInformation",
    "CropRecommendations",
    "ForecastDay",
    "KnowledgeSnippet",
    "MarketPrices",
    "PriceTrend",
    "RecommendationEngine",
    "SchemeLookup",
    "WeatherForecast",
    # Schemes
    "SchemeInfo",
    "extract_scheme",
    # Tools
    "TOOLS",
    "ToolContext",
    "ToolError",
    "ToolResult",
    "execute_tool",
    "tool_definitions",
]
