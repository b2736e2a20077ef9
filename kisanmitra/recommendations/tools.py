"""Named tools invoked by the dialogue/agent layer.

Each tool takes a plain argument record, validates it with a pydantic model
and returns a ToolResult. Errors are reported in the result, never raised.
"""

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, Field

from kisanmitra.errors import KnowledgeError, ValidationError
from kisanmitra.recommendations.engine import RecommendationEngine

logger = structlog.get_logger()


# ============================================================================
# Call Context and Results
# ============================================================================


@dataclass
class ToolContext:
    """Per-call context passed explicitly instead of a global session registry."""

    session_id: str | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class ToolError(BaseModel):
    code: str
    message: str


class ToolResult(BaseModel):
    """Structured result: data on success, error otherwise."""

    data: Any = None
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ============================================================================
# Argument Models
# ============================================================================


class WeatherForecastArgs(BaseModel):
    district: str = Field(description="District name, e.g. Pune")
    days: int = Field(default=7, ge=1, le=30, description="Number of days (default 7)")


class CropRecommendationArgs(BaseModel):
    district: str = Field(description="District name")
    soil_type: str = Field(default="medium", description="Soil type, e.g. black, loamy")
    season: str = Field(default="current", description="Season, e.g. kharif, rabi")


class MarketPriceArgs(BaseModel):
    crop: str = Field(description="Crop name")
    market_area: str = Field(default="all", description="Market name or 'all'")
    days: int = Field(default=30, ge=1, le=365, description="History window in days")


class GovernmentSchemeArgs(BaseModel):
    farmer_type: str = Field(default="all", description="e.g. small, marginal, or 'all'")
    crop_type: str = Field(default="all", description="Crop grown, or 'all'")
    state: str = Field(default="all", description="State name, or 'all'")


class CropInformationArgs(BaseModel):
    crop_name: str = Field(description="Crop name")


class KnowledgeSearchArgs(BaseModel):
    question: str = Field(description="Free-text agricultural question")
    top_k: int = Field(default=5, ge=1, le=20, description="Max results (default 5)")


# ============================================================================
# Tool Registry
# ============================================================================


@dataclass
class ToolDefinition:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: Callable[[RecommendationEngine, Any], Awaitable[Any]]


async def _weather(engine: RecommendationEngine, args: WeatherForecastArgs) -> Any:
    return await engine.weather_forecast(args.district, args.days)


async def _crops(engine: RecommendationEngine, args: CropRecommendationArgs) -> Any:
    return await engine.crop_recommendations(args.district, args.soil_type, args.season)


async def _prices(engine: RecommendationEngine, args: MarketPriceArgs) -> Any:
    return await engine.market_prices(args.crop, args.days, args.market_area)


async def _schemes(engine: RecommendationEngine, args: GovernmentSchemeArgs) -> Any:
    return await engine.government_schemes(args.farmer_type, args.crop_type, args.state)


async def _crop_info(engine: RecommendationEngine, args: CropInformationArgs) -> Any:
    return await engine.crop_information(args.crop_name)


async def _search(engine: RecommendationEngine, args: KnowledgeSearchArgs) -> Any:
    return await engine.search_knowledge(args.question, args.top_k)


TOOLS: dict[str, ToolDefinition] = {
    tool.name: tool
    for tool in [
        ToolDefinition(
            "get_weather_forecast",
            "Weather forecast for a district with agricultural advisories.",
            WeatherForecastArgs,
            _weather,
        ),
        ToolDefinition(
            "get_crop_recommendations",
            "Crops suited to a district, soil type and season, with cultivation practices.",
            CropRecommendationArgs,
            _crops,
        ),
        ToolDefinition(
            "get_market_prices",
            "Current market price, weekly and monthly change, trend and marketing tips.",
            MarketPriceArgs,
            _prices,
        ),
        ToolDefinition(
            "check_government_schemes",
            "Government schemes matching farmer type, crop and state.",
            GovernmentSchemeArgs,
            _schemes,
        ),
        ToolDefinition(
            "get_crop_information",
            "Details, related entities and disease treatments for a crop.",
            CropInformationArgs,
            _crop_info,
        ),
        ToolDefinition(
            "search_agriculture_knowledge",
            "Semantic search over the agricultural knowledge base.",
            KnowledgeSearchArgs,
            _search,
        ),
    ]
}


def tool_definitions() -> list[dict[str, Any]]:
    """Name, description and JSON schema of every tool."""
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.args_model.model_json_schema(),
        }
        for tool in TOOLS.values()
    ]


def to_data(value: Any) -> Any:
    """JSON-compatible form of a handler result."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_data(v) for v in value]
    return value


async def execute_tool(
    engine: RecommendationEngine,
    name: str,
    arguments: dict[str, Any] | None,
    context: ToolContext | None = None,
) -> ToolResult:
    """Run a tool by name. Never raises."""
    context = context or ToolContext()
    log = logger.bind(
        tool=name, session_id=context.session_id, request_id=context.request_id
    )

    tool = TOOLS.get(name)
    if tool is None:
        log.warning("Unknown tool requested")
        return ToolResult(error=ToolError(code="unknown_tool", message=f"Unknown tool: {name}"))

    try:
        try:
            args = tool.args_model.model_validate(arguments or {})
        except pydantic.ValidationError as e:
            raise ValidationError(_describe_validation(e), tool=name) from e

        log.info("Executing tool")
        result = await tool.handler(engine, args)
        return ToolResult(data=to_data(result))

    except KnowledgeError as e:
        log.warning("Tool failed", code=e.code, error=e.message)
        return ToolResult(error=ToolError(code=e.code, message=e.message))
    except Exception as e:
        log.exception("Tool raised unexpectedly")
        return ToolResult(
            error=ToolError(code="internal_error", message=f"Failed to run {name}: {e}")
        )


def _describe_validation(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"]) or "arguments"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
