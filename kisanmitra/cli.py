"""CLI for Kisan Mitra.

Commands for:
- Database initialization
- Knowledge ingestion
- Weather, crop, market and scheme queries
- Entity exploration
- Retention sweep, MCP server and daemon
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from kisanmitra.services import Services

console = Console()

T = TypeVar("T")


# ============================================================================
# Helpers
# ============================================================================


def format_trend_arrow(direction: str | None) -> str:
    """Format trend direction as arrow."""
    arrows = {
        "rising": "[green]↑[/green]",
        "falling": "[red]↓[/red]",
        "stable": "[yellow]→[/yellow]",
    }
    return arrows.get((direction or "").lower(), "?")


def format_change(value: float | None) -> str:
    if value is None:
        return "-"
    color = "green" if value >= 0 else "red"
    return f"[{color}]{value:+.2f}%[/{color}]"


def echo_json(value: Any) -> None:
    """Print a pydantic model (or plain data) as JSON."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    click.echo(json.dumps(value, indent=2, default=str))


def run_with_services(
    ctx: click.Context,
    func: Callable[[Services], Awaitable[T]],
) -> T:
    """Open the stores, preload the knowledge file, run func and close."""
    from kisanmitra.config import Settings
    from kisanmitra.errors import KnowledgeError
    from kisanmitra.services import open_services

    knowledge_file: Path | None = ctx.obj.get("knowledge_file")

    async def _run() -> T:
        async with open_services(Settings()) as services:
            if knowledge_file:
                await services.ingest_file(knowledge_file)
            return await func(services)

    try:
        return asyncio.run(_run())
    except KnowledgeError as e:
        console.print(f"[red]Error ({e.code}): {e.message}[/red]")
        sys.exit(1)


@click.group()
@click.option(
    "--knowledge-file",
    "-k",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="YAML knowledge bundle to load before running the command",
)
@click.pass_context
def main(ctx: click.Context, knowledge_file: Path | None) -> None:
    """Kisan Mitra - agricultural knowledge and recommendations."""
    from kisanmitra.config import Settings
    from kisanmitra.logs import configure_logging

    configure_logging(Settings().log_level)
    ctx.ensure_object(dict)
    ctx.obj["knowledge_file"] = knowledge_file


@main.command()
def init() -> None:
    """Initialize database schema."""
    from kisanmitra.config import Settings
    from kisanmitra.database import Database, init_schema

    settings = Settings()
    if settings.storage_backend != "postgres":
        console.print("[yellow]In-memory backend selected, nothing to initialize.[/yellow]")
        return

    async def _init() -> None:
        db = Database(settings.database_url)
        await db.connect()
        try:
            await init_schema(db, settings.embedding_dimensions)
            console.print("[green]Database schema initialized successfully.[/green]")
        finally:
            await db.close()

    asyncio.run(_init())


@main.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
@click.pass_context
def ingest(ctx: click.Context, path: Path) -> None:
    """Load a YAML knowledge bundle into the stores."""

    async def _ingest(services: Services) -> Any:
        return await services.ingest_file(path)

    report = run_with_services(ctx, _ingest)

    table = Table(title=f"Ingested {path.name}")
    table.add_column("Section", style="cyan")
    table.add_column("Records", justify="right")
    table.add_row("Nodes", str(report.nodes))
    table.add_row("Edges", str(report.edges))
    table.add_row("Documents", str(report.documents))
    table.add_row("Metric points", str(report.metric_points))
    console.print(table)

    for error in report.errors:
        console.print(f"[yellow]Skipped {error}[/yellow]")


# =============================================================================
# Query Commands
# =============================================================================


@main.command()
@click.argument("district")
@click.option("--days", "-d", default=7, help="Days to forecast (1-30)")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def weather(ctx: click.Context, district: str, days: int, as_json: bool) -> None:
    """Weather forecast with agricultural advisories."""

    async def _weather(services: Services) -> Any:
        return await services.engine.weather_forecast(district, days)

    result = run_with_services(ctx, _weather)
    if as_json:
        echo_json(result)
        return

    table = Table(title=f"Weather for {result.district}")
    table.add_column("Date", style="cyan")
    table.add_column("High °C", justify="right")
    table.add_column("Low °C", justify="right")
    table.add_column("Rain mm", justify="right")
    table.add_column("Humidity %", justify="right")
    table.add_column("Wind km/h", justify="right")
    for day in result.forecast:
        table.add_row(
            day.date,
            f"{day.high_temp:.1f}",
            f"{day.low_temp:.1f}",
            f"{day.rainfall:.1f}",
            f"{day.humidity:.0f}",
            f"{day.wind_speed:.1f}",
        )
    console.print(table)

    if not result.data_available:
        console.print("[yellow]No stored weather data, showing defaults.[/yellow]")
    console.print(
        Panel(
            "\n".join(result.summary.agricultural_implications),
            title="Advisories",
        )
    )


@main.command()
@click.argument("district")
@click.option("--soil", "-s", "soil_type", default="medium", help="Soil type")
@click.option("--season", default="current", help="Season, e.g. kharif or rabi")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def crops(ctx: click.Context, district: str, soil_type: str, season: str, as_json: bool) -> None:
    """Recommend crops for a district, soil and season."""

    async def _crops(services: Services) -> Any:
        return await services.engine.crop_recommendations(district, soil_type, season)

    result = run_with_services(ctx, _crops)
    if as_json:
        echo_json(result)
        return

    table = Table(title=f"Crops for {result.district} ({result.season}, {result.soil_type} soil)")
    table.add_column("Crop", style="cyan")
    table.add_column("Score", style="magenta", justify="right")
    table.add_column("Reasons")
    for crop in result.recommendations:
        table.add_row(crop.crop_name, f"{crop.suitability_score:.1f}", "; ".join(crop.reasons))
    console.print(table)

    if result.used_default:
        console.print("[yellow]No graph data for these criteria, showing default crops.[/yellow]")

    for crop_id, practices in result.cultivation_practices.items():
        if practices:
            console.print(Panel("\n\n".join(practices), title=f"Practices: {crop_id}"))


@main.command()
@click.argument("crop")
@click.option("--market", "-m", "market_area", default="all", help="Market name")
@click.option("--days", "-d", default=30, help="History window in days")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def prices(ctx: click.Context, crop: str, market_area: str, days: int, as_json: bool) -> None:
    """Market price analysis for a crop."""

    async def _prices(services: Services) -> Any:
        return await services.engine.market_prices(crop, days, market_area)

    result = run_with_services(ctx, _prices)
    if as_json:
        echo_json(result)
        return

    if not result.data_available:
        console.print(f"[yellow]No price data for {crop} ({market_area}).[/yellow]")
        return

    trend = result.trend.value if result.trend else None
    console.print(f"[bold]{result.crop}[/bold] ({result.market_area})")
    console.print(f"  Current price: {result.current_price:,.2f}")
    console.print(f"  Weekly change: {format_change(result.weekly_change)}")
    console.print(f"  Monthly change: {format_change(result.monthly_change)}")
    console.print(f"  Trend: {format_trend_arrow(trend)} {trend or 'insufficient data'}")
    if result.price_forecast:
        console.print(f"  {result.price_forecast}")
    if result.marketing_tips:
        console.print(Panel("\n".join(result.marketing_tips), title="Marketing tips"))


@main.command()
@click.option("--farmer-type", default="all", help="e.g. small, marginal")
@click.option("--crop-type", default="all", help="Crop grown")
@click.option("--state", default="all", help="State")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def schemes(
    ctx: click.Context,
    farmer_type: str,
    crop_type: str,
    state: str,
    as_json: bool,
) -> None:
    """Look up government schemes."""

    async def _schemes(services: Services) -> Any:
        return await services.engine.government_schemes(farmer_type, crop_type, state)

    result = run_with_services(ctx, _schemes)
    if as_json:
        echo_json(result)
        return

    if not result.schemes:
        console.print("[yellow]No schemes found.[/yellow]")
    for scheme in result.schemes:
        lines = [scheme.description]
        if scheme.eligibility:
            lines.append(f"[bold]Eligibility:[/bold] {scheme.eligibility}")
        if scheme.benefits:
            lines.append(f"[bold]Benefits:[/bold] {scheme.benefits}")
        if scheme.application_process:
            lines.append(f"[bold]How to apply:[/bold] {scheme.application_process}")
        console.print(Panel("\n".join(lines), title=scheme.name))

    for resource in result.additional_resources:
        console.print(f"  • {resource}")


@main.command()
@click.argument("name")
@click.option(
    "--type",
    "-t",
    "entity_type",
    default="crop",
    help="Entity type (crop, disease, location, season, soil, ...)",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def entity(ctx: click.Context, name: str, entity_type: str, as_json: bool) -> None:
    """Show an entity and its relationships."""
    from kisanmitra.knowledge.models import make_node_id

    node_id = make_node_id(entity_type, name)

    async def _entity(services: Services) -> Any:
        return await services.graph.get_entity_with_relationships(node_id)

    result = run_with_services(ctx, _entity)
    if as_json:
        echo_json(result)
        return

    if result.entity is None:
        console.print(f"[yellow]Entity not found: {node_id}[/yellow]")
        return

    console.print(f"[bold]{result.entity.name}[/bold] ({result.entity.entity_type.value})")
    table = Table(title="Relationships")
    table.add_column("Relationship", style="cyan")
    table.add_column("Entity")
    table.add_column("Type", style="green")
    table.add_column("Confidence", style="magenta", justify="right")
    for rel_type, related in result.relationships.items():
        for summary in related:
            table.add_row(
                rel_type,
                summary.name,
                summary.entity_type.value,
                f"{summary.confidence:.2f}",
            )
    console.print(table)


@main.command()
@click.argument("question")
@click.option("--limit", "-n", default=5, help="Maximum results to return")
@click.pass_context
def search(ctx: click.Context, question: str, limit: int) -> None:
    """Semantic search over the knowledge base."""

    async def _search(services: Services) -> Any:
        return await services.engine.search_knowledge(question, limit)

    snippets = run_with_services(ctx, _search)

    table = Table(title=f"Search Results for '{question}'")
    table.add_column("Category", style="cyan")
    table.add_column("Text", max_width=80)
    for snippet in snippets:
        table.add_row(str(snippet.metadata.get("category", "-")), snippet.text)

    if table.row_count > 0:
        console.print(table)
    else:
        console.print("[yellow]No results found.[/yellow]")


# =============================================================================
# Operations
# =============================================================================


@main.command()
@click.pass_context
def sweep(ctx: click.Context) -> None:
    """Remove expired metric points."""
    from kisanmitra.daemon.jobs import sweep_expired_metrics

    removed = run_with_services(ctx, sweep_expired_metrics)
    console.print(f"[green]Removed {removed} expired metric points.[/green]")


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the MCP server on stdio."""
    from kisanmitra.outputs.mcp_server import main as mcp_main

    asyncio.run(mcp_main(ctx.obj.get("knowledge_file")))


@main.command()
@click.pass_context
def daemon(ctx: click.Context) -> None:
    """Run the retention and freshness scheduler in the foreground."""
    from kisanmitra.daemon.scheduler import SchedulerService

    async def _daemon(services: Services) -> None:
        await SchedulerService(services).run_forever()

    try:
        run_with_services(ctx, _daemon)
    except KeyboardInterrupt:
        console.print("[yellow]Daemon stopped.[/yellow]")


if __name__ == "__main__":
    main()
