from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from stock_agent.core.config import get_config
from stock_agent.core.health import HealthCheckServer
from stock_agent.core.logging import configure_logging, get_logger
from stock_agent.models import StockRecord
from stock_agent.service import StockDataService
from stock_agent.utils.metrics import PrometheusObserver, start_metrics_server

T = TypeVar("T")

# Main CLI app
app = typer.Typer(
    name="stock-agent",
    help="Stock agent CLI: NSE listings discovery, ingestion and lookup",
    no_args_is_help=True,
    add_completion=True,
    rich_markup_mode="rich",
)

# Command groups
stocks_app = typer.Typer(
    name="stocks",
    help="Fetch, search and look up listed securities",
    no_args_is_help=True,
)
sources_app = typer.Typer(
    name="sources",
    help="CSV source discovery and classification",
    no_args_is_help=True,
)
admin_app = typer.Typer(
    name="admin",
    help="Administration and configuration",
    no_args_is_help=True,
)

# Register command groups
app.add_typer(stocks_app, name="stocks")
app.add_typer(sources_app, name="sources")
app.add_typer(admin_app, name="admin")

# Rich console for better output
console = Console()
logger = get_logger(__name__)


def _build_service() -> StockDataService:
    config = get_config()
    observers = [PrometheusObserver()] if config.metrics.enabled else []
    return StockDataService(config, observers=observers)


def _run(action: Callable[[StockDataService], Awaitable[T]]) -> T:
    """Run one async action against a service that is closed afterwards."""

    async def runner() -> T:
        async with _build_service() as service:
            return await action(service)

    return asyncio.run(runner())


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _stocks_table(title: str, stocks: list[StockRecord]) -> Table:
    table = Table(title=title)
    table.add_column("Symbol", style="bold cyan")
    table.add_column("Name")
    table.add_column("Series")
    table.add_column("ISIN")
    table.add_column("Listed")
    table.add_column("Category")
    for stock in stocks:
        table.add_row(
            stock.symbol,
            stock.name,
            stock.series or "",
            stock.isin or "",
            stock.listing_date or "",
            stock.category,
        )
    return table


@stocks_app.command("fetch")
def stocks_fetch(
    force: bool = typer.Option(False, "--force", "-f", help="Download even if the cache is fresh"),
    required_only: bool = typer.Option(False, "--required-only", help="Skip optional categories"),
    as_json: bool = typer.Option(False, "--json", help="Print the result summary as JSON"),
):
    """Run a full discovery and ingestion cycle.

    [bold]Example:[/bold]
        stock-agent stocks fetch --force
    """
    result = _run(lambda s: s.fetch_all(force_refresh=force, include_optional=not required_only))
    summary = result.model_dump(exclude={"stocks"})

    if as_json:
        _print_json(summary)
    elif result.success:
        console.print(
            f"[green]✓[/green] Fetched {result.count} securities "
            f"(source: {result.source}, urls: {result.url_source}, {result.duration_ms:.0f} ms)"
        )
        for category, count in result.breakdown.items():
            state = result.endpoint_outcomes.get(category, "")
            console.print(f"  {category:<8} {count:>6}  {state}")
        for diagnostic in result.diagnostics:
            console.print(f"[yellow]![/yellow] {diagnostic}")
    else:
        console.print(f"[red]✗[/red] Fetch failed: {result.error}")

    if not result.success:
        raise typer.Exit(1)


@stocks_app.command("refresh")
def stocks_refresh():
    """Re-discover source URLs and download every endpoint.

    [bold]Example:[/bold]
        stock-agent stocks refresh
    """
    result = _run(lambda s: s.force_refresh())
    if result.success:
        console.print(f"[green]✓[/green] Refreshed {result.count} securities")
    else:
        console.print(f"[red]✗[/red] Refresh failed: {result.error}")
        raise typer.Exit(1)


@stocks_app.command("search")
def stocks_search(
    query: str = typer.Argument(..., help="Symbol or company name fragment"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum results (capped at the configured max)"),
    exact: bool = typer.Option(False, "--exact", help="Match the whole symbol or name"),
    case_sensitive: bool = typer.Option(False, "--case-sensitive", help="Case sensitive matching"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
):
    """Search securities by symbol or name.

    [bold]Examples:[/bold]
        stock-agent stocks search reliance
        stock-agent stocks search TCS --exact
    """
    result = _run(lambda s: s.search(query, limit=limit, exact_match=exact, case_sensitive=case_sensitive))
    if not result.success:
        console.print(f"[red]✗[/red] Search failed: {result.error}")
        raise typer.Exit(1)

    if as_json:
        _print_json(result.model_dump())
        return
    if not result.stocks:
        console.print(f"No securities match '{query}'")
        return
    console.print(_stocks_table(f"{result.count} result(s) for '{query}' ({result.source})", result.stocks))


@stocks_app.command("get")
def stocks_get(
    symbol: str = typer.Argument(..., help="Trading symbol"),
):
    """Show one security.

    [bold]Example:[/bold]
        stock-agent stocks get INFY
    """
    result = _run(lambda s: s.get_by_symbol(symbol))
    if not result.success or result.stock is None:
        console.print(f"[red]✗[/red] {result.error}")
        raise typer.Exit(1)
    _print_json({**result.stock.model_dump(mode="json"), "lookup_source": result.source})


@sources_app.command("discover")
def sources_discover(
    force: bool = typer.Option(True, "--force/--no-force", help="Ignore the discovery TTL"),
):
    """Crawl the listing page and resolve one URL per category.

    [bold]Example:[/bold]
        stock-agent sources discover
    """

    async def action(service: StockDataService) -> dict[str, Any]:
        resolved = await service.resolver.get_urls(force=force)
        return {"resolved": resolved.model_dump(mode="json"), "status": service.get_discovery_status()}

    data = _run(action)
    resolved = data["resolved"]
    table = Table(title=f"Resolved URLs (source: {resolved['source']})")
    table.add_column("Category", style="bold cyan")
    table.add_column("URL")
    for category, url in resolved["urls"].items():
        table.add_row(category, url)
    console.print(table)
    if resolved.get("error"):
        console.print(f"[yellow]![/yellow] Discovery fell back: {resolved['error']}")


@sources_app.command("classify")
def sources_classify(
    urls: list[str] = typer.Argument(None, help="CSV URLs (default: crawl the listing page)"),
):
    """Classify CSV URLs and show recommendations.

    [bold]Example:[/bold]
        stock-agent sources classify https://nsearchives.nseindia.com/content/equities/EQUITY_L.csv
    """

    async def action(service: StockDataService) -> tuple[Any, Any]:
        targets = list(urls or [])
        if not targets:
            crawl = await service.crawler.discover_candidate_urls()
            targets = sorted(crawl.urls) or list(service.config.resolver.fallback_urls.values())
        report = await service.classify_urls(targets)
        return report, service.classifier.recommend(report)

    report, recommendations = _run(action)
    table = Table(title="CSV classification")
    table.add_column("URL")
    table.add_column("Category", style="bold cyan")
    table.add_column("Priority", justify="right")
    table.add_column("Quality", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Decision")
    for candidate in report.classified + report.unclassified:
        decision = "[green]use[/green]" if candidate.should_use else "[dim]skip[/dim]"
        table.add_row(
            candidate.url,
            candidate.category.value,
            str(candidate.priority),
            f"{candidate.quality_score:.1f}",
            str(candidate.estimated_row_count),
            decision,
        )
    console.print(table)
    console.print(recommendations.summary())


@sources_app.command("validate")
def sources_validate():
    """HEAD-check the currently resolved URLs.

    [bold]Example:[/bold]
        stock-agent sources validate
    """
    results = _run(lambda s: s.validate_urls())
    failed = 0
    for category, report in results.items():
        if report["valid"]:
            console.print(f"[green]✓[/green] {category}: {report['url']} ({report['status']})")
        else:
            failed += 1
            console.print(f"[red]✗[/red] {category}: {report['url']} ({report.get('error')})")
    if failed:
        raise typer.Exit(1)


@admin_app.command("cache-status")
def cache_status():
    """Show the CSV cache entry of every endpoint.

    [bold]Example:[/bold]
        stock-agent admin cache-status
    """

    async def action(service: StockDataService) -> dict[str, Any]:
        return service.get_cache_status()

    status = _run(action)
    table = Table(title="CSV cache")
    table.add_column("Category", style="bold cyan")
    table.add_column("Exists")
    table.add_column("Valid")
    table.add_column("Age (min)", justify="right")
    table.add_column("Lines", justify="right")
    table.add_column("Size", justify="right")
    for category, entry in status.items():
        table.add_row(
            category,
            "yes" if entry["exists"] else "no",
            "yes" if entry["valid"] else "no",
            str(entry.get("age_minutes", "")),
            str(entry.get("line_count", "")),
            str(entry.get("size_bytes", "")),
        )
    console.print(table)


@admin_app.command("clear-cache")
def clear_cache(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete cached CSV payloads and cached records.

    [bold]Example:[/bold]
        stock-agent admin clear-cache --yes
    """
    if not yes and not typer.confirm("Delete all cached CSV payloads and records?"):
        raise typer.Exit(0)

    async def action(service: StockDataService) -> dict[str, Any]:
        return service.clear_cache()

    result = _run(action)
    console.print(f"[green]✓[/green] Removed {result['blobs_removed']} cache entries")
    if not result["fast_cache_cleared"]:
        console.print("[yellow]![/yellow] Fast cache was unreachable and was not cleared")


@admin_app.command("health")
def health_check(
    serve: bool = typer.Option(False, "--serve", help="Serve /health and /ready until interrupted"),
    host: str = typer.Option("0.0.0.0", help="Host to bind the health server"),
    port: int = typer.Option(8080, help="Port to bind the health server"),
):
    """Print the service health report, or serve it over HTTP.

    [bold]Examples:[/bold]
        stock-agent admin health
        stock-agent admin health --serve --port 8080
    """
    if not serve:

        async def action(service: StockDataService) -> dict[str, Any]:
            return service.get_health_status()

        _print_json(_run(action))
        return

    config = get_config()

    async def serve_forever(service: StockDataService) -> None:
        await service.fetch_all()
        server = HealthCheckServer(service.get_health_status, host=host, port=port)
        server.start()
        if config.metrics.enabled:
            start_metrics_server(config.metrics.port)
        console.print(f"[green]Serving health on {host}:{server.port}[/green]")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            server.stop()

    try:
        _run(serve_forever)
    except KeyboardInterrupt:
        console.print("Health server stopped")


@admin_app.command("config")
def show_config(
    as_json: bool = typer.Option(False, "--json", help="Print the full configuration as JSON"),
):
    """Print current configuration values.

    [bold]Example:[/bold]
        stock-agent admin config
    """
    config = get_config()
    if as_json:
        _print_json(config.model_dump(mode="json"))
        return
    typer.echo(f"Environment: {config.environment.value}")
    typer.echo(f"Listing page: {config.crawler.listing_page_url}")
    typer.echo(f"Cache dir: {config.ingestion.cache_dir}")
    typer.echo(f"Cache max age: {config.ingestion.cache_max_age_seconds}s")
    typer.echo(f"Max retries: {config.ingestion.max_retries}")
    typer.echo(f"Discovery TTL: {config.resolver.discovery_ttl_seconds}s")
    typer.echo(f"Parquet store: {config.storage.parquet_path or 'disabled'}")
    typer.echo(f"Fast cache: {'redis' if config.storage.redis_url else 'in-memory'}")


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Args:
        argv: Command line arguments (optional)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    config = get_config()
    configure_logging(config.logging.level, config.logging.format)

    try:
        # Click's standalone mode always finishes with SystemExit
        app(args=argv, prog_name="stock-agent")
        return 0
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 0
    except typer.Exit as e:
        return e.exit_code
    except KeyboardInterrupt:
        typer.secho("\nOperation cancelled by user", fg=typer.colors.YELLOW)
        return 130  # Standard exit code for SIGINT
    except Exception as e:
        typer.secho(f"Unexpected error: {e}", fg=typer.colors.RED)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
