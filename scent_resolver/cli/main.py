"""
CLI interface for Scent Resolver.

Provides command-line access to resolution, provider status and usage reports.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from scent_resolver.config.loader import ResolverConfig, load_resolver_config
from scent_resolver.core.ledger import CostLedger
from scent_resolver.core.limits import LimitLevel, LimitMonitor
from scent_resolver.core.orchestrator import ResolutionOrchestrator
from scent_resolver.demo.seed_demo_data import DEMO_USER, seed_demo_data
from scent_resolver.errors import ResolverError, error_payload
from scent_resolver.storage.feedback_repository import FeedbackRepository
from scent_resolver.storage.models import OperationType
from scent_resolver.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_LEVEL_STYLES = {
    LimitLevel.OK: "green",
    LimitLevel.WARNING: "yellow",
    LimitLevel.CRITICAL: "red",
    LimitLevel.EXCEEDED: "bold red",
}

_HEALTH_STYLES = {"healthy": "green", "degraded": "yellow", "unhealthy": "red", "unavailable": "dim", "critical": "red"}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML configuration file"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the ledger database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Scent Resolver CLI."""
    _configure_logging(verbose)
    ctx.obj = {"config_path": config, "db_path": db}
    if ctx.invoked_subcommand is None:
        console.print("Scent Resolver - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> ResolverConfig:
    options = ctx.obj or {}
    try:
        config = load_resolver_config(options.get("config_path"))
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    if options.get("db_path"):
        config = replace(config, db_path=options["db_path"])
    return config


def _build_orchestrator(config: ResolverConfig) -> ResolutionOrchestrator:
    return ResolutionOrchestrator.from_config(config)


def _build_ledger(config: ResolverConfig) -> CostLedger:
    initialize_schema(config.db_path)
    return CostLedger(UsageRepository(config.db_path), config.limits, config.efficiency)


def _fail(error: ResolverError, language: str = "en") -> None:
    payload = error_payload(error, language)
    console.print(f"[red]Error ({payload['code']}):[/] {payload['message']}")
    sys.exit(EXIT_CODE_FAIL)


def _run(ctx: typer.Context, operation: Callable[[ResolutionOrchestrator], Awaitable[Any]], language: str = "en") -> Any:
    """Run one orchestrator coroutine and close provider clients afterwards."""
    orchestrator = _build_orchestrator(_load_config(ctx))

    async def runner():
        try:
            return await operation(orchestrator)
        finally:
            await orchestrator.aclose()

    try:
        return asyncio.run(runner())
    except ResolverError as e:
        _fail(e, language)


def _format_currency(amount: float) -> str:
    """Format currency with enough precision for per-call costs."""
    return f"${amount:,.6f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger and feedback database."""
    config = _load_config(ctx)
    try:
        initialize_schema(config.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def providers(ctx: typer.Context):
    """List providers, their models and whether they are configured."""
    config = _load_config(ctx)
    listing = _build_orchestrator(config).list_providers()

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Configured")
    table.add_column("Default")
    for name, settings in config.providers.items():
        table.add_row(
            name,
            settings.model,
            "[green]yes[/]" if name in listing["providers"] else "[dim]no[/]",
            "✓" if name == listing["default"] else "",
        )
    console.print(table)
    if listing["default"] is None:
        console.print("\n[yellow]No provider is configured.[/] Set OPENAI_API_KEY, ANTHROPIC_API_KEY or GEMINI_API_KEY.")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def complete(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Partially typed brand or fragrance name"),
    kind: str = typer.Option("fragrance", "--kind", "-k", help="brand or fragrance"),
    limit: int = typer.Option(10, "--limit", "-n", help="Maximum number of suggestions"),
    language: str = typer.Option("ja", "--language", "-l", help="ja or en"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Force a provider"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id for limits and usage"),
):
    """Suggest completions for a partial name."""
    result = _run(ctx, lambda o: o.complete(query, kind, limit, language, provider, user), language)

    table = Table(title=f"Suggestions for '{result.query}'")
    table.add_column("Name")
    table.add_column("English")
    table.add_column("Brand")
    table.add_column("Confidence", justify="right")
    for suggestion in result.suggestions:
        table.add_row(
            suggestion.display_text,
            suggestion.display_text_en,
            suggestion.brand_name_en or suggestion.brand_name,
            f"{suggestion.confidence:.2f}",
        )
    console.print(table)
    console.print(
        f"Provider: {result.provider.value}  Cost: {_format_currency(result.cost_estimate)}"
        f"  Time: {result.timing_ms}ms{'  (cached)' if result.cached else ''}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def normalize(
    ctx: typer.Context,
    brand: str = typer.Argument(..., help="Brand name, or the whole entry when NAME is omitted"),
    name: Optional[str] = typer.Argument(None, help="Fragrance name"),
    language: str = typer.Option("ja", "--language", "-l", help="ja or en"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Force a provider"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id for limits and usage"),
):
    """Normalize a brand and fragrance name into a canonical record."""
    if name is None:
        outcome = _run(ctx, lambda o: o.normalize_from_input(brand, provider, language, user), language)
    else:
        outcome = _run(ctx, lambda o: o.normalize(brand, name, provider, language, user), language)

    result = outcome.result
    table = Table(title="Normalized record", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Brand", f"{result.normalized_brand_local} / {result.normalized_brand_roman}")
    table.add_row("Name", f"{result.normalized_name_local} / {result.normalized_name_roman}")
    table.add_row("Concentration", result.concentration_type or "-")
    table.add_row("Launch year", str(result.launch_year) if result.launch_year else "-")
    table.add_row("Family", result.family or "-")
    table.add_row("Confidence", f"{result.confidence_score:.2f}")
    table.add_row("Quality", f"{outcome.quality_score:.4f}")
    console.print(table)
    console.print(f"Provider: {outcome.provider.value}  Cost: {_format_currency(outcome.cost_estimate)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def notes(
    ctx: typer.Context,
    brand: str = typer.Argument(..., help="Brand name"),
    name: str = typer.Argument(..., help="Fragrance name"),
    note_limit: int = typer.Option(8, "--limit", "-n", help="Maximum notes per tier"),
    language: str = typer.Option("ja", "--language", "-l", help="ja or en"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Force a provider"),
    user: Optional[str] = typer.Option(None, "--user", "-u", help="User id for limits and usage"),
):
    """Suggest top, middle and base notes."""
    outcome = _run(ctx, lambda o: o.suggest_notes(brand, name, provider, language, note_limit, user), language)

    table = Table(title=f"Notes for {brand} {name}")
    table.add_column("Tier")
    table.add_column("Note")
    table.add_column("Category")
    table.add_column("Intensity")
    table.add_column("Confidence", justify="right")
    for tier in ("top", "middle", "base"):
        for note in getattr(outcome.notes, tier):
            table.add_row(tier, note.name, note.category or "-", note.intensity, f"{note.confidence:.2f}")
    console.print(table)
    console.print(f"Overall confidence: {outcome.confidence_score:.2f}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def health(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Check a single provider"),
):
    """Probe providers with a minimal request."""
    report = _run(ctx, lambda o: o.health_check(provider))

    table = Table(title="Provider health")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Error")
    for name, status in report.providers.items():
        style = _HEALTH_STYLES.get(status.status, "white")
        table.add_row(
            name,
            f"[{style}]{status.status}[/]",
            f"{status.latency_ms}ms" if status.latency_ms is not None else "-",
            status.error or "",
        )
    console.print(table)
    style = _HEALTH_STYLES.get(report.overall_status, "white")
    console.print(f"Overall: [{style}]{report.overall_status}[/]")
    sys.exit(EXIT_CODE_PASS if report.overall_status != "critical" else EXIT_CODE_FAIL)


@app.command()
def usage(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Month as YYYY-MM"),
):
    """Show monthly usage with a provider and operation breakdown."""
    ledger = _build_ledger(_load_config(ctx))
    try:
        summary = ledger.get_monthly_usage(user, month)
    except ResolverError as e:
        _fail(e)

    if not summary["breakdown"]:
        console.print(f"\n[bold yellow]No usage recorded for {user} in {summary['month']}[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage for {user} ({summary['month']})")
    table.add_column("Provider")
    table.add_column("Operation")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Avg time", justify="right")
    for row in summary["breakdown"]:
        avg = row["avg_response_time_ms"]
        table.add_row(
            row["provider"],
            row["operation"],
            str(row["requests"]),
            f"{row['input_tokens'] + row['output_tokens']:,}",
            _format_currency(row["total_cost"]),
            f"{avg:.0f}ms" if avg is not None else "-",
        )
    console.print(table)
    console.print(
        f"Total: {summary['total_requests']} requests, {summary['total_tokens']:,} tokens, "
        f"{_format_currency(summary['total_cost'])}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def limits(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """Show how close a user is to each limit."""
    monitor = LimitMonitor(_build_ledger(_load_config(ctx)))

    table = Table(title=f"Limits for {user}")
    table.add_column("Limit")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("%", justify="right")
    table.add_column("Level")
    exceeded = False
    for entry in monitor.status(user):
        style = _LEVEL_STYLES[entry.level]
        table.add_row(
            entry.name,
            f"{entry.used:g}",
            f"{entry.limit:g}",
            f"{entry.percentage:.1f}",
            f"[{style}]{entry.level.value}[/]",
        )
        exceeded = exceeded or entry.level is LimitLevel.EXCEEDED
    console.print(table)
    sys.exit(EXIT_CODE_FAIL if exceeded else EXIT_CODE_PASS)


@app.command()
def predict(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """Project month-end spend for a user."""
    prediction = _build_ledger(_load_config(ctx)).predict_monthly_cost(user)

    console.print(f"\n[bold]Monthly cost projection ({prediction.month})[/bold]")
    console.print("-" * 40)
    console.print(f"Current cost: {_format_currency(prediction.current_cost)}")
    console.print(f"Daily average: {_format_currency(prediction.daily_average)}")
    console.print(f"Days elapsed / remaining: {prediction.days_elapsed} / {prediction.days_remaining}")
    console.print(f"Predicted cost: {_format_currency(prediction.predicted_cost)}")
    console.print(f"Monthly limit: {_format_currency(prediction.monthly_limit)}")
    if prediction.projected_overage > 0:
        console.print(f"[red]Projected overage: {_format_currency(prediction.projected_overage)}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def efficiency(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    month: Optional[str] = typer.Option(None, "--month", "-m", help="Month as YYYY-MM"),
):
    """Score cost efficiency for a month of usage."""
    ledger = _build_ledger(_load_config(ctx))
    try:
        report = ledger.analyze_cost_efficiency(user, month)
    except ResolverError as e:
        _fail(e)

    console.print(f"\n[bold]Cost efficiency ({report.month})[/bold]")
    console.print("-" * 40)
    console.print(f"Requests: {report.total_requests}")
    console.print(f"Total cost: {_format_currency(report.total_cost)}")
    console.print(f"Cost per request: {_format_currency(report.cost_per_request)}")
    console.print(f"Average response time: {report.avg_response_time_ms:.0f}ms")
    console.print(f"Efficiency score: {report.efficiency_score:.1f}/100")
    if report.most_efficient_provider:
        console.print(f"Most efficient provider: {report.most_efficient_provider}")
    for insight in report.insights:
        console.print(f"• {insight}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def patterns(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", "-u", help="User id"),
):
    """Show when a user makes requests."""
    result = _build_ledger(_load_config(ctx)).analyze_usage_patterns(user)

    table = Table(title=f"Requests by weekday for {user}")
    table.add_column("Day")
    table.add_column("Requests", justify="right")
    for day, count in result.weekly.items():
        table.add_row(day, str(count))
    console.print(table)
    if result.peak_hour is not None:
        console.print(f"Peak hour: {result.peak_hour:02d}:00")
    console.print(f"Cost per request p50/p90: {_format_currency(result.cost_p50)} / {_format_currency(result.cost_p90)}")
    for insight in result.insights:
        console.print(f"• {insight}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def feedback(
    ctx: typer.Context,
    operation: Optional[str] = typer.Option(None, "--operation", "-o", help="completion or normalization"),
    days: int = typer.Option(30, "--days", "-d", help="Look-back window in days"),
):
    """Summarize recent feedback."""
    config = _load_config(ctx)
    try:
        operation_type = OperationType(operation) if operation else None
    except ValueError:
        console.print(f"[red]Error:[/] unknown operation {operation!r}")
        sys.exit(EXIT_CODE_FAIL)

    initialize_schema(config.db_path)
    summary = FeedbackRepository(config.db_path).summarize(operation_type, days)
    console.print(f"\n[bold]Feedback over the last {days} days[/bold]")
    console.print("-" * 40)
    console.print(f"Total events: {summary['total']}")
    for action, count in summary["actions"].items():
        console.print(f"{action.capitalize()}: {count}")
    console.print(f"Helpful rate: {summary['helpful_rate']:.0%}")
    sys.exit(EXIT_CODE_PASS)


@app.command("seed-demo")
def seed_demo(
    ctx: typer.Context,
    user: str = typer.Option(DEMO_USER, "--user", "-u", help="User id to seed"),
):
    """Insert demo usage and feedback data."""
    config = _load_config(ctx)
    counts = seed_demo_data(config.db_path, user)
    console.print(
        f"[green]✓[/] Inserted {counts['usage_records']} usage records and "
        f"{counts['feedback_events']} feedback events for {user}"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
