"""
CLI interface for usage-governor.

Administrative access to counters, budgets and archived usage.
"""

import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from usage_governor.config.loader import GovernorConfig, default_config, load_governor_config
from usage_governor.core.aggregator import UsageAggregator
from usage_governor.core.alerts import check_alerts, check_budget_alerts
from usage_governor.core.cost_limiter import TieredCostLimiter
from usage_governor.core.window_counter import WindowCounter
from usage_governor.storage.base import StorageUnavailableError
from usage_governor.storage.db import DEFAULT_DB_PATH
from usage_governor.storage.repository import get_store, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="YAML configuration file (built-in defaults if omitted)"
)


def _load_config(path: Optional[str]) -> GovernorConfig:
    return load_governor_config(path) if path else default_config()


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_currency(amount: float) -> str:
    """Format currency with symbol and thousands separator."""
    return f"${abs(amount):,.4f}"


def _format_rate(rate: float) -> str:
    return f"{rate:.1%}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Usage Governor CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )
    if ctx.invoked_subcommand is None:
        console.print("Usage Governor - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the governance database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except StorageUnavailableError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("validate-config")
def validate_config(path: str = typer.Argument(..., help="YAML configuration file")):
    """Validate a configuration file without applying it."""
    try:
        config = load_governor_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Configuration valid: {len(config.rate_limits)} rate limits, "
        f"{len(config.budget.tiers)} tiers"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(
    subject: str = typer.Argument(..., help="Subject identifier"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subject's service tier"),
    db: str = DB_OPTION,
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show window and budget usage for a subject."""
    try:
        config = _load_config(config_path)
        store = get_store(db)
        counter = WindowCounter(store, retention_seconds=config.window_retention_seconds)
        limiter = TieredCostLimiter(store, config.budget, config.models)

        windows = Table(title=f"Rate windows for {subject}")
        for column in ("Action", "Used", "Limit", "Remaining", "Resets at"):
            windows.add_column(column)
        for action, window in sorted(config.rate_limits.items()):
            snapshot = counter.status(subject, action, window)
            windows.add_row(
                action,
                str(snapshot.used),
                str(snapshot.limit),
                str(snapshot.remaining),
                snapshot.reset_time.isoformat(timespec="seconds"),
            )

        action_classes = config.budget.action_classes or tuple(sorted(config.rate_limits))
        budgets = Table(title=f"Budgets for {subject}")
        for column in ("Action class", "Tier", "Used", "Limit", "Remaining", "Used %"):
            budgets.add_column(column)
        statuses = limiter.get_budget_status(subject, tier, action_classes)
        for name, result in statuses.items():
            budgets.add_row(
                name,
                result.tier,
                _format_currency(result.cost_used),
                _format_currency(result.cost_limit),
                _format_currency(result.remaining),
                f"{result.percentage_used:.0f}%",
            )
        budget_alerts = check_budget_alerts(subject, statuses, config.budget)
    except StorageUnavailableError as e:
        console.print(f"[red]Storage unavailable:[/] {str(e)}")
        console.print("Run `usage-governor init` to initialize the database")
        sys.exit(EXIT_CODE_FAIL)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(windows)
    console.print(budgets)
    for alert in budget_alerts:
        console.print(f"[bold red]ALERT[/] {alert.message}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    hours: float = typer.Option(24.0, "--hours", "-H", help="Look-back window in hours"),
    db: str = DB_OPTION,
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Summarize archived usage over a time window."""
    if hours <= 0:
        console.print("[red]Error:[/] --hours must be > 0")
        sys.exit(EXIT_CODE_FAIL)
    try:
        config = _load_config(config_path)
        now = datetime.now(timezone.utc)
        records = get_store(db).fetch_usage(now - timedelta(hours=hours), now)
    except StorageUnavailableError as e:
        console.print(f"[red]Storage unavailable:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print("\n[bold yellow]No usage data found[/]")
        sys.exit(EXIT_CODE_PASS)

    aggregator = UsageAggregator.from_records(
        records,
        capacity=len(records),
        max_age_hours=hours,
        pricing=config.pricing,
    )
    _display_stats(aggregator, hours)

    for alert in check_alerts(aggregator, config.alerts, hours):
        console.print(f"[bold red]ALERT[/] {alert.message}")
    sys.exit(EXIT_CODE_PASS)


def _display_stats(aggregator: UsageAggregator, hours: float) -> None:
    """Display usage statistics in a clean, financial format."""
    summary = aggregator.get_stats()
    performance = aggregator.get_performance_metrics(hours)

    console.print(f"\n[bold]Usage over the last {hours:g}h[/bold]")
    console.print("-" * 40)
    console.print(f"Total requests: {summary.total_requests:,}")
    console.print(f"Total cost: {_format_currency(summary.total_cost)}")
    console.print(f"Average response time: {summary.average_response_time:,.0f}ms")
    console.print(f"P95 response time: {performance.p95_response_time:,.0f}ms")
    console.print(f"Cache hit rate: {_format_rate(summary.cache_hit_rate)}")
    console.print(f"Error rate: {_format_rate(summary.error_rate)}")

    endpoints = Table(title="Top endpoints")
    for column in ("Endpoint", "Requests", "Cost"):
        endpoints.add_column(column)
    for item in summary.top_endpoints:
        endpoints.add_row(item.endpoint, str(item.count), _format_currency(item.cost))
    console.print(endpoints)

    users = Table(title="Top users by cost")
    for column in ("Subject", "Requests", "Cost"):
        users.add_column(column)
    for item in summary.top_users:
        users.add_row(item.subject, str(item.requests), _format_currency(item.cost))
    console.print(users)


@app.command()
def export(
    start: str = typer.Option(..., "--start", help="ISO-8601 start time (inclusive)"),
    end: str = typer.Option(..., "--end", help="ISO-8601 end time (inclusive)"),
    db: str = DB_OPTION,
):
    """Export archived usage records as JSON lines, oldest first."""
    try:
        start_time = _parse_timestamp(start)
        end_time = _parse_timestamp(end)
    except ValueError as e:
        console.print(f"[red]Invalid timestamp:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        records = get_store(db).fetch_usage(start_time, end_time)
    except StorageUnavailableError as e:
        console.print(f"[red]Storage unavailable:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    for record in records:
        payload = asdict(record)
        payload["timestamp"] = record.timestamp.isoformat()
        typer.echo(json.dumps(payload, sort_keys=True))
    sys.exit(EXIT_CODE_PASS)


@app.command()
def recommend(
    content_type: str = typer.Argument(..., help="text or image"),
    use_case: str = typer.Argument("cost", help="speed, quality or cost"),
    tier: str = typer.Option("free", "--tier", "-t", help="Subject's service tier"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Recommend a generation model for a content type and goal."""
    try:
        config = _load_config(config_path)
        # Model selection never touches the store.
        limiter = TieredCostLimiter(store=None, budget=config.budget, models=config.models)
        recommendation = limiter.get_model_recommendation(content_type, use_case, tier)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[bold]Model:[/bold] {recommendation.model}")
    console.print(f"Reason: {recommendation.reason}")
    console.print(f"Cost multiplier: {recommendation.cost_multiplier:g}x")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def purge(
    ledger_days: int = typer.Option(
        31, "--ledger-days", help="Keep ledger periods started within this many days"
    ),
    db: str = DB_OPTION,
):
    """Delete expired rate windows and old ledger periods."""
    try:
        store = get_store(db)
        windows_removed = WindowCounter(store).purge_expired()
        ledger_removed = store.purge_ledger(
            datetime.now(timezone.utc) - timedelta(days=ledger_days)
        )
    except StorageUnavailableError as e:
        console.print(f"[red]Storage unavailable:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Removed {windows_removed} expired windows "
        f"and {ledger_removed} ledger entries"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
