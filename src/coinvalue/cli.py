"""Click-based CLI for coinvalue.

Thin wrapper around the valuation service. Every command opens the
service, runs one operation, and closes it again.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
import os
from pathlib import Path

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

console = Console(stderr=True)

_FORMAT_OPTION = click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from coinvalue.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


async def _open_service(config):
    from coinvalue.service import ValuationService

    Path(config.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)
    return await ValuationService.create(config)


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _read_observations(path: Path) -> list[dict]:
    """Read observations from a JSON array, JSON lines, or CSV file."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".csv":
        rows = list(csv.DictReader(text.splitlines()))
        return [{k: v for k, v in row.items() if v not in (None, "")} for row in rows]

    stripped = text.strip()
    if not stripped:
        return []
    if stripped.startswith("["):
        data = json.loads(stripped)
        if not isinstance(data, list):
            raise click.UsageError(f"{path} must contain a JSON array")
        return data
    return [json.loads(line) for line in stripped.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="COINVALUE_CONFIG",
    default=None,
    help="Path to coinvalue.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output.",
)
@click.version_option(package_name="coinvalue")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """CoinValue: collectible coin valuation, forecasting and feedback."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


# ---------------------------------------------------------------------------
# ingest / collect
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@_FORMAT_OPTION
@click.pass_context
def ingest(ctx: click.Context, file: Path, output_format: str) -> None:
    """Ingest observations from FILE (JSON array, JSON lines, or CSV)."""
    config = _load_config(ctx)
    try:
        entries = _read_observations(file)
    except json.JSONDecodeError as e:
        raise click.UsageError(f"Could not parse {file}: {e}") from e

    async def _run():
        service = await _open_service(config)
        try:
            report = await service.ingest_observations(entries)
        finally:
            await service.close()
        _output_report(report, output_format, title="Ingest Report")

    _run_async(_run())


@cli.command()
@_FORMAT_OPTION
@click.pass_context
def collect(ctx: click.Context, output_format: str) -> None:
    """Poll every configured feed once and ingest the results."""
    config = _load_config(ctx)
    if not config.ingestion.feeds:
        console.print("[yellow]No feeds configured under ingestion.feeds.[/yellow]")
        raise SystemExit(1)

    async def _run():
        service = await _open_service(config)
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                disable=output_format == "json",
            ) as progress:
                progress.add_task(
                    f"Collecting from {len(config.ingestion.feeds)} feeds...", total=None
                )
                report = await service.collect_feeds()
        finally:
            await service.close()
        _output_report(report, output_format, title="Collect Report")

    _run_async(_run())


def _output_report(report, output_format: str, title: str) -> None:
    if output_format == "json":
        _echo_json(report.model_dump(mode="json"))
        return
    table = Table(title=title)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Batch size", str(report.batch_size))
    table.add_row("Accepted", str(report.accepted))
    table.add_row("Rejected", str(report.rejected))
    table.add_row("Deferred", str(report.deferred))
    table.add_row("Recovered", str(report.recovered))
    table.add_row("Expired", str(report.expired))
    table.add_row("Items", str(len(report.items)))
    console.print(table)


# ---------------------------------------------------------------------------
# estimate / forecast
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("item")
@click.option("--history", is_flag=True, default=False, help="Show estimate history.")
@click.option("--refresh", is_flag=True, default=False, help="Re-aggregate before reading.")
@_FORMAT_OPTION
@click.pass_context
def estimate(
    ctx: click.Context, item: str, history: bool, refresh: bool, output_format: str
) -> None:
    """Show the current value estimate for ITEM."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            if refresh:
                await service.aggregate(item)
            current = await service.get_estimate(item)
            past = await service.get_estimate_history(item) if history else []
        finally:
            await service.close()

        if output_format == "json":
            _echo_json(
                {
                    "status": "ok" if current else "no_data",
                    "estimate": current.model_dump(mode="json") if current else None,
                    "history": [h.model_dump(mode="json") for h in past],
                }
            )
            return
        if current is None:
            console.print(f"[yellow]No estimate for '{item}'.[/yellow]")
            return
        _output_estimates_table([current], title=f"Estimate: {current.item_identifier}")
        if past:
            _output_estimates_table(past, title="History")

    _run_async(_run())


def _output_estimates_table(estimates, title: str) -> None:
    table = Table(title=title)
    table.add_column("Computed", style="bold")
    table.add_column("Low", justify="right")
    table.add_column("Average", justify="right")
    table.add_column("High", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Sources", justify="right")
    for e in estimates:
        table.add_row(
            e.computed_at.strftime("%Y-%m-%d %H:%M"),
            f"{e.low:,.2f}",
            f"{e.average:,.2f}",
            f"{e.high:,.2f}",
            f"{e.confidence:.2f}" + (" (stale)" if e.is_stale else ""),
            str(e.contributing_source_count),
        )
    console.print(table)


@cli.command()
@click.argument("item")
@click.option(
    "--horizon",
    type=click.Choice(["short", "medium", "long"], case_sensitive=False),
    default="short",
    help="Forecast horizon (7, 30 or 90 days).",
)
@click.option("--paths", type=int, default=0, help="Also simulate N scenario paths.")
@click.option("--seed", type=int, default=0, help="Seed for scenario simulation.")
@_FORMAT_OPTION
@click.pass_context
def forecast(
    ctx: click.Context,
    item: str,
    horizon: str,
    paths: int,
    seed: int,
    output_format: str,
) -> None:
    """Forecast the value of ITEM over a horizon."""
    from coinvalue.core import Horizon
    from coinvalue.forecast import simulate_paths

    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            result = await service.get_forecast(item, Horizon(horizon.lower()))
        finally:
            await service.close()

        if result is None:
            if output_format == "json":
                _echo_json({"status": "no_data", "forecast": None})
            else:
                console.print(f"[yellow]No estimate for '{item}', nothing to forecast.[/yellow]")
            return

        scenarios = simulate_paths(result, n_paths=paths, seed=seed) if paths > 0 else None

        if output_format == "json":
            output = {"status": "ok", "forecast": result.model_dump(mode="json")}
            if scenarios is not None:
                output["scenarios"] = {
                    "paths": paths,
                    "seed": seed,
                    "p10": _quantile(scenarios, 0.1),
                    "p50": _quantile(scenarios, 0.5),
                    "p90": _quantile(scenarios, 0.9),
                }
            _echo_json(output)
            return

        table = Table(title=f"Forecast: {result.item_identifier} ({result.horizon})")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Base value", f"{result.base_value:,.2f}")
        table.add_row("Final value", f"{result.final_value:,.2f}")
        table.add_row("Trend", f"{result.trend_direction} ({result.trend_strength:.2f})")
        table.add_row("Volatility", f"{result.volatility:.3f}")
        table.add_row("Risk", str(result.risk_assessment))
        table.add_row("Final confidence", f"{result.predicted_series[-1].confidence:.2f}")
        table.add_row("Model", result.model_version)
        if scenarios is not None:
            table.add_section()
            table.add_row("Scenario P10", f"{_quantile(scenarios, 0.1):,.2f}")
            table.add_row("Scenario P50", f"{_quantile(scenarios, 0.5):,.2f}")
            table.add_row("Scenario P90", f"{_quantile(scenarios, 0.9):,.2f}")
        console.print(table)

    _run_async(_run())


def _quantile(scenarios, q: float) -> float:
    import numpy as np

    return float(np.quantile(scenarios[:, -1], q))


# ---------------------------------------------------------------------------
# feedback
# ---------------------------------------------------------------------------


@cli.group()
def feedback() -> None:
    """Submit and apply human feedback."""


@feedback.command("submit")
@click.option("--subject", "subject_id", required=True, help="Item identifier or session id.")
@click.option("--category", required=True, help="Feedback category (e.g. morgan-dollar).")
@click.option("--correct/--incorrect", "is_correct", default=None, help="Was the result right?")
@click.option("--rating", type=click.IntRange(1, 5), default=None, help="Accuracy rating 1-5.")
@click.option("--correction", default=None, help="Correction payload as a JSON object.")
@click.pass_context
def feedback_submit(
    ctx: click.Context,
    subject_id: str,
    category: str,
    is_correct: bool | None,
    rating: int | None,
    correction: str | None,
) -> None:
    """Record one feedback event."""
    from coinvalue.core import ValidationError

    config = _load_config(ctx)
    payload: dict = {
        "subject_id": subject_id,
        "category": category,
        "is_correct": is_correct,
        "accuracy_rating": rating,
    }
    if correction:
        try:
            payload["correction_payload"] = json.loads(correction)
        except json.JSONDecodeError as e:
            raise click.UsageError(f"--correction is not valid JSON: {e}") from e

    async def _run():
        service = await _open_service(config)
        try:
            event = await service.submit_feedback(payload)
        except ValidationError as e:
            console.print(f"[red]Invalid feedback: {e}[/red]")
            raise SystemExit(1)
        finally:
            await service.close()
        console.print(f"[green]✓[/green] Feedback {event.event_id} recorded ({event.state})")

    _run_async(_run())


@feedback.command("apply")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max events to apply.")
@_FORMAT_OPTION
@click.pass_context
def feedback_apply(ctx: click.Context, limit: int | None, output_format: str) -> None:
    """Apply pending feedback events."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            report = await service.apply_feedback(limit=limit)
        finally:
            await service.close()
        if output_format == "json":
            _echo_json(report.model_dump())
            return
        console.print(
            f"[green]✓[/green] Applied {report.applied} of {report.selected} events"
            + (f" ({report.skipped} skipped)" if report.skipped else "")
            + (f" [red]({report.failed} failed)[/red]" if report.failed else "")
        )

    _run_async(_run())


@feedback.command("rebuild")
@click.option("--window-days", type=click.IntRange(min=1), default=None, help="Days of history.")
@click.pass_context
def feedback_rebuild(ctx: click.Context, window_days: int | None) -> None:
    """Recompute performance metrics from applied events."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            metrics = await service.rebuild_metrics(window_days=window_days)
        finally:
            await service.close()
        console.print(f"[green]✓[/green] Rebuilt {len(metrics)} category metrics")

    _run_async(_run())


# ---------------------------------------------------------------------------
# performance
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--category", default=None, help="Only this category.")
@_FORMAT_OPTION
@click.pass_context
def performance(ctx: click.Context, category: str | None, output_format: str) -> None:
    """Show per-category learning performance."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            metrics = await service.get_performance(category=category)
            insights = await service.get_insights()
        finally:
            await service.close()

        if output_format == "json":
            _echo_json(
                {
                    "metrics": [m.model_dump(mode="json") for m in metrics],
                    "insights": insights.model_dump(mode="json"),
                }
            )
            return

        if not metrics:
            console.print("[yellow]No performance metrics yet. Apply feedback first.[/yellow]")
            return
        table = Table(title="Learning Performance")
        table.add_column("Category", style="bold")
        table.add_column("Events", justify="right")
        table.add_column("Mean accuracy", justify="right")
        table.add_column("Improvement", justify="right")
        table.add_column("Corrections", justify="right")
        for m in metrics:
            table.add_row(
                m.category,
                str(m.total_learning_events),
                f"{m.mean_accuracy:.2f}",
                f"{m.accuracy_improvement:+.2f}",
                str(m.corrections_applied),
            )
        console.print(table)
        if insights.best_category:
            console.print(
                f"{insights.categories_improved}/{insights.categories_tracked} categories "
                f"above baseline; best: [bold]{insights.best_category}[/bold]"
            )

    _run_async(_run())


# ---------------------------------------------------------------------------
# sources
# ---------------------------------------------------------------------------


@cli.group()
def sources() -> None:
    """Inspect and maintain price sources."""


@sources.command("list")
@click.option("--active-only", is_flag=True, default=False, help="Hide deactivated sources.")
@_FORMAT_OPTION
@click.pass_context
def sources_list(ctx: click.Context, active_only: bool, output_format: str) -> None:
    """List sources and their reliability."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            records = await service.list_sources(active_only=active_only)
        finally:
            await service.close()

        if output_format == "json":
            _echo_json([r.model_dump(mode="json") for r in records])
            return
        table = Table(title="Sources")
        table.add_column("Source", style="bold")
        table.add_column("Reliability", justify="right")
        table.add_column("Observations", justify="right")
        table.add_column("Last seen")
        table.add_column("Active")
        for r in records:
            table.add_row(
                r.source_id,
                f"{r.reliability_score:.3f}",
                str(r.observation_count),
                r.last_seen_at.strftime("%Y-%m-%d") if r.last_seen_at else "never",
                "yes" if r.is_active else "[red]no[/red]",
            )
        console.print(table)

    _run_async(_run())


@sources.command("deactivate-stale")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=1),
    default=None,
    help="Inactivity threshold (default: registry.stale_after_days).",
)
@click.pass_context
def sources_deactivate_stale(ctx: click.Context, max_age_days: int | None) -> None:
    """Deactivate sources that have not reported recently."""
    config = _load_config(ctx)

    async def _run():
        service = await _open_service(config)
        try:
            ids = await service.deactivate_stale_sources(max_age_days=max_age_days)
        finally:
            await service.close()
        if ids:
            console.print(f"[green]✓[/green] Deactivated {len(ids)}: {', '.join(ids)}")
        else:
            console.print("No stale sources.")

    _run_async(_run())


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address (default: api.host).")
@click.option("--port", "-p", type=int, default=None, help="Port number (default: api.port).")
@click.option("--reload", is_flag=True, default=False, help="Auto-reload on code changes.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, reload: bool) -> None:
    """Start the REST API server."""
    try:
        import uvicorn
    except ImportError:
        console.print(
            "[red]uvicorn not installed. Install with: "
            "pip install coinvalue[api][/red]"
        )
        raise SystemExit(1)

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port
    # The app factory loads its own config; point it at the same file.
    if ctx.obj.get("config_path"):
        os.environ["COINVALUE_CONFIG"] = str(Path(ctx.obj["config_path"]).resolve())

    console.print(f"Starting coinvalue API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "coinvalue.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show system status and data coverage."""
    async def _run():
        config = _load_config(ctx)
        service = await _open_service(config)
        try:
            stats = await service.get_statistics()
        finally:
            await service.close()

        table = Table(title="CoinValue Status")
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")

        table.add_row("Storage backend", config.storage.backend.value)
        table.add_row("Database path", config.storage.sqlite_path)
        table.add_section()
        table.add_row("Sources", str(stats["total_sources"]))
        table.add_row("Observations", str(stats["total_observations"]))
        table.add_row("Pending conversions", str(stats["pending_conversions"]))
        table.add_row("Estimates", str(stats["total_estimates"]))
        table.add_row("Forecasts", str(stats["total_forecasts"]))
        table.add_section()
        table.add_row("Learning events", str(stats["total_learning_events"]))
        table.add_row("Pending feedback", str(stats["pending_learning_events"]))

        console.print(table)

    _run_async(_run())


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
