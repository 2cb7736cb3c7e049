"""Typer CLI application for the geo-grid rank tracker.

Provides commands to preview grids, estimate scan cost, manage campaigns,
run scans with live progress, and run the recurring scan scheduler.
"""

import asyncio
import logging
import signal
import time
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from geogrid.integrations.dataforseo import ConfigurationError, DataForSEOError
from geogrid.modules.local_grid.grid_calculator import GridValidationError
from geogrid.modules.local_grid.types import RankCategory, get_rank_category
from geogrid.workflows import ScanWorkflowError

logger = logging.getLogger(__name__)
console = Console()
app = typer.Typer(
    name="geogrid",
    help="Geo-grid local rank tracker -- map-pack rankings and competitor share of voice.",
    add_completion=False,
    no_args_is_help=True,
)

_KNOWN_ERRORS = (ConfigurationError, DataForSEOError, GridValidationError, ScanWorkflowError, LookupError)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level and format."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context."""
    return asyncio.run(coro)


def _get_app():
    """Lazy-import and return an initialised GeoGridApp."""
    from geogrid.app import GeoGridApp
    geo_app = GeoGridApp()
    geo_app.initialize()
    return geo_app


def _fail(message: str) -> None:
    console.print("[red]✘ " + message + "[/red]")
    raise typer.Exit(code=1)


_RANK_STYLES = {
    RankCategory.EXCELLENT: "green",
    RankCategory.GOOD: "cyan",
    RankCategory.AVERAGE: "yellow",
    RankCategory.POOR: "red",
}


def _fmt_rank(value: Optional[float]) -> str:
    """Average rank coloured by bucket; 0 or None (not ranking) shows as "-"."""
    category = get_rank_category(value or None)
    if category is RankCategory.NOT_RANKING:
        return "-"
    style = _RANK_STYLES[category]
    return "[" + style + "]" + f"{value:.2f}" + "[/" + style + "]"


def _fmt_change(value: Optional[float]) -> str:
    if value is None:
        return ""
    if value > 0:
        return "[green]+" + f"{value:.2f}" + "[/green]"
    if value < 0:
        return "[red]" + f"{value:.2f}" + "[/red]"
    return "0.00"


# ------------------------------------------------------------------
# grid
# ------------------------------------------------------------------
@app.command()
def grid(
    lat: float = typer.Argument(..., help="Centre latitude."),
    lng: float = typer.Argument(..., help="Centre longitude."),
    size: int = typer.Option(7, "--size", "-s", help="Points per side (1-15)."),
    radius: float = typer.Option(5.0, "--radius", "-r", help="Radius in miles (0-50]."),
    zoom: int = typer.Option(14, "--zoom", "-z", help="Map zoom appended to coordinates."),
) -> None:
    """Print the grid points around a centre coordinate."""
    from geogrid.modules.local_grid.grid_calculator import (
        format_coordinate_for_api,
        generate_grid_points,
        get_grid_stats,
        is_grid_center,
    )
    from geogrid.modules.local_grid.types import GridConfig

    config = GridConfig(center_lat=lat, center_lng=lng, grid_size=size, radius_miles=radius)
    try:
        points = generate_grid_points(config)
    except GridValidationError as exc:
        _fail(str(exc))

    stats = get_grid_stats(config)
    table = Table(title=f"{size}x{size} grid, {radius} mi radius", show_header=True, header_style="bold magenta")
    table.add_column("Row", justify="right")
    table.add_column("Col", justify="right")
    table.add_column("Coordinates", style="cyan")
    for point in points:
        marker = " *" if is_grid_center(point, size) else ""
        table.add_row(
            str(point.row), str(point.col),
            format_coordinate_for_api(point.lat, point.lng, zoom) + marker,
        )
    console.print(table)
    console.print(
        "Points: [bold]" + str(stats["total_points"]) + "[/bold]  "
        + "Diameter: [bold]" + str(stats["diameter"]) + " mi[/bold]  "
        + "Spacing: [bold]" + str(stats["spacing"]) + " mi[/bold]"
    )


# ------------------------------------------------------------------
# estimate
# ------------------------------------------------------------------
@app.command()
def estimate(
    size: int = typer.Option(7, "--size", "-s", help="Points per side."),
    keyword_count: int = typer.Option(1, "--keywords", "-k", help="Number of keywords."),
    cost_per_call: float = typer.Option(0.005, "--cost-per-call", help="Provider cost per call (USD)."),
) -> None:
    """Estimate provider calls and cost for a scan."""
    from geogrid.modules.local_grid.grid_scanner import estimate_scan_cost

    result = estimate_scan_cost(size, keyword_count, cost_per_call)
    table = Table(title="Scan Cost Estimate", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Grid points", str(result.total_points))
    table.add_row("API calls", str(result.total_calls))
    table.add_row("Estimated cost", f"${result.estimated_cost:.4f}")
    console.print(table)


# ------------------------------------------------------------------
# campaigns
# ------------------------------------------------------------------
@app.command("campaign-create")
def campaign_create(
    business: str = typer.Argument(..., help="Business name as shown on Google Maps."),
    lat: float = typer.Option(..., "--lat", help="Centre latitude."),
    lng: float = typer.Option(..., "--lng", help="Centre longitude."),
    kw: str = typer.Option(..., "--keywords", "-k", help="Comma-separated keywords."),
    size: Optional[int] = typer.Option(None, "--size", "-s", help="Points per side."),
    radius: Optional[float] = typer.Option(None, "--radius", "-r", help="Radius in miles."),
    frequency: str = typer.Option("weekly", "--frequency", "-f", help="daily, weekly or monthly."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Create a campaign to track a business."""
    _setup_logging(verbose)
    from geogrid.modules.local_grid import repository
    from geogrid.modules.local_grid.grid_calculator import validate_grid_config
    from geogrid.modules.local_grid.types import GridConfig

    geo_app = _get_app()
    defaults = geo_app.grid_defaults()
    grid_size = size if size is not None else defaults["grid_size"]
    grid_radius = radius if radius is not None else defaults["radius_miles"]
    kw_list = [k.strip() for k in kw.split(",") if k.strip()]
    if not kw_list:
        _fail("Please provide keywords with --keywords/-k")

    try:
        validate_grid_config(GridConfig(lat, lng, grid_size, grid_radius))
        campaign = repository.create_campaign(
            business_name=business,
            center_lat=lat,
            center_lng=lng,
            keywords=kw_list,
            grid_size=grid_size,
            grid_radius_miles=grid_radius,
            scan_frequency=frequency,
        )
    except (GridValidationError, ValueError) as exc:
        _fail(str(exc))

    console.print(
        "[green]✔[/green] Campaign [bold]" + str(campaign.id) + "[/bold] created for "
        + business + " (" + str(len(kw_list)) + " keywords)."
    )


@app.command()
def campaigns(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status."),
    limit: int = typer.Option(50, "--limit", "-l", help="Max campaigns to display."),
) -> None:
    """List campaigns."""
    from geogrid.modules.local_grid import repository

    _get_app()
    rows = repository.list_campaigns(status=status, limit=limit)
    table = Table(title="Campaigns", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Business", style="cyan")
    table.add_column("Grid")
    table.add_column("Keywords", max_width=40)
    table.add_column("Frequency")
    table.add_column("Status")
    table.add_column("Next scan")
    for c in rows:
        table.add_row(
            str(c.id),
            c.business_name,
            f"{c.grid_size}x{c.grid_size} / {c.grid_radius_miles} mi",
            ", ".join(c.keywords),
            c.scan_frequency,
            c.status,
            c.next_scan_at.strftime("%Y-%m-%d %H:%M") if c.next_scan_at else "-",
        )
    console.print(table)
    console.print("\nFound [bold]" + str(len(rows)) + "[/bold] campaigns.")


# ------------------------------------------------------------------
# scan
# ------------------------------------------------------------------
def _print_scan_result(result) -> None:
    """Pretty-print scan stats, the competitive summary, and competitors."""
    from geogrid.modules.local_grid.competitor_aggregator import (
        generate_competitive_summary,
        get_top_competitors,
    )

    stats = result.stats
    aggregation = result.aggregation
    target = aggregation.target_stats

    table = Table(title="Scan " + result.scan_id + ": " + result.target_business_name, show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Point scans", f"{stats.successful_scans}/{stats.total_scans} ok")
    table.add_row("Failed points", str(stats.failed_scans))
    table.add_row("Average rank", _fmt_rank(target.avg_rank) + " " + _fmt_change(target.rank_change))
    table.add_row("Share of voice", f"{target.share_of_voice:.2f}%")
    table.add_row("Top-3 / Top-10 / Top-20", f"{target.times_in_top3} / {target.times_in_top10} / {target.times_in_top20}")
    table.add_row("API calls", str(stats.api_calls_used))
    table.add_row("Estimated cost", f"${stats.estimated_cost:.4f}")
    console.print(table)

    summary = generate_competitive_summary(aggregation)
    threats = ", ".join(summary.main_threats) or "none"
    console.print(Panel(
        "Position: [bold]" + summary.target_position.value + "[/bold]\n"
        + "Competitors ahead: " + str(summary.competitors_ahead) + "\n"
        + "Main threats: " + threats + "\n\n"
        + summary.recommendation,
        title="Competitive Summary",
    ))

    comp_table = Table(title="Top Competitors", show_header=True, header_style="bold magenta")
    comp_table.add_column("#", justify="right")
    comp_table.add_column("Business", style="cyan", max_width=40)
    comp_table.add_column("Avg rank", justify="right")
    comp_table.add_column("Change", justify="right")
    comp_table.add_column("Top 3", justify="right")
    comp_table.add_column("SoV %", justify="right")
    comp_table.add_column("Rating", justify="right")
    for idx, comp in enumerate(get_top_competitors(list(aggregation.competitor_stats), 10), 1):
        rating = ""
        if comp.rating:
            rating = f"{comp.rating:.1f} ({comp.review_count or 0})"
        comp_table.add_row(
            str(idx), comp.business_name, _fmt_rank(comp.avg_rank),
            _fmt_change(comp.rank_change), str(comp.times_in_top3),
            f"{comp.share_of_voice:.2f}", rating,
        )
    console.print(comp_table)


async def _scan_until_interrupted(workflow, campaign_id, keywords, on_progress):
    """Run one scan; the first Ctrl+C stops it after the current grid point.

    The points already scanned are saved and the scan is stored as
    cancelled. A second Ctrl+C interrupts immediately.
    """
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_cancel() -> None:
        console.print("\n[yellow]Stopping after the current grid point...[/yellow]")
        cancel_event.set()
        loop.remove_signal_handler(signal.SIGINT)

    installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, request_cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows, or not the main thread)
        installed = False
        logger.debug("SIGINT handler unavailable; Ctrl+C aborts the scan")
    try:
        return await workflow.run_scan(
            campaign_id, keywords=keywords, on_progress=on_progress, cancel_event=cancel_event,
        )
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@app.command()
def scan(
    campaign_id: int = typer.Argument(..., help="Campaign ID to scan."),
    kw: str = typer.Option("", "--keywords", "-k", help="Comma-separated keywords (default: campaign keywords)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a grid scan for a campaign."""
    _setup_logging(verbose)
    from geogrid.modules.local_grid import repository

    geo_app = _get_app()
    campaign = repository.get_campaign(campaign_id)
    if campaign is None:
        _fail("Campaign not found: " + str(campaign_id))

    kw_list = [k.strip() for k in kw.split(",") if k.strip()] or campaign.keywords
    total = campaign.grid_size * campaign.grid_size * len(kw_list)
    console.print(Panel(
        "[bold cyan]Grid Scan: " + campaign.business_name + " ("
        + str(len(kw_list)) + " keywords, " + str(total) + " point scans)[/bold cyan]"
    ))

    try:
        workflow = geo_app.get_workflow()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(description="Scanning...", total=total)

            def on_progress(keyword, keyword_index, total_keywords, completed, points):
                progress.update(
                    task,
                    completed=keyword_index * points + completed,
                    description=f"[{keyword_index + 1}/{total_keywords}] {keyword}",
                )

            result = _run_async(_scan_until_interrupted(
                workflow, campaign_id, kw_list, on_progress,
            ))
    except _KNOWN_ERRORS as exc:
        _fail(str(exc))

    _print_scan_result(result)
    if result.cancelled:
        console.print(
            "[yellow]⚠ Scan interrupted: " + str(result.stats.total_scans) + " of "
            + str(total) + " point scans saved as a cancelled scan.[/yellow]"
        )
    else:
        console.print("[green]✔[/green] Grid scan complete.")


# ------------------------------------------------------------------
# setup
# ------------------------------------------------------------------
@app.command()
def setup(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Initialise the database and report component status."""
    _setup_logging(verbose)
    console.print(Panel("[bold cyan]Geo-Grid Setup[/bold cyan]"))

    geo_app = _get_app()
    console.print("[green]✔[/green] Database tables created.")

    table = Table(title="System Status", show_header=True, header_style="bold magenta")
    table.add_column("Component", style="cyan")
    table.add_column("Status")
    table.add_column("Details")
    for name, info in geo_app.get_status().items():
        state = info["status"]
        if state == "ok":
            display = "[green]✔ OK[/green]"
        elif state == "warning":
            display = "[yellow]⚠ Warning[/yellow]"
        else:
            display = "[red]✘ Error[/red]"
        table.add_row(name.title(), display, info["details"])
    console.print(table)


# ------------------------------------------------------------------
# schedule
# ------------------------------------------------------------------
@app.command()
def schedule(
    cron: Optional[str] = typer.Option(None, "--cron", help="Cron expression (default from config)."),
    once: bool = typer.Option(False, "--once", help="Scan due campaigns now and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run the scheduler that scans campaigns when they are due."""
    _setup_logging(verbose)
    from geogrid.scheduler import DEFAULT_DUE_SCANS_CRON, run_scheduled_scans

    geo_app = _get_app()
    sched_cfg = geo_app.section("scheduler")
    batch_size = sched_cfg.get("batch_size", 20)

    if once:
        try:
            count = run_scheduled_scans(batch_size=batch_size)
        except _KNOWN_ERRORS as exc:
            _fail(str(exc))
        console.print("[green]✔[/green] " + str(count) + " scan(s) completed.")
        return

    scheduler = geo_app.get_scheduler()
    scheduler.start()
    scheduler.schedule_due_scans(
        cron=cron or sched_cfg.get("cron", DEFAULT_DUE_SCANS_CRON),
        batch_size=batch_size,
    )
    for job in scheduler.list_jobs():
        console.print("Scheduled [bold]" + job["id"] + "[/bold] next run: " + str(job["next_run_time"]))
    console.print("Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping scheduler...")
    finally:
        scheduler.stop()


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
