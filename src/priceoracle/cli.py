"""CLI entry point using Typer."""

import asyncio
import signal

import structlog
import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="price-oracle",
    help="Price Oracle - engagement aggregation and synthetic price feed.",
)
console = Console()


def _configure_logging(json_logs: bool) -> None:
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info if json_logs else structlog.processors.StackInfoRenderer(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


@app.callback()
def main(json_logs: bool = typer.Option(False, "--json", help="Emit JSON log lines")) -> None:
    _configure_logging(json_logs)


def _build():
    from priceoracle.config import settings
    from priceoracle.params import load_pricing_params
    from priceoracle.service import build_price_oracle

    return build_price_oracle(settings, load_pricing_params(settings.pricing_path))


def _warn_if_memory_index(message: str) -> None:
    from priceoracle.config import settings

    if settings.contribution_repository == "memory":
        console.print(f"[yellow]In-memory repository: {message}[/yellow]")


def _format_price(price: int | None) -> str:
    return "-" if price is None else f"{price:,}"


@app.command()
def tick() -> None:
    """Run a single pipeline pass and print per-asset results."""
    _warn_if_memory_index("the index starts empty, so every asset prices from no contributions.")
    oracle = _build()
    report = asyncio.run(oracle.scheduler.tick())
    if report is None:
        console.print("[yellow]Tick skipped: another tick is in flight.[/yellow]")
        raise typer.Exit(1)
    if report.error:
        console.print(f"[bold red]Error:[/bold red] {report.error}")
        raise typer.Exit(1)

    table = Table(title="Tick Results")
    table.add_column("Asset", style="cyan")
    table.add_column("Price", style="green", justify="right")
    table.add_column("Loaded", justify="right")
    table.add_column("Rejected", justify="right")
    table.add_column("Omitted", justify="right")
    table.add_column("Sources", justify="right")
    table.add_column("Error", style="red")
    for result in report.results:
        table.add_row(
            result.asset_id,
            _format_price(result.price),
            str(result.loaded),
            str(result.rejected),
            str(result.omitted),
            str(result.external_sources),
            result.error or result.commit_error or "",
        )
    console.print(table)
    console.print(f"[bold]{report.succeeded}[/bold] succeeded, [bold]{report.failed}[/bold] failed")


@app.command()
def index(
    asset_id: str = typer.Argument(..., help="Asset identifier"),
    content_ref: str = typer.Argument(..., help="Content reference of the contribution blob"),
) -> None:
    """Fetch a contribution blob and add it to the asset's index."""
    from priceoracle.errors import PriceOracleError

    _warn_if_memory_index("the index entry is lost when this command exits.")

    oracle = _build()
    try:
        contribution = asyncio.run(oracle.store.index_blob(asset_id, content_ref))
    except PriceOracleError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Indexed[/green] {contribution.engagement_type} from {contribution.author_address or 'unknown'}")


@app.command()
def price(
    asset_id: str = typer.Argument(..., help="Asset identifier"),
    history: int = typer.Option(0, help="Also show this many completed bars"),
) -> None:
    """Run a pass, then show an asset's current price and bar."""
    _warn_if_memory_index("the index starts empty, so the price reflects no contributions.")
    oracle = _build()
    asyncio.run(oracle.scheduler.tick())

    state = oracle.engine.get_current_price(asset_id)
    if state is None:
        console.print(f"[yellow]Asset {asset_id} is not tracked.[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Price for {asset_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Price", _format_price(state.price))
    for name in ("open", "high", "low", "close"):
        table.add_row(name.capitalize(), _format_price(getattr(state.bar, name)))
    table.add_row("Volume", f"{state.bar.volume:.2f}")
    table.add_row("Error", state.error or "")
    console.print(table)

    if history:
        bars = Table(title="History")
        for column in ("Timestamp", "Open", "High", "Low", "Close"):
            bars.add_column(column)
        for point in oracle.engine.get_history(asset_id, history):
            bars.add_row(str(point.timestamp), *(_format_price(v) for v in (point.open, point.high, point.low, point.close)))
        console.print(bars)


@app.command()
def config() -> None:
    """Show effective settings and pricing parameters."""
    from priceoracle.config import settings
    from priceoracle.params import load_pricing_params

    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="white")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    for key, value in load_pricing_params(settings.pricing_path).model_dump().items():
        table.add_row(f"pricing.{key}", str(value))
    console.print(table)


@app.command()
def run(
    interval: float | None = typer.Option(None, help="Seconds between ticks (defaults to settings)"),
    serve_feed: bool = typer.Option(True, "--feed/--no-feed", help="Serve the websocket price feed"),
) -> None:
    """Run the scheduler (and live feed) until interrupted."""
    from priceoracle.config import settings

    async def _run() -> None:
        from priceoracle.feed.server import start_feed_server

        oracle = _build()
        server = None
        if serve_feed:
            server = await start_feed_server(
                oracle.broadcaster, settings.feed_host, settings.feed_port, settings.feed_queue_size
            )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        oracle.scheduler.start(interval or settings.update_interval_seconds)
        console.print("[bold blue]Price oracle running. Ctrl+C to stop.[/bold blue]")
        await stop.wait()

        oracle.scheduler.stop()
        await oracle.scheduler.join()
        if server is not None:
            server.close()
            await server.wait_closed()

    asyncio.run(_run())
    console.print("[bold green]Stopped.[/bold green]")


if __name__ == "__main__":
    app()
