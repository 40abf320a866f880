from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import typer
from rich.table import Table

from app.settings import ConfigurationError, Settings, load_settings
from app.stats_client import StatsService
from horizon.core import MetricSelector
from horizon.engine import StatsEngine
from horizon.exceptions import StatsError
from horizon.visibility import VisibilityGate

from .common import configure_logging, console, ensure_dir

app = typer.Typer(help="Live per-node stats as horizon charts")

SNAPSHOT_FIELDS = ("monitoring", "deltaPacketsPerSec", "deltaBytesPerSec", "deltaDroppedPerSec", "memory", "cpu")


@app.callback()
def main() -> None:
    configure_logging("cli")


def _settings(config: Optional[Path]) -> Settings:
    try:
        return load_settings(config)
    except ConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    open_browser: bool = typer.Option(True, "--open/--no-open", help="Open browser automatically"),
    config: Optional[Path] = typer.Option(None, help="Optional stats config override"),
) -> None:
    """Start the live dashboard."""
    from ui.server import start_ui as run_server

    settings = _settings(config)
    bind_host = host or settings.ui.host
    bind_port = port or settings.ui.port
    console().print(f"Serving dashboard on [cyan]http://{bind_host}:{bind_port}/ui[/]")
    try:
        run_server(bind_host, bind_port, open_browser=open_browser, settings=settings)
    except KeyboardInterrupt:
        console().print("Shutting down")


@app.command("nodes")
def nodes(config: Optional[Path] = typer.Option(None)) -> None:
    """List capture nodes and their aggregate snapshot."""
    settings = _settings(config)
    service = StatsService.from_config(settings.viewer)
    try:
        rows = service.get_moloch_stats({})
    except StatsError as exc:
        console().print(f"[red]Unable to load node list:[/] {exc}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"{len(rows)} nodes")
    table.add_column("#", justify="right", style="cyan", no_wrap=True)
    table.add_column("Node", style="green")
    fields = [name for name in SNAPSHOT_FIELDS if any(name in row for row in rows)]
    for name in fields:
        table.add_column(name, justify="right")
    for idx, row in enumerate(rows, start=1):
        table.add_row(str(idx), str(row["nodeName"]), *[str(row.get(name, "")) for name in fields])
    console().print(table)


async def _acquire_once(engine: StatsEngine) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    try:
        context = await engine.initialize()
        await context.tick()
        return context.to_frame(), context.snapshot()
    finally:
        engine.shutdown()


@app.command("snapshot")
def snapshot(
    metric: Optional[str] = typer.Option(None, help="Metric name, defaults to the configured one"),
    interval: Optional[int] = typer.Option(None, min=1, help="Bucket width in seconds"),
    window: int = typer.Option(60, min=1, help="Number of buckets to fetch"),
    out: Optional[Path] = typer.Option(None, help="Write the buckets to this CSV file"),
    config: Optional[Path] = typer.Option(None),
) -> None:
    """Fetch one window for every node and print the latest values."""
    settings = _settings(config)
    display = settings.display
    try:
        selector = MetricSelector(metric or display.metric, interval or display.interval_s)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    engine = StatsEngine(
        StatsService.from_config(settings.viewer),
        gate=VisibilityGate(hidden=True),
        selector=selector,
        refresh_ms=display.refresh_ms,
        window_length=window,
        fetch_timeout_s=settings.viewer.timeout_s,
    )
    try:
        frame, summary = asyncio.run(_acquire_once(engine))
    except StatsError as exc:
        console().print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"{selector.metric_name} @ {selector.step_seconds}s")
    table.add_column("Node", style="green")
    table.add_column("Latest", justify="right")
    table.add_column("Buckets", justify="right")
    table.add_column("Missing", justify="right")
    table.add_column("Error", style="red")
    streams: Dict[str, Dict[str, Any]] = summary["streams"]
    for node, info in streams.items():
        latest: List[float] = frame[node].dropna().tolist() if node in frame else []
        table.add_row(
            node,
            f"{latest[-1]:g}" if latest else "-",
            str(info["buckets"]),
            str(info["missing"]),
            info["last_error"] or "",
        )
    console().print(table)

    if out is not None:
        ensure_dir(out)
        frame.to_csv(out)
        console().print(f"[green]{out}[/] ready with {len(frame)} rows")


if __name__ == "__main__":
    app()
