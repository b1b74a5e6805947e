"""
CLI entrypoint for the trading state reconciliation core.

Provides commands for offline replay and the SL/TP calculator.
"""
import asyncio
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from tradestate import __version__
from tradestate.config.config import DEFAULT_CONFIG_PATH, load_config
from tradestate.core import build_core
from tradestate.domain.models import Side
from tradestate.exceptions import TradeStateError, ValidationFailure
from tradestate.execution.sltp_calculator import PriceUnit, SideConvention, StopKind, compute
from tradestate.monitoring.logger import get_logger, setup_logging
from tradestate.offline import FileSnapshotSource, OfflineGateway, read_event_log
from tradestate.reporting.state_report import print_state_report

app = typer.Typer(
    name="tradestate",
    help="Trading state reconciliation core",
    add_completion=False,
)

logger = get_logger(__name__)


@app.command()
def replay(
    snapshot: Optional[Path] = typer.Option(None, "--snapshot", help="Snapshot JSON file"),
    events: Optional[Path] = typer.Option(None, "--events", help="JSONL event log"),
    config_path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override monitoring.log_level"),
):
    """
    Apply a snapshot and an event log to an empty store and print the result.

    Example:
        tradestate replay --snapshot snap.json --events events.jsonl
    """
    if snapshot is None and events is None:
        typer.secho("Nothing to replay: pass --snapshot and/or --events", fg=typer.colors.RED)
        raise typer.Exit(1)

    config = load_config(config_path)
    setup_logging(log_level or config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    console = Console()

    async def run_replay():
        source = FileSnapshotSource(snapshot) if snapshot is not None else None
        core = build_core(config, source, OfflineGateway())
        if source is not None:
            summary = await core.scheduler.refresh()
            console.print(f"[bold cyan]Snapshot:[/bold cyan] {summary}")
        if events is not None:
            for event_name, record in read_event_log(events):
                if event_name is None:
                    core.ingester.ingest_raw(record)
                else:
                    core.ingester.ingest_wire(event_name, record)
        return core

    try:
        core = asyncio.run(run_replay())
    except TradeStateError as e:
        typer.secho(f"Replay failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)

    logger.info("REPLAY_COMPLETE", entities=len(core.store), **core.ingester.stats.as_dict())
    print_state_report(core.store, core.ingester.stats.as_dict() if events is not None else None, console)


@app.command()
def sltp(
    entry: str = typer.Argument(..., help="Entry price"),
    value: str = typer.Option(..., "--value", help="Magnitude as typed by the user"),
    side: Side = typer.Option(Side.LONG, "--side", help="Position side"),
    kind: StopKind = typer.Option(StopKind.STOP_LOSS, "--kind", help="stop_loss or take_profit"),
    unit: PriceUnit = typer.Option(PriceUnit.POINTS, "--unit", help="points, percentage or price"),
    convention: SideConvention = typer.Option(SideConvention.SIDE_AWARE, "--convention", help="Short-side handling"),
):
    """
    Compute a stop-loss / take-profit trigger price.

    Example:
        tradestate sltp 100 --side long --kind stop_loss --unit points --value 10
    """
    try:
        entry_price = Decimal(entry)
    except InvalidOperation:
        typer.secho(f"Invalid entry price: {entry}", fg=typer.colors.RED)
        raise typer.Exit(1)
    try:
        trigger = compute(entry_price, side, kind, unit, value, convention)
    except ValidationFailure as e:
        typer.secho(f"Invalid input: {e}", fg=typer.colors.RED)
        raise typer.Exit(1)
    typer.echo(str(trigger))


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    Trading state reconciliation core.

    Offline tools for the store, event ingestion and SL/TP calculation.
    """
    if version:
        typer.echo(f"tradestate v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


if __name__ == "__main__":
    app()
