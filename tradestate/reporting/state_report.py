from decimal import Decimal
from typing import Dict, Optional

from rich.console import Console
from rich.table import Table

from tradestate.state.store import StateStore


def _fmt(value: Optional[Decimal]) -> str:
    return "" if value is None else f"{value:,.2f}"


def print_state_report(store: StateStore, stats: Optional[Dict[str, int]] = None, console: Optional[Console] = None) -> None:
    """
    Print open positions, closed positions and subscriptions held by a store.

    Args:
        store: Store to render
        stats: Optional ingestion counters printed as a footer
        console: Console to print to (a new one by default)
    """
    console = console or Console()

    open_positions = sorted(store.open_positions(), key=lambda p: p.opened_at)
    table = Table(title=f"Open Positions ({len(open_positions)})")
    table.add_column("ID", style="cyan")
    table.add_column("Symbol", style="magenta")
    table.add_column("Side")
    table.add_column("Volume", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Current", justify="right")
    table.add_column("SL", justify="right", style="red")
    table.add_column("TP", justify="right", style="green")
    table.add_column("Profit", justify="right")
    for p in open_positions:
        pnl_style = "green" if p.profit >= 0 else "red"
        table.add_row(
            p.id,
            p.symbol,
            p.side.value.upper(),
            str(p.volume),
            _fmt(p.entry_price),
            _fmt(p.current_price),
            _fmt(p.stop_loss),
            _fmt(p.take_profit),
            f"[{pnl_style}]{_fmt(p.profit)}[/{pnl_style}]",
        )
    console.print(table)

    closed_positions = sorted(store.closed_positions(), key=lambda p: p.closed_at or p.opened_at, reverse=True)
    table = Table(title=f"Closed Positions ({len(closed_positions)})")
    table.add_column("ID", style="cyan")
    table.add_column("Symbol", style="magenta")
    table.add_column("Side")
    table.add_column("Reason", style="yellow")
    table.add_column("Exit", justify="right")
    table.add_column("Profit", justify="right")
    table.add_column("Closed At")
    for p in closed_positions:
        table.add_row(
            p.id,
            p.symbol,
            p.side.value.upper(),
            p.close_reason.value if p.close_reason else "",
            _fmt(p.close_price),
            _fmt(p.profit),
            p.closed_at.strftime("%Y-%m-%d %H:%M") if p.closed_at else "",
        )
    console.print(table)

    subscriptions = sorted(store.subscriptions(), key=lambda s: s.id)
    table = Table(title=f"Strategy Subscriptions ({len(subscriptions)})")
    table.add_column("ID", style="cyan")
    table.add_column("Strategy")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Paused")
    table.add_column("Mode")
    table.add_column("Lots", justify="right")
    for s in subscriptions:
        table.add_row(
            s.id,
            s.strategy_id,
            s.name or "",
            "[green]yes[/green]" if s.is_active else "no",
            "[yellow]paused[/yellow]" if s.is_paused else "",
            s.trade_mode.value,
            str(s.lots),
        )
    console.print(table)

    if stats:
        parts = ", ".join(f"{name}={count}" for name, count in stats.items())
        console.print(f"[bold]Events:[/bold] {parts}")
