# oraclearb/dashboard.py
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table

STATE_STYLE = {
    'OPENING': 'yellow',
    'ACTIVE': 'cyan',
    'CLOSING': 'magenta',
    'CLOSED': 'green',
    'FAILED': 'bold red',
}


def generate_dashboard(engine, max_rows: int = 8) -> Layout:
    """
    Rich layout with the live feed/book comparison and the position book.
    """
    now = engine.clock()

    # 1. Market table
    market_table = Table(title="📡 Oracle vs Book")
    market_table.add_column("Field", style="cyan")
    market_table.add_column("Value", justify="right", style="green")

    tick = engine.feed.latest()
    quote = engine.last_quote
    market_table.add_row("Token", engine.token_id[:16])
    market_table.add_row("Oracle", f"{tick.oracle_price} ({tick.age(now):.1f}s)" if tick else "-")
    market_table.add_row("Bid / Ask", f"{quote.bid} / {quote.ask}" if quote else "-")
    market_table.add_row("Midpoint", str(quote.midpoint) if quote else "-")
    div = engine.detector.last_divergence
    market_table.add_row("Divergence", f"{div:+}" if div is not None else "-")
    market_table.add_row("Threshold", str(engine.risk.price_difference_threshold))
    cd = engine.cooldown.remaining(engine.risk.cooldown_seconds, now)
    market_table.add_row("Cooldown", f"{cd:.0f}s" if cd else "[green]ready[/green]")
    market_table.add_row("Feed", "[green]up[/green]" if engine.feed.connected else "[red]down[/red]")

    # 2. Position table, newest first
    pos_table = Table(title="📒 Positions")
    pos_table.add_column("ID", style="magenta")
    pos_table.add_column("State")
    pos_table.add_column("Size", justify="right")
    pos_table.add_column("Ref", justify="right")
    pos_table.add_column("TP / SL", justify="right")
    pos_table.add_column("Reason")

    positions = sorted(engine.positions.values(), key=lambda p: p.opened_at, reverse=True)
    for p in positions[:max_rows]:
        style = STATE_STYLE.get(p.state.value, 'white')
        pos_table.add_row(
            p.short_id(),
            f"[{style}]{p.state.value}[/{style}]" + (" [bold red]UNHEDGED[/bold red]" if p.unhedged else ""),
            str(p.entry_leg.size),
            str(p.reference_price),
            f"{p.take_profit_leg.limit_price} / {p.stop_loss_leg.limit_price}",
            p.close_reason.value if p.close_reason else "-",
        )
    if len(positions) > max_rows:
        pos_table.add_row(f"[dim]+{len(positions) - max_rows} older[/dim]", "", "", "", "", "")

    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(market_table)),
        Layout(Panel(pos_table))
    )

    open_count = len(engine.open_positions())
    mode = "ACCEPTING" if engine.accepting else "DRAINING"
    footer = Panel(
        f"[bold gold1]{mode} | OPEN {open_count}/{engine.risk.max_concurrent_positions} | "
        f"TOTAL {len(positions)}[/bold gold1]", style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout
