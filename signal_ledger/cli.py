"""CLI entry point for the signal ledger.

Commands:
  ledger init-db                      — Create / migrate the ledger store
  ledger import-ledger FILE           — Load providers and signals from JSON
  ledger refresh-positions            — Revalue open signals, auto-close on TP/SL
  ledger close-expired --days         — Force-close signals past the horizon
  ledger position-job                 — Refresh + expiry in one pass
  ledger verify --address [--dry-run] — Score one provider
  ledger verify-all                   — Score and persist every provider
  ledger signal-of-day                — Pick the daily highlight
  ledger trending --hours --top       — Top signals per category
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from signal_ledger.config import LedgerConfig, load_config
from signal_ledger.observability.logger import configure_logging, get_logger
from signal_ledger.storage.database import Database

load_dotenv()

console = Console()
log = get_logger(__name__)

_TIER_STYLE = {
    "unranked": "dim",
    "bronze": "yellow",
    "silver": "white",
    "gold": "bold yellow",
    "diamond": "bold cyan",
}


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: LedgerConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


def _position_engine(cfg: LedgerConfig, db: Database) -> tuple[Any, Any]:
    from signal_ledger.connectors.price_oracle import create_price_oracle
    from signal_ledger.engine.position_manager import PositionEngine

    oracle = create_price_oracle(cfg.oracle)
    return PositionEngine(db, oracle, cfg.positions, cfg.oracle), oracle


def _verification_engine(cfg: LedgerConfig, db: Database) -> Any:
    from signal_ledger.analytics.verification import VerificationEngine
    from signal_ledger.connectors.chain_rpc import ChainRPCClient
    from signal_ledger.connectors.web_probe import WebsiteProbe

    return VerificationEngine(
        db,
        ChainRPCClient(cfg.chain),
        WebsiteProbe(cfg.verification.probe_timeout_secs),
        cfg.verification,
    )


def _fmt_pct(value: float | None) -> str:
    if value is None:
        return "—"
    colour = "green" if value > 0 else "red" if value < 0 else "white"
    return f"[{colour}]{value:+.2f}%[/{colour}]"


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Signal ledger: position tracking, provider verification, signal selection."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── INIT DB ─────────────────────────────────────────────────────────

@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the ledger store and apply migrations."""
    cfg: LedgerConfig = ctx.obj["config"]
    db = _open_db(cfg)
    db.close()
    console.print(f"[green]✓[/green] Ledger store ready at {cfg.storage.sqlite_path}")


# ─── IMPORT ──────────────────────────────────────────────────────────

@cli.command("import-ledger")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--legacy", is_flag=True, help="Rows come from the flat trade log")
@click.option("--pair/--no-pair", default=True, help="Close positions reversed by new signals")
@click.pass_context
def import_ledger(ctx: click.Context, path: Path, legacy: bool, pair: bool) -> None:
    """Load {"providers": [...], "signals": [...]} from a JSON file."""
    cfg: LedgerConfig = ctx.obj["config"]

    from signal_ledger.errors import StoreWriteError
    from signal_ledger.storage.models import ProviderRecord, SignalSource, parse_signal

    payload = json.loads(path.read_text())
    source = SignalSource.LEGACY if legacy else SignalSource.API
    db = _open_db(cfg)
    engine, oracle = _position_engine(cfg, db)
    providers = signals = paired = failed = 0
    try:
        for raw in payload.get("providers", []):
            db.upsert_provider(ProviderRecord.model_validate(raw))
            providers += 1

        parsed = sorted(
            (parse_signal(raw, source) for raw in payload.get("signals", [])),
            key=lambda s: (s.timestamp, s.id),
        )
        for signal in parsed:
            try:
                db.insert_signal(signal)
            except StoreWriteError as e:
                log.warning("import.signal_failed", signal_id=signal.id, error=str(e))
                failed += 1
                continue
            signals += 1
            if pair and signal.is_open:
                paired += len(engine.close_opposing_positions(signal))
    finally:
        _run(oracle.close())
        db.close()

    console.print(
        f"Imported [bold]{providers}[/bold] providers, [bold]{signals}[/bold] signals "
        f"({failed} failed, {paired} positions closed by opposite signals)"
    )


# ─── POSITIONS ───────────────────────────────────────────────────────

@cli.command("refresh-positions")
@click.pass_context
def refresh_positions(ctx: click.Context) -> None:
    """Revalue open signals and close those that hit TP/SL."""
    cfg: LedgerConfig = ctx.obj["config"]

    async def _refresh() -> Any:
        db = _open_db(cfg)
        engine, oracle = _position_engine(cfg, db)
        try:
            return await engine.refresh_positions()
        finally:
            await oracle.close()
            db.close()

    result = _run(_refresh())

    table = Table(title=f"📈 Position Refresh ({result.processed} updated)")
    table.add_column("Signal", style="dim", max_width=16)
    table.add_column("Price", justify="right")
    table.add_column("PnL", justify="right")
    table.add_column("PnL USD", justify="right")
    table.add_column("Closed", style="yellow")

    for u in result.updates:
        table.add_row(
            u.signal_id[:16],
            f"{u.current_price:,.6g}",
            _fmt_pct(u.pnl_pct),
            f"${u.pnl_usd:,.2f}" if u.pnl_usd is not None else "—",
            u.close_reason or "",
        )
    console.print(table)
    console.print(
        f"Prices: {result.prices_resolved} resolved, {result.price_failures} failed | "
        f"skipped {result.skipped_no_price} | conflicts {result.conflicts} | "
        f"errors {len(result.errors)}"
    )
    for e in result.errors:
        console.print(f"  [red]✗[/red] {e.record_id}: {e.kind} — {e.message}")


@cli.command("close-expired")
@click.option("--days", default=None, type=int, help="Max age in days (default from config)")
@click.pass_context
def close_expired(ctx: click.Context, days: int | None) -> None:
    """Force-close open signals past the expiry horizon."""
    cfg: LedgerConfig = ctx.obj["config"]

    async def _close() -> int:
        db = _open_db(cfg)
        engine, oracle = _position_engine(cfg, db)
        try:
            return await engine.close_expired_signals(days)
        finally:
            await oracle.close()
            db.close()

    closed = _run(_close())
    console.print(f"Closed [bold]{closed}[/bold] expired signals")


@cli.command("position-job")
@click.option("--days", default=None, type=int, help="Max age in days (default from config)")
@click.pass_context
def position_job(ctx: click.Context, days: int | None) -> None:
    """Refresh positions, then close expired ones."""
    cfg: LedgerConfig = ctx.obj["config"]

    from signal_ledger.engine.jobs import run_position_job

    async def _job() -> Any:
        db = _open_db(cfg)
        engine, oracle = _position_engine(cfg, db)
        try:
            return await run_position_job(engine, days)
        finally:
            await oracle.close()
            db.close()

    result = _run(_job())
    console.print_json(json.dumps(result.to_dict()))


# ─── VERIFICATION ────────────────────────────────────────────────────

@cli.command()
@click.option("--address", required=True, help="Provider wallet address")
@click.option("--dry-run", is_flag=True, help="Score without persisting")
@click.pass_context
def verify(ctx: click.Context, address: str, dry_run: bool) -> None:
    """Score one provider and (unless --dry-run) persist the result."""
    cfg: LedgerConfig = ctx.obj["config"]

    async def _verify() -> Any:
        db = _open_db(cfg)
        engine = _verification_engine(cfg, db)
        try:
            verification = await engine.calculate_verification(address)
            if not dry_run:
                engine.persist_verification(verification)
            return verification
        finally:
            await engine.close()
            db.close()

    v = _run(_verify())
    style = _TIER_STYLE.get(v.tier.value, "white")

    table = Table(title=f"🛡️  Verification — {v.address}")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Score", justify="right")
    table.add_column("Details", max_width=60)
    for c in v.checks:
        colour = {"pass": "green", "warn": "yellow", "fail": "red"}[c.status.value]
        table.add_row(
            c.type.value,
            f"[{colour}]{c.status.value}[/{colour}]",
            f"{c.score:g}",
            json.dumps(c.details),
        )
    console.print(table)
    console.print(
        f"Score [bold]{v.overall_score:g}[/bold] | tier [{style}]{v.tier.value}[/{style}] | "
        f"verified {'✅' if v.verified else '❌'} | badges: {', '.join(v.badges) or '—'}"
    )
    if dry_run:
        console.print("[dim](dry run — nothing persisted)[/dim]")


@cli.command("verify-all")
@click.pass_context
def verify_all(ctx: click.Context) -> None:
    """Recompute trust for every registered provider."""
    cfg: LedgerConfig = ctx.obj["config"]

    from signal_ledger.engine.jobs import run_verification_job

    async def _job() -> Any:
        db = _open_db(cfg)
        engine = _verification_engine(cfg, db)
        try:
            return await run_verification_job(engine, db, cfg.verification.batch_size)
        finally:
            await engine.close()
            db.close()

    result = _run(_job())
    console.print_json(json.dumps(result.to_dict()))


# ─── SELECTION ───────────────────────────────────────────────────────

@cli.command("signal-of-day")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def signal_of_day(ctx: click.Context, as_json: bool) -> None:
    """Pick the signal of the day."""
    cfg: LedgerConfig = ctx.obj["config"]

    from signal_ledger.analytics.signal_selector import SignalSelector

    db = _open_db(cfg)
    try:
        pick = SignalSelector(db, cfg.selector).select_signal_of_the_day()
    finally:
        db.close()

    if pick is None:
        console.print("[yellow]No candidate signals in the last "
                      f"{cfg.selector.windows_hours[-1]}h[/yellow]")
        return
    if as_json:
        click.echo(json.dumps(pick.to_dict(), indent=2))
        return

    s = pick.signal
    provider = pick.provider.name if pick.provider else s.provider[:10]
    console.print(f"[bold]🏆 Signal of the Day[/bold] — {s.action.value} {s.token} by {provider}")
    console.print(f"   {pick.reasoning}")

    table = Table()
    table.add_column("Factor", style="bold")
    table.add_column("Contribution", justify="right")
    for name, value in pick.breakdown.items():
        table.add_row(name, f"{value:.2f}")
    table.add_row("[bold]total[/bold]", f"[bold]{pick.score:.2f}[/bold]")
    console.print(table)


@cli.command()
@click.option("--hours", default=None, type=int, help="Lookback window in hours")
@click.option("--top", "top_n", default=None, type=int, help="Signals per category")
@click.pass_context
def trending(ctx: click.Context, hours: int | None, top_n: int | None) -> None:
    """Show top signals per category."""
    cfg: LedgerConfig = ctx.obj["config"]

    from signal_ledger.analytics.signal_selector import SignalSelector

    db = _open_db(cfg)
    try:
        groups = SignalSelector(db, cfg.selector).get_trending_by_category(hours, top_n)
    finally:
        db.close()

    if not groups:
        console.print("[yellow]No trending signals[/yellow]")
        return

    for category, scored in groups.items():
        table = Table(title=f"🔥 {category.value}")
        table.add_column("Signal", style="dim", max_width=16)
        table.add_column("Action", style="cyan")
        table.add_column("Token")
        table.add_column("PnL", justify="right")
        table.add_column("Score", justify="right", style="green")
        table.add_column("Why", max_width=40)
        for item in scored:
            table.add_row(
                item.signal.id[:16],
                item.signal.action.value,
                item.signal.token,
                _fmt_pct(item.signal.effective_pnl_pct),
                f"{item.score:.2f}",
                item.reasoning,
            )
        console.print(table)


if __name__ == "__main__":
    cli()
