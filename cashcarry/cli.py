"""
CLI entrypoint for the OKX cash-and-carry funding engine.

`run` starts the scheduler loop; the other commands are operator tooling that
act once and exit.
"""
import asyncio
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Awaitable, Callable, Optional

import typer

from cashcarry.config.config import Config, load_config
from cashcarry.config.dotenv_loader import load_dotenv_files
from cashcarry.domain.models import HedgeResult, InstType
from cashcarry.exceptions import CashCarryError, ConfigurationError
from cashcarry.monitoring.logger import setup_logging

app = typer.Typer(
    name="cashcarry",
    help="OKX cash-and-carry funding rate engine",
    add_completion=False,
)


ConfigOption = typer.Option(None, "--config", help="Path to config file (default: bundled config.yaml)")


def _load(config_path: Optional[Path], log_file: Optional[Path] = None) -> Config:
    try:
        config = load_config(str(config_path) if config_path else None)
    except (FileNotFoundError, ValueError) as e:
        typer.secho(f"Failed to load configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        log_file=str(log_file) if log_file else config.monitoring.log_file,
    )
    return config


def _with_runtime(config: Config, action: Callable[..., Awaitable]):
    """Build the runtime, run one coroutine against it and close the client."""
    from cashcarry.main import build_runtime

    async def _go():
        runtime = build_runtime(config)
        try:
            return await action(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(_go())
    except CashCarryError as e:
        typer.secho(f"{type(e).__name__}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _require_live(config: Config) -> None:
    if not config.exchange.has_credentials:
        typer.secho("OKX credentials are required for this command", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _echo_result(result: HedgeResult) -> None:
    color = typer.colors.GREEN if result.success else typer.colors.RED
    typer.secho(f"{result.inst_id}: {result.outcome.value}", fg=color, bold=True)
    if result.message:
        typer.echo(f"  {result.message}")
    typer.echo(f"  Spot filled: {result.spot_filled}  Contracts: {result.contracts}")
    if result.deviation is not None:
        typer.echo(f"  Deviation: {result.deviation:.4%}")
    if result.residual_spot:
        typer.echo(f"  Residual spot: {result.residual_spot}")
    if result.requires_manual_intervention:
        typer.secho("  MANUAL INTERVENTION REQUIRED", fg=typer.colors.RED, bold=True)


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    with_health: bool = typer.Option(False, "--with-health", help="Serve /health and /status on the health port"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Path to log file"),
):
    """
    Run the strategy scheduler until SIGINT/SIGTERM.

    Example:
        cashcarry run --with-health
    """
    from cashcarry.main import run as run_worker

    config = _load(config_path, log_file)
    try:
        asyncio.run(run_worker(config, with_health=with_health))
    except ConfigurationError as e:
        typer.secho(f"Startup refused: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


@app.command()
def scan(
    config_path: Optional[Path] = ConfigOption,
    min_turnover: Optional[str] = typer.Option(None, "--min-turnover", help="Override minimum 24h quote turnover"),
    min_rate: Optional[str] = typer.Option(None, "--min-rate", help="Override minimum funding rate"),
    top: int = typer.Option(10, "--top", help="Number of candidates to show"),
):
    """Rank perpetual swaps by funding rate (public data only)."""
    config = _load(config_path)
    params = config.strategies[0].params if config.strategies else None
    try:
        turnover = Decimal(min_turnover) if min_turnover else (params.min_volume_24h if params else Decimal("0"))
        rate = Decimal(min_rate) if min_rate else (params.min_funding_rate if params else Decimal("0"))
    except InvalidOperation:
        typer.secho("--min-turnover and --min-rate must be decimals", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    candidates = _with_runtime(config, lambda rt: rt.scanner.scan(turnover, rate, top_n=top))
    if not candidates:
        typer.echo("No candidates.")
        return
    typer.echo(f"{'Instrument':<22}{'Funding':>12}{'Turnover 24h':>20}{'Last':>14}")
    typer.echo("-" * 68)
    for c in candidates:
        typer.echo(f"{c.inst_id:<22}{c.funding_rate:>12.6f}{c.turnover_24h:>20,.0f}{c.last:>14}")


@app.command()
def audit(
    inst_id: Optional[str] = typer.Argument(None, help="Swap instrument, e.g. BTC-USDT-SWAP (default: all held)"),
    fix: bool = typer.Option(True, "--fix/--dry-run", help="Place corrective orders or only report"),
    config_path: Optional[Path] = ConfigOption,
):
    """Compare spot holdings against short swap exposure and rebalance."""
    config = _load(config_path)
    _require_live(config)

    async def _audit(rt):
        if inst_id:
            return [await rt.auditor.audit(inst_id, fix=fix)]
        return await rt.auditor.audit_all(fix=fix, quote_ccy=config.scanner.quote_ccy)

    results = _with_runtime(config, _audit)
    if not results:
        typer.echo("No hedged positions.")
    for r in results:
        typer.secho(f"{r.inst_id}: {r.classification.value}", bold=True)
        typer.echo(f"  Spot: {r.spot_balance}  Hedged: {r.hedged_amount} ({r.contracts} contracts)  Delta: {r.delta}")
        if r.action.value != "NONE":
            state = "done" if r.action_taken else "not placed"
            typer.echo(f"  Action: {r.action.value} {r.action_size} ({state})")
        if r.message:
            typer.echo(f"  {r.message}")


@app.command()
def enter(
    inst_id: str = typer.Argument(..., help="Swap instrument, e.g. BTC-USDT-SWAP"),
    budget: str = typer.Argument(..., help="USDT budget for both legs"),
    config_path: Optional[Path] = ConfigOption,
):
    """Open one hedge (spot long + swap short)."""
    config = _load(config_path)
    _require_live(config)
    try:
        amount = Decimal(budget)
    except InvalidOperation:
        typer.secho(f"Invalid budget: {budget}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    result = _with_runtime(config, lambda rt: rt.engine.enter_hedge(inst_id, amount))
    _echo_result(result)
    if not result.success:
        raise typer.Exit(1)


@app.command(name="exit")
def exit_cmd(
    inst_id: str = typer.Argument(..., help="Swap instrument, e.g. BTC-USDT-SWAP"),
    sweep: bool = typer.Option(False, "--sweep", help="Also sell residual spot dust"),
    config_path: Optional[Path] = ConfigOption,
):
    """Close one hedge (buy back the short, sell the spot)."""
    config = _load(config_path)
    _require_live(config)
    result = _with_runtime(config, lambda rt: rt.engine.exit_hedge(inst_id, sweep_dust=sweep))
    _echo_result(result)
    if not result.success:
        raise typer.Exit(1)


@app.command()
def positions(config_path: Optional[Path] = ConfigOption):
    """List open swap positions and non-zero balances."""
    config = _load(config_path)
    _require_live(config)

    async def _read(rt):
        return await asyncio.gather(rt.client.get_positions(InstType.SWAP), rt.client.get_balance())

    swaps, balance = _with_runtime(config, _read)
    typer.echo(f"Total equity: {balance.total_equity:,.2f} USD")
    typer.echo("\nBalances")
    for ccy, asset in sorted(balance.assets.items()):
        if asset.balance:
            typer.echo(f"  {ccy:<8} {asset.balance:>20}  (available {asset.available})")
    typer.echo("\nSwap positions")
    if not swaps:
        typer.echo("  none")
    for p in swaps:
        color = typer.colors.GREEN if p.upl >= 0 else typer.colors.RED
        typer.secho(f"  {p.inst_id:<22} {p.pos:>12}  avg {p.avg_px}  upl {p.upl}", fg=color)


@app.command()
def orders(
    history: bool = typer.Option(False, "--history", help="Show recent filled/canceled orders instead of pending"),
    limit: int = typer.Option(20, "--limit", help="History rows"),
    config_path: Optional[Path] = ConfigOption,
):
    """List pending (or recent) orders."""
    config = _load(config_path)
    _require_live(config)

    async def _read(rt):
        if history:
            swap, spot = await asyncio.gather(
                rt.client.get_orders_history(InstType.SWAP, limit),
                rt.client.get_orders_history(InstType.SPOT, limit),
            )
            return swap + spot
        return await rt.client.get_orders_pending()

    rows = _with_runtime(config, _read)
    if not rows:
        typer.echo("No orders.")
    for o in rows:
        typer.echo(
            f"{o.ord_id:<20} {o.inst_id:<22} {o.side.value:<5} {o.ord_type.value:<7}"
            f" sz={o.sz} filled={o.acc_fill_sz} {o.state.value}"
        )


@app.command(name="check-account")
def check_account(config_path: Optional[Path] = ConfigOption):
    """Verify the account mode supports spot + swap hedging and report latency."""
    config = _load(config_path)
    _require_live(config)

    async def _check(rt):
        return await rt.client.check_account_mode(), await rt.client.get_latency_ms()

    ok, latency_ms = _with_runtime(config, _check)
    typer.echo(f"Latency: {latency_ms:.0f} ms")
    if ok:
        typer.secho("Account mode OK for cash-and-carry", fg=typer.colors.GREEN)
    else:
        typer.secho("Account mode is Simple; switch to single-currency margin or higher", fg=typer.colors.RED)
        raise typer.Exit(1)


@app.command()
def events(
    limit: int = typer.Option(20, "--limit", help="Number of events"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Filter by event type, e.g. HEDGE_AUDIT"),
    inst_id: Optional[str] = typer.Option(None, "--inst", help="Filter by instrument"),
    config_path: Optional[Path] = ConfigOption,
):
    """Show the hedge event journal."""
    from cashcarry.storage.db import init_db
    from cashcarry.storage.repository import get_recent_events

    config = _load(config_path)
    init_db(config.storage.database_url)
    for e in get_recent_events(limit=limit, event_type=event_type, inst_id=inst_id):
        typer.echo(f"{e['timestamp']}  {e['type']:<24} {e['inst_id']:<22} {json.dumps(e['details'])[:160]}")


@app.command(name="kill-switch")
def kill_switch_cmd(
    ack: bool = typer.Option(False, "--ack", help="Acknowledge a latched kill switch"),
    activate: bool = typer.Option(False, "--activate", help="Latch the kill switch (halts new cycles)"),
    reason: str = typer.Option("Manual activation", "--reason", help="Reason for activation"),
    config_path: Optional[Path] = ConfigOption,
):
    """
    Show, latch or acknowledge the kill switch.

    Examples:
        cashcarry kill-switch
        cashcarry kill-switch --activate --reason "exchange incident"
        cashcarry kill-switch --ack
    """
    from cashcarry.utils.kill_switch import KillSwitch, KillSwitchReason, kill_switch_state_path

    config = _load(config_path)
    ks = KillSwitch(kill_switch_state_path(config.system.state_dir))

    if activate:
        ks.activate(KillSwitchReason.MANUAL, reason)
        typer.secho("KILL SWITCH ACTIVATED", fg=typer.colors.RED, bold=True)
        typer.echo("Run 'cashcarry kill-switch --ack' to allow restart.")
        return
    if ack:
        if ks.acknowledge():
            typer.secho("Kill switch acknowledged; cycles can resume", fg=typer.colors.GREEN, bold=True)
        else:
            typer.secho("Kill switch is not latched, nothing to acknowledge", fg=typer.colors.YELLOW)
        return

    status = ks.get_status()
    if status["active"]:
        typer.secho("KILL SWITCH: ACTIVE", fg=typer.colors.RED, bold=True)
        typer.echo(f"Reason: {status['reason']}")
        if status["detail"]:
            typer.echo(f"Detail: {status['detail']}")
        typer.echo(f"Activated at: {status['activated_at']}")
        typer.echo(f"Duration: {status['duration_seconds']:.0f}s")
    else:
        typer.secho("KILL SWITCH: INACTIVE", fg=typer.colors.GREEN, bold=True)


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(False, "--version", help="Show version and exit"),
):
    """
    OKX cash-and-carry funding rate engine.

    Holds spot long against an equal perpetual short and collects funding.
    """
    load_dotenv_files()
    if version:
        from importlib.metadata import PackageNotFoundError, version as pkg_version
        try:
            typer.echo(f"cashcarry {pkg_version('cashcarry')}")
        except PackageNotFoundError:
            typer.echo("cashcarry (not installed)")
        raise typer.Exit()


if __name__ == "__main__":
    app()
