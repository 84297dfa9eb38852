"""CLI entry point for the Agent Decision & Execution Engine.

Commands:
  agent-engine vault create AGENT_ID    — Generate a delegate wallet
  agent-engine vault address AGENT_ID   — Show a delegate address
  agent-engine vault export AGENT_ID    — Print a delegate private key
  agent-engine vault delete AGENT_ID    — Remove a delegate wallet
  agent-engine vault list               — List delegate wallets
  agent-engine audit show               — Show the audit trail
  agent-engine audit verify             — Check audit entry checksums
  agent-engine store migrate            — Move legacy plaintext data into the encrypted store
  agent-engine analyze                  — Score one market from given inputs
  agent-engine prices                   — Snapshot of oracle prices
"""

from __future__ import annotations

import asyncio
import datetime as dt
import time
from typing import Any, Awaitable, Callable, TypeVar

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from src.config import AppConfig, load_config
from src.connectors.data_sources import get_data_source
from src.connectors.ledger import Personality
from src.observability.logger import configure_logging, get_logger
from src.storage.database import SQLiteBackend
from src.storage.encrypted_store import EncryptedStore

load_dotenv()

console = Console()
log = get_logger(__name__)

T = TypeVar("T")


def _run(coro: Awaitable[T]) -> T:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)  # type: ignore[arg-type]


def _with_store(cfg: AppConfig, fn: Callable[[EncryptedStore], Awaitable[T]]) -> T:
    """Open the encrypted store, run ``fn`` against it, close it."""

    async def _inner() -> T:
        store = EncryptedStore(SQLiteBackend(cfg.storage), cfg.storage)
        await store.init()
        try:
            return await fn(store)
        finally:
            await store.close()

    return _run(_inner())


def _fmt_ts(ts: float) -> str:
    return dt.datetime.fromtimestamp(ts, tz=dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Agent Decision & Execution Engine."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",  # CLI always uses console format
        log_file=cfg.observability.log_file,
    )


# ─── VAULT ───────────────────────────────────────────────────────────

@cli.group()
def vault() -> None:
    """Delegate wallet management."""


@vault.command("create")
@click.argument("agent_id", type=int)
@click.pass_context
def vault_create(ctx: click.Context, agent_id: int) -> None:
    """Generate a delegate keypair for AGENT_ID (replaces any existing one)."""
    from src.execution.key_vault import KeyVault
    from src.storage.audit import AuditLog

    cfg: AppConfig = ctx.obj["config"]

    async def _create(store: EncryptedStore) -> str:
        address = await KeyVault(store).create(agent_id)
        audit = AuditLog(store, cfg.audit.max_entries)
        await audit.load()
        await audit.record(agent_id, "created", f"Delegate wallet created: {address}")
        return address

    address = _with_store(cfg, _create)
    console.print(f"[green]✅ Delegate wallet for agent #{agent_id}:[/green] {address}")
    console.print("Register this address as the agent's delegate on the ledger.")


@vault.command("address")
@click.argument("agent_id", type=int)
@click.pass_context
def vault_address(ctx: click.Context, agent_id: int) -> None:
    """Show the delegate address for AGENT_ID."""
    from src.execution.key_vault import KeyVault

    address = _with_store(ctx.obj["config"], lambda s: KeyVault(s).address(agent_id))
    if address is None:
        console.print(f"[yellow]No delegate wallet for agent #{agent_id}.[/yellow]")
        raise SystemExit(1)
    console.print(address)


@vault.command("export")
@click.argument("agent_id", type=int)
@click.confirmation_option(prompt="This prints a raw private key. Continue?")
@click.pass_context
def vault_export(ctx: click.Context, agent_id: int) -> None:
    """Print the delegate private key for AGENT_ID."""
    from src.execution.key_vault import KeyVault

    key = _with_store(ctx.obj["config"], lambda s: KeyVault(s).export_private_key(agent_id))
    if key is None:
        console.print(f"[yellow]No delegate wallet for agent #{agent_id}.[/yellow]")
        raise SystemExit(1)
    console.print(key, highlight=False)


@vault.command("delete")
@click.argument("agent_id", type=int)
@click.confirmation_option(prompt="Delete this delegate wallet? Funds it controls become unreachable.")
@click.pass_context
def vault_delete(ctx: click.Context, agent_id: int) -> None:
    """Remove the delegate wallet for AGENT_ID."""
    from src.execution.key_vault import KeyVault

    deleted = _with_store(ctx.obj["config"], lambda s: KeyVault(s).delete(agent_id))
    if deleted:
        console.print(f"[green]Deleted delegate wallet for agent #{agent_id}.[/green]")
    else:
        console.print(f"[yellow]No delegate wallet for agent #{agent_id}.[/yellow]")


@vault.command("list")
@click.pass_context
def vault_list(ctx: click.Context) -> None:
    """List delegate wallets (addresses only)."""
    from src.execution.key_vault import KeyVault

    wallets = _with_store(ctx.obj["config"], lambda s: KeyVault(s).list_wallets())

    table = Table(title=f"🔐 Delegate Wallets ({len(wallets)})")
    table.add_column("Agent", justify="right", style="cyan")
    table.add_column("Address")
    table.add_column("Created", style="dim")
    for w in wallets:
        table.add_row(str(w["agent_id"]), w["address"], _fmt_ts(w["created_at"]))
    console.print(table)


# ─── AUDIT ───────────────────────────────────────────────────────────

@cli.group()
def audit() -> None:
    """Audit trail commands."""


@audit.command("show")
@click.option("--agent", "agent_id", type=int, default=None, help="Filter by agent id")
@click.option("--action", default=None, help="Filter by action")
@click.option("--limit", default=50, help="Number of entries to show")
@click.pass_context
def audit_show(ctx: click.Context, agent_id: int | None, action: str | None, limit: int) -> None:
    """Show the most recent audit entries."""
    from src.storage.audit import AuditLog

    cfg: AppConfig = ctx.obj["config"]

    async def _load(store: EncryptedStore) -> list[Any]:
        trail = AuditLog(store, cfg.audit.max_entries)
        await trail.load()
        return trail.entries(agent_id=agent_id, action=action, limit=limit)  # type: ignore[arg-type]

    entries = _with_store(cfg, _load)

    table = Table(title=f"📜 Audit Trail ({len(entries)} shown)")
    table.add_column("Time", style="dim")
    table.add_column("Agent", justify="right")
    table.add_column("Action", style="cyan")
    table.add_column("Summary", max_width=80)
    for e in entries:
        style = "red" if e.action == "error" else None
        table.add_row(_fmt_ts(e.timestamp), str(e.agent_id), e.action, e.summary, style=style)
    console.print(table)


@audit.command("verify")
@click.pass_context
def audit_verify(ctx: click.Context) -> None:
    """Recompute every entry checksum."""
    from src.storage.audit import AuditLog

    cfg: AppConfig = ctx.obj["config"]

    async def _verify(store: EncryptedStore) -> tuple[int, int]:
        trail = AuditLog(store, cfg.audit.max_entries)
        await trail.load()
        return trail.verify_all()

    valid, invalid = _with_store(cfg, _verify)
    if invalid:
        console.print(f"[red]❌ {invalid} tampered entries ({valid} valid)[/red]")
        raise SystemExit(1)
    console.print(f"[green]✅ All {valid} entries verified[/green]")


# ─── STORE ───────────────────────────────────────────────────────────

@cli.group()
def store() -> None:
    """Encrypted store maintenance."""


@store.command("migrate")
@click.pass_context
def store_migrate(ctx: click.Context) -> None:
    """Move legacy plaintext records into the encrypted store (runs once)."""
    migrated = _with_store(ctx.obj["config"], lambda s: s.migrate_legacy())
    if migrated:
        console.print(f"[green]Migrated {migrated} legacy key(s).[/green]")
    else:
        console.print("Nothing to migrate.")


# ─── ANALYZE ─────────────────────────────────────────────────────────

@cli.command()
@click.option("--personality", type=click.Choice([p.value for p in Personality]),
              default=Personality.BALANCED.value)
@click.option("--price", "current_price", type=float, required=True, help="Current price")
@click.option("--target", "target_price", type=float, required=True, help="Market target price")
@click.option("--below", is_flag=True, help="Market resolves YES below the target")
@click.option("--hours-left", type=float, default=240.0, help="Hours until resolution")
@click.option("--yes-pool", type=float, default=0.0)
@click.option("--no-pool", type=float, default=0.0)
@click.option("--history", default="", help="Comma-separated recent prices, oldest first")
def analyze(
    personality: str,
    current_price: float,
    target_price: float,
    below: bool,
    hours_left: float,
    yes_pool: float,
    no_pool: float,
    history: str,
) -> None:
    """Score one market the way a running agent would."""
    from src.policy.signals import analyze_market

    now = time.time()
    prices = [float(x) for x in history.split(",") if x.strip()]
    result = analyze_market(
        Personality(personality),
        current_price=current_price,
        target_price=target_price,
        condition_above=not below,
        resolution_time=now + hours_left * 3600,
        yes_pool=yes_pool,
        no_pool=no_pool,
        price_history=prices,
        now=now,
    )

    table = Table(title=f"🧠 Analysis [{personality}]")
    table.add_column("Signal", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in result.signals.to_dict().items():
        table.add_row(name, str(value))
    table.add_row("direction", result.direction_label, style="bold")
    table.add_row("confidence", f"{result.confidence}%", style="bold")
    console.print(table)


# ─── PRICES ──────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def prices(ctx: click.Context) -> None:
    """Fetch a price for every data source."""
    from src.connectors.price_oracle import PriceOracle

    cfg: AppConfig = ctx.obj["config"]

    async def _fetch() -> list[Any]:
        oracle = PriceOracle(cfg.oracle)
        try:
            return await oracle.fetch_all_prices()
        finally:
            await oracle.close()

    results = _run(_fetch())

    table = Table(title=f"💹 Oracle Prices ({len(results)})")
    table.add_column("ID", justify="right", style="dim")
    table.add_column("Symbol", style="cyan")
    table.add_column("Price", justify="right", style="green")
    table.add_column("Source")
    for r in results:
        src = get_data_source(r.source_id)
        table.add_row(
            str(r.source_id),
            src.symbol if src else "?",
            f"{r.price:,.4f}",
            "[yellow]simulated[/yellow]" if r.simulated else "live",
        )
    console.print(table)


if __name__ == "__main__":
    cli()
