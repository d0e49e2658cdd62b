"""
CLI interface for Access Guard.

Provides command-line access to plans, balances, usage history and the
renewal sweep.
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from access_guard.config.loader import AccessConfig, load_access_config
from access_guard.core.errors import StoreUnavailable
from access_guard.core.plans import PLAN_CATALOG, TOKEN_PACKAGES, SubscriptionPlan
from access_guard.core.subscription import SubscriptionManager
from access_guard.storage.db import DEFAULT_DB_PATH
from access_guard.storage.repository import SqliteSubscriptionStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", "-d", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file")


def _load_config(config_path: Optional[str]) -> AccessConfig:
    if config_path is None:
        return AccessConfig()
    return load_access_config(config_path)


def get_manager(db_path: str, config_path: Optional[str] = None) -> SubscriptionManager:
    """Build a subscription manager on the SQLite store at ``db_path``."""
    config = _load_config(config_path)
    return SubscriptionManager(
        SqliteSubscriptionStore(db_path),
        costs=config.token_costs,
        low_balance_threshold=config.subscription.low_balance_threshold,
    )


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Access Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Access Guard - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the Access Guard database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def plans():
    """List subscription plans and token packages."""
    table = Table(title="Subscription Plans")
    table.add_column("Plan")
    table.add_column("Name")
    table.add_column("Tokens / month", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Includes")
    for plan in SubscriptionPlan:
        details = PLAN_CATALOG.get_plan(plan)
        table.add_row(
            plan.value,
            details.name,
            f"{details.total_tokens:,}",
            _format_currency(details.monthly_price),
            ", ".join(details.features),
        )
    console.print(table)

    packages = Table(title="Token Packages")
    packages.add_column("Package")
    packages.add_column("Tokens", justify="right")
    packages.add_column("Price", justify="right")
    for package in TOKEN_PACKAGES.values():
        packages.add_row(package.id, f"{package.tokens:,}", _format_currency(package.price))
    console.print(packages)


@app.command()
def status(
    user_id: str = typer.Argument(..., help="User identifier"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Show a user's plan and token balance."""
    try:
        manager = get_manager(db, config)
        subscription, percent, low, state = asyncio.run(_status(manager, user_id))
    except (StoreUnavailable, ValueError, FileNotFoundError) as e:
        _fail(str(e))
        return

    _warn_if_degraded(manager, user_id)
    console.print(f"\n[bold]User:[/bold] {subscription.user_id}")
    console.print(f"Plan: {subscription.plan.details.name}")
    console.print(f"State: {state.value}")
    console.print(f"Tokens remaining: {subscription.tokens_remaining:,}")
    console.print(f"Tokens used: {subscription.tokens_used:,} ({percent}%)")
    if subscription.tokens_purchased:
        console.print(f"Tokens purchased this period: {subscription.tokens_purchased:,}")
    console.print(f"Next reset: {subscription.next_reset_at:%Y-%m-%d %H:%M} UTC")
    if low:
        console.print("[yellow]Balance is low - consider buying tokens or upgrading[/]")
    sys.exit(EXIT_CODE_PASS)


async def _status(manager: SubscriptionManager, user_id: str):
    subscription = await manager.get_or_create(user_id)
    percent = await manager.get_usage_percentage(user_id)
    low = await manager.is_low_on_tokens(user_id)
    state = await manager.state(user_id)
    return subscription, percent, low, state


@app.command()
def history(
    user_id: str = typer.Argument(..., help="User identifier"),
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum rows to show"),
    db: str = DB_OPTION,
):
    """Show a user's most recent token debits."""
    try:
        records = asyncio.run(get_manager(db).get_usage_history(user_id, limit))
    except (StoreUnavailable, ValueError) as e:
        _fail(str(e))
        return

    if not records:
        console.print(f"\n[bold yellow]No token usage recorded for {user_id}[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Token usage for {user_id}")
    table.add_column("When")
    table.add_column("Feature")
    table.add_column("Tokens", justify="right")
    table.add_column("Document")
    for record in records:
        table.add_row(
            f"{record.created_at:%Y-%m-%d %H:%M:%S}",
            record.feature.value,
            str(record.tokens_used),
            record.document_name or "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def renew(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Renew every subscription whose period has ended."""
    try:
        count = asyncio.run(get_manager(db, config).renew_due())
    except (StoreUnavailable, ValueError, FileNotFoundError) as e:
        _fail(str(e))
        return
    console.print(f"[green]✓[/] Renewed {count} subscription(s)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def purchase(
    user_id: str = typer.Argument(..., help="User identifier"),
    package_id: str = typer.Argument(..., help="Token package, e.g. tokens_100"),
    db: str = DB_OPTION,
):
    """Add a token package to a user's balance."""
    manager = get_manager(db)
    result = asyncio.run(manager.purchase_tokens(user_id, package_id))
    if not result.success:
        _fail(result.error or "Purchase failed")
        return
    if manager.is_degraded(user_id):
        _fail("Database unavailable - purchase was not recorded")
        return
    console.print(f"[green]✓[/] Added {TOKEN_PACKAGES[package_id].tokens:,} tokens to {user_id}")
    sys.exit(EXIT_CODE_PASS)


def _warn_if_degraded(manager: SubscriptionManager, user_id: str) -> None:
    if manager.is_degraded(user_id):
        console.print("[yellow]Warning: database unavailable, showing a local FREE subscription[/]")


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


if __name__ == "__main__":
    app()
