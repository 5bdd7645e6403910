"""nutledger CLI - NIP-60 ecash wallet backed by Nostr relays."""

import asyncio
import logging
from datetime import datetime
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import Settings
from .invoice import parse_invoice_amount
from .types import InsufficientFunds, MintError, RelayError, WalletError
from .wallet import Wallet

app = typer.Typer(
    name="nutledger",
    help="nutledger - NIP-60 Cashu wallet CLI",
    rich_markup_mode="markdown",
)
console = Console()


def load_settings(mint_urls: Optional[list[str]] = None) -> Settings:
    try:
        settings = Settings.from_env()
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(2)
    if mint_urls:
        settings.mint_urls = mint_urls
    if not settings.nsec:
        console.print("[red]NSEC is not set. Put it in the environment or a .env file.[/red]")
        raise typer.Exit(2)
    return settings


def handle_wallet_error(e: Exception) -> None:
    """Print a user-friendly message for wallet, mint and relay errors."""
    if isinstance(e, InsufficientFunds):
        console.print(f"[red]Insufficient balance: need {e.need}, have {e.have}[/red]")
    elif isinstance(e, MintError):
        console.print(f"[red]Mint error: {e}[/red]")
    elif isinstance(e, RelayError):
        console.print(f"[red]Relay error: {e}[/red]")
    else:
        console.print(f"[red]Error: {e}[/red]")


def run(coro) -> None:
    try:
        asyncio.run(coro)
    except (WalletError, MintError, RelayError, ValueError) as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


def print_balances(wallet: Wallet) -> None:
    table = Table(title="Balance by mint")
    table.add_column("Mint", style="cyan")
    table.add_column("Spendable", style="green", justify="right")
    table.add_column("Held", style="yellow", justify="right")
    held = wallet.state.ledger.held_balances()
    for url, amount in wallet.balances().items():
        table.add_row(url, str(amount), str(held.get(url, 0)))
    console.print(table)
    console.print(f"[bold]Total: {wallet.total_balance()} sats[/bold]")


# ──────────────────────────────────────────────────────────────────────────────
# Commands
# ──────────────────────────────────────────────────────────────────────────────


@app.command()
def init(
    mint_urls: Annotated[
        Optional[list[str]], typer.Option("--mint", "-m", help="Mint URLs")
    ] = None,
) -> None:
    """Publish the wallet event with the configured mints."""

    async def _init() -> None:
        settings = load_settings(mint_urls)
        async with await Wallet.from_settings(settings) as wallet:
            failed = await wallet.refresh_mints()
            for url in failed:
                console.print(f"[yellow]Could not reach mint {url}[/yellow]")
            descriptor = await wallet.publish_wallet()
            console.print(
                Panel(
                    "\n".join(descriptor.mints),
                    title=f"Wallet published ({descriptor.event_id})",
                    border_style="green",
                )
            )

    run(_init())


@app.command()
def balance(
    refresh: Annotated[
        bool, typer.Option("--refresh/--no-refresh", help="Reload mint keysets")
    ] = False,
) -> None:
    """Show the balance per mint."""

    async def _balance() -> None:
        async with await Wallet.from_settings(load_settings()) as wallet:
            if refresh:
                await wallet.refresh_mints()
            print_balances(wallet)
            for mint_url, keyset_id in sorted(wallet.state.ledger.unknown_keysets()):
                console.print(f"[yellow]Unknown keyset {keyset_id} at {mint_url}[/yellow]")

    run(_balance())


@app.command()
def sync() -> None:
    """Fetch new wallet events from relays."""

    async def _sync() -> None:
        async with await Wallet.from_settings(load_settings(), sync=False) as wallet:
            report = await wallet.sync()
            console.print(
                f"[green]Fetched {sum(report.fetched.values())} events, "
                f"{report.proofs_added} proofs added, "
                f"{report.proofs_dropped} dropped[/green]"
            )
            for event_id, reason in report.skipped:
                console.print(f"[yellow]Skipped {event_id[:12]}: {reason}[/yellow]")
            if wallet.pending_proofs:
                count = await wallet.flush_pending()
                console.print(f"[green]Published {count} pending proofs[/green]")
            print_balances(wallet)

    run(_sync())


@app.command()
def mints(
    remove: Annotated[
        Optional[str], typer.Option("--remove", help="Forget an empty mint")
    ] = None,
    use: Annotated[
        Optional[str], typer.Option("--use", help="Receive at this mint by default")
    ] = None,
) -> None:
    """List, remove or pick the default mint.

    Examples:
        nutledger mints                          # Show mints and the default one
        nutledger mints --use https://mint.host  # Receive there by default
        nutledger mints --remove https://old.host
    """

    async def _mints() -> None:
        async with await Wallet.from_settings(load_settings()) as wallet:
            if remove:
                await wallet.remove_mint(remove)
                console.print(f"[green]Removed mint {remove}[/green]")
            if use:
                wallet.set_active_mint(use)
            table = Table(title="Mints")
            table.add_column("Mint", style="cyan")
            table.add_column("Default", justify="center")
            table.add_column("Balance", justify="right")
            balances = wallet.balances()
            for url in wallet.mint_urls:
                marker = "*" if url == wallet.active_mint else ""
                table.add_row(url, marker, str(balances.get(url, 0)))
            console.print(table)

    run(_mints())


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Entries to show")] = 20,
) -> None:
    """Show the spending history."""

    async def _history() -> None:
        async with await Wallet.from_settings(load_settings()) as wallet:
            entries = wallet.history()[:limit]
            if not entries:
                console.print("[yellow]No history yet[/yellow]")
                return
            table = Table(title="Spending history")
            table.add_column("Date", style="cyan")
            table.add_column("Direction")
            table.add_column("Amount", justify="right")
            for entry in entries:
                style = "green" if entry.direction == "in" else "red"
                table.add_row(
                    datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M"),
                    f"[{style}]{entry.direction}[/{style}]",
                    str(entry.amount),
                )
            console.print(table)

    run(_history())


@app.command()
def invoice(
    amount: Annotated[int, typer.Argument(help="Amount in sats")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to receive at")
    ] = None,
) -> None:
    """Create a Lightning invoice and wait until it is paid."""

    async def _invoice() -> None:
        async with await Wallet.from_settings(load_settings()) as wallet:
            issued = await wallet.receive_lightning(amount, mint_url)
            console.print(Panel(issued.request, title=f"Pay {amount} sats", border_style="blue"))
            console.print("[blue]Waiting for payment... (Ctrl-C to cancel)[/blue]")
            try:
                proofs = await wallet.wait_for_payment()
            except asyncio.CancelledError:
                wallet.cancel_invoice()
                raise
            if proofs is None:
                console.print("[yellow]Invoice cancelled[/yellow]")
                return
            console.print(f"[green]Received {sum(p['amount'] for p in proofs)} sats[/green]")

    try:
        run(_invoice())
    except KeyboardInterrupt:
        console.print("\n[yellow]Invoice abandoned[/yellow]")
        raise typer.Exit(130)


@app.command()
def pay(
    bolt11: Annotated[str, typer.Argument(help="Lightning invoice (bolt11)")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to pay from")
    ] = None,
) -> None:
    """Pay a Lightning invoice."""

    async def _pay() -> None:
        async with await Wallet.from_settings(load_settings()) as wallet:
            console.print(f"Current balance: {wallet.total_balance()} sats")
            payment = await wallet.pay_lightning(bolt11, mint_url)
            console.print(
                f"[green]Paid {payment.amount} sats (fee {payment.fee_paid}) "
                f"from {payment.mint}[/green]"
            )
            console.print(f"Remaining balance: {wallet.total_balance()} sats")

    run(_pay())


@app.command()
def decode(bolt11: Annotated[str, typer.Argument(help="Lightning invoice (bolt11)")]) -> None:
    """Show the amount of a Lightning invoice."""
    amount = parse_invoice_amount(bolt11)
    if amount is None:
        console.print("[yellow]Invoice has no amount[/yellow]")
    else:
        console.print(f"{amount} sats")


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print(f"nutledger v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
    log_level: Annotated[
        Optional[str], typer.Option("--log-level", help="Override NUTLEDGER_LOG_LEVEL")
    ] = None,
) -> None:
    """nutledger - NIP-60 Cashu wallet CLI.

    Configuration is read from the environment or a `.env` file:
    `NSEC`, `CASHU_MINTS`, `NOSTR_RELAYS`, `NUTLEDGER_STATE_DIR`.
    """
    try:
        settings = Settings.from_env()
        if log_level:
            settings.log_level = log_level.upper()
        level = settings.log_level_number
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        raise typer.Exit(2)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def cli() -> None:
    """Entry point for the CLI."""
    app()
