"""
CLI interface for Tip Escrow.

Provides command-line access for operators: registering media, posting
tips, matching artists and processing payouts.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tip_escrow.config.loader import resolve_escrow_config
from tip_escrow.core.errors import EscrowError, InsufficientBalance, NotEligible
from tip_escrow.core.money import format_pence
from tip_escrow.sdk.escrow_service import EscrowService
from tip_escrow.storage.db import DEFAULT_DB_PATH
from tip_escrow.storage.models import (
    OwnerRef,
    PayoutRequest,
    TipEvent,
    UnverifiedArtist,
    VerifiedArtist,
)

app = typer.Typer()
console = Console()

DB_ENV_VAR = "TIP_ESCROW_DB"

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_state = {"db_path": None, "config_path": None}


def get_service() -> EscrowService:
    """Build the service from CLI options or environment."""
    db_path = _state["db_path"] or os.environ.get(DB_ENV_VAR) or DEFAULT_DB_PATH
    config = resolve_escrow_config(_state["config_path"])
    return EscrowService(db_path=db_path, config=config)


def parse_owner(text: str, channel_id: Optional[str] = None) -> Tuple[OwnerRef, str]:
    """Parse ``artist:<id>=<share>`` or ``name:<artist name>=<share>``.

    Shares are decimals (``0.6``) or fractions (``2/3``). ``name:`` owners are
    tagged with ``channel_id`` so they can later be matched by channel.
    """
    if "=" not in text or ":" not in text:
        raise typer.BadParameter(f"Owner must look like artist:<id>=<share> or name:<name>=<share>: {text}")
    ref, share = text.rsplit("=", 1)
    kind, value = ref.split(":", 1)
    kind = kind.strip().lower()
    value = value.strip()
    if not value:
        raise typer.BadParameter(f"Owner is missing an id or name: {text}")
    if kind == "artist":
        return VerifiedArtist(artist_id=value), share.strip()
    if kind == "name":
        return UnverifiedArtist.from_name(value, channel_id), share.strip()
    raise typer.BadParameter(f"Unknown owner kind '{kind}' (use artist or name)")


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help=f"SQLite database path (or ${DB_ENV_VAR})"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Escrow policy YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log ledger activity"),
):
    """Tip Escrow CLI."""
    _state["db_path"] = db
    _state["config_path"] = config
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    if ctx.invoked_subcommand is None:
        console.print("Tip Escrow - Use --help to see available commands")


@app.command()
def init():
    """Initialize the escrow ledger database."""
    try:
        get_service()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("register-media")
def register_media(
    media_id: str = typer.Argument(..., help="Media identifier"),
    artist_name: str = typer.Option(..., "--artist-name", "-a", help="Artist name as shown on the media"),
    owner: List[str] = typer.Option([], "--owner", "-o", help="artist:<id>=<share> or name:<name>=<share>"),
    title: str = typer.Option("", "--title", "-t", help="Media title"),
    channel_id: Optional[str] = typer.Option(None, "--channel-id", help="Platform channel id"),
    featured: List[str] = typer.Option([], "--featured", "-f", help="Featured artist name (repeatable)"),
):
    """Register a media item and its owners."""
    owners = [parse_owner(text, channel_id) for text in owner]
    try:
        resolved = get_service().register_media(
            media_id, artist_name, owners, title, channel_id, featured
        )
    except (EscrowError, ValueError) as e:
        _fail(str(e))

    table = Table(title=f"Ownership of {media_id}")
    table.add_column("Owner")
    table.add_column("Kind")
    table.add_column("Share", justify="right")
    for ref, share in resolved.shares:
        name = ref.display_name if isinstance(ref, UnverifiedArtist) else ref.artist_id
        table.add_row(name, ref.kind.value, str(share))
    console.print(table)
    if resolved.unresolved:
        console.print("[yellow]No owners registered; tips will be held unclaimed[/]")


@app.command()
def tip(
    tip_id: str = typer.Argument(..., help="Tip identifier (idempotency key)"),
    media_id: str = typer.Argument(..., help="Media that was tipped"),
    amount: int = typer.Argument(..., help="Tip amount in pence"),
    bidder: str = typer.Option("cli", "--bidder", "-b", help="Bidder identifier"),
):
    """Allocate a confirmed tip into escrow."""
    event = TipEvent(
        tip_id=tip_id,
        media_id=media_id,
        bidder_id=bidder,
        amount=amount,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        result = get_service().allocate(event)
    except (EscrowError, ValueError) as e:
        _fail(str(e))

    if result.duplicate:
        console.print(f"[yellow]Tip {tip_id} was already allocated; nothing changed[/]")

    table = Table(title=f"Allocation for tip {tip_id}")
    table.add_column("Owner")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    for record in result.records:
        ref = record.owner_ref
        name = ref.artist_id if isinstance(ref, VerifiedArtist) else f"{ref.display_name} (unclaimed)"
        table.add_row(name, record.status.value, format_pence(record.amount))
    console.print(table)
    console.print(f"Artist pool: {format_pence(result.artist_pool)}")
    console.print(f"Platform fee: {format_pence(result.platform_fee)}")


@app.command()
def info(
    artist_id: str = typer.Argument(..., help="Verified artist id"),
    artist_name: Optional[str] = typer.Option(None, "--artist-name", "-a", help="Show claimable pool entries"),
    channel_id: Optional[str] = typer.Option(None, "--channel-id", help="Show claimable pool entries"),
    limit: int = typer.Option(20, "--limit", "-n", help="History rows"),
):
    """Show an artist's escrow balance, history and eligibility."""
    escrow = get_service().get_escrow_info(artist_id, artist_name, channel_id, limit)

    console.print(f"\n[bold]Escrow for {artist_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Balance: {format_pence(escrow.balance)}")
    console.print(f"Total earned: {format_pence(escrow.total_escrow_earned)}")
    console.print(f"Earned at last payout: {format_pence(escrow.last_payout_total_earned)}")
    _print_eligibility(escrow.eligibility)

    if escrow.history:
        table = Table(title="History")
        table.add_column("Allocated")
        table.add_column("Media")
        table.add_column("Status")
        table.add_column("Amount", justify="right")
        for entry in escrow.history:
            title = entry.media.title if entry.media and entry.media.title else entry.record.media_id
            table.add_row(
                entry.record.allocated_at.strftime("%Y-%m-%d %H:%M"),
                title,
                entry.record.status.value,
                format_pence(entry.record.amount),
            )
        console.print(table)

    if escrow.unclaimed_candidates:
        total = sum(record.amount for record in escrow.unclaimed_candidates)
        console.print(
            f"\n[bold]{len(escrow.unclaimed_candidates)} unclaimed allocation(s)[/bold] "
            f"totalling {format_pence(total)} can be matched to this artist"
        )


@app.command()
def match(
    artist_id: str = typer.Argument(..., help="Verified artist id"),
    artist_name: str = typer.Argument(..., help="Verified artist name"),
    channel_id: Optional[str] = typer.Option(None, "--channel-id", help="Verified platform channel id"),
):
    """Move unclaimed allocations to a verified artist."""
    try:
        result = get_service().match(artist_id, artist_name, channel_id)
    except (EscrowError, ValueError) as e:
        _fail(str(e))

    if result.matched:
        console.print(
            f"[green]✓[/] Matched {result.matched_count} allocation(s) "
            f"totalling {format_pence(result.matched_total)}"
        )
    else:
        console.print("No matching allocations found")


@app.command()
def eligibility(
    artist_id: str = typer.Argument(..., help="Verified artist id"),
    amount: Optional[int] = typer.Option(None, "--amount", help="Requested amount in pence"),
):
    """Check whether an artist may request a payout."""
    try:
        result = get_service().check_eligibility(artist_id, amount)
    except (EscrowError, ValueError) as e:
        _fail(str(e))
    _print_eligibility(result)
    sys.exit(EXIT_CODE_PASS if result.eligible else EXIT_CODE_FAIL)


@app.command("request-payout")
def request_payout(
    artist_id: str = typer.Argument(..., help="Verified artist id"),
    amount: Optional[int] = typer.Option(None, "--amount", help="Amount in pence (default: full balance)"),
    method: str = typer.Option("bank_transfer", "--method", "-m", help="Payout method"),
    details: Optional[str] = typer.Option(None, "--details", help="Method details as JSON"),
    request_id: Optional[str] = typer.Option(None, "--request-id", help="Idempotency key"),
):
    """Submit a payout request for manual processing."""
    try:
        parsed = json.loads(details) if details else {}
    except json.JSONDecodeError as e:
        _fail(f"--details must be valid JSON: {e}")

    try:
        request = get_service().request_payout(artist_id, amount, method, parsed, request_id)
    except NotEligible as e:
        _fail(f"{e.reason} ({format_pence(e.remaining_to_eligible)} remaining)")
    except InsufficientBalance as e:
        _fail(f"Requested {format_pence(e.requested)} exceeds balance of {format_pence(e.balance)}")
    except (EscrowError, ValueError) as e:
        _fail(str(e))

    console.print(f"[green]✓[/] Payout request {request.request_id} submitted")


@app.command("process-payout")
def process_payout(
    request_id: str = typer.Argument(..., help="Payout request id"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Operator notes"),
):
    """Confirm a payout was sent and debit the ledger."""
    try:
        request = get_service().process_payout(request_id, notes)
    except NotEligible as e:
        _fail(f"{e.reason} ({format_pence(e.remaining_to_eligible)} remaining)")
    except (EscrowError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Paid {format_pence(request.amount_paid)} to {request.artist_id}")


@app.command("reject-payout")
def reject_payout(
    request_id: str = typer.Argument(..., help="Payout request id"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Reason for rejection"),
):
    """Reject a submitted payout request."""
    try:
        get_service().reject_payout(request_id, notes)
    except (EscrowError, ValueError) as e:
        _fail(str(e))
    console.print(f"Payout request {request_id} rejected")


@app.command()
def payouts(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="submitted, processed or rejected"),
    artist_id: Optional[str] = typer.Option(None, "--artist", help="Filter by artist id"),
):
    """List payout requests, newest first."""
    try:
        requests = get_service().list_payout_requests(artist_id, status)
    except ValueError as e:
        _fail(str(e))
    _print_payouts(requests)


@app.command()
def stats():
    """Show ledger-wide escrow totals."""
    service = get_service()
    totals = service.stats()

    console.print("\n[bold]Escrow Statistics[/bold]")
    console.print("-" * 40)
    console.print(f"Unclaimed pool: {format_pence(totals.unclaimed_total)} ({totals.unclaimed_count} allocations)")
    console.print(f"Pending for verified artists: {format_pence(totals.pending_verified_total)}")
    console.print(f"Claimed (paid out): {format_pence(totals.claimed_total)}")
    console.print(f"Artists with balance: {totals.artists_with_balance}")
    console.print(f"Platform fees: {format_pence(totals.platform_fee_total)}")

    pool = service.unclaimed_totals()
    if pool:
        table = Table(title="Unclaimed by artist name")
        table.add_column("Artist")
        table.add_column("Allocations", justify="right")
        table.add_column("Total", justify="right")
        for _, name, count, total in pool:
            table.add_row(name, str(count), format_pence(total))
        console.print(table)


@app.command()
def audit():
    """Verify record hashes and reconcile cached balances."""
    report = get_service().audit()
    if report.ok:
        console.print("[green]✓[/] Ledger integrity verified")
        sys.exit(EXIT_CODE_PASS)

    for allocation_id in report.tampered_allocations:
        console.print(f"[red]Tampered allocation:[/] {allocation_id}")
    for request_id in report.tampered_payouts:
        console.print(f"[red]Tampered payout request:[/] {request_id}")
    for artist_id in report.drifted_accounts:
        console.print(f"[red]Balance drift:[/] {artist_id}")
    sys.exit(EXIT_CODE_FAIL)


def _print_eligibility(result) -> None:
    if result.eligible:
        console.print("[bold green]Payout Eligible[/]")
    else:
        console.print(f"[bold yellow]Payout Not Yet Eligible[/] ({result.message})")
        if result.remaining_to_eligible:
            console.print(f"Remaining to eligible: {format_pence(result.remaining_to_eligible)}")


def _print_payouts(requests: List[PayoutRequest]) -> None:
    if not requests:
        console.print("No payout requests")
        return
    table = Table(title="Payout requests")
    table.add_column("Request")
    table.add_column("Artist")
    table.add_column("Requested", justify="right")
    table.add_column("Paid", justify="right")
    table.add_column("Method")
    table.add_column("Status")
    for request in requests:
        table.add_row(
            request.request_id,
            request.artist_id,
            format_pence(request.amount_requested) if request.amount_requested else "full balance",
            format_pence(request.amount_paid) if request.amount_paid is not None else "-",
            request.method.value,
            request.status.value,
        )
    console.print(table)


if __name__ == "__main__":
    app()
