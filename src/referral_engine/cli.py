"""Command-line interface for the referral engine."""

import asyncio
from datetime import timedelta
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from referral_engine.logging_config import configure_logging, get_logger
from referral_engine.referral.codes import generate_code as make_code
from referral_engine.referral.schemas import PremiumSource
from referral_engine.referral.service import ReferralService
from referral_engine.storage.db import Database
from referral_engine.storage.repository import SqlReferralStore, StorageError

logger = get_logger(__name__)

app = typer.Typer(
    name="referral-engine",
    help="Referral attribution and premium rewards",
    no_args_is_help=True,
)

console = Console()

DatabaseUrl = Annotated[
    str | None,
    typer.Option("--database-url", envvar="DATABASE_URL", help="Database URL (defaults to settings)"),
]


@app.callback()
def main(
    log_level: Annotated[str, typer.Option("--log-level", help="Log level")] = "WARNING",
) -> None:
    """Configure logging before any command runs."""
    configure_logging(level=log_level)


async def _with_service(database_url: str | None, action):
    database = Database(database_url)
    try:
        return await action(ReferralService(SqlReferralStore(database)), database)
    finally:
        await database.dispose()


@app.command("init")
def init_database(database_url: DatabaseUrl = None) -> None:
    """Initialize the database and create tables."""
    console.print("[bold blue]Initializing database...[/bold blue]")

    async def action(service: ReferralService, database: Database):
        await database.create_tables()

    asyncio.run(_with_service(database_url, action))
    console.print("[bold green]✓[/bold green] Database initialized successfully")


@app.command("generate-code")
def generate_code(
    user_id: Annotated[str, typer.Argument(help="User ID")],
    attempt: Annotated[int, typer.Option("--attempt", "-a", help="Retry number (0 keeps the user prefix)")] = 0,
) -> None:
    """Generate a candidate referral code (no uniqueness check)."""
    console.print(make_code(user_id, attempt))


@app.command("stats")
def show_stats(
    user_id: Annotated[str, typer.Argument(help="User ID")],
    database_url: DatabaseUrl = None,
) -> None:
    """Show referral statistics for a user."""

    async def action(service: ReferralService, database: Database):
        return await service.get_stats(user_id)

    try:
        stats = asyncio.run(_with_service(database_url, action))
    except StorageError as e:
        console.print(f"[bold red]✗[/bold red] Storage error: {e}")
        raise typer.Exit(1)

    if stats is None:
        console.print(f"[red]User {user_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]Code:[/bold] {stats.referral_code}")
    console.print(f"[bold]Link:[/bold] {stats.referral_link}")
    console.print(f"[bold]Completed referrals:[/bold] {stats.referral_count}")
    expires = stats.premium_expires_at.strftime("%Y-%m-%d %H:%M:%S") if stats.premium_expires_at else "never"
    source = stats.premium_source.value if stats.premium_source else "-"
    console.print(f"[bold]Premium:[/bold] {stats.premium_status.value} ({source}, expires {expires})")

    referrals = [*stats.pending_referrals, *stats.completed_referrals]
    if not referrals:
        console.print("[yellow]No referrals yet[/yellow]")
        return

    table = Table(title="Referrals")
    table.add_column("ID", style="cyan")
    table.add_column("Referred user")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Expires")
    for r in referrals:
        table.add_row(
            r.id,
            r.referred_user_id,
            r.status.value,
            r.created_at.strftime("%Y-%m-%d %H:%M"),
            r.expires_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("complete")
def complete(
    account_id: Annotated[str, typer.Argument(help="Shared account ID")],
    user_a_id: Annotated[str, typer.Argument(help="First member")],
    user_b_id: Annotated[str, typer.Argument(help="Second member")],
    database_url: DatabaseUrl = None,
) -> None:
    """Complete pending referrals for an account-pairing event."""

    async def action(service: ReferralService, database: Database):
        return await service.complete_referral(account_id, user_a_id, user_b_id)

    result = asyncio.run(_with_service(database_url, action))
    if not result.success:
        console.print(f"[bold red]✗[/bold red] Completion failed: {result.reason or result.error}")
        raise typer.Exit(1)

    console.print(f"[bold green]✓[/bold green] Completed referrals: {result.count}")
    for r in result.results:
        console.print(f"  {r.referral_id}: {r.status.value}" + (f" ({r.reason})" if r.reason else ""))


@app.command("sweep-expired")
def sweep_expired(database_url: DatabaseUrl = None) -> None:
    """Expire pending referrals whose attribution window has closed."""

    async def action(service: ReferralService, database: Database):
        return await service.cleanup_expired_referrals()

    try:
        count = asyncio.run(_with_service(database_url, action))
    except StorageError as e:
        console.print(f"[bold red]✗[/bold red] Sweep failed: {e}")
        raise typer.Exit(1)

    console.print(f"[bold green]✓[/bold green] Expired {count} referral(s)")


@app.command("award-premium")
def award_premium(
    user_id: Annotated[str, typer.Argument(help="User ID")],
    source: Annotated[PremiumSource, typer.Option("--source", "-s", help="Premium source")] = PremiumSource.SUBSCRIPTION,
    days: Annotated[int | None, typer.Option("--days", "-d", help="Duration in days (omit for forever)")] = None,
    database_url: DatabaseUrl = None,
) -> None:
    """Grant premium to a user (support action)."""

    async def action(service: ReferralService, database: Database):
        expires_at = service.clock() + timedelta(days=days) if days else None
        return await service.award_premium(user_id, source, expires_at)

    try:
        updated = asyncio.run(_with_service(database_url, action))
    except StorageError as e:
        console.print(f"[bold red]✗[/bold red] Award failed: {e}")
        raise typer.Exit(1)

    if not updated:
        console.print(f"[red]User {user_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[bold green]✓[/bold green] Premium awarded to {user_id} ({source.value})")


if __name__ == "__main__":
    app()
