"""
Main CLI entry point.
Usage: pagepost [COMMAND]
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config.settings import settings
from src.cli.publish import app as publish_app
from src.logging_setup import configure_logging
from src.publish.calendar import (
    CalendarView,
    fetch_calendar,
    group_by_day,
    list_accounts,
    view_range,
)
from src.publish.graph import GraphAPIError, GraphClient
from src.publish.models import Platform
from src.publish.store import PersistenceError, open_schedule_store

app = typer.Typer(
    name="pagepost",
    help="📤 Publish and schedule posts to Facebook Pages and Instagram",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
)

console = Console()

app.add_typer(publish_app, name="publish", help="📤 Publish, schedule and run due posts")


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level."),
) -> None:
    configure_logging(log_level)


def _token(token: Optional[str]) -> str:
    value = token or settings.meta_user_access_token
    if not value:
        rprint("[red]No access token:[/red] pass --token or set META_USER_ACCESS_TOKEN.")
        raise typer.Exit(1)
    return value


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port", "-p"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Run the HTTP API (POST /api/publish and friends)."""
    import uvicorn

    rprint(f"[bold]pagepost API[/bold] on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(
        "src.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# accounts
# ---------------------------------------------------------------------------


@app.command()
def accounts(
    token: Optional[str] = typer.Option(None, "--token", help="Operator (user) access token."),
) -> None:
    """List the Facebook Pages (and linked Instagram accounts) you manage."""
    user_token = _token(token)

    async def _run():
        async with GraphClient() as graph:
            return await list_accounts(graph, user_token)

    try:
        found = asyncio.run(_run())
    except GraphAPIError as exc:
        rprint(f"[red]Graph API error:[/red] {exc}")
        raise typer.Exit(1)

    if not found:
        rprint("[yellow]No Pages found for this token.[/yellow]")
        return

    table = Table(title=f"📄 Pages — {len(found)} account(s)")
    table.add_column("Page ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Instagram")
    for a in found:
        ig = a.instagram_business_account
        table.add_row(
            a.id,
            a.display_name,
            f"@{ig.username} [dim]({ig.id})[/dim]" if ig and ig.username else (ig.id if ig else "—"),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# calendar
# ---------------------------------------------------------------------------


@app.command()
def calendar(
    view: CalendarView = typer.Option(CalendarView.WEEK, "--view", "-v"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="Anchor date YYYY-MM-DD (default: today)."),
    account: Optional[list[str]] = typer.Option(None, "--account", "-a", help="Limit to these Page ids."),
    token: Optional[str] = typer.Option(None, "--token", help="Operator (user) access token."),
) -> None:
    """Show published and scheduled posts for a week or month."""
    user_token = _token(token)
    try:
        anchor = dt.date.fromisoformat(date) if date else dt.date.today()
    except ValueError:
        rprint(f"[red]Invalid --date:[/red] {date!r}. Use YYYY-MM-DD.")
        raise typer.Exit(1)
    start, end = view_range(anchor, view)

    async def _run():
        async with GraphClient() as graph:
            found = await list_accounts(graph, user_token)
            if account:
                found = [a for a in found if a.id in account]
            with open_schedule_store(settings) as store:
                return await fetch_calendar(graph, found, start, end, user_token, store=store)

    try:
        items = asyncio.run(_run())
    except (GraphAPIError, PersistenceError) as exc:
        rprint(f"[red]Calendar failed:[/red] {exc}")
        raise typer.Exit(1)

    title = f"🗓  {start:%d/%m/%Y} – {end:%d/%m/%Y}"
    if not items:
        rprint(f"[yellow]{title}: nothing published or scheduled.[/yellow]")
        return

    table = Table(title=f"{title} — {len(items)} item(s)")
    table.add_column("Day", style="bold", width=10)
    table.add_column("Time", width=5)
    table.add_column("Account", style="cyan", width=18)
    table.add_column("Platform", width=9)
    table.add_column("Text (preview)", width=45)

    for day, by_account in group_by_day(items).items():
        for account_name, day_items in by_account.items():
            for item in day_items:
                icon = "📘" if item.platform == Platform.FACEBOOK else "📸"
                scheduled = " ⏳" if item.is_scheduled else ""
                table.add_row(
                    f"{day:%d/%m}",
                    f"{item.timestamp:%H:%M}",
                    account_name,
                    f"{icon}{scheduled}",
                    (item.text[:45] + "…") if len(item.text) > 45 else item.text,
                )
    console.print(table)


if __name__ == "__main__":
    app()
