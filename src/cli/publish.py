"""
Publishing CLI commands.

  pagepost publish post     --account … --text … --image …  — publish now (or --at …)
  pagepost publish queue    [--status …]                    — list stored Instagram schedules
  pagepost publish run-due  [--dry-run]                     — publish due Instagram schedules
  pagepost publish cancel   <id>                            — cancel a stored schedule
"""

from __future__ import annotations

import asyncio
import datetime as dt
import mimetypes
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.settings import settings
from src.composer import Composer
from src.publish.calendar import list_accounts
from src.publish.dispatcher import PublishDispatcher
from src.publish.graph import GraphAPIError, GraphClient
from src.publish.media import CloudinaryUploader, UploadError
from src.publish.models import (
    AccountResult,
    BadRequest,
    ImageFile,
    Platform,
    ScheduleStatus,
    Submission,
)
from src.publish.runner import ScheduledPostRunner
from src.publish.schedule import parse_instant
from src.publish.store import PersistenceError, open_schedule_store

console = Console()
app = typer.Typer(help="Publish to Facebook Pages and Instagram.")

_STATUS_EMOJI = {
    ScheduleStatus.SCHEDULED: "⏳",
    ScheduleStatus.PUBLISHING: "⚙️ ",
    ScheduleStatus.PUBLISHED: "✅",
    ScheduleStatus.FAILED: "❌",
    ScheduleStatus.CANCELLED: "🚫",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token(token: Optional[str]) -> str:
    value = token or settings.meta_user_access_token
    if not value:
        rprint("[red]No access token:[/red] pass --token or set META_USER_ACCESS_TOKEN.")
        raise typer.Exit(1)
    return value


def _format_dt(value: Optional[dt.datetime]) -> str:
    if value is None:
        return "—"
    return value.strftime("%d/%m/%Y %H:%M")


def _read_image(path: Path) -> ImageFile:
    if not path.exists():
        rprint(f"[red]File not found:[/red] {path}")
        raise typer.Exit(1)
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return ImageFile(filename=path.name, content_type=content_type, data=path.read_bytes())


def _result_cell(result) -> str:
    if result is None:
        return "[dim]—[/dim]"
    if result.success:
        label = "scheduled" if result.scheduled else "ok"
        return f"[green]✓ {label}[/green] [dim]{result.id or ''}[/dim]"
    return f"[red]✗ {result.error}[/red]"


def _print_results(results: list[AccountResult]) -> None:
    table = Table(title=f"📤 Publish results — {len(results)} account(s)")
    table.add_column("Account", style="cyan")
    table.add_column("Facebook")
    table.add_column("Instagram")
    for r in results:
        table.add_row(r.account_name, _result_cell(r.facebook), _result_cell(r.instagram))
    console.print(table)


async def _dispatch(submission: Submission) -> list[AccountResult]:
    async with GraphClient() as graph, CloudinaryUploader() as uploader:
        return await PublishDispatcher(graph, uploader).dispatch(submission)


async def _load_accounts(token: str):
    async with GraphClient() as graph:
        return await list_accounts(graph, token)


# ---------------------------------------------------------------------------
# post
# ---------------------------------------------------------------------------


@app.command()
def post(
    account: list[str] = typer.Option(..., "--account", "-a", help="Page id (repeat for several)."),
    text: str = typer.Option("", "--text", "-t", help="Caption shared by every target."),
    image: Optional[list[Path]] = typer.Option(
        None, "--image", "-i", help="Image file (repeat; order is carousel order)."
    ),
    facebook: str = typer.Option("feed", "--facebook", help="feed | story | none"),
    instagram: str = typer.Option("feed", "--instagram", help="feed | story | none"),
    at: Optional[str] = typer.Option(
        None, "--at", help='Schedule instant, ISO 8601 UTC, e.g. "2026-03-01T10:00Z"'
    ),
    token: Optional[str] = typer.Option(None, "--token", help="Operator (user) access token."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build the submission without sending."),
) -> None:
    """Publish (or schedule) one post to the selected Pages and Instagram accounts."""
    user_token = _token(token)
    try:
        accounts = asyncio.run(_load_accounts(user_token))
    except GraphAPIError as exc:
        rprint(f"[red]Could not load accounts:[/red] {exc}")
        raise typer.Exit(1)
    composer = Composer(accounts, max_images=settings.max_images)

    try:
        for account_id in account:
            composer.toggle_account(account_id)
            composer.set_placement(account_id, Platform.FACEBOOK, None if facebook == "none" else facebook)
            linked = any(a.instagram_id for a in accounts if a.id == account_id)
            composer.set_placement(
                account_id,
                Platform.INSTAGRAM,
                None if instagram == "none" or not linked else instagram,
            )
        composer.text = text
        composer.add_images([_read_image(p) for p in image or []])
        if at:
            composer.schedule(parse_instant(at))
        submission = composer.build_submission(user_token)
    except KeyError as exc:
        rprint(f"[red]Unknown account:[/red] {exc.args[0]}")
        raise typer.Exit(1)
    except (ValueError, BadRequest) as exc:
        rprint(f"[red]Invalid post:[/red] {exc}")
        raise typer.Exit(1)

    if dry_run:
        console.print(
            Panel(
                f"[bold]Accounts:[/bold] {', '.join(a.display_name for a in submission.accounts)}\n"
                f"[bold]Images:[/bold]   {len(submission.images)}\n"
                f"[bold]When:[/bold]     "
                f"{_format_dt(submission.scheduled_publish_time) + ' UTC' if submission.is_scheduled else 'now'}\n\n"
                + (submission.text[:500] + ("…" if len(submission.text) > 500 else "")),
                title="[yellow]DRY RUN — publish preview[/yellow]",
                border_style="yellow",
            )
        )
        rprint("[dim]No request sent.[/dim]")
        return

    with console.status("[bold]Publishing…"):
        try:
            results = asyncio.run(_dispatch(submission))
        except UploadError as exc:
            rprint(f"[red]Upload failed:[/red] {exc}")
            raise typer.Exit(1)

    _print_results(results)
    if any(
        r is not None and not r.success
        for res in results
        for r in (res.facebook, res.instagram)
    ):
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# queue
# ---------------------------------------------------------------------------


@app.command()
def queue(
    status: Optional[ScheduleStatus] = typer.Option(
        None, "--status", "-s", help="Filter by status (default: all)."
    ),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows."),
) -> None:
    """List stored Instagram schedule records."""
    with open_schedule_store(settings) as store:
        posts = store.list_all(status=status, limit=limit)
        stats = store.stats()

    if not posts:
        rprint("[yellow]No scheduled Instagram posts found.[/yellow]")
        if stats:
            rprint(f"[dim]{stats}[/dim]")
        return

    table = Table(title=f"📅 Scheduled Instagram posts — {len(posts)} item(s)")
    table.add_column("ID", style="dim", width=12)
    table.add_column("Account", style="cyan", width=18)
    table.add_column("Type", width=9)
    table.add_column("Scheduled (UTC)", width=18)
    table.add_column("Status", width=13)
    table.add_column("Caption (preview)", width=40)

    for p in posts:
        table.add_row(
            p.id,
            p.account_name or p.account_id,
            p.media_type.value,
            _format_dt(p.scheduled_publish_time),
            f"{_STATUS_EMOJI.get(p.status, '')} {p.status.value}",
            (p.caption[:40] + "…") if len(p.caption) > 40 else p.caption,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# run-due
# ---------------------------------------------------------------------------


@app.command("run-due")
def run_due(
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run, without posting."),
    token: Optional[str] = typer.Option(None, "--token", help="Operator (user) access token."),
) -> None:
    """Publish every stored Instagram schedule whose time has come."""
    user_token = _token(token)

    async def _run():
        with open_schedule_store(settings) as store:
            async with GraphClient() as graph:
                return await ScheduledPostRunner(graph, store, user_token).run_due(dry_run=dry_run)

    try:
        outcomes = asyncio.run(_run())
    except (PersistenceError, GraphAPIError) as exc:
        rprint(f"[red]Run failed:[/red] {exc}")
        raise typer.Exit(1)

    if not outcomes:
        rprint("[green]✓ No posts due.[/green]")
        return

    for o in outcomes:
        if dry_run:
            rprint(f"  [cyan]{o.post_id}[/cyan]  {o.account_name}  [yellow][DRY RUN] would publish now[/yellow]")
        elif o.status == ScheduleStatus.PUBLISHED:
            rebuilt = " [dim](container rebuilt)[/dim]" if o.rebuilt else ""
            rprint(f"  [cyan]{o.post_id}[/cyan]  {o.account_name}  [green]✓ {o.media_id}[/green]{rebuilt}")
        else:
            rprint(f"  [cyan]{o.post_id}[/cyan]  {o.account_name}  [red]✗ Failed:[/red] {o.error}")


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------


@app.command()
def cancel(post_id: str = typer.Argument(..., help="Schedule record id")) -> None:
    """Cancel a stored Instagram schedule that has not run yet."""
    with open_schedule_store(settings) as store:
        cancelled = store.cancel(post_id)
    if not cancelled:
        rprint(f"[red]Not cancelled:[/red] {post_id} is unknown or no longer scheduled.")
        raise typer.Exit(1)
    rprint(f"[green]✓ Cancelled[/green] [cyan]{post_id}[/cyan]")
