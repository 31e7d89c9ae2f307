"""Sync commands: now, status, conflicts, resolve, resolve-all."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import SCORESYNC_HOME, build_client, console, status_text
from ..models import RecordState
from ..sync.models import SyncStatus


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Upload locally recorded scores."""

    @sync.command("now")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def sync_now(home):
        """Run one sync cycle in the foreground."""
        client = build_client(home)
        console.print("\n  Syncing...", end=" ")
        snapshot = client.engine.perform_sync()
        if snapshot is None:
            console.print("[yellow]another sync is already running[/]\n")
            return

        console.print(status_text(snapshot.status))
        console.print(f"  {snapshot.message}")
        console.print(f"  [dim]Pending: {snapshot.pending_count}[/]")
        for conflict in client.engine.pending_conflicts():
            console.print(
                f"  [yellow]{conflict.conflict_type.value}[/] "
                f"{conflict.score_id}: {conflict.message}"
            )
        console.print()
        if snapshot.status == SyncStatus.ERROR:
            sys.exit(1)

    @sync.command("status")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def sync_status(home):
        """Show local record counts by sync state."""
        client = build_client(home)
        counts = client.store.count_by_state()

        table = Table(title="Local scores", show_lines=False)
        table.add_column("State", style="bold")
        table.add_column("Records", justify="right")
        for state in RecordState:
            table.add_row(state.value, str(counts[state]))
        console.print()
        console.print(table)
        console.print(f"  [dim]Server: {client.config.server_url}[/]")
        console.print(f"  [dim]Device: {client.device.device_id[:12]}[/]\n")

    @sync.command("conflicts")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    @click.option("--limit", default=50, show_default=True, help="Max conflicts to list.")
    def sync_conflicts(home, limit):
        """List scores held back by unresolved server conflicts."""
        client = build_client(home)
        conflicts = client.store.open_conflicts(limit=limit)
        if not conflicts:
            console.print("\n  [green]No conflicts.[/]\n")
            return

        table = Table(title="Conflicts")
        table.add_column("Score", style="cyan", no_wrap=True)
        table.add_column("Game")
        table.add_column("Type", style="yellow", no_wrap=True)
        table.add_column("Detected")
        table.add_column("Reason")
        for conflict in conflicts:
            record = client.store.get(conflict.score_id)
            table.add_row(
                conflict.score_id,
                record.game_id if record else "?",
                conflict.conflict_type.value,
                conflict.detected_at.strftime("%Y-%m-%d %H:%M"),
                conflict.message,
            )
        console.print()
        console.print(table)
        console.print(
            "  [dim]Resolve with 'scoresync sync resolve SCORE_ID --by NAME' "
            "(add --keep-server to drop the local copy).[/]\n"
        )

    @sync.command("resolve")
    @click.argument("score_id")
    @click.option("--by", "resolved_by", required=True, help="Who is resolving the conflict.")
    @click.option(
        "--keep-server",
        is_flag=True,
        help="Keep the server's copy and mark the local score synced.",
    )
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def sync_resolve(score_id, resolved_by, keep_server, home):
        """Resolve the open conflict for SCORE_ID.

        Without --keep-server the local score is uploaded again on the
        next sync.
        """
        client = build_client(home)
        if not client.engine.resolve_conflict(score_id, resolved_by, accept_server=keep_server):
            console.print(f"[bold red]No open conflict for[/] {score_id}")
            sys.exit(1)
        outcome = "server copy kept" if keep_server else "will retry on next sync"
        console.print(f"\n  [green]Resolved[/] {score_id}: {outcome}\n")

    @sync.command("resolve-all")
    @click.option("--by", "resolved_by", required=True, help="Who is resolving the conflicts.")
    @click.option(
        "--keep-server",
        is_flag=True,
        help="Keep the server's copies and mark the local scores synced.",
    )
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def sync_resolve_all(resolved_by, keep_server, home):
        """Resolve every open conflict the same way."""
        client = build_client(home)
        count = client.engine.resolve_all_conflicts(resolved_by, accept_server=keep_server)
        if not count:
            console.print("\n  [green]No conflicts.[/]\n")
            return
        outcome = "server copies kept" if keep_server else "will retry on next sync"
        console.print(f"\n  [green]Resolved {count} conflict(s)[/]: {outcome}\n")
