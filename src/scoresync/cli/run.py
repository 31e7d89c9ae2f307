"""Run command: the foreground sync agent."""

from __future__ import annotations

import click

from ._common import SCORESYNC_HOME, build_client, console


def register_run_commands(main: click.Group) -> None:
    """Register the run command."""

    @main.command("run")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def run(home):
        """Monitor connectivity and sync in the background until interrupted."""
        client = build_client(home)
        config = client.config
        console.print(
            f"\n  [bold]scoresync[/] syncing to [cyan]{config.server_url}[/] "
            f"every {config.sync_interval_seconds}s. Ctrl-C to stop.\n"
        )
        client.run_forever()
        console.print("  [dim]Stopped.[/]\n")
