"""
scoresync CLI -- inspect and drive the score sync client.

Each command group lives in its own module and is registered on the
main Click group below.

Entry point: scoresync.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="scoresync")
def main():
    """scoresync -- offline-first score sync client.

    Scores are kept locally and uploaded whenever the server is reachable.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .config_cmd import register_config_commands
from .device import register_device_commands
from .run import register_run_commands
from .sync_cmd import register_sync_commands

register_device_commands(main)
register_sync_commands(main)
register_run_commands(main)
register_config_commands(main)
