"""Config commands: show, init."""

from __future__ import annotations

from pathlib import Path

import click
import yaml

from ._common import SCORESYNC_HOME, console
from ..config import CONFIG_FILE, db_path_for, load_config, save_config


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Client configuration."""

    @config.command("show")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def config_show(home):
        """Print the effective configuration."""
        home_path = Path(home).expanduser()
        cfg = load_config(home_path)
        data = cfg.model_dump(mode="json")
        data["db_path"] = str(db_path_for(cfg, home_path))
        source = home_path / CONFIG_FILE
        label = str(source) if source.exists() else "defaults"
        console.print(f"\n  [dim]# {label}[/]")
        console.print(yaml.dump(data, default_flow_style=False, sort_keys=True))

    @config.command("init")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    @click.option("--server", default=None, help="Sync server URL.")
    def config_init(home, server):
        """Write a config file with defaults (and optionally a server URL)."""
        home_path = Path(home).expanduser()
        cfg = load_config(home_path)
        if server:
            cfg = cfg.model_copy(update={"server_url": server})
        path = save_config(cfg, home_path)
        console.print(f"\n  Config written to [cyan]{path}[/]\n")
