"""Shared utilities for all CLI command modules.

Provides the Rich console instance, status formatting helpers and the
client factory used by every command group.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console

from .. import SCORESYNC_HOME
from ..client import SyncClient
from ..config import load_config, setup_logging
from ..models import DeviceStatus
from ..sync.models import SyncStatus

console = Console()
logger = logging.getLogger("scoresync.cli")


def status_text(status: SyncStatus) -> str:
    """Rich markup for a sync status."""
    return {
        SyncStatus.IDLE: "[dim]IDLE[/]",
        SyncStatus.SYNCING: "[bold cyan]SYNCING[/]",
        SyncStatus.SUCCESS: "[bold green]SUCCESS[/]",
        SyncStatus.ERROR: "[bold red]ERROR[/]",
        SyncStatus.CONFLICT: "[bold yellow]CONFLICT[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def device_status_text(status: DeviceStatus) -> str:
    """Rich markup for a device approval status."""
    return {
        DeviceStatus.APPROVED: "[bold green]APPROVED[/]",
        DeviceStatus.PENDING: "[bold yellow]PENDING[/]",
        DeviceStatus.REJECTED: "[bold red]REJECTED[/]",
        DeviceStatus.REVOKED: "[bold red]REVOKED[/]",
    }.get(status, "[dim]UNREGISTERED[/]")


def build_client(home: Optional[str]) -> SyncClient:
    """Load config from ``home`` and build a client with file logging on."""
    home_path = Path(home or SCORESYNC_HOME).expanduser()
    config = load_config(home_path)
    setup_logging(home_path, config.log_level)
    return SyncClient(config, home=home_path)
