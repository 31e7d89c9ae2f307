"""Device commands: id, register, status."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel

from ._common import SCORESYNC_HOME, build_client, console, device_status_text
from ..device import default_device_name
from ..errors import ScoreSyncError
from ..hardware import HardwareIdentifier


def register_device_commands(main: click.Group) -> None:
    """Register the device command group."""

    @main.group()
    def device():
        """Device identity and registration."""

    @device.command("id")
    @click.option("--signals", is_flag=True, help="Also list the raw hardware signals.")
    def device_id(signals):
        """Show this machine's hardware-derived device id."""
        identifier = HardwareIdentifier()
        identity = identifier.identity()
        stability = "[green]stable[/]" if identity.stable else "[yellow]random fallback[/]"
        console.print(
            Panel(
                f"[bold]{identity.device_id}[/]\n"
                f"[dim]{identifier.hardware_summary()}[/]\n"
                f"Identity: {stability}",
                title="Device ID",
                border_style="cyan",
            )
        )
        if signals:
            for signal in identity.signals:
                console.print(f"  [dim]{signal}[/]")

    @device.command("register")
    @click.argument("code")
    @click.argument("name", required=False)
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def device_register(code, name, home):
        """Register this device with registration CODE under NAME.

        NAME defaults to the hostname and user.
        """
        name = name or default_device_name()
        client = build_client(home)
        try:
            record = client.device.register(code, name)
        except ScoreSyncError as exc:
            console.print(f"[bold red]Registration failed:[/] {exc}")
            sys.exit(1)
        console.print(
            f"\n  Device [cyan]{record.device_id[:12]}[/] registered as "
            f"[bold]{name}[/]: {device_status_text(record.status)}"
        )
        if not record.is_approved:
            console.print("  [dim]Ask staff to approve this device, then run "
                          "'scoresync device status'.[/]\n")

    @device.command("status")
    @click.option("--home", default=SCORESYNC_HOME, type=click.Path())
    def device_status(home):
        """Check the approval status with the server (cached when offline)."""
        client = build_client(home)
        status = client.device.check_approval_status()
        record = client.device.device
        console.print(f"\n  Device:  [cyan]{record.device_id[:12]}[/]")
        console.print(f"  Status:  {device_status_text(status)}")
        if record.student_id:
            console.print(f"  Student: {record.student_id}")
        if record.device_name:
            console.print(f"  Name:    {record.device_name}")
        console.print()
