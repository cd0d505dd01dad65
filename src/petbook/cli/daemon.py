"""Daemon commands: run, status."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel

from ._common import PETBOOK_HOME, console, format_uptime, home_path, yes_no


def register_daemon_commands(main: click.Group) -> None:
    """Register the run and status commands."""

    @main.command("run")
    @click.option("--home", default=PETBOOK_HOME, type=click.Path(), help="Petbook home directory.")
    @click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
    def run(home: str, verbose: bool):
        """Run the daemon in the foreground.

        This is what the launchd / systemd service starts. Stops on
        SIGINT or SIGTERM after marking the device offline.
        """
        from ..config import load_settings
        from ..daemon import Daemon, read_pid, setup_logging

        root = home_path(home)
        pid = read_pid(root)
        if pid is not None:
            console.print(f"[yellow]Daemon is already running (PID {pid}).[/]")
            sys.exit(0)

        log_file = setup_logging(root, verbose)
        settings = load_settings(root)
        console.print(f"\n  [green]Starting petbook daemon[/]  [dim]log: {log_file}[/]\n")
        sys.exit(Daemon(settings, root).run())

    @main.command("status")
    @click.option("--home", default=PETBOOK_HOME, type=click.Path(), help="Petbook home directory.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(home: str, json_out: bool):
        """Show pairing, OpenClaw and daemon status."""
        from ..auth import AuthStore
        from ..config import load_settings, resolve_openclaw_home
        from ..daemon import read_pid, read_status
        from ..device import DevicePaths
        from ..local_state import LocalStateStore
        from ..service import service_status

        root = home_path(home)
        settings = load_settings(root)
        auth = AuthStore(root).load()
        local = LocalStateStore(resolve_openclaw_home(settings))
        pid = read_pid(root)
        snapshot = read_status(root) if pid is not None else None
        service = service_status()

        if json_out:
            click.echo(
                json.dumps(
                    {
                        "paired": auth is not None,
                        "uid": auth.uid if auth else None,
                        "pet_id": auth.pet_id if auth else None,
                        "openclaw_home": str(local.home),
                        "has_openclaw": local.has_openclaw,
                        "pid": pid,
                        "service": service,
                        "daemon": snapshot,
                    },
                    indent=2,
                )
            )
            return

        if auth is None:
            pairing = "[bold red]Not paired[/]"
        else:
            device_path = DevicePaths(auth.uid, auth.pet_id, settings.device_root).device
            pairing = (
                f"Account: [bold]{auth.email or auth.uid}[/]\n"
                f"Pet: [bold]{auth.pet_name or auth.pet_id}[/] [dim]({auth.pet_id})[/]\n"
                f"Document: [dim]{device_path}[/]"
            )
        console.print()
        console.print(Panel(pairing, title="Pairing", border_style="cyan"))
        console.print(
            Panel(
                f"Home: {local.home}\n"
                f"Installed: {yes_no(local.has_openclaw)}",
                title="OpenClaw",
                border_style="cyan",
            )
        )

        if pid is None:
            body = "[yellow]Not running[/]"
            border = "yellow"
        else:
            snapshot = snapshot or {}
            body = (
                f"PID: [bold]{pid}[/]\n"
                f"Uptime: [bold]{format_uptime(snapshot.get('uptime_seconds', 0))}[/]\n"
                f"Heartbeats: [bold]{snapshot.get('heartbeats', 0)}[/]\n"
                f"Last heartbeat: {snapshot.get('last_heartbeat') or '[dim]never[/]'}"
            )
            border = "green"
        body += f"\nService: {service}"
        console.print(Panel(body, title="Daemon", border_style=border))
        console.print()
