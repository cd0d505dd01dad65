"""Sync command: one push of the local state, then exit."""

from __future__ import annotations

import asyncio
import sys

import click

from ._common import PETBOOK_HOME, console, home_path


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command."""

    @main.command("sync")
    @click.option("--home", default=PETBOOK_HOME, type=click.Path(), help="Petbook home directory.")
    @click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
    def sync(home: str, verbose: bool):
        """Push this device's OpenClaw state once.

        Useful right after pairing, or when the daemon is not running.
        """
        from ..config import load_settings
        from ..daemon import Daemon, setup_logging

        root = home_path(home)
        setup_logging(root, verbose)
        daemon = Daemon(load_settings(root), root)
        code = asyncio.run(daemon.sync_once())
        if code == 0:
            console.print("\n  [green]Pushed local state.[/]\n")
        else:
            console.print("\n  [bold red]Sync failed.[/] See the log for details.\n")
        sys.exit(code)
