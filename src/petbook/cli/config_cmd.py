"""Config command: show settings, point the daemon at an OpenClaw home."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
import yaml

from ._common import PETBOOK_HOME, console, home_path


def register_config_commands(main: click.Group) -> None:
    """Register the config command."""

    @main.command("config")
    @click.option("--home", default=PETBOOK_HOME, type=click.Path(), help="Petbook home directory.")
    @click.option(
        "--openclaw-path",
        type=click.Path(file_okay=False),
        default=None,
        help="Set the OpenClaw home directory.",
    )
    @click.option("--reset-openclaw-path", is_flag=True, help="Forget the OpenClaw home directory.")
    def config(home: str, openclaw_path: Optional[str], reset_openclaw_path: bool):
        """Show daemon settings, or change the OpenClaw home.

        Examples:

            petbook config

            petbook config --openclaw-path ~/work/openclaw
        """
        from ..config import load_settings, resolve_openclaw_home, save_settings

        root = home_path(home)
        settings = load_settings(root)

        if openclaw_path or reset_openclaw_path:
            value = Path(openclaw_path).expanduser() if openclaw_path else None
            settings = settings.model_copy(update={"openclaw_path": value})
            written = save_settings(settings, root)
            console.print(f"\n  [green]Saved[/] {written}")
            console.print("  [dim]Restart the daemon to apply.[/]")

        console.print(f"\n  OpenClaw home: [cyan]{resolve_openclaw_home(settings)}[/]\n")
        dump = settings.model_dump(mode="json", exclude_none=True)
        console.print(yaml.dump(dump, default_flow_style=False), markup=False)
