"""
Petbook CLI -- run and inspect the device daemon.

Each command group lives in its own module and is attached to the
main Click group through a register function.

Entry point: petbook.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="petbook")
def main():
    """Petbook -- OpenClaw device daemon.

    Keeps this machine's OpenClaw in step with its pet on the dashboard.
    """


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .config_cmd import register_config_commands
from .daemon import register_daemon_commands
from .sync_cmd import register_sync_commands

register_daemon_commands(main)
register_config_commands(main)
register_sync_commands(main)
