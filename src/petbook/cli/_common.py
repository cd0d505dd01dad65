"""Shared utilities for the CLI command modules."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

from .. import PETBOOK_HOME

console = Console()
logger = logging.getLogger("petbook.cli")


def home_path(home: str) -> Path:
    return Path(home).expanduser()


def format_uptime(seconds: float) -> str:
    """Render seconds as ``1h 2m 3s`` (hours omitted when zero)."""
    h, remainder = divmod(int(seconds), 3600)
    m, s = divmod(remainder, 60)
    return f"{h}h {m}m {s}s" if h else f"{m}m {s}s"


def yes_no(value: bool) -> str:
    return "[green]yes[/]" if value else "[yellow]no[/]"


__all__ = ["PETBOOK_HOME", "console", "format_uptime", "home_path", "logger", "yes_no"]
