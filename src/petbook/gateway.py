"""
Gateway control -- finding and driving the ``openclaw`` CLI.

Service managers start the daemon with a minimal PATH, so binaries are
looked up in the usual Node install locations before falling back to
PATH:

    1. nvm      ~/.nvm/versions/node/<newest>/bin
    2. fnm      ~/.local/share/fnm/node-versions/<newest>/installation/bin
    3. volta    ~/.volta/bin
    4. common   /opt/homebrew/bin, /usr/local/bin, ~/.local/bin, ~/bin, /usr/bin
    5. PATH

The binary's own directory is put first on PATH when it runs, so it
picks up the matching ``node``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from . import PetbookError
from .models import now_iso

logger = logging.getLogger("petbook.gateway")

OPENCLAW_BIN = "openclaw"
RESTART_TIMEOUT = 30.0
VERSION_TIMEOUT = 60.0


class GatewayError(PetbookError):
    """Raised when the local gateway cannot be reached or controlled."""


def _version_key(name: str) -> tuple[int, ...]:
    parts = []
    for piece in name.lstrip("v").split("."):
        try:
            parts.append(int(piece))
        except ValueError:
            parts.append(0)
    return tuple(parts)


def _newest_versions(base: Path) -> list[Path]:
    try:
        entries = [p for p in base.iterdir() if p.name.startswith("v")]
    except OSError:
        return []
    return sorted(entries, key=lambda p: _version_key(p.name), reverse=True)


def candidate_dirs(home: Optional[Path] = None) -> list[Path]:
    """Directories searched for Node-installed binaries, in order."""
    home = home or Path.home()
    dirs = [v / "bin" for v in _newest_versions(home / ".nvm/versions/node")]
    for fnm_base in (
        home / ".local/share/fnm/node-versions",
        home / "Library/Application Support/fnm/node-versions",
    ):
        dirs.extend(v / "installation/bin" for v in _newest_versions(fnm_base))
    dirs.append(home / ".volta/bin")
    dirs.extend(
        [
            Path("/opt/homebrew/bin"),
            Path("/usr/local/bin"),
            home / ".local/bin",
            home / "bin",
            Path("/usr/bin"),
        ]
    )
    return dirs


def find_bin(name: str, home: Optional[Path] = None) -> Optional[str]:
    """Locate an executable, or None."""
    for directory in candidate_dirs(home):
        path = directory / name
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
    return shutil.which(name)


def env_for_bin(bin_path: str) -> dict[str, str]:
    """Process environment with the binary's directory first on PATH."""
    env = dict(os.environ)
    env["PATH"] = os.pathsep.join([str(Path(bin_path).parent), env.get("PATH", "")])
    return env


@dataclass
class CommandResult:
    """Outcome of a finished subprocess."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    args: Sequence[str],
    timeout: float,
    env: Optional[dict[str, str]] = None,
    cwd: Optional[Path] = None,
) -> CommandResult:
    """Run a subprocess without blocking the loop.

    Raises:
        GatewayError: If it cannot start or exceeds ``timeout``.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            cwd=str(cwd) if cwd else None,
        )
    except OSError as exc:
        raise GatewayError(f"cannot run {args[0]}: {exc}") from exc
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise GatewayError(f"{args[0]} timed out after {timeout:.0f}s") from exc
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode("utf-8", "replace"),
        stderr=err.decode("utf-8", "replace"),
    )


async def openclaw_version() -> str:
    """Installed OpenClaw version, or "" when unknown."""
    bin_path = find_bin(OPENCLAW_BIN)
    if not bin_path:
        return ""
    try:
        result = await run_command(
            [bin_path, "--version"], timeout=VERSION_TIMEOUT, env=env_for_bin(bin_path)
        )
    except GatewayError as exc:
        logger.debug("Version check failed: %s", exc)
        return ""
    return result.stdout.strip() if result.ok else ""


class Gateway:
    """Restarts the local OpenClaw gateway.

    Args:
        on_restart: Awaited with the ISO timestamp after a successful
            restart, e.g. to record ``lastGatewayRestart``.
    """

    def __init__(self, on_restart: Optional[Callable[[str], Awaitable[Any]]] = None):
        self.on_restart = on_restart

    async def restart(self) -> bool:
        """Run ``openclaw gateway restart``. Never raises.

        Returns:
            True if the command succeeded.
        """
        bin_path = find_bin(OPENCLAW_BIN)
        if not bin_path:
            logger.warning("openclaw binary not found; gateway not restarted")
            return False

        logger.info("Restarting gateway")
        try:
            result = await run_command(
                [bin_path, "gateway", "restart"],
                timeout=RESTART_TIMEOUT,
                env=env_for_bin(bin_path),
            )
        except GatewayError as exc:
            logger.error("Gateway restart failed: %s", exc)
            return False
        if not result.ok:
            logger.error("Gateway restart failed: %s", result.stderr.strip() or result.returncode)
            return False

        logger.info("Gateway restarted")
        if self.on_restart is not None:
            try:
                await self.on_restart(now_iso())
            except Exception as exc:
                logger.warning("Could not record gateway restart: %s", exc)
        return True
