"""OS service control for the petbook daemon.

Installing the service is the pairing tool's job; the daemon only needs
to restart itself after an upgrade and to report whether it is running.

    Linux   systemctl --user <cmd> petbook-daemon
    macOS   launchctl kickstart -k gui/<uid>/com.ohmypetbook.daemon
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys

logger = logging.getLogger("petbook.service")

SERVICE_NAME = "petbook-daemon"
LAUNCHD_LABEL = "com.ohmypetbook.daemon"


def _run(cmd: list[str], timeout: float = 10) -> subprocess.CompletedProcess:
    """Run a command and capture output.

    Args:
        cmd: Command and arguments.
        timeout: Seconds before giving up.

    Returns:
        CompletedProcess with stdout/stderr.
    """
    return subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)


def restart_service() -> bool:
    """Restart the daemon's OS service.

    Returns:
        bool: True if the restart command succeeded.
    """
    if sys.platform == "darwin":
        cmd = ["launchctl", "kickstart", "-k", f"gui/{os.getuid()}/{LAUNCHD_LABEL}"]
    elif sys.platform.startswith("linux"):
        cmd = ["systemctl", "--user", "restart", SERVICE_NAME]
    else:
        logger.warning("No service manager on %s; restart the daemon manually", sys.platform)
        return False
    try:
        r = _run(cmd)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.error("Service restart failed: %s", exc)
        return False
    if r.returncode != 0:
        logger.error("Service restart failed: %s", r.stderr.strip())
    return r.returncode == 0


def service_status() -> str:
    """One-word service state: active, inactive, failed or not installed."""
    try:
        if sys.platform == "darwin":
            r = _run(["launchctl", "list", LAUNCHD_LABEL])
            return "active" if r.returncode == 0 else "not installed"
        if sys.platform.startswith("linux"):
            r = _run(["systemctl", "--user", "is-active", SERVICE_NAME])
            state = r.stdout.strip()
            return state if state and state != "unknown" else "not installed"
    except (OSError, subprocess.SubprocessError):
        pass
    return "not installed"
