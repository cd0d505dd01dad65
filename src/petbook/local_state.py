"""
Local State Store -- the OpenClaw installation as files on disk.

    ~/.openclaw/
    ├── openclaw.json        # main config (one JSON document)
    ├── openclaw/            # auxiliary config files, synced by name
    ├── workspace/           # only the WORKSPACE_FILES allow-list syncs
    └── .env                 # materialized env vars and secrets (0600)

The store only reads and writes. It knows nothing about the network or
about echo suppression; the sync engine decides when a write is its own.
The LocalWatcher at the bottom polls these files and reports edits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .loop import wait_or_stop
from .models import LocalSnapshot

logger = logging.getLogger("petbook.local_state")

CONFIG_NAME = "openclaw.json"
AUX_DIR_NAME = "openclaw"
WORKSPACE_DIR_NAME = "workspace"
ENV_NAME = ".env"

WORKSPACE_FILES = (
    "AGENTS.md",
    "SOUL.md",
    "USER.md",
    "TOOLS.md",
    "IDENTITY.md",
    "HEARTBEAT.md",
)

CREDENTIAL_KEY = re.compile(r"key|token|secret|password", re.IGNORECASE)
MASK = "***"


def mask_credentials(value: Any) -> Any:
    """Return a copy of ``value`` with credential-shaped keys redacted.

    Any mapping key matching key/token/secret/password has its value
    replaced by ``***``, at every nesting level.
    """
    if isinstance(value, dict):
        return {
            k: MASK if CREDENTIAL_KEY.search(str(k)) else mask_credentials(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [mask_credentials(v) for v in value]
    return value


def parse_env(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines. Blank lines and ``#`` comments are skipped,
    matching single or double quotes around a value are stripped, and
    empty values are dropped."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if value:
            result[key] = value
    return result


def _is_plain_name(name: str) -> bool:
    return bool(name) and Path(name).name == name and name not in (".", "..")


@dataclass
class Detection:
    """Result of re-checking whether OpenClaw is installed."""

    has_openclaw: bool
    changed: bool


class LocalStateStore:
    """File-backed view of one OpenClaw installation.

    Args:
        openclaw_home: Root of the installation (usually ~/.openclaw).
    """

    def __init__(self, openclaw_home: Path):
        self.home = Path(openclaw_home).expanduser()
        self.config_file = self.home / CONFIG_NAME
        self.aux_dir = self.home / AUX_DIR_NAME
        self.workspace_dir = self.home / WORKSPACE_DIR_NAME
        self.env_file = self.home / ENV_NAME
        self._has_openclaw = self.config_file.exists()

    # -------------------------------------------------------------------
    # Installation detection
    # -------------------------------------------------------------------

    @property
    def has_openclaw(self) -> bool:
        """Cached installation flag, see refresh_detection()."""
        return self._has_openclaw

    def refresh_detection(self) -> Detection:
        """Re-check for openclaw.json and report whether that flipped."""
        found = self.config_file.exists()
        changed = found != self._has_openclaw
        self._has_openclaw = found
        if changed:
            logger.info("OpenClaw %s at %s", "detected" if found else "no longer present", self.home)
        return Detection(has_openclaw=found, changed=changed)

    # -------------------------------------------------------------------
    # Main config
    # -------------------------------------------------------------------

    def read_config(self) -> dict[str, Any]:
        """Read openclaw.json. Missing or unparsable files read as {}."""
        try:
            data = json.loads(self.config_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    def write_config(self, data: dict[str, Any]) -> None:
        self.home.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(
            json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        logger.info("Updated %s", self.config_file.name)

    # -------------------------------------------------------------------
    # Auxiliary directory
    # -------------------------------------------------------------------

    def read_aux_files(self) -> dict[str, str]:
        """Read every regular file in the auxiliary directory."""
        result: dict[str, str] = {}
        if not self.aux_dir.is_dir():
            return result
        for path in sorted(self.aux_dir.iterdir()):
            if not path.is_file():
                continue
            try:
                result[path.name] = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Skipping unreadable %s: %s", path, exc)
        return result

    def write_aux_files(self, files: dict[str, Any]) -> int:
        """Write auxiliary files by name. Returns the number written."""
        self.aux_dir.mkdir(parents=True, exist_ok=True)
        written = 0
        for name, content in files.items():
            if not _is_plain_name(name) or not isinstance(content, str):
                logger.warning("Ignoring auxiliary entry %r", name)
                continue
            (self.aux_dir / name).write_text(content, encoding="utf-8")
            written += 1
        logger.info("Updated %s/ (%d files)", AUX_DIR_NAME, written)
        return written

    # -------------------------------------------------------------------
    # Workspace
    # -------------------------------------------------------------------

    def read_workspace(self) -> dict[str, str]:
        """Read the workspace allow-list; missing files are left out."""
        result: dict[str, str] = {}
        for name in WORKSPACE_FILES:
            path = self.workspace_dir / name
            try:
                result[name] = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
        return result

    def write_workspace(self, files: dict[str, Any]) -> int:
        """Write allow-listed workspace files with string content."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        written = 0
        for name, content in files.items():
            if name not in WORKSPACE_FILES or not isinstance(content, str):
                continue
            (self.workspace_dir / name).write_text(content, encoding="utf-8")
            written += 1
        logger.info("Updated %s/ (%d files)", WORKSPACE_DIR_NAME, written)
        return written

    # -------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------

    def snapshot(self) -> LocalSnapshot:
        return LocalSnapshot(
            main_config=self.read_config(),
            aux_files=self.read_aux_files(),
            workspace_files=self.read_workspace(),
        )

    def skills_view(self, config: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Summarize config.skills.entries with credentials masked.

        Safe to publish unencrypted.
        """
        config = self.read_config() if config is None else config
        skills = config.get("skills")
        entries = skills.get("entries") if isinstance(skills, dict) else None
        if not isinstance(entries, dict):
            entries = {}
        view: dict[str, Any] = {}
        for name, data in entries.items():
            entry = dict(data) if isinstance(data, dict) else {"enabled": True}
            view[name] = mask_credentials(entry)
        return view

    def gateway_settings(self) -> tuple[int, str]:
        """Gateway port and bearer token from the main config."""
        gateway = self.read_config().get("gateway") or {}
        port = gateway.get("port") or 18789
        token = (gateway.get("auth") or {}).get("token") or ""
        return int(port), str(token)

    # -------------------------------------------------------------------
    # Environment file
    # -------------------------------------------------------------------

    def read_env_file(self) -> dict[str, str]:
        try:
            return parse_env(self.env_file.read_text(encoding="utf-8"))
        except OSError:
            return {}

    def write_env_file(self, values: dict[str, Any]) -> int:
        """Write ``KEY=value`` lines, owner read/write only.

        Returns:
            Number of variables written.
        """
        lines = [f"{k}={v}" for k, v in values.items() if k and v is not None]
        self.home.mkdir(parents=True, exist_ok=True)
        self.env_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        os.chmod(self.env_file, 0o600)
        logger.info("Updated %s (%d variables)", ENV_NAME, len(lines))
        return len(lines)

    # -------------------------------------------------------------------
    # Watch targets
    # -------------------------------------------------------------------

    def watched_paths(self) -> list[Path]:
        """Every file whose edits should be pushed."""
        paths = [self.config_file]
        if self.aux_dir.is_dir():
            paths.extend(p for p in sorted(self.aux_dir.iterdir()) if p.is_file())
        paths.extend(self.workspace_dir / name for name in WORKSPACE_FILES)
        return paths


Fingerprint = dict[str, tuple[int, int]]


class LocalWatcher:
    """Polls the installation for edits and triggers a push.

    Each poll fingerprints the watched files by (size, mtime). A change
    must hold still for one extra poll before it counts, so half-written
    files are not pushed. Changes seen while ``is_suppressed()`` is true
    are the sync engine's own writes: they are folded into the baseline
    and never reported.

    Args:
        store: The local state store to watch.
        on_change: Awaited once per settled external change. Returning
            False defers the change to the next poll.
        is_suppressed: Returns True while local-write suppression is on.
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        store: LocalStateStore,
        on_change: Callable[[], Awaitable[Any]],
        is_suppressed: Callable[[], bool],
        poll_interval: float = 0.25,
    ):
        self.store = store
        self.on_change = on_change
        self.is_suppressed = is_suppressed
        self.poll_interval = poll_interval
        self._baseline: Fingerprint = self._fingerprint()
        self._pending: Optional[Fingerprint] = None

    def _fingerprint(self) -> Fingerprint:
        result: Fingerprint = {}
        for path in self.store.watched_paths():
            try:
                st = path.stat()
            except OSError:
                continue
            result[str(path)] = (st.st_size, st.st_mtime_ns)
        return result

    def rebaseline(self) -> None:
        """Accept the current on-disk state without reporting it."""
        self._baseline = self._fingerprint()
        self._pending = None

    async def check(self) -> bool:
        """Run one poll.

        Returns:
            True if on_change was triggered.
        """
        current = self._fingerprint()
        if current == self._baseline:
            self._pending = None
            return False

        if self.is_suppressed():
            logger.debug("Absorbed self-initiated local write")
            self._baseline = current
            self._pending = None
            return False

        if current != self._pending:
            self._pending = current
            return False

        logger.info("Local change detected")
        if await self.on_change() is False:
            # Not taken; report it again on the next poll.
            return False
        self._baseline = current
        self._pending = None
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Local watch failed: %s", exc)
            if await wait_or_stop(stop_event, self.poll_interval):
                return
