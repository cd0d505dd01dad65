"""
Daemon settings and OpenClaw path resolution.

Settings live in ~/.petbook/config.yaml. Every field has a default, so a
missing or broken file still yields a usable configuration.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, model_validator

from . import PETBOOK_HOME

logger = logging.getLogger("petbook.config")

CONFIG_FILE = "config.yaml"

DEFAULT_ENCRYPT_URL = (
    "https://asia-northeast3-openclaw-petbook.cloudfunctions.net/encryptSecret"
)
DEFAULT_DECRYPT_URL = (
    "https://asia-northeast3-openclaw-petbook.cloudfunctions.net/decryptSecrets"
)


class PetbookSettings(BaseModel):
    """Tunable daemon settings.

    Intervals are in seconds. The local poll interval must stay below
    the local quiet window, otherwise a file written by the pull path
    could be observed after suppression ends and pushed back.
    """

    openclaw_path: Optional[Path] = None

    firebase_project: str = "openclaw-petbook"
    firebase_api_key: str = ""
    encrypt_url: str = DEFAULT_ENCRYPT_URL
    decrypt_url: str = DEFAULT_DECRYPT_URL
    device_root: str = "users/{uid}/pets"
    store_backend: str = "firestore"

    heartbeat_interval: float = 60.0
    presence_every: int = 5
    sync_interval: float = 300.0

    local_poll_interval: float = 0.25
    local_quiet_window: float = 0.5
    remote_quiet_window: float = 1.0

    flush_interval: float = 0.5
    flush_chars: int = 200

    shutdown_timeout: float = 5.0

    @model_validator(mode="after")
    def _check_windows(self) -> "PetbookSettings":
        if self.local_poll_interval >= self.local_quiet_window:
            raise ValueError(
                "local_poll_interval must be shorter than local_quiet_window"
            )
        if self.presence_every < 1:
            raise ValueError("presence_every must be at least 1")
        return self


def petbook_home(home: Optional[Path] = None) -> Path:
    """Resolve the petbook home directory."""
    return (home or Path(PETBOOK_HOME)).expanduser()


def load_settings(home: Optional[Path] = None) -> PetbookSettings:
    """Load settings from disk, falling back to defaults.

    Args:
        home: Petbook home directory. Defaults to ~/.petbook.

    Returns:
        PetbookSettings.
    """
    config_file = petbook_home(home) / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return PetbookSettings(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load settings from %s: %s", config_file, exc)
    return PetbookSettings()


def save_settings(settings: PetbookSettings, home: Optional[Path] = None) -> Path:
    """Persist settings to config.yaml.

    Returns:
        Path of the written file.
    """
    root = petbook_home(home)
    root.mkdir(parents=True, exist_ok=True)
    config_file = root / CONFIG_FILE
    data = settings.model_dump(mode="json", exclude_none=True)
    config_file.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return config_file


def resolve_openclaw_home(settings: PetbookSettings) -> Path:
    """Where the OpenClaw installation lives (or would live).

    Order: settings.openclaw_path, $OPENCLAW_HOME, ~/.openclaw.
    """
    if settings.openclaw_path:
        return Path(settings.openclaw_path).expanduser()
    env_home = os.environ.get("OPENCLAW_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.openclaw").expanduser()
