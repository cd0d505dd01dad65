"""
Device facts -- identity, host information and remote paths of one pet.

A pet id is derived from the machine id, so re-pairing the same host
yields the same device document:

    pet_id = "pet_" + sha256(machine_id)[:16]

Layout of the remote documents (``device_root`` defaults to
``users/{uid}/pets``):

    users/{uid}                         account envVars / secrets
    users/{uid}/pets/{petId}            device document
        runtime/heartbeat               liveness record
        commands/{cmdId}                remote commands
        chats/{chatId}/messages/{id}    chat threads
"""

from __future__ import annotations

import hashlib
import logging
import platform
import re
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import psutil

from . import __version__
from .gateway import openclaw_version
from .models import DeviceInfo, DeviceStatus, HeartbeatRecord, now_iso
from .store import DocumentNotFound, DocumentStore, StoreError, join_path

logger = logging.getLogger("petbook.device")

MACHINE_ID_FILE = Path("/etc/machine-id")
IOREG = "/usr/sbin/ioreg"
MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def get_device_id() -> str:
    """Stable machine identifier, or hostname-arch when none is readable."""
    try:
        if sys.platform == "darwin":
            out = subprocess.run(
                [IOREG, "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True,
                text=True,
                timeout=5,
            ).stdout
            match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', out)
            if match:
                return match.group(1)
        elif sys.platform.startswith("linux"):
            raw = MACHINE_ID_FILE.read_text(encoding="utf-8").strip()
            if raw:
                return raw
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Machine id unavailable: %s", exc)
    return f"{socket.gethostname()}-{platform.machine()}"


def generate_pet_id(device_id: Optional[str] = None) -> str:
    """Pet id for this host (or for ``device_id``)."""
    raw = device_id if device_id is not None else get_device_id()
    return "pet_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def device_info() -> DeviceInfo:
    return DeviceInfo(
        hostname=socket.gethostname(),
        platform=sys.platform,
        arch=platform.machine(),
        python_version=platform.python_version(),
    )


def system_stats() -> dict[str, Any]:
    """Host load and capacity, in the device document's field names."""
    mem = psutil.virtual_memory()
    return {
        "uptime": int(time.time() - psutil.Process().create_time()),
        "memTotal": round(mem.total / MB),
        "memFree": round(mem.available / MB),
        "cpus": psutil.cpu_count() or 0,
        "cpuModel": platform.processor() or platform.machine(),
        "osRelease": platform.release(),
        "daemonVersion": __version__,
    }


async def device_facts() -> dict[str, Any]:
    """Everything the push path publishes about the host."""
    return {
        **device_info().to_remote(),
        **system_stats(),
        "openclawVersion": await openclaw_version(),
    }


# ---------------------------------------------------------------------------
# Remote paths
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DevicePaths:
    """Remote document paths for one device.

    Args:
        uid: Owner account id.
        pet_id: Device id.
        root: Collection template holding device documents.
    """

    uid: str
    pet_id: str
    root: str = "users/{uid}/pets"

    @property
    def account(self) -> str:
        return join_path("users", self.uid)

    @property
    def device(self) -> str:
        return join_path(self.root.format(uid=self.uid), self.pet_id)

    @property
    def heartbeat(self) -> str:
        return join_path(self.device, "runtime", "heartbeat")

    @property
    def commands(self) -> str:
        return join_path(self.device, "commands")

    @property
    def chats(self) -> str:
        return join_path(self.device, "chats")

    def messages(self, chat_id: str) -> str:
        return join_path(self.chats, chat_id, "messages")


# ---------------------------------------------------------------------------
# Startup / shutdown
# ---------------------------------------------------------------------------


async def validate_pet(store: DocumentStore, paths: DevicePaths) -> bool:
    """Check the device is not revoked and mark it online.

    A device document that does not exist yet is valid; pairing creates
    it lazily on the first push.

    Returns:
        False if the device has been revoked.
    """
    doc = await store.get(paths.device)
    if not doc.exists:
        return True
    if doc.get("revoked"):
        logger.error("Device %s has been revoked; pair this machine again", paths.pet_id)
        return False
    await store.update(
        paths.device,
        {
            "lastSeen": now_iso(),
            "status": DeviceStatus.ONLINE.value,
            **device_info().to_remote(),
        },
    )
    return True


async def set_offline(store: DocumentStore, paths: DevicePaths) -> None:
    """Mark the device offline. Failures are logged and dropped."""
    record = HeartbeatRecord(status=DeviceStatus.OFFLINE).to_remote()
    try:
        await store.update(paths.device, record)
        await store.set(paths.heartbeat, record)
    except DocumentNotFound:
        logger.debug("No device document to mark offline")
    except StoreError as exc:
        logger.warning("Could not mark device offline: %s", exc)
