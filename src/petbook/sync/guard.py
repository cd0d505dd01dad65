"""
SyncGuard -- echo suppression for two-way sync.

Every write the engine makes to one side shows up moments later as a
change notification from that same side. The guard marks those windows:

    LOCAL   set while the engine writes files; the local watcher absorbs
            whatever it sees until the quiet window after the write ends
    REMOTE  set while the engine pushes; remote notifications are
            ignored until the quiet window after the push ends

It also remembers fingerprints of the last applied remote values so
the engine can tell a substantive change from an echo or a re-delivery.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("petbook.sync.guard")


class Direction(str, Enum):
    """Side of the sync whose change notifications are suppressed."""

    LOCAL = "local"
    REMOTE = "remote"


def fingerprint(value: Any) -> str:
    """sha256 of the canonical JSON form of ``value``."""
    canonical = json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class SyncGuard:
    """Suppression flags and change fingerprints, owned by the sync engine.

    Args:
        local_window: Seconds local suppression outlives a file write.
        remote_window: Seconds remote suppression outlives a push.
    """

    def __init__(self, local_window: float = 0.5, remote_window: float = 1.0):
        self.windows = {
            Direction.LOCAL: local_window,
            Direction.REMOTE: remote_window,
        }
        self._active = {Direction.LOCAL: False, Direction.REMOTE: False}
        self._timers: dict[Direction, Optional[asyncio.TimerHandle]] = {
            Direction.LOCAL: None,
            Direction.REMOTE: None,
        }
        self._fingerprints: dict[str, str] = {}

    def begin_self_write(self, direction: Direction) -> None:
        """Start suppressing notifications from ``direction``."""
        timer = self._timers[direction]
        if timer is not None:
            timer.cancel()
            self._timers[direction] = None
        self._active[direction] = True

    def end_self_write(self, direction: Direction) -> None:
        """Release suppression once the direction's quiet window passes."""
        timer = self._timers[direction]
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[direction] = loop.call_later(
            self.windows[direction], self._release, direction
        )

    def _release(self, direction: Direction) -> None:
        self._active[direction] = False
        self._timers[direction] = None
        logger.debug("%s suppression released", direction.value)

    def is_suppressed(self, direction: Direction) -> bool:
        return self._active[direction]

    def has_changed(self, value_fingerprint: str, channel: str = "config") -> bool:
        """Record ``value_fingerprint`` for ``channel`` and compare.

        Returns:
            True only when a non-empty earlier fingerprint differs. The
            first value seen on a channel is never a change.
        """
        previous = self._fingerprints.get(channel)
        self._fingerprints[channel] = value_fingerprint
        return bool(previous) and previous != value_fingerprint

    def cancel(self) -> None:
        """Drop pending release timers. Flags stay as they are."""
        for direction, timer in self._timers.items():
            if timer is not None:
                timer.cancel()
                self._timers[direction] = None
