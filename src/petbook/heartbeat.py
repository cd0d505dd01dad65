"""
Heartbeat Publisher -- liveness for the dashboard.

Every tick writes ``…/runtime/heartbeat``, a separate document so the
device-document listener is not woken once a minute. Every
``presence_every`` ticks the device document itself gets ``lastSeen``,
``status`` and the installation flags, which is what the device list
shows. If OpenClaw appeared or disappeared since the last check, a full
push follows so the dashboard sees the new config too.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .loop import run_periodic
from .models import DeviceStatus, HeartbeatRecord
from .sync import SyncEngine

logger = logging.getLogger("petbook.heartbeat")


class HeartbeatPublisher:
    """Periodic liveness writer.

    Args:
        engine: Sync engine; owns store, paths and guarded writes.
        interval: Seconds between ticks.
        presence_every: Ticks between device-document refreshes.
        on_beat: Awaited after every tick with the record written,
            e.g. to refresh a local status file.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: float = 60.0,
        presence_every: int = 5,
        on_beat: Optional[Callable[[HeartbeatRecord], Awaitable[Any]]] = None,
    ):
        self.engine = engine
        self.interval = interval
        self.presence_every = presence_every
        self.on_beat = on_beat
        self.ticks = 0

    async def tick(self) -> None:
        """Write one heartbeat, and presence when due."""
        if self.engine.revoked:
            return
        record = HeartbeatRecord()
        payload = record.to_remote()
        await self.engine.store.set(self.engine.paths.heartbeat, payload, merge=True)

        self.ticks += 1
        if self.ticks >= self.presence_every:
            self.ticks = 0
            await self.refresh_presence(payload)

        if self.on_beat is not None:
            await self.on_beat(record)

    async def refresh_presence(self, liveness: Optional[dict[str, Any]] = None) -> None:
        local = self.engine.local
        detection = local.refresh_detection()
        fields = {
            **(liveness or HeartbeatRecord(status=DeviceStatus.ONLINE).to_remote()),
            "hasOpenclaw": detection.has_openclaw,
            "openclawPath": str(local.home) if detection.has_openclaw else None,
        }
        if detection.changed and await self.engine.push(extra=fields):
            return
        await self.engine.write_device_fields(fields)

    async def run(self, stop_event: asyncio.Event) -> None:
        await run_periodic("heartbeat", self.interval, stop_event, self.tick)
