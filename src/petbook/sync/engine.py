"""
Sync Engine -- keeps the OpenClaw installation and its device document
in agreement.

    pull  device document changed  ->  decrypt -> write files -> restart
    push  files changed / timer    ->  read files -> encrypt -> merge write

The engine is the only component that writes to both sides. Each write
is bracketed by the SyncGuard so the change notification it causes on
the other side is recognized as an echo and dropped. Other components
that touch the device document go through write_device_fields() or
push(extra=...) for the same reason.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from ..device import DevicePaths, device_facts
from ..local_state import LocalStateStore, LocalWatcher
from ..models import DeviceDocument, HeartbeatRecord, now_iso
from ..secret_codec import SecretCodec, SecretCodecError
from ..store import Document, DocumentStore, StoreError, Subscription
from .environment import EnvironmentLoader
from .guard import Direction, SyncGuard, fingerprint

logger = logging.getLogger("petbook.sync.engine")

CONFIG_CHANNEL = "config"
ENV_CHANNEL = "env"

FactsProvider = Callable[[], Awaitable[dict[str, Any]]]


def _env_fingerprint(device: DeviceDocument) -> str:
    return fingerprint({"vars": device.device_env_vars or {}, "secrets": device.device_secrets or {}})


class SyncEngine:
    """Two-way reconciler between the local installation and the store.

    Args:
        store: Remote document store.
        local: Local state store.
        paths: Remote paths of this device.
        guard: Echo suppression state. One is created when omitted.
        codec: Secret codec. Without one the config is pushed in the
            clear and encrypted remote configs cannot be applied.
        env_loader: Rebuilds ``.env`` when environment fields change.
        restart_gateway: Awaited once per substantive remote change.
        on_revoked: Called when the device document says ``revoked``.
        facts: Returns host metadata for the push.
    """

    def __init__(
        self,
        store: DocumentStore,
        local: LocalStateStore,
        paths: DevicePaths,
        guard: Optional[SyncGuard] = None,
        codec: Optional[SecretCodec] = None,
        env_loader: Optional[EnvironmentLoader] = None,
        restart_gateway: Optional[Callable[[], Awaitable[Any]]] = None,
        on_revoked: Optional[Callable[[], Any]] = None,
        facts: FactsProvider = device_facts,
    ):
        self.store = store
        self.local = local
        self.paths = paths
        self.guard = guard or SyncGuard()
        self.codec = codec
        self.env_loader = env_loader
        self.restart_gateway = restart_gateway
        self.on_revoked = on_revoked
        self.facts = facts
        self.revoked = False

    # -------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------

    async def prime(self) -> None:
        """Seed the fingerprints the pull path compares against.

        The config comes from the local file and the environment from the
        device document as it stands now, so the first remote snapshot
        counts as substantive only if it differs from both. The startup
        push suppresses that snapshot, so a later environment edit has to
        find a baseline here.
        """
        self.guard.has_changed(fingerprint(self.local.read_config()), CONFIG_CHANNEL)
        try:
            doc = await self.store.get(self.paths.device)
        except StoreError as exc:
            logger.warning("Could not read device document for baseline: %s", exc)
            return
        device = DeviceDocument.model_validate(doc.data if doc.exists else {})
        self.guard.has_changed(_env_fingerprint(device), ENV_CHANNEL)

    def subscribe(self) -> Subscription:
        """Start listening to the device document."""
        return self.store.subscribe_document(self.paths.device, self.handle_remote_change)

    def watcher(self, poll_interval: float) -> LocalWatcher:
        """Local watcher that pushes on settled external edits."""
        return LocalWatcher(
            self.local,
            on_change=self._on_local_change,
            is_suppressed=lambda: self.guard.is_suppressed(Direction.LOCAL),
            poll_interval=poll_interval,
        )

    async def _on_local_change(self) -> bool:
        # A push that is still settling would drop this edit; defer it.
        if self.guard.is_suppressed(Direction.REMOTE) and not self.revoked:
            return False
        await self.push()
        return True

    # -------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------

    async def _resolve_config(self, device: DeviceDocument) -> tuple[Optional[dict[str, Any]], bool]:
        """Plaintext config of a device document.

        Returns:
            (config, resolved). ``resolved`` is False when an encrypted
            config could not be decrypted.
        """
        if not device.encrypted_config:
            return device.config, True
        if self.codec is None:
            logger.warning("Encrypted config received but no credential to decrypt it")
            return None, False
        try:
            config = await self.codec.decrypt_value(device.encrypted_config)
        except SecretCodecError as exc:
            logger.warning("Config decryption failed, skipping local config write: %s", exc)
            return None, False
        if not isinstance(config, dict):
            logger.warning("Decrypted config is not an object, skipping local config write")
            return None, False
        logger.debug("Config decrypted")
        return config, True

    async def handle_remote_change(self, doc: Document) -> None:
        """Apply one snapshot of the device document to disk."""
        if not doc.exists or self.guard.is_suppressed(Direction.REMOTE):
            return
        if self.revoked:
            return

        device = DeviceDocument.model_validate(doc.data)
        if device.revoked:
            self.revoked = True
            logger.warning("Device %s has been revoked, stopping", self.paths.pet_id)
            if self.on_revoked is not None:
                self.on_revoked()
            return

        config_changed = False
        config: Optional[dict[str, Any]] = None
        if device.config is not None or device.encrypted_config:
            config, resolved = await self._resolve_config(device)
            # An undecryptable config keeps the last applied fingerprint, so
            # the next readable snapshot is compared against what is on disk.
            if resolved:
                config_changed = self.guard.has_changed(fingerprint(config or {}), CONFIG_CHANNEL)
        env_changed = self.guard.has_changed(_env_fingerprint(device), ENV_CHANNEL)

        self.guard.begin_self_write(Direction.LOCAL)
        try:
            if config is not None:
                self.local.write_config(config)
            if isinstance(device.openclaw_files, dict):
                self.local.write_aux_files(device.openclaw_files)
            if isinstance(device.workspace, dict):
                self.local.write_workspace(device.workspace)
        finally:
            self.guard.end_self_write(Direction.LOCAL)
        logger.info("Applied remote changes")

        if not (config_changed or env_changed):
            return
        if device.has_env_fields and self.env_loader is not None:
            await self.env_loader.load(doc.data)
        if self.restart_gateway is not None:
            logger.info(
                "Remote %s changed, restarting gateway",
                "config" if config_changed else "environment",
            )
            await self.restart_gateway()

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------

    async def _encrypted_config(self, config: dict[str, Any]) -> dict[str, Any]:
        if self.codec is None:
            return {"config": config}
        try:
            enc = await self.codec.encrypt(config)
        except SecretCodecError as exc:
            logger.warning("Config encryption failed, config not pushed: %s", exc)
            return {}
        return {"encryptedConfig": enc, "config": None}

    async def _gather(self) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
        """Device fields to push, and the config they carry (if any)."""
        installed = self.local.has_openclaw
        data = {
            **await self.facts(),
            "hasOpenclaw": installed,
            "openclawPath": str(self.local.home) if installed else None,
            "updatedAt": now_iso(),
        }
        published = None
        if installed:
            config = self.local.read_config()
            data["openclawFiles"] = self.local.read_aux_files()
            data["workspace"] = self.local.read_workspace()
            data["skills"] = self.local.skills_view(config)
            config_fields = await self._encrypted_config(config)
            data.update(config_fields)
            if config_fields:
                published = config
        return data, published

    async def push(self, extra: Optional[dict[str, Any]] = None) -> bool:
        """Publish the local state to the device document.

        Args:
            extra: Additional device fields written in the same merge.

        Returns:
            True if the push was written. False when the device is
            revoked, a push is still settling, or the write failed.
        """
        if self.revoked:
            return False
        if self.guard.is_suppressed(Direction.REMOTE):
            logger.debug("Push skipped, previous remote write still settling")
            return False

        self.guard.begin_self_write(Direction.REMOTE)
        try:
            data, published = await self._gather()
            if extra:
                data.update(extra)
            await self.store.set(self.paths.device, data, merge=True)
            await self.store.set(self.paths.heartbeat, HeartbeatRecord().to_remote(), merge=True)
            if published is not None:
                # What we published is now the last known remote config.
                self.guard.has_changed(fingerprint(published), CONFIG_CHANNEL)
        except Exception as exc:
            logger.error("Push failed: %s", exc)
            return False
        finally:
            self.guard.end_self_write(Direction.REMOTE)
        logger.info("Pushed local state")
        return True

    async def write_device_fields(self, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the device document as a self-write.

        Raises:
            StoreError: If the store rejects the write.
        """
        if self.revoked:
            return
        self.guard.begin_self_write(Direction.REMOTE)
        try:
            await self.store.set(self.paths.device, fields, merge=True)
        finally:
            self.guard.end_self_write(Direction.REMOTE)

    async def record_gateway_restart(self, when: str) -> None:
        await self.write_device_fields({"lastGatewayRestart": when})
