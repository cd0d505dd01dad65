"""
Environment loader -- materializes env vars and secrets into ``.env``.

Values come from two documents, device-level winning over account-level:

    users/{uid}               envVars        secrets
    users/{uid}/pets/{petId}  deviceEnvVars  deviceSecrets

Secrets are decrypted in one batch call and the merged result is
written to the OpenClaw ``.env`` file, which the gateway reads on
start. Nothing here raises: a failed load leaves the old file alone.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ..device import DevicePaths
from ..local_state import LocalStateStore
from ..secret_codec import SecretCodec, SecretCodecError
from ..store import DocumentStore, StoreError

logger = logging.getLogger("petbook.sync.environment")


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


class EnvironmentLoader:
    """Builds the gateway environment from remote values.

    Args:
        store: Remote document store.
        local: Local state store owning the ``.env`` file.
        paths: Remote paths of this device.
        codec: Secret codec; without one, secrets are skipped.
    """

    def __init__(
        self,
        store: DocumentStore,
        local: LocalStateStore,
        paths: DevicePaths,
        codec: Optional[SecretCodec] = None,
    ):
        self.store = store
        self.local = local
        self.paths = paths
        self.codec = codec

    async def load(self, device_data: Optional[dict[str, Any]] = None) -> int:
        """Merge, decrypt and write ``.env``.

        Args:
            device_data: Device document contents when the caller already
                has them; read from the store otherwise.

        Returns:
            Number of variables written (0 when nothing was written).
        """
        try:
            account = await self.store.get(self.paths.account)
            if device_data is None:
                device_data = (await self.store.get(self.paths.device)).data
        except StoreError as exc:
            logger.error("Environment load failed: %s", exc)
            return 0

        env_vars = {
            **_mapping(account.get("envVars")),
            **_mapping(device_data.get("deviceEnvVars")),
        }
        secrets = {
            **_mapping(account.get("secrets")),
            **_mapping(device_data.get("deviceSecrets")),
        }

        if secrets:
            if self.codec is None:
                logger.warning("No credential for secret decryption; %d secrets skipped", len(secrets))
            else:
                try:
                    values = await self.codec.decrypt(secrets)
                except SecretCodecError as exc:
                    logger.warning("Secret decryption failed: %s", exc)
                else:
                    for key, value in values.items():
                        if value is not None:
                            env_vars[key] = str(value)

        if not env_vars:
            return 0
        try:
            return self.local.write_env_file(env_vars)
        except OSError as exc:
            logger.error("Could not write %s: %s", self.local.env_file, exc)
            return 0

    async def encrypt_new_keys(self, existing: dict[str, Any]) -> dict[str, Any]:
        """Encrypt ``.env`` values whose keys are not in ``existing`` yet.

        Returns:
            ``{key: {"encData": ..., "description": ""}}`` for each newly
            encrypted key. Keys that fail to encrypt are left out.
        """
        if self.codec is None:
            return {}
        added: dict[str, Any] = {}
        for key, value in self.local.read_env_file().items():
            if key in existing or not value:
                continue
            try:
                enc = await self.codec.encrypt_text(value)
            except SecretCodecError as exc:
                logger.warning("Could not encrypt %s: %s", key, exc)
                continue
            added[key] = {"encData": enc, "description": ""}
        if added:
            logger.info("Encrypted %d new .env secrets", len(added))
        return added
