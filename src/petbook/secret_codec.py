"""
Secret Codec -- opaque encryption through the petbook secret service.

Sensitive configuration never sits in the device document in the
clear once the device is signed in. The service holds the keys; the
daemon only ever sees ``encData`` blobs and, with a valid ID token,
their plaintext.

    encrypt(value)            POST encrypt_url {idToken, value}    -> {encData}
    decrypt({name: encData})  POST decrypt_url {idToken, secrets}  -> {values}

Any failure raises SecretCodecError. Callers in the sync path catch it
and treat the secret as absent for that cycle.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from . import PetbookError

logger = logging.getLogger("petbook.secret_codec")

TokenProvider = Callable[[], Awaitable[str]]

CONFIG_SECRET_NAME = "_config"


class SecretCodecError(PetbookError):
    """Raised when the secret service cannot encrypt or decrypt."""


class SecretCodec:
    """Client for the encrypt/decrypt secret service.

    Args:
        token_provider: Coroutine function returning a bearer ID token.
        encrypt_url: Endpoint of the encrypt function.
        decrypt_url: Endpoint of the batch decrypt function.
        client: Shared HTTP client. One is created when omitted.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        encrypt_url: str,
        decrypt_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self._token_provider = token_provider
        self.encrypt_url = encrypt_url
        self.decrypt_url = decrypt_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            token = await self._token_provider()
        except Exception as exc:
            raise SecretCodecError(f"no credential: {exc}") from exc

        try:
            resp = await self._client.post(url, json={"idToken": token, **body})
        except httpx.HTTPError as exc:
            raise SecretCodecError(f"request failed: {exc}") from exc

        if resp.status_code != 200:
            raise SecretCodecError(f"service returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SecretCodecError(f"invalid response: {exc}") from exc
        if not isinstance(data, dict):
            raise SecretCodecError("invalid response: not an object")
        return data

    async def encrypt_text(self, text: str) -> str:
        """Encrypt a raw string and return its opaque encData."""
        data = await self._post(self.encrypt_url, {"value": text})
        enc = data.get("encData")
        if not isinstance(enc, str) or not enc:
            raise SecretCodecError("encrypt response has no encData")
        return enc

    async def encrypt(self, value: Any) -> str:
        """Encrypt any JSON-serializable value."""
        return await self.encrypt_text(json.dumps(value, ensure_ascii=False))

    async def decrypt(self, secrets: dict[str, Any]) -> dict[str, Optional[str]]:
        """Decrypt several named secrets in one round trip.

        Returns:
            Mapping of name to plaintext; the service reports secrets it
            could not open as None.
        """
        if not secrets:
            return {}
        data = await self._post(self.decrypt_url, {"secrets": secrets})
        values = data.get("values")
        if not isinstance(values, dict):
            raise SecretCodecError("decrypt response has no values")
        return {name: values.get(name) for name in secrets}

    async def decrypt_value(self, enc_data: str) -> Any:
        """Inverse of encrypt(): decrypt one blob and parse its JSON."""
        values = await self.decrypt({CONFIG_SECRET_NAME: enc_data})
        raw = values.get(CONFIG_SECRET_NAME)
        if raw is None:
            raise SecretCodecError("secret could not be decrypted")
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise SecretCodecError(f"decrypted value is not JSON: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
