"""
Credentials -- the paired account and its Firebase ID tokens.

Pairing (outside this package) leaves ``~/.petbook/auth.json``:

    {"uid": ..., "email": ..., "pet_id": ..., "pet_name": ...,
     "refresh_token": ..., "saved_at": ...}

The TokenProvider trades the refresh token for short-lived ID tokens
at the Google secure token service. The same tokens authorize the
secret service (as ``idToken``) and Firestore (as OAuth bearer).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import httpx
from google.oauth2.credentials import Credentials
from pydantic import BaseModel, ValidationError

from . import PetbookError
from .config import petbook_home
from .models import now_iso

logger = logging.getLogger("petbook.auth")

AUTH_FILE = "auth.json"
TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
EXPIRY_MARGIN = 60.0


class AuthError(PetbookError):
    """Raised when credentials are missing, invalid or rejected."""


class AuthState(BaseModel):
    """What pairing leaves behind for the daemon."""

    uid: str
    email: str = ""
    pet_id: str
    pet_name: str = ""
    refresh_token: str
    saved_at: str = ""


class AuthStore:
    """Reads and writes auth.json (owner read/write only).

    Args:
        home: Petbook home directory. Defaults to ~/.petbook.
    """

    def __init__(self, home: Optional[Path] = None):
        self.path = petbook_home(home) / AUTH_FILE

    def load(self) -> Optional[AuthState]:
        """Saved state, or None when missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            return AuthState(**json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as exc:
            logger.warning("Ignoring invalid %s: %s", self.path, exc)
            return None

    def save(self, state: AuthState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        os.chmod(self.path, 0o600)


class TokenProvider:
    """Caches and refreshes Firebase ID tokens.

    Args:
        state: Saved credentials.
        api_key: Firebase web API key.
        store: Where a rotated refresh token is persisted.
        client: HTTP client for the token service.
        clock: Time source, seconds since the epoch.
    """

    def __init__(
        self,
        state: AuthState,
        api_key: str,
        store: Optional[AuthStore] = None,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.api_key = api_key
        self.store = store
        self._client = client or httpx.Client(timeout=30.0)
        self._clock = clock
        self._lock = threading.Lock()
        self._token = ""
        self._expires_at = 0.0

    @property
    def valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - EXPIRY_MARGIN

    def refresh(self, force: bool = False) -> str:
        """Return a fresh ID token, calling the token service if needed.

        Blocking; safe to call from any thread.

        Raises:
            AuthError: If the refresh token is rejected.
        """
        with self._lock:
            if self.valid and not force:
                return self._token
            try:
                resp = self._client.post(
                    TOKEN_URL,
                    params={"key": self.api_key},
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": self.state.refresh_token,
                    },
                )
            except httpx.HTTPError as exc:
                raise AuthError(f"token service unreachable: {exc}") from exc
            if resp.status_code != 200:
                raise AuthError(f"refresh token rejected ({resp.status_code})")
            try:
                body: dict[str, Any] = resp.json()
                token = body["id_token"]
                expires_in = float(body.get("expires_in", 3600))
            except (ValueError, KeyError, TypeError) as exc:
                raise AuthError(f"invalid token response: {exc}") from exc

            user_id = body.get("user_id")
            if user_id and user_id != self.state.uid:
                raise AuthError("token belongs to a different account")

            rotated = body.get("refresh_token")
            if rotated and rotated != self.state.refresh_token:
                self.state = self.state.model_copy(
                    update={"refresh_token": rotated, "saved_at": now_iso()}
                )
                if self.store is not None:
                    self.store.save(self.state)
                logger.debug("Refresh token rotated")

            self._token = token
            self._expires_at = self._clock() + expires_in
            return token

    async def get_token(self) -> str:
        """ID token for the current user, refreshed off the loop."""
        if self.valid:
            return self._token
        return await asyncio.to_thread(self.refresh)

    def _refresh_handler(self, request: Any, scopes: Any) -> tuple[str, datetime]:
        token = self.refresh()
        expiry = datetime.fromtimestamp(self._expires_at, tz=timezone.utc)
        # google-auth compares against naive UTC datetimes.
        return token, expiry.replace(tzinfo=None)

    def google_credentials(self) -> Credentials:
        """google-auth credentials that refresh through this provider."""
        token = self.refresh()
        expiry = datetime.fromtimestamp(self._expires_at, tz=timezone.utc).replace(tzinfo=None)
        return Credentials(token=token, expiry=expiry, refresh_handler=self._refresh_handler)

    def close(self) -> None:
        self._client.close()
