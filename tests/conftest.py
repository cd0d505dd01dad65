"""Shared test fixtures for petbook."""

from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from petbook.device import DevicePaths
from petbook.local_state import LocalStateStore
from petbook.secret_codec import SecretCodec
from petbook.store import MemoryStore
from petbook.sync import SyncEngine, SyncGuard

ENCRYPT_URL = "https://secrets.test/encryptSecret"
DECRYPT_URL = "https://secrets.test/decryptSecrets"
ID_TOKEN = "id-token"

BASE_CONFIG = {
    "gateway": {"port": 18789, "auth": {"token": "gw-token"}},
    "skills": {
        "entries": {
            "search": {"enabled": True, "apiKey": "sk-live-123"},
            "weather": {"enabled": False},
        }
    },
}


async def settle(*subscriptions, rounds: int = 4) -> None:
    """Let scheduled notifications reach their handlers and finish."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)
        for sub in subscriptions:
            await sub.idle()


def _fake_encrypt(value: str) -> str:
    return "enc:" + base64.b64encode(value.encode("utf-8")).decode("ascii")


def _fake_decrypt(blob: Any) -> Any:
    if isinstance(blob, dict):
        blob = blob.get("encData")
    if not isinstance(blob, str) or not blob.startswith("enc:"):
        return None
    return base64.b64decode(blob[4:]).decode("utf-8")


def secret_service(request: httpx.Request) -> httpx.Response:
    """Reversible stand-in for the encrypt/decrypt functions."""
    body = json.loads(request.content)
    if body.get("idToken") != ID_TOKEN:
        return httpx.Response(401, json={"error": "unauthenticated"})
    if str(request.url) == ENCRYPT_URL:
        return httpx.Response(200, json={"encData": _fake_encrypt(body["value"])})
    values = {name: _fake_decrypt(item) for name, item in body["secrets"].items()}
    return httpx.Response(200, json={"values": values})


async def id_token() -> str:
    return ID_TOKEN


def make_codec(handler=secret_service) -> SecretCodec:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SecretCodec(id_token, ENCRYPT_URL, DECRYPT_URL, client=client)


class Restarts:
    """Records gateway restart requests."""

    def __init__(self):
        self.count = 0

    async def __call__(self) -> bool:
        self.count += 1
        return True


async def fake_facts() -> dict[str, Any]:
    return {"hostname": "test-host", "platform": "linux", "daemonVersion": "0.4.0"}


@pytest.fixture
def openclaw_home(tmp_path: Path) -> Path:
    """An OpenClaw installation with a config and two workspace files."""
    home = tmp_path / ".openclaw"
    home.mkdir()
    (home / "openclaw.json").write_text(json.dumps(BASE_CONFIG), encoding="utf-8")
    (home / "workspace").mkdir()
    (home / "workspace" / "SOUL.md").write_text("# Soul\n", encoding="utf-8")
    (home / "workspace" / "AGENTS.md").write_text("# Agents\n", encoding="utf-8")
    return home


@pytest.fixture
def local(openclaw_home: Path) -> LocalStateStore:
    return LocalStateStore(openclaw_home)


@pytest.fixture
def paths() -> DevicePaths:
    return DevicePaths("uid1", "pet_0123456789abcdef")


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def codec() -> SecretCodec:
    return make_codec()


@pytest.fixture
def failing_codec() -> SecretCodec:
    return make_codec(lambda request: httpx.Response(500, text="boom"))


@pytest.fixture
def restarts() -> Restarts:
    return Restarts()


@pytest.fixture
def make_engine(store, local, paths, restarts):
    """Build a SyncEngine with short quiet windows and fake host facts."""

    def _make(**kwargs) -> SyncEngine:
        kwargs.setdefault("guard", SyncGuard(local_window=0.05, remote_window=0.1))
        kwargs.setdefault("restart_gateway", restarts)
        kwargs.setdefault("facts", fake_facts)
        return SyncEngine(store, local, paths, **kwargs)

    return _make
