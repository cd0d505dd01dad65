"""Tests for two-way sync between the installation and the device document."""

from __future__ import annotations

import asyncio
import copy
import json

import pytest

from conftest import BASE_CONFIG, fake_facts, settle
from petbook.store import MemoryStore
from petbook.sync import Direction, EnvironmentLoader, SyncEngine, SyncGuard


def _config(port: int) -> dict:
    config = copy.deepcopy(BASE_CONFIG)
    config["gateway"]["port"] = port
    return config


class _WriteCounter:
    def __init__(self, local):
        self.count = 0
        original = local.write_config

        def counting(data):
            self.count += 1
            original(data)

        local.write_config = counting


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:
    """Local state published to the device document."""

    @pytest.mark.asyncio
    async def test_push_encrypts_config(self, make_engine, codec, store, paths):
        engine = make_engine(codec=codec)
        assert await engine.push() is True

        data = store.data(paths.device)
        assert data["config"] is None
        assert data["encryptedConfig"].startswith("enc:")
        assert "sk-live-123" not in json.dumps(data)
        assert await codec.decrypt_value(data["encryptedConfig"]) == BASE_CONFIG
        assert data["hasOpenclaw"] is True
        assert data["hostname"] == "test-host"
        assert data["workspace"]["SOUL.md"] == "# Soul\n"
        assert data["skills"]["search"]["apiKey"] == "***"
        assert store.data(paths.heartbeat)["status"] == "online"

    @pytest.mark.asyncio
    async def test_push_without_codec(self, make_engine, store, paths):
        engine = make_engine()
        assert await engine.push() is True
        data = store.data(paths.device)
        assert data["config"] == BASE_CONFIG
        assert "encryptedConfig" not in data

    @pytest.mark.asyncio
    async def test_encryption_failure_omits_config(self, make_engine, failing_codec, store, paths):
        engine = make_engine(codec=failing_codec)
        assert await engine.push() is True
        data = store.data(paths.device)
        assert "config" not in data
        assert "encryptedConfig" not in data
        assert data["hasOpenclaw"] is True

    @pytest.mark.asyncio
    async def test_push_without_installation(self, make_engine, local, store, paths):
        local.config_file.unlink()
        local.refresh_detection()
        engine = make_engine()
        await engine.push()
        data = store.data(paths.device)
        assert data["hasOpenclaw"] is False
        assert data["openclawPath"] is None
        assert "config" not in data
        assert "workspace" not in data

    @pytest.mark.asyncio
    async def test_push_extra_fields(self, make_engine, store, paths):
        engine = make_engine()
        await engine.push(extra={"status": "online"})
        assert store.data(paths.device)["status"] == "online"

    @pytest.mark.asyncio
    async def test_second_push_waits_for_quiet_window(self, make_engine):
        engine = make_engine()
        assert await engine.push() is True
        assert await engine.push() is False
        await asyncio.sleep(0.15)
        assert await engine.push() is True

    @pytest.mark.asyncio
    async def test_push_failure_returns_false(self, make_engine, store):
        async def broken_set(*args, **kwargs):
            raise RuntimeError("offline")

        store.set = broken_set
        engine = make_engine()
        assert await engine.push() is False
        assert engine.guard.is_suppressed(Direction.REMOTE)


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


class TestPull:
    """Remote changes applied to disk, with one restart per real change."""

    @pytest.mark.asyncio
    async def test_substantive_change_restarts_once(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"config": _config(20000)})
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_config()["gateway"]["port"] == 20000
        assert restarts.count == 1
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_identical_config_no_restart(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"config": copy.deepcopy(BASE_CONFIG)})
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)
        await store.update(paths.device, {"status": "online"})
        await settle(sub)

        assert restarts.count == 0
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_first_snapshot_without_baseline(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"config": _config(20001)})
        engine = make_engine()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_config()["gateway"]["port"] == 20001
        assert restarts.count == 0
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_later_changes(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"config": copy.deepcopy(BASE_CONFIG)})
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        await store.update(paths.device, {"config": _config(1)})
        await settle(sub)
        await store.update(paths.device, {"config": _config(2)})
        await settle(sub)

        assert local.read_config()["gateway"]["port"] == 2
        assert restarts.count == 2
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_encrypted_config_applied(self, make_engine, codec, store, local, paths, restarts):
        enc = await codec.encrypt(_config(30000))
        await store.set(paths.device, {"encryptedConfig": enc, "config": None})
        engine = make_engine(codec=codec)
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_config()["gateway"]["port"] == 30000
        assert restarts.count == 1
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_decrypt_failure_leaves_disk_alone(self, make_engine, failing_codec, store, local, paths, restarts):
        await store.set(paths.device, {"encryptedConfig": "enc:abc", "config": None})
        engine = make_engine(codec=failing_codec)
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_config() == BASE_CONFIG
        assert restarts.count == 0
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_workspace_and_aux_files(self, make_engine, store, local, paths):
        await store.set(
            paths.device,
            {
                "workspace": {"USER.md": "remote user", "../x.md": "no"},
                "openclawFiles": {"models.json": "{}"},
            },
        )
        engine = make_engine()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_workspace()["USER.md"] == "remote user"
        assert local.read_aux_files() == {"models.json": "{}"}
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_pull_is_not_pushed_back(self, make_engine, store, local, paths):
        engine = make_engine(guard=SyncGuard(local_window=0.3, remote_window=0.1))
        watcher = engine.watcher(poll_interval=0.01)
        await store.set(paths.device, {"config": _config(40000)})
        sub = engine.subscribe()
        await settle(sub)

        assert engine.guard.is_suppressed(Direction.LOCAL)
        assert await watcher.check() is False
        await asyncio.sleep(0.35)
        assert not engine.guard.is_suppressed(Direction.LOCAL)
        assert await watcher.check() is False
        assert await watcher.check() is False
        assert len(store.writes_to(paths.device)) == 1
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_push_echo_ignored(self, make_engine, store, local, paths, restarts):
        counter = _WriteCounter(local)
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        await engine.push()
        await settle(sub)
        assert counter.count == 0

        # A late re-delivery carries the config just published.
        await asyncio.sleep(0.15)
        await store.update(paths.device, {"status": "online"})
        await settle(sub)
        assert restarts.count == 0
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_env_change_reloads_and_restarts_once(self, make_engine, store, local, paths, restarts):
        loader = EnvironmentLoader(store, local, paths)
        await store.set(paths.device, {"deviceEnvVars": {"FOO": "bar"}})
        engine = make_engine(env_loader=loader)
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)
        assert restarts.count == 0

        await store.update(
            paths.device,
            {"deviceEnvVars": {"FOO": "baz"}, "config": _config(5)},
        )
        await settle(sub)
        assert local.read_env_file() == {"FOO": "baz"}
        assert restarts.count == 1
        sub.unsubscribe()


# ---------------------------------------------------------------------------
# Revocation and local edits
# ---------------------------------------------------------------------------


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoked_stops_everything(self, make_engine, store, local, paths, restarts):
        revoked = []
        engine = make_engine(on_revoked=lambda: revoked.append(True))
        await store.set(paths.device, {"revoked": True, "config": _config(9)})
        writes_before = len(store.writes)
        sub = engine.subscribe()
        await settle(sub)

        assert revoked == [True]
        assert engine.revoked is True
        assert local.read_config() == BASE_CONFIG
        assert await engine.push() is False
        await engine.write_device_fields({"status": "online"})
        assert len(store.writes) == writes_before

        await store.update(paths.device, {"config": _config(10)})
        await settle(sub)
        assert revoked == [True]
        assert restarts.count == 0
        sub.unsubscribe()


class TestLocalEdits:
    def _edit(self, local, port):
        local.config_file.write_text(json.dumps(_config(port), indent=4), encoding="utf-8")

    @pytest.mark.asyncio
    async def test_settled_edit_is_pushed(self, make_engine, store, local, paths):
        engine = make_engine()
        watcher = engine.watcher(poll_interval=0.01)
        self._edit(local, 7000)
        await watcher.check()
        assert await watcher.check() is True
        assert store.data(paths.device)["config"]["gateway"]["port"] == 7000

    @pytest.mark.asyncio
    async def test_edit_during_push_window_is_deferred(self, make_engine, store, local, paths):
        engine = make_engine()
        watcher = engine.watcher(poll_interval=0.01)
        engine.guard.begin_self_write(Direction.REMOTE)
        self._edit(local, 7001)
        await watcher.check()
        assert await watcher.check() is False
        assert store.data(paths.device) is None

        engine.guard.end_self_write(Direction.REMOTE)
        await asyncio.sleep(0.15)
        assert await watcher.check() is True
        assert store.data(paths.device)["config"]["gateway"]["port"] == 7001


class TestStartupOrder:
    """The daemon loads, primes and pushes before it subscribes."""

    @pytest.mark.asyncio
    async def test_env_added_after_startup_push(self, make_engine, store, local, paths, restarts):
        loader = EnvironmentLoader(store, local, paths)
        engine = make_engine(env_loader=loader)
        await loader.load()
        await engine.prime()
        assert await engine.push() is True
        sub = engine.subscribe()
        await settle(sub)
        await asyncio.sleep(0.15)

        await store.update(paths.device, {"deviceEnvVars": {"FOO": "bar"}})
        await settle(sub)
        assert local.read_env_file() == {"FOO": "bar"}
        assert restarts.count == 1
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_existing_env_is_the_baseline(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"deviceEnvVars": {"FOO": "bar"}})
        engine = make_engine(env_loader=EnvironmentLoader(store, local, paths))
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        await store.update(paths.device, {"status": "online"})
        await settle(sub)
        assert restarts.count == 0
        sub.unsubscribe()


class TestConfigPresence:
    @pytest.mark.asyncio
    async def test_snapshot_without_config(self, make_engine, store, local, paths, restarts):
        counter = _WriteCounter(local)
        await store.set(paths.device, {"status": "online", "name": "Biscuit"})
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        assert counter.count == 0
        assert local.read_config() == BASE_CONFIG
        assert restarts.count == 0
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_empty_remote_config_written(self, make_engine, store, local, paths, restarts):
        await store.set(paths.device, {"config": {}})
        engine = make_engine()
        await engine.prime()
        sub = engine.subscribe()
        await settle(sub)

        assert local.read_config() == {}
        assert restarts.count == 1
        sub.unsubscribe()


class TestNotificationLatency:
    """Echoes arriving late but inside the quiet window are still dropped."""

    @pytest.mark.asyncio
    async def test_round_trip_with_delayed_notifications(self, local, paths, restarts):
        store = MemoryStore(notify_delay=0.05)
        engine = SyncEngine(
            store,
            local,
            paths,
            guard=SyncGuard(local_window=0.2, remote_window=0.2),
            restart_gateway=restarts,
            facts=fake_facts,
        )
        counter = _WriteCounter(local)
        await engine.prime()
        sub = engine.subscribe()
        stop = asyncio.Event()
        watch_task = asyncio.create_task(engine.watcher(poll_interval=0.01).run(stop))

        assert await engine.push() is True
        await asyncio.sleep(0.1)
        assert counter.count == 0

        await asyncio.sleep(0.2)
        writes_before = len(store.writes_to(paths.device))
        await store.update(paths.device, {"config": _config(41000)})
        await asyncio.sleep(0.4)
        stop.set()
        await watch_task

        assert local.read_config()["gateway"]["port"] == 41000
        assert counter.count == 1
        assert len(store.writes_to(paths.device)) == writes_before + 1
        assert restarts.count == 1
        sub.unsubscribe()
