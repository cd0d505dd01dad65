"""
Petbook Daemon -- one device, kept in sync, on one event loop.

Startup, in order:

    credentials -> store -> revocation check -> .env -> first push
    -> device / command / chat listeners -> watcher, heartbeat, sync timer

SIGINT and SIGTERM stop the loop; the device is marked offline on the
way out (bounded by ``shutdown_timeout``) and the process exits 0.
A revoked device exits at once.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from . import __version__
from .auth import AuthError, AuthStore, TokenProvider
from .chat import ChatRelay, CompletionClient
from .commands import CommandContext, CommandProcessor
from .config import PetbookSettings, petbook_home, resolve_openclaw_home
from .device import DevicePaths, set_offline, validate_pet
from .gateway import Gateway
from .heartbeat import HeartbeatPublisher
from .local_state import LocalStateStore
from .loop import run_periodic
from .models import HeartbeatRecord
from .secret_codec import SecretCodec
from .store import DocumentStore, StoreBackendType, StoreError, create_store
from .sync import EnvironmentLoader, SyncEngine, SyncGuard

logger = logging.getLogger("petbook.daemon")

PID_FILE = "daemon.pid"
STATUS_FILE = "status.json"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

EXIT_OK = 0
EXIT_AUTH = 1
EXIT_FAILED = 1


def setup_logging(home: Optional[Path] = None, verbose: bool = False) -> Path:
    """Configure file and stderr logging.

    Returns:
        Path of the log file.
    """
    log_dir = petbook_home(home) / LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "daemon.log"

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)

    root = logging.getLogger()
    root.addHandler(file_handler)
    root.addHandler(console)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return log_file


class DaemonState:
    """Mutable daemon counters, read by the status snapshot.

    Only touched from the event loop, so no locking.
    """

    def __init__(self):
        self.started_at: Optional[datetime] = None
        self.last_heartbeat: Optional[str] = None
        self.heartbeats: int = 0
        self.pet_id: str = ""
        self.openclaw_home: str = ""
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state.

        Returns:
            Dict with all state fields, safe for JSON serialization.
        """
        return {
            "running": self.running,
            "pid": os.getpid(),
            "version": __version__,
            "pet_id": self.pet_id,
            "openclaw_home": self.openclaw_home,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": (
                (datetime.now(timezone.utc) - self.started_at).total_seconds()
                if self.started_at
                else 0
            ),
            "last_heartbeat": self.last_heartbeat,
            "heartbeats": self.heartbeats,
        }

    def record_heartbeat(self, record: HeartbeatRecord) -> None:
        self.last_heartbeat = record.last_seen
        self.heartbeats += 1


def _exit_revoked() -> None:
    logger.warning("Device revoked; exiting")
    logging.shutdown()
    os._exit(EXIT_OK)


class Daemon:
    """The petbook device daemon.

    Args:
        settings: Loaded settings.
        home: Petbook home directory (auth, PID, status, logs).
        store: Document store to use instead of building one.
        tokens: Token provider to use instead of building one.
        on_revoked: Called when the device is revoked while running.
    """

    def __init__(
        self,
        settings: PetbookSettings,
        home: Optional[Path] = None,
        store: Optional[DocumentStore] = None,
        tokens: Optional[TokenProvider] = None,
        on_revoked: Callable[[], Any] = _exit_revoked,
    ):
        self.settings = settings
        self.home = petbook_home(home)
        self.store = store
        self.tokens = tokens
        self.on_revoked = on_revoked
        self.state = DaemonState()
        self.stop_event: Optional[asyncio.Event] = None

    # -------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------

    def run(self) -> int:
        """Run in the foreground until stopped. Returns the exit code."""
        return asyncio.run(self.main())

    def stop(self) -> None:
        if self.stop_event is not None:
            self.stop_event.set()

    async def connect(self) -> Optional[tuple[DocumentStore, DevicePaths]]:
        """Load credentials and open the store.

        Returns:
            (store, paths), or None when credentials are missing or
            rejected.
        """
        auth = AuthStore(self.home).load()
        if auth is None:
            logger.error("No credentials in %s; pair this device first", self.home)
            return None
        if self.tokens is None:
            self.tokens = TokenProvider(auth, self.settings.firebase_api_key, AuthStore(self.home))
        if self.store is None:
            backend = StoreBackendType(self.settings.store_backend)
            credentials = None
            if backend == StoreBackendType.FIRESTORE:
                try:
                    credentials = await asyncio.to_thread(self.tokens.google_credentials)
                except AuthError as exc:
                    logger.error("Authentication failed: %s; pair this device again", exc)
                    return None
            self.store = create_store(backend, self.settings.firebase_project, credentials)
        logger.info("Signed in as %s", auth.email or auth.uid)
        return self.store, DevicePaths(auth.uid, auth.pet_id, self.settings.device_root)

    def build_engine(self, store: DocumentStore, paths: DevicePaths) -> tuple[SyncEngine, Gateway]:
        settings = self.settings
        local = LocalStateStore(resolve_openclaw_home(settings))
        codec = None
        if self.tokens is not None:
            codec = SecretCodec(self.tokens.get_token, settings.encrypt_url, settings.decrypt_url)
        gateway = Gateway()
        engine = SyncEngine(
            store,
            local,
            paths,
            guard=SyncGuard(settings.local_quiet_window, settings.remote_quiet_window),
            codec=codec,
            env_loader=EnvironmentLoader(store, local, paths, codec),
            restart_gateway=gateway.restart,
            on_revoked=self.on_revoked,
        )
        gateway.on_restart = engine.record_gateway_restart
        return engine, gateway

    # -------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------

    async def main(self) -> int:
        connected = await self.connect()
        if connected is None:
            return EXIT_AUTH
        store, paths = connected

        try:
            valid = await validate_pet(store, paths)
        except StoreError as exc:
            logger.error("Could not read device document: %s", exc)
            valid = False
        if not valid:
            await self._release(store)
            return EXIT_AUTH

        engine, gateway = self.build_engine(store, paths)
        settings = self.settings
        self.state.pet_id = paths.pet_id
        self.state.openclaw_home = str(engine.local.home)

        if engine.env_loader is not None:
            await engine.env_loader.load()
        await engine.prime()
        await engine.push()

        context = CommandContext(engine=engine, gateway=gateway, env_loader=engine.env_loader)
        completions = CompletionClient(engine.local)
        relay = ChatRelay(
            store,
            paths,
            completions,
            flush_interval=settings.flush_interval,
            flush_chars=settings.flush_chars,
        )
        subscriptions = [
            engine.subscribe(),
            CommandProcessor(context).subscribe(),
            relay.subscribe(),
        ]

        self.stop_event = asyncio.Event()
        self._setup_signals()
        heartbeat = HeartbeatPublisher(
            engine,
            interval=settings.heartbeat_interval,
            presence_every=settings.presence_every,
            on_beat=self._on_beat,
        )
        watcher = engine.watcher(settings.local_poll_interval)
        workers = [
            asyncio.create_task(watcher.run(self.stop_event), name="local-watch"),
            asyncio.create_task(heartbeat.run(self.stop_event), name="heartbeat"),
            asyncio.create_task(
                run_periodic("sync", settings.sync_interval, self.stop_event, engine.push),
                name="sync",
            ),
        ]

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)
        self._write_pid()
        self._write_status()
        logger.info("Daemon started for %s (PID %d)", paths.pet_id, os.getpid())

        try:
            await self.stop_event.wait()
        finally:
            logger.info("Stopping")
            for sub in subscriptions:
                sub.unsubscribe()
            relay.close()
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self._mark_offline(store, paths)
            engine.guard.cancel()
            await completions.aclose()
            if engine.codec is not None:
                await engine.codec.aclose()
            await self._release(store)
            self.state.running = False
            self._write_status()
            self._remove_pid()
        return EXIT_OK

    async def sync_once(self) -> int:
        """Push the local state once, then close everything.

        Returns:
            Exit code: 0 when the push was written.
        """
        connected = await self.connect()
        if connected is None:
            return EXIT_AUTH
        store, paths = connected
        engine: Optional[SyncEngine] = None
        try:
            if not await validate_pet(store, paths):
                return EXIT_AUTH
            engine, _ = self.build_engine(store, paths)
            await engine.prime()
            pushed = await engine.push()
        except StoreError as exc:
            logger.error("Sync failed: %s", exc)
            return EXIT_FAILED
        finally:
            if engine is not None:
                engine.guard.cancel()
                if engine.codec is not None:
                    await engine.codec.aclose()
            await self._release(store)
        return EXIT_OK if pushed else EXIT_FAILED

    async def _release(self, store: DocumentStore) -> None:
        await store.close()
        if self.tokens is not None:
            self.tokens.close()

    async def _mark_offline(self, store: DocumentStore, paths: DevicePaths) -> None:
        try:
            await asyncio.wait_for(set_offline(store, paths), timeout=self.settings.shutdown_timeout)
        except Exception as exc:
            logger.warning("Offline marker not written: %s", exc)

    async def _on_beat(self, record: HeartbeatRecord) -> None:
        self.state.record_heartbeat(record)
        self._write_status()

    # -------------------------------------------------------------------
    # Process plumbing
    # -------------------------------------------------------------------

    def _setup_signals(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig.name)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, stopping", sig.name)
        self.stop()

    def _write_status(self) -> None:
        path = self.home / STATUS_FILE
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.state.snapshot(), indent=2), encoding="utf-8")
        except OSError as exc:
            logger.debug("Status file not written: %s", exc)

    def _write_pid(self) -> None:
        """Write the PID file."""
        pid_path = self.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        """Remove the PID file."""
        (self.home / PID_FILE).unlink(missing_ok=True)


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID from the PID file.

    Args:
        home: Petbook home directory.

    Returns:
        PID as int, or None if not running.
    """
    pid_path = petbook_home(home) / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def read_status(home: Optional[Path] = None) -> Optional[dict]:
    """Last status snapshot written by the daemon, if any."""
    path = petbook_home(home) / STATUS_FILE
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
