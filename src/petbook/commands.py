"""
Command Processor -- runs commands issued from the dashboard.

The dashboard adds documents under ``…/commands`` with status
``pending``. The processor picks up each one and drives it through

    pending -> running -> done   (result, completedAt)
                       -> error  (error, completedAt)

An action outside the registry goes straight from pending to error.
Handler failures are written to the command and never leave this
module.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from . import PetbookError, __version__
from .gateway import Gateway, GatewayError, env_for_bin, find_bin, openclaw_version, run_command
from .models import Command, CommandStatus, now_iso
from .service import restart_service
from .store import ChangeType, DocumentChange, RecentPaths, Subscription, where
from .sync import EnvironmentLoader, SyncEngine

logger = logging.getLogger("petbook.commands")

NPM_LATEST_URL = "https://registry.npmjs.org/openclaw/latest"
DAEMON_PACKAGE = "petbook-daemon"
SOURCE_ROOT = Path(__file__).resolve().parents[2]


class UnknownActionError(PetbookError):
    """Raised for an action name outside the registry."""


class ActionKind(str, Enum):
    """Every action the daemon accepts."""

    CHECK_OPENCLAW_UPDATE = "check_openclaw_update"
    UPDATE_OPENCLAW = "update_openclaw"
    RESTART_GATEWAY = "restart_gateway"
    UPDATE_DAEMON = "update_daemon"
    DETECT_OPENCLAW = "detect_openclaw"
    REFRESH_INFO = "refresh_info"


def resolve_action(name: str) -> ActionKind:
    try:
        return ActionKind(name)
    except ValueError:
        raise UnknownActionError(f"Unknown command: {name}") from None


@dataclass
class CommandContext:
    """What handlers may use. Everything external is replaceable."""

    engine: SyncEngine
    gateway: Gateway
    env_loader: Optional[EnvironmentLoader] = None
    http: Optional[httpx.AsyncClient] = None
    version: Callable[[], Awaitable[str]] = openclaw_version
    which: Callable[[str], Optional[str]] = find_bin
    run: Callable[..., Awaitable[Any]] = run_command
    restart_service: Callable[[], bool] = restart_service
    background: set = field(default_factory=set)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run ``coro`` detached from the command, keeping a reference."""
        task = asyncio.ensure_future(coro)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task


Handler = Callable[[dict[str, Any], CommandContext], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def check_openclaw_update(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    current = await ctx.version()
    latest = ""
    client = ctx.http or httpx.AsyncClient(timeout=15.0)
    try:
        resp = await client.get(NPM_LATEST_URL)
        if resp.status_code == 200:
            latest = str(resp.json().get("version") or "")
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Registry lookup failed: %s", exc)
    finally:
        if ctx.http is None:
            await client.aclose()

    available = bool(latest and current and latest != current)
    message = (
        f"Update available: {current} -> {latest}" if available else f"Up to date ({current})"
    )
    return {"message": message, "current": current, "latest": latest, "updateAvailable": available}


async def update_openclaw(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    old = await ctx.version()
    npm = ctx.which("npm")
    failure: Optional[str] = None
    if not npm:
        failure = "npm not found"
    else:
        try:
            result = await ctx.run(
                [npm, "install", "-g", "openclaw@latest"], timeout=120, env=env_for_bin(npm)
            )
            if not result.ok:
                failure = result.stderr.strip() or f"npm exited {result.returncode}"
        except GatewayError as exc:
            failure = str(exc)
    if failure:
        return {"message": f"Update failed: {failure}", "oldVersion": old, "newVersion": old, "updated": False}

    new = await ctx.version()
    updated = old != new
    await ctx.engine.write_device_fields({"openclawVersion": new})
    if updated:
        logger.info("OpenClaw updated: %s -> %s", old, new)
        await ctx.gateway.restart()
    message = f"Updated: {old} -> {new}" if updated else f"Up to date ({old})"
    return {"message": message, "oldVersion": old, "newVersion": new, "updated": updated}


async def restart_gateway(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    ok = await ctx.gateway.restart()
    return {"message": "Gateway restarted" if ok else "Gateway restart failed", "restarted": ok}


async def _installed_version(ctx: CommandContext) -> str:
    result = await ctx.run(
        [sys.executable, "-c", "import petbook; print(petbook.__version__)"], timeout=30
    )
    return result.stdout.strip() if result.ok else __version__


async def update_daemon(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    old = __version__
    errors: list[str] = []
    if (SOURCE_ROOT / ".git").exists():
        method = "git"
        args, cwd = ["git", "pull"], SOURCE_ROOT
    else:
        method = "pip"
        args, cwd = [sys.executable, "-m", "pip", "install", "--upgrade", DAEMON_PACKAGE], None

    logger.info("Updating daemon via %s", method)
    try:
        result = await ctx.run(args, timeout=120, cwd=cwd)
        if not result.ok:
            errors.append(f"{method}: {result.stderr.strip() or result.returncode}")
    except GatewayError as exc:
        errors.append(f"{method}: {exc}")

    new = old if errors else await _installed_version(ctx)
    await ctx.engine.write_device_fields({"daemonVersion": new})

    updated = old != new
    if updated:
        logger.info("Daemon updated: %s -> %s", old, new)
        ctx.spawn(_restart_service_later(ctx))
        message = f"Updated: {old} -> {new} ({method})"
    elif errors:
        message = "Update failed: " + "; ".join(errors)
    else:
        message = f"Up to date ({old})"
    return {
        "message": message,
        "oldVersion": old,
        "newVersion": new,
        "method": method,
        "updated": updated,
        "errors": errors,
    }


async def _restart_service_later(ctx: CommandContext, delay: float = 1.0) -> None:
    # The command's "done" write must land before the service goes down.
    await asyncio.sleep(delay)
    if not await asyncio.to_thread(ctx.restart_service):
        logger.warning("Service restart failed; restart the daemon manually")


def _presence(ctx: CommandContext) -> dict[str, Any]:
    local = ctx.engine.local
    return {
        "hasOpenclaw": local.has_openclaw,
        "openclawPath": str(local.home) if local.has_openclaw else None,
    }


async def detect_openclaw(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    detection = ctx.engine.local.refresh_detection()
    presence = _presence(ctx)
    if not (detection.has_openclaw and await ctx.engine.push(extra=presence)):
        await ctx.engine.write_device_fields(presence)
    home = ctx.engine.local.home
    return {
        "message": f"OpenClaw found at {home}" if detection.has_openclaw else "OpenClaw not installed",
        "hasOpenclaw": detection.has_openclaw,
    }


async def refresh_info(params: dict[str, Any], ctx: CommandContext) -> dict[str, Any]:
    engine = ctx.engine
    engine.local.refresh_detection()
    extra = _presence(ctx)

    synced = 0
    if engine.local.has_openclaw and ctx.env_loader is not None:
        existing = (await engine.store.get(engine.paths.device)).get("deviceSecrets") or {}
        added = await ctx.env_loader.encrypt_new_keys(existing)
        if added:
            extra["deviceSecrets"] = {**existing, **added}
            synced = len(added)

    if not await engine.push(extra=extra):
        await engine.write_device_fields({**await engine.facts(), **extra, "updatedAt": now_iso()})
    message = "Device info refreshed"
    if synced:
        message += f" ({synced} secrets synced)"
    return {"message": message, "secretsSynced": synced, **_presence(ctx)}


REGISTRY: dict[ActionKind, Handler] = {
    ActionKind.CHECK_OPENCLAW_UPDATE: check_openclaw_update,
    ActionKind.UPDATE_OPENCLAW: update_openclaw,
    ActionKind.RESTART_GATEWAY: restart_gateway,
    ActionKind.UPDATE_DAEMON: update_daemon,
    ActionKind.DETECT_OPENCLAW: detect_openclaw,
    ActionKind.REFRESH_INFO: refresh_info,
}


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class CommandProcessor:
    """Subscribes to pending commands and runs them one at a time.

    Args:
        context: Handler context; its engine supplies store and paths.
        registry: Action handlers. Defaults to REGISTRY.
    """

    def __init__(self, context: CommandContext, registry: Optional[dict[ActionKind, Handler]] = None):
        self.context = context
        self.store = context.engine.store
        self.paths = context.engine.paths
        self.registry = registry if registry is not None else REGISTRY
        self._seen = RecentPaths()

    def subscribe(self) -> Subscription:
        return self.store.subscribe_query(
            self.paths.commands,
            self.handle_changes,
            [where("status", "==", CommandStatus.PENDING.value)],
        )

    async def handle_changes(self, changes: list[DocumentChange]) -> None:
        for change in changes:
            if change.type != ChangeType.ADDED:
                continue
            if not self._seen.add(change.document.path):
                continue
            await self.execute(change.document.path, change.document.data)

    async def _finish(self, path: str, fields: dict[str, Any]) -> None:
        try:
            await self.store.update(path, {**fields, "completedAt": now_iso()})
        except Exception as exc:
            logger.error("Could not record command result for %s: %s", path, exc)

    async def execute(self, path: str, data: dict[str, Any]) -> None:
        """Run one pending command document."""
        try:
            command = Command.model_validate(data)
        except ValidationError as exc:
            logger.error("Malformed command %s: %s", path, exc)
            await self._finish(path, {"status": CommandStatus.ERROR.value, "error": "malformed command"})
            return
        logger.info("Command received: %s", command.action)

        try:
            kind = resolve_action(command.action)
        except UnknownActionError as exc:
            logger.warning("%s", exc)
            await self._finish(path, {"status": CommandStatus.ERROR.value, "error": str(exc)})
            return

        try:
            await self.store.update(path, {"status": CommandStatus.RUNNING.value})
            result = await self.registry[kind](command.params or {}, self.context)
        except Exception as exc:
            logger.error("Command %s failed: %s", command.action, exc)
            await self._finish(path, {"status": CommandStatus.ERROR.value, "error": str(exc)})
            return

        await self._finish(path, {"status": CommandStatus.DONE.value, "result": result or {}})
        logger.info("Command done: %s", command.action)
