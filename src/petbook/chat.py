"""
Chat Relay -- answers dashboard chat through the local OpenClaw gateway.

    …/chats/{chatId}                       one listener per thread
        messages/{id}  user, pending   ->  sent
        messages/{id}  assistant       ->  streaming -> done | error

For every pending user message the relay creates an empty assistant
message, streams the completion from the gateway and writes the growing
content back in batches: at most every ``flush_interval`` seconds, or
sooner once ``flush_chars`` new characters have arrived. Removing a
thread cancels its generation and closes the HTTP response.
"""

from __future__ import annotations

import json
import logging
import time
from functools import partial
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from .device import DevicePaths
from .gateway import GatewayError
from .local_state import LocalStateStore
from .models import HISTORY_STATUSES, ChatMessage, MessageRole, MessageStatus, now_iso
from .store import (
    ChangeType,
    Document,
    DocumentChange,
    DocumentStore,
    RecentPaths,
    Subscription,
    join_path,
    where,
)

logger = logging.getLogger("petbook.chat")

GATEWAY_HOST = "127.0.0.1"
COMPLETIONS_PATH = "/v1/chat/completions"
MODEL = "openclaw"
DONE_SENTINEL = "[DONE]"


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------


async def iter_sse_content(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield ``choices[0].delta.content`` from ``data:`` lines until [DONE].

    Lines that are not data, or not valid JSON, are skipped.
    """
    async for line in lines:
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):].strip()
        if data == DONE_SENTINEL:
            return
        try:
            parsed = json.loads(data)
            content = parsed["choices"][0]["delta"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            continue
        if content:
            yield content


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class CompletionClient:
    """Streaming client for the gateway's chat completions endpoint.

    Port and bearer token are read from the main config on every call,
    so a gateway reconfigured by sync is picked up immediately.

    Args:
        local: Local state store holding openclaw.json.
        client: HTTP client. One without a read timeout is created
            when omitted; generations may take as long as they take.
    """

    def __init__(self, local: LocalStateStore, client: Optional[httpx.AsyncClient] = None):
        self.local = local
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))

    def endpoint(self) -> tuple[str, str]:
        port, token = self.local.gateway_settings()
        return f"http://{GATEWAY_HOST}:{port}{COMPLETIONS_PATH}", token

    async def stream(self, messages: list[dict[str, Any]], chat_id: str) -> AsyncIterator[str]:
        """Yield content chunks of one completion.

        Closing the iterator (or cancelling its consumer) closes the
        response.

        Raises:
            GatewayError: On connection failure or a non-200 reply.
        """
        url, token = self.endpoint()
        body = {
            "model": MODEL,
            "messages": messages,
            "stream": True,
            "user": f"petbook-chat-{chat_id}",
        }
        try:
            async with self._client.stream(
                "POST", url, json=body, headers={"Authorization": f"Bearer {token}"}
            ) as resp:
                if resp.status_code != 200:
                    detail = (await resp.aread()).decode("utf-8", "replace")[:200]
                    raise GatewayError(f"Gateway {resp.status_code}: {detail}")
                async for chunk in iter_sse_content(resp.aiter_lines()):
                    yield chunk
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Flush policy
# ---------------------------------------------------------------------------


class FlushPolicy:
    """Decides when streamed content is written back.

    Args:
        interval: Seconds after the last flush that force the next one.
        chars: New characters that force a flush.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        interval: float = 0.5,
        chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.chars = chars
        self._clock = clock
        self._last = clock()
        self._pending = 0

    def should_flush(self, added: int) -> bool:
        """Account for ``added`` new characters; True means write now."""
        self._pending += added
        now = self._clock()
        if now - self._last >= self.interval or self._pending >= self.chars:
            self._last = now
            self._pending = 0
            return True
        return False


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


class ChatRelay:
    """Watches chat threads and streams replies into them.

    Args:
        store: Remote document store.
        paths: Remote paths of this device.
        completions: Gateway client.
        flush_interval: See FlushPolicy.
        flush_chars: See FlushPolicy.
        clock: Time source handed to each FlushPolicy.
    """

    def __init__(
        self,
        store: DocumentStore,
        paths: DevicePaths,
        completions: CompletionClient,
        flush_interval: float = 0.5,
        flush_chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.paths = paths
        self.completions = completions
        self.flush_interval = flush_interval
        self.flush_chars = flush_chars
        self.clock = clock
        self.threads: dict[str, Subscription] = {}
        self._handled = RecentPaths()

    def subscribe(self) -> Subscription:
        sub = self.store.subscribe_query(self.paths.chats, self.handle_chats)
        logger.info("Chat relay listening")
        return sub

    async def handle_chats(self, changes: list[DocumentChange]) -> None:
        for change in changes:
            chat_id = change.document.id
            if change.type == ChangeType.REMOVED:
                sub = self.threads.pop(chat_id, None)
                if sub is not None:
                    sub.unsubscribe()
                    logger.info("Chat %s closed", chat_id)
                continue
            if chat_id in self.threads:
                continue
            self.threads[chat_id] = self.store.subscribe_query(
                self.paths.messages(chat_id),
                partial(self.handle_messages, chat_id),
                [
                    where("status", "==", MessageStatus.PENDING.value),
                    where("role", "==", MessageRole.USER.value),
                ],
            )

    async def handle_messages(self, chat_id: str, changes: list[DocumentChange]) -> None:
        for change in changes:
            if change.type != ChangeType.ADDED:
                continue
            if not self._handled.add(change.document.path):
                continue
            await self.respond(chat_id, change.document)

    async def load_history(self, chat_id: str) -> list[dict[str, Any]]:
        """Settled messages of a thread, oldest first."""
        docs = await self.store.query(
            self.paths.messages(chat_id),
            [where("status", "in", HISTORY_STATUSES)],
            order_by="createdAt",
        )
        return [{"role": d.get("role"), "content": d.get("content", "")} for d in docs]

    async def respond(self, chat_id: str, message: Document) -> None:
        """Generate the assistant reply to one user message."""
        content_preview = str(message.get("content", ""))[:50]
        logger.info("Chat %s message received: %s", chat_id, content_preview)

        collection = self.paths.messages(chat_id)
        await self.store.update(message.path, {"status": MessageStatus.SENT.value})
        reply = ChatMessage(
            role=MessageRole.ASSISTANT,
            content="",
            status=MessageStatus.STREAMING,
            created_at=now_iso(),
        )
        reply_path = join_path(collection, await self.store.add(collection, reply.to_remote()))

        content = ""
        try:
            history = await self.load_history(chat_id)
            policy = FlushPolicy(self.flush_interval, self.flush_chars, self.clock)
            async for chunk in self.completions.stream(history, chat_id):
                content += chunk
                if policy.should_flush(len(chunk)):
                    await self.store.update(reply_path, {"content": content})
            await self.store.update(
                reply_path,
                {"content": content, "status": MessageStatus.DONE.value, "completedAt": now_iso()},
            )
            logger.info("Chat %s reply done (%d chars)", chat_id, len(content))
        except Exception as exc:
            logger.error("Chat %s reply failed: %s", chat_id, exc)
            try:
                await self.store.update(
                    reply_path,
                    {
                        "content": f"Reply failed: {exc}",
                        "status": MessageStatus.ERROR.value,
                        "completedAt": now_iso(),
                    },
                )
            except Exception as write_exc:
                logger.error("Chat %s could not record failure: %s", chat_id, write_exc)

    def close(self) -> None:
        """Stop every thread listener."""
        for sub in self.threads.values():
            sub.unsubscribe()
        self.threads.clear()
