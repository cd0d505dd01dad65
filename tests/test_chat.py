"""Tests for the chat relay and the gateway completion client."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import settle
from petbook.chat import ChatRelay, CompletionClient, FlushPolicy, iter_sse_content
from petbook.gateway import GatewayError
from petbook.store import ChangeType, DocumentChange, where


def _sse(*contents: str) -> str:
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]})
        for c in contents
    ]
    return "\n\n".join(lines + ["data: [DONE]"]) + "\n\n"


async def _lines(items):
    for item in items:
        yield item


class FakeClock:
    """Returns the queued times, then keeps returning the last one."""

    def __init__(self, *times: float):
        self.times = list(times)

    def __call__(self) -> float:
        if len(self.times) > 1:
            return self.times.pop(0)
        return self.times[0]


class BlockingCompletions:
    """Yields one chunk, then waits forever."""

    def __init__(self):
        self.started = asyncio.Event()
        self.closed = False

    async def stream(self, messages, chat_id):
        try:
            yield "partial"
            self.started.set()
            await asyncio.Event().wait()
            yield "never"
        finally:
            self.closed = True


class FakeCompletions:
    def __init__(self, chunks=(), error=None):
        self.chunks = list(chunks)
        self.error = error
        self.requests = []

    async def stream(self, messages, chat_id):
        self.requests.append((messages, chat_id))
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


# ---------------------------------------------------------------------------
# Parsing and pacing
# ---------------------------------------------------------------------------


class TestSSE:
    @pytest.mark.asyncio
    async def test_content_until_done(self):
        lines = [
            "",
            ": keep-alive",
            "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
            "data: " + json.dumps({"choices": [{"delta": {"content": "Hel"}}]}),
            "data: not json",
            "data: " + json.dumps({"choices": []}),
            "data: " + json.dumps({"choices": [{"delta": {"content": "lo"}}]}),
            "data: [DONE]",
            "data: " + json.dumps({"choices": [{"delta": {"content": "late"}}]}),
        ]
        assert [c async for c in iter_sse_content(_lines(lines))] == ["Hel", "lo"]


class TestFlushPolicy:
    def test_interval(self):
        policy = FlushPolicy(interval=0.5, chars=200, clock=FakeClock(0.0, 0.2, 0.6, 0.7))
        assert policy.should_flush(1) is False
        assert policy.should_flush(1) is True
        assert policy.should_flush(1) is False

    def test_chars(self):
        policy = FlushPolicy(interval=10, chars=5, clock=lambda: 0.0)
        assert policy.should_flush(3) is False
        assert policy.should_flush(3) is True
        assert policy.should_flush(1) is False


# ---------------------------------------------------------------------------
# Gateway client
# ---------------------------------------------------------------------------


class TestCompletionClient:
    @pytest.mark.asyncio
    async def test_streams_from_local_gateway(self, local):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, text=_sse("Hi", " there"))

        client = CompletionClient(local, httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        chunks = [c async for c in client.stream([{"role": "user", "content": "yo"}], "c1")]

        assert chunks == ["Hi", " there"]
        request = seen[0]
        assert str(request.url) == "http://127.0.0.1:18789/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer gw-token"
        body = json.loads(request.content)
        assert body["model"] == "openclaw"
        assert body["stream"] is True
        assert body["user"] == "petbook-chat-c1"

    @pytest.mark.asyncio
    async def test_error_status(self, local):
        client = CompletionClient(
            local,
            httpx.AsyncClient(
                transport=httpx.MockTransport(lambda r: httpx.Response(500, text="upstream down"))
            ),
        )
        with pytest.raises(GatewayError, match="Gateway 500: upstream down"):
            async for _ in client.stream([], "c1"):
                pass

    @pytest.mark.asyncio
    async def test_unreachable(self, local):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = CompletionClient(local, httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(GatewayError, match="unreachable"):
            async for _ in client.stream([], "c1"):
                pass


# ---------------------------------------------------------------------------
# Relay
# ---------------------------------------------------------------------------


async def _start_thread(store, paths, content="Hi"):
    await store.set(f"{paths.chats}/c1", {"title": "test"})
    await store.set(
        f"{paths.messages('c1')}/m1",
        {"role": "user", "content": content, "status": "pending", "createdAt": "2026-01-01T00:00:00+00:00"},
    )


async def _reply(store, paths):
    docs = await store.query(paths.messages("c1"), [where("role", "==", "assistant")])
    assert len(docs) == 1
    return docs[0]


class TestChatRelay:
    """Pending user messages get one streamed assistant reply."""

    @pytest.mark.asyncio
    async def test_streamed_reply(self, store, paths):
        completions = FakeCompletions(["Hello", " world"])
        relay = ChatRelay(store, paths, completions, clock=FakeClock(0.0, 0.6, 0.7))
        await _start_thread(store, paths)
        sub = relay.subscribe()
        await settle(sub)
        await settle(*relay.threads.values())

        assert store.data(f"{paths.messages('c1')}/m1")["status"] == "sent"
        reply = await _reply(store, paths)
        assert reply.data["content"] == "Hello world"
        assert reply.data["status"] == "done"
        assert "completedAt" in reply.data

        writes = [w.data for w in store.writes_to(reply.path)]
        assert writes[0]["status"] == "streaming"
        assert writes[0]["content"] == ""
        assert writes[1] == {"content": "Hello"}
        assert writes[2]["content"] == "Hello world"
        assert len(writes) == 3

        messages, chat_id = completions.requests[0]
        assert chat_id == "c1"
        assert messages == [{"role": "user", "content": "Hi"}]
        relay.close()
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_failed_reply(self, store, paths):
        completions = FakeCompletions(["partial"], error=GatewayError("Gateway 502: bad gateway"))
        relay = ChatRelay(store, paths, completions)
        await _start_thread(store, paths)
        sub = relay.subscribe()
        await settle(sub)
        await settle(*relay.threads.values())

        reply = await _reply(store, paths)
        assert reply.data["status"] == "error"
        assert reply.data["content"] == "Reply failed: Gateway 502: bad gateway"
        relay.close()
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_message_answered_once(self, store, paths):
        completions = FakeCompletions(["ok"])
        relay = ChatRelay(store, paths, completions)
        await _start_thread(store, paths)
        sub = relay.subscribe()
        await settle(sub)
        await settle(*relay.threads.values())

        doc = await store.get(f"{paths.messages('c1')}/m1")
        await relay.handle_messages("c1", [DocumentChange(ChangeType.ADDED, doc)])
        assert len(completions.requests) == 1
        relay.close()
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_removed_thread_unsubscribed(self, store, paths):
        relay = ChatRelay(store, paths, FakeCompletions())
        await store.set(f"{paths.chats}/c1", {"title": "t"})
        sub = relay.subscribe()
        await settle(sub)
        thread = relay.threads["c1"]

        await store.delete(f"{paths.chats}/c1")
        await settle(sub)
        assert "c1" not in relay.threads
        assert thread.active is False
        sub.unsubscribe()

    @pytest.mark.asyncio
    async def test_thread_removed_mid_stream(self, store, paths):
        completions = BlockingCompletions()
        relay = ChatRelay(store, paths, completions)
        await _start_thread(store, paths)
        sub = relay.subscribe()
        await settle(sub)
        await asyncio.wait_for(completions.started.wait(), timeout=5)
        thread = relay.threads["c1"]

        await store.delete(f"{paths.chats}/c1")
        await settle(sub)
        assert thread.active is False
        assert completions.closed is True
        reply = await _reply(store, paths)
        assert reply.data["status"] == "streaming"
        sub.unsubscribe()
