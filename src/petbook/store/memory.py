"""
In-process document store.

Behaves like the real store where the daemon cares: merge writes,
per-subscription ordered delivery, added/modified/removed diffs for
queries. Notifications can be delayed to imitate network latency.
Every write is recorded in ``writes`` so callers can see exactly what
was sent.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from .base import (
    ChangeType,
    Document,
    DocumentChange,
    DocumentHandler,
    DocumentNotFound,
    DocumentStore,
    Filter,
    QueryHandler,
    Subscription,
    join_path,
    parent_path,
)

logger = logging.getLogger("petbook.store.memory")


def deep_merge(target: dict[str, Any], source: dict[str, Any]) -> dict[str, Any]:
    """Merge ``source`` into ``target`` recursively, in place."""
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            deep_merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


@dataclass
class WriteRecord:
    """One write as received by the store."""

    op: str
    path: str
    data: dict[str, Any]


@dataclass
class _QueryWatch:
    collection: str
    filters: tuple[Filter, ...]
    subscription: Subscription
    matched: dict[str, dict[str, Any]] = field(default_factory=dict)

    def matches(self, data: dict[str, Any]) -> bool:
        return all(f.matches(data) for f in self.filters)


class MemoryStore(DocumentStore):
    """A DocumentStore kept in a dict.

    Args:
        notify_delay: Seconds between a write and its notifications.
    """

    def __init__(self, notify_delay: float = 0.0):
        self.notify_delay = notify_delay
        self.writes: list[WriteRecord] = []
        self._docs: dict[str, dict[str, Any]] = {}
        self._doc_watches: list[tuple[str, Subscription]] = []
        self._query_watches: list[_QueryWatch] = []
        self._outbox: deque = deque()

    # -------------------------------------------------------------------
    # Direct access
    # -------------------------------------------------------------------

    def data(self, path: str) -> Optional[dict[str, Any]]:
        """Current contents of a document, or None."""
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    def writes_to(self, prefix: str) -> list[WriteRecord]:
        """Writes whose path starts with ``prefix``."""
        return [w for w in self.writes if w.path.startswith(prefix)]

    # -------------------------------------------------------------------
    # DocumentStore
    # -------------------------------------------------------------------

    async def get(self, path: str) -> Document:
        doc = self._docs.get(path)
        if doc is None:
            return Document(path=path, exists=False)
        return Document(path=path, data=copy.deepcopy(doc))

    async def set(self, path: str, data: dict[str, Any], merge: bool = True) -> None:
        self.writes.append(WriteRecord("set", path, copy.deepcopy(data)))
        if merge and path in self._docs:
            deep_merge(self._docs[path], data)
        else:
            self._docs[path] = copy.deepcopy(data)
        self._notify(path)

    async def update(self, path: str, data: dict[str, Any]) -> None:
        if path not in self._docs:
            raise DocumentNotFound(path)
        self.writes.append(WriteRecord("update", path, copy.deepcopy(data)))
        self._docs[path].update(copy.deepcopy(data))
        self._notify(path)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        new_id = uuid.uuid4().hex[:20]
        path = join_path(collection, new_id)
        self.writes.append(WriteRecord("add", path, copy.deepcopy(data)))
        self._docs[path] = copy.deepcopy(data)
        self._notify(path)
        return new_id

    async def delete(self, path: str) -> None:
        if self._docs.pop(path, None) is None:
            return
        self.writes.append(WriteRecord("delete", path, {}))
        self._notify(path)

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[Document]:
        docs = [
            Document(path=path, data=copy.deepcopy(data))
            for path, data in self._docs.items()
            if parent_path(path) == collection
            and all(f.matches(data) for f in filters)
        ]
        if order_by:
            docs.sort(key=lambda d: str(d.data.get(order_by, "")))
        return docs

    def subscribe_document(self, path: str, handler: DocumentHandler) -> Subscription:
        sub = Subscription(path, handler)
        entry = (path, sub)
        self._doc_watches.append(entry)
        sub.on_close = lambda: self._doc_watches.remove(entry)
        self._schedule(sub, self._snapshot(path))
        return sub

    def subscribe_query(
        self,
        collection: str,
        handler: QueryHandler,
        filters: Iterable[Filter] = (),
    ) -> Subscription:
        sub = Subscription(collection, handler)
        watch = _QueryWatch(collection, tuple(filters), sub)
        self._query_watches.append(watch)
        sub.on_close = lambda: self._query_watches.remove(watch)

        batch = []
        for path, data in self._docs.items():
            if parent_path(path) == collection and watch.matches(data):
                watch.matched[path] = copy.deepcopy(data)
                batch.append(DocumentChange(ChangeType.ADDED, Document(path, copy.deepcopy(data))))
        self._schedule(sub, batch)
        return sub

    # -------------------------------------------------------------------
    # Notification plumbing
    # -------------------------------------------------------------------

    def _snapshot(self, path: str) -> Document:
        doc = self._docs.get(path)
        if doc is None:
            return Document(path=path, exists=False)
        return Document(path=path, data=copy.deepcopy(doc))

    def _schedule(self, sub: Subscription, batch: Any) -> None:
        loop = asyncio.get_running_loop()
        # Each timer releases the oldest entry, whichever timer fires first.
        self._outbox.append((sub, batch))
        if self.notify_delay > 0:
            loop.call_later(self.notify_delay, self._release_one)
        else:
            loop.call_soon(self._release_one)

    def _release_one(self) -> None:
        if self._outbox:
            sub, batch = self._outbox.popleft()
            sub.deliver(batch)

    def _notify(self, path: str) -> None:
        for watched_path, sub in list(self._doc_watches):
            if watched_path == path:
                self._schedule(sub, self._snapshot(path))

        collection = parent_path(path)
        current = self._docs.get(path)
        for watch in list(self._query_watches):
            if watch.collection != collection:
                continue
            was_match = path in watch.matched
            is_match = current is not None and watch.matches(current)
            if is_match:
                kind = ChangeType.MODIFIED if was_match else ChangeType.ADDED
                watch.matched[path] = copy.deepcopy(current)
                change = DocumentChange(kind, Document(path, copy.deepcopy(current)))
            elif was_match:
                data = watch.matched.pop(path)
                change = DocumentChange(ChangeType.REMOVED, Document(path, data))
            else:
                continue
            self._schedule(watch.subscription, [change])
