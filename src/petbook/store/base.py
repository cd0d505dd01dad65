"""
Document store interface -- what the daemon needs from its remote store.

Documents are addressed by slash-separated paths
(``users/{uid}/pets/{petId}/commands/{id}``). Writes are merges,
reads return plain dicts, and subscriptions deliver change batches to
an async handler.

Every subscription owns one consumer task. Batches are handled one at
a time in the order the store produced them, so a slow handler only
delays its own subscription. Unsubscribing cancels whatever the
handler is doing at that moment.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from .. import PetbookError

logger = logging.getLogger("petbook.store")


class StoreError(PetbookError):
    """Raised when the document store rejects an operation."""


class DocumentNotFound(StoreError):
    """Raised by update() when the target document does not exist."""


class ChangeType(str, Enum):
    """Kind of change reported by a query subscription."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class Document:
    """A document snapshot."""

    path: str
    data: dict[str, Any] = field(default_factory=dict)
    exists: bool = True

    @property
    def id(self) -> str:
        return doc_id(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


@dataclass
class DocumentChange:
    """One entry of a query subscription batch."""

    type: ChangeType
    document: Document


@dataclass(frozen=True)
class Filter:
    """A field predicate. Supported ops: ``==`` and ``in``."""

    field: str
    op: str
    value: Any

    def matches(self, data: dict[str, Any]) -> bool:
        actual = data.get(self.field)
        if self.op == "==":
            return actual == self.value
        if self.op == "in":
            return actual in self.value
        raise StoreError(f"Unsupported filter op: {self.op}")


def where(field_name: str, op: str, value: Any) -> Filter:
    return Filter(field_name, op, value)


def doc_id(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[-1]


def parent_path(path: str) -> str:
    return path.rstrip("/").rsplit("/", 1)[0]


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


class RecentPaths:
    """Bounded memory of document paths already acted on.

    Listeners use it to ignore redelivered "added" changes. The oldest
    paths are forgotten once ``maxlen`` is reached.
    """

    def __init__(self, maxlen: int = 1024):
        self.maxlen = maxlen
        self._paths: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, path: str) -> bool:
        return path in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def add(self, path: str) -> bool:
        """Remember ``path``. Returns False if it was already known."""
        if path in self._paths:
            return False
        self._paths[path] = None
        while len(self._paths) > self.maxlen:
            self._paths.popitem(last=False)
        return True


DocumentHandler = Callable[[Document], Awaitable[None]]
QueryHandler = Callable[[list[DocumentChange]], Awaitable[None]]


class Subscription:
    """A live subscription feeding batches to one async handler.

    Args:
        name: Label used in log messages.
        handler: Coroutine function called once per batch.
        on_close: Called when the subscription is cancelled, e.g. to
            detach the store-side listener.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[Any], Awaitable[None]],
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.name = name
        self._handler = handler
        self.on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._task = asyncio.get_running_loop().create_task(
            self._consume(), name=f"subscription-{name}"
        )

    @property
    def active(self) -> bool:
        return not self._closed

    def deliver(self, batch: Any) -> None:
        """Queue a batch. Must be called on the event loop thread."""
        if not self._closed:
            self._queue.put_nowait(batch)

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await self._handler(batch)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Subscription %s handler failed: %s", self.name, exc)
            finally:
                self._queue.task_done()

    async def idle(self) -> None:
        """Wait until every queued batch has been handled."""
        await self._queue.join()

    def unsubscribe(self) -> None:
        """Stop delivery and cancel the handler if it is running."""
        if self._closed:
            return
        self._closed = True
        if self.on_close is not None:
            try:
                self.on_close()
            except Exception as exc:
                logger.warning("Subscription %s close failed: %s", self.name, exc)
        self._task.cancel()


class DocumentStore(ABC):
    """Abstract remote document store."""

    @abstractmethod
    async def get(self, path: str) -> Document:
        """Read one document. Missing documents have ``exists=False``."""

    @abstractmethod
    async def set(self, path: str, data: dict[str, Any], merge: bool = True) -> None:
        """Create or overwrite a document. With ``merge``, nested maps
        are merged and unspecified fields are preserved."""

    @abstractmethod
    async def update(self, path: str, data: dict[str, Any]) -> None:
        """Replace the given top-level fields of an existing document.

        Raises:
            DocumentNotFound: If the document does not exist.
        """

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a document if it exists."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[Document]:
        """Read the documents of a collection matching every filter."""

    @abstractmethod
    def subscribe_document(self, path: str, handler: DocumentHandler) -> Subscription:
        """Deliver the current snapshot of ``path`` and every later one."""

    @abstractmethod
    def subscribe_query(
        self,
        collection: str,
        handler: QueryHandler,
        filters: Iterable[Filter] = (),
    ) -> Subscription:
        """Deliver change batches for documents matching ``filters``.

        The first batch reports every current match as added.
        """

    async def close(self) -> None:
        """Release client resources."""
