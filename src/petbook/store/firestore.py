"""
Cloud Firestore document store.

Reads and writes go through the async client. Real-time listeners only
exist on the sync client: their callbacks run on SDK threads and are
handed to the event loop with ``call_soon_threadsafe``, where each
subscription's consumer task processes them in order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional, Sequence

from google.api_core import exceptions as gexc
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .base import (
    ChangeType,
    Document,
    DocumentChange,
    DocumentHandler,
    DocumentNotFound,
    DocumentStore,
    Filter,
    QueryHandler,
    StoreError,
    Subscription,
)

logger = logging.getLogger("petbook.store.firestore")


def _to_document(snapshot: Any) -> Document:
    path = snapshot.reference.path
    if not snapshot.exists:
        return Document(path=path, exists=False)
    return Document(path=path, data=snapshot.to_dict() or {})


class FirestoreStore(DocumentStore):
    """DocumentStore backed by Cloud Firestore.

    Args:
        project: Google Cloud project id.
        credentials: google-auth credentials for the signed-in user.
        client: Sync client used for listeners. Built when omitted.
        async_client: Async client used for reads and writes.
    """

    def __init__(
        self,
        project: str,
        credentials: Any = None,
        client: Optional[firestore.Client] = None,
        async_client: Optional[firestore.AsyncClient] = None,
    ):
        self.project = project
        self._client = client or firestore.Client(project=project, credentials=credentials)
        self._async = async_client or firestore.AsyncClient(
            project=project, credentials=credentials
        )

    async def get(self, path: str) -> Document:
        try:
            snapshot = await self._async.document(path).get()
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"get {path} failed: {exc}") from exc
        return _to_document(snapshot)

    async def set(self, path: str, data: dict[str, Any], merge: bool = True) -> None:
        try:
            await self._async.document(path).set(data, merge=merge)
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"set {path} failed: {exc}") from exc

    async def update(self, path: str, data: dict[str, Any]) -> None:
        try:
            await self._async.document(path).update(data)
        except gexc.NotFound as exc:
            raise DocumentNotFound(path) from exc
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"update {path} failed: {exc}") from exc

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        try:
            _, ref = await self._async.collection(collection).add(data)
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"add to {collection} failed: {exc}") from exc
        return ref.id

    async def delete(self, path: str) -> None:
        try:
            await self._async.document(path).delete()
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"delete {path} failed: {exc}") from exc

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
    ) -> list[Document]:
        query: Any = self._async.collection(collection)
        for f in filters:
            query = query.where(filter=FieldFilter(f.field, f.op, f.value))
        if order_by:
            query = query.order_by(order_by)
        try:
            return [_to_document(snap) async for snap in query.stream()]
        except gexc.GoogleAPICallError as exc:
            raise StoreError(f"query {collection} failed: {exc}") from exc

    def subscribe_document(self, path: str, handler: DocumentHandler) -> Subscription:
        loop = asyncio.get_running_loop()
        sub = Subscription(path, handler)

        def on_snapshot(snapshots, changes, read_time):
            doc = _to_document(snapshots[0]) if snapshots else Document(path, exists=False)
            loop.call_soon_threadsafe(sub.deliver, doc)

        watch = self._client.document(path).on_snapshot(on_snapshot)
        sub.on_close = watch.unsubscribe
        return sub

    def subscribe_query(
        self,
        collection: str,
        handler: QueryHandler,
        filters: Iterable[Filter] = (),
    ) -> Subscription:
        loop = asyncio.get_running_loop()
        sub = Subscription(collection, handler)

        query: Any = self._client.collection(collection)
        for f in filters:
            query = query.where(filter=FieldFilter(f.field, f.op, f.value))

        def on_snapshot(snapshots, changes, read_time):
            batch = [
                DocumentChange(ChangeType(change.type.name.lower()), _to_document(change.document))
                for change in changes
            ]
            if batch:
                loop.call_soon_threadsafe(sub.deliver, batch)

        watch = query.on_snapshot(on_snapshot)
        sub.on_close = watch.unsubscribe
        return sub

    async def close(self) -> None:
        self._client.close()
