"""
Remote document store backends.

    firestore  -- Cloud Firestore, the production store
    memory     -- in-process, for tests and offline runs
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from .base import (
    ChangeType,
    Document,
    DocumentChange,
    DocumentNotFound,
    DocumentStore,
    Filter,
    RecentPaths,
    StoreError,
    Subscription,
    doc_id,
    join_path,
    parent_path,
    where,
)
from .memory import MemoryStore

__all__ = [
    "ChangeType",
    "Document",
    "DocumentChange",
    "DocumentNotFound",
    "DocumentStore",
    "Filter",
    "MemoryStore",
    "RecentPaths",
    "StoreBackendType",
    "StoreError",
    "Subscription",
    "create_store",
    "doc_id",
    "join_path",
    "parent_path",
    "where",
]


class StoreBackendType(str, Enum):
    """Supported document store backends."""

    FIRESTORE = "firestore"
    MEMORY = "memory"


def create_store(backend: StoreBackendType, project: str = "", credentials: Any = None) -> DocumentStore:
    """Factory function to create the configured document store.

    Args:
        backend: Which store to build.
        project: Google Cloud project (firestore only).
        credentials: google-auth credentials (firestore only).

    Returns:
        Instantiated DocumentStore.

    Raises:
        ValueError: If backend type is not supported.
    """
    backend = StoreBackendType(backend)
    if backend == StoreBackendType.MEMORY:
        return MemoryStore()
    if backend == StoreBackendType.FIRESTORE:
        from .firestore import FirestoreStore

        return FirestoreStore(project, credentials=credentials)
    raise ValueError(f"Unsupported store backend: {backend}")
