"""
Two-way sync between the OpenClaw installation and its device document.

    engine       pull / push and the guarded device-field writes
    guard        echo suppression and change fingerprints
    environment  .env materialization from env vars and secrets
"""

from .engine import SyncEngine
from .environment import EnvironmentLoader
from .guard import Direction, SyncGuard, fingerprint

__all__ = ["Direction", "EnvironmentLoader", "SyncEngine", "SyncGuard", "fingerprint"]
