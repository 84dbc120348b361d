"""
Refresh Service - Configuration Snapshot Management

Responsibilities:
- Hold the current configuration snapshot (atomic swap, lock-free reads)
- Poll a sentinel key and refresh only when it changes
- Keep serving last-known-good values during remote outages
- Cache applied snapshots locally for offline starts
"""

from .cache import SnapshotCache
from .coordinator import CoordinatorState, RefreshCoordinator, RefreshOutcome
from .policy import RefreshPolicy, is_due
from .service import RefreshService
from .source import HttpRemoteSource, InMemoryRemoteSource, RemoteSource
from .store import Snapshot, SnapshotStore

__all__ = [
    "CoordinatorState",
    "HttpRemoteSource",
    "InMemoryRemoteSource",
    "RefreshCoordinator",
    "RefreshOutcome",
    "RefreshPolicy",
    "RefreshService",
    "RemoteSource",
    "Snapshot",
    "SnapshotCache",
    "SnapshotStore",
    "is_due",
]
