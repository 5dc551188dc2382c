"""
Sync module.

Queue, connection monitoring, conflict resolution and the orchestrator
that pushes local changes to the Remote Sync API and pulls remote changes
back into the local store.
"""

from .backoff import BackoffPolicy
from .conflict import (
    ConflictResolver,
    MergeOutcome,
    MergeResult,
    Resolution,
    ResolutionChoice,
)
from .connection import ConnectionMonitor
from .events import EventBus, SyncEvent, SyncEventType
from .orchestrator import SyncOrchestrator, SyncResult, SyncState
from .queue import SyncQueueManager, determine_priority
from .remote import HttpRemoteSyncApi, RemoteSyncApi

__all__ = [
    "BackoffPolicy",
    "ConflictResolver",
    "ConnectionMonitor",
    "EventBus",
    "HttpRemoteSyncApi",
    "MergeOutcome",
    "MergeResult",
    "RemoteSyncApi",
    "Resolution",
    "ResolutionChoice",
    "SyncEvent",
    "SyncEventType",
    "SyncOrchestrator",
    "SyncQueueManager",
    "SyncResult",
    "SyncState",
    "determine_priority",
]
