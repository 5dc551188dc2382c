"""
fieldsync

Offline-first synchronization engine for field-service records.

Provides:
- Local-first SQLite store with a durable sync queue
- Push/pull sync against a central HTTP API with retry, backoff and dead-lettering
- Field-level conflict detection with auto-merge of non-critical fields
- Debounced connection monitoring and an observer event bus

Usage:

    >>> from fieldsync import (
    ...     EntityRepository, HttpRemoteSyncApi, SQLiteLocalStore,
    ...     SQLiteStoreConfig, SyncConfig, SyncOrchestrator,
    ... )
    >>> config = SyncConfig.from_env()
    >>> store = await SQLiteLocalStore.create(SQLiteStoreConfig(db_path=config.db_path))
    >>> remote = HttpRemoteSyncApi(config.api_base_url, token_provider=auth.get_token)
    >>> orchestrator = SyncOrchestrator(store, remote, config=config)
    >>> repo = EntityRepository(store, orchestrator.queue, orchestrator)
    >>> await orchestrator.start()
    ...
    >>> quote = await repo.create("quote", {"customer_name": "Ada", "status": "draft"})
    >>> orchestrator.monitor.report(False)  # platform signal: offline
    >>> await repo.update("quote", quote.id, {"notes": "Measure the back fence"})
    >>> orchestrator.monitor.report(True)  # back online, sync runs

Observing state:

    >>> from fieldsync import SyncEventType
    >>> orchestrator.events.subscribe(
    ...     lambda e: print(e.data["pending_count"]),
    ...     event_types={SyncEventType.PENDING_COUNT_CHANGED},
    ... )
"""

from .config import SyncConfig, get_device_id
from .exceptions import (
    AuthenticationError,
    ConflictNotFoundError,
    EntityNotFoundError,
    FieldSyncError,
    PermanentRejectionError,
    QueueItemNotFoundError,
    StorageConnectionError,
    StorageExhaustedError,
    StorageIOError,
    SyncError,
    TransientSyncError,
    ValidationError,
    VersionConflictError,
)
from .payloads import (
    EntityPayload,
    FieldPolicy,
    GenericPayload,
    JobPayload,
    QuotePayload,
    get_field_policy,
    parse_payload,
    payload_to_dict,
    register_field_policy,
)
from .protocol import (
    ConflictRecord,
    ConnectionState,
    Entity,
    EntitySyncStatus,
    PushAck,
    QueueStats,
    RemoteEntity,
    SyncOperation,
    SyncPriority,
    SyncQueueItem,
    SyncSnapshot,
)
from .repository import EntityRepository
from .store import LocalStore, SQLiteLocalStore, SQLiteStoreConfig
from .sync import (
    BackoffPolicy,
    ConflictResolver,
    ConnectionMonitor,
    EventBus,
    HttpRemoteSyncApi,
    MergeOutcome,
    MergeResult,
    RemoteSyncApi,
    Resolution,
    ResolutionChoice,
    SyncEvent,
    SyncEventType,
    SyncOrchestrator,
    SyncQueueManager,
    SyncResult,
    SyncState,
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "SyncConfig",
    "get_device_id",
    # Core types
    "ConflictRecord",
    "ConnectionState",
    "Entity",
    "EntitySyncStatus",
    "PushAck",
    "QueueStats",
    "RemoteEntity",
    "SyncOperation",
    "SyncPriority",
    "SyncQueueItem",
    "SyncSnapshot",
    # Payloads
    "EntityPayload",
    "FieldPolicy",
    "GenericPayload",
    "JobPayload",
    "QuotePayload",
    "get_field_policy",
    "parse_payload",
    "payload_to_dict",
    "register_field_policy",
    # Store
    "LocalStore",
    "SQLiteLocalStore",
    "SQLiteStoreConfig",
    # Sync
    "BackoffPolicy",
    "ConflictResolver",
    "ConnectionMonitor",
    "EntityRepository",
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
    # Exceptions
    "AuthenticationError",
    "ConflictNotFoundError",
    "EntityNotFoundError",
    "FieldSyncError",
    "PermanentRejectionError",
    "QueueItemNotFoundError",
    "StorageConnectionError",
    "StorageExhaustedError",
    "StorageIOError",
    "SyncError",
    "TransientSyncError",
    "ValidationError",
    "VersionConflictError",
]
