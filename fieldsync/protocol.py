"""
Core types shared by the local store, the sync queue and the orchestrator.

Payloads are opaque JSON objects inside the engine. Only the conflict
resolver looks at individual payload fields, and only through the
critical/non-critical partition declared in ``fieldsync.payloads``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from .utils import format_timestamp, parse_timestamp, utcnow

# =============================================================================
# Enumerations
# =============================================================================


class EntitySyncStatus(Enum):
    """Sync lifecycle of a single entity."""

    LOCAL_ONLY = "local_only"  # Created locally, never queued
    PENDING = "pending"  # Has queued operations
    SYNCING = "syncing"  # Claimed by the active sync cycle
    SYNCED = "synced"  # Remote accepted exactly this version
    CONFLICT = "conflict"  # Divergence that needs manual resolution
    ERROR = "error"  # Last push failed transiently, waiting for retry

    @property
    def has_unsynced_changes(self) -> bool:
        return self is not EntitySyncStatus.SYNCED


class SyncOperation(Enum):
    """Operation recorded in the sync queue."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncPriority(IntEnum):
    """Queue priority. Lower number is served first."""

    CRITICAL = 1  # Status changes, customer contact details, operator retries
    HIGH = 2  # Financial changes, deletes
    NORMAL = 3  # Default
    LOW = 4  # Notes and display metadata


# =============================================================================
# Entities
# =============================================================================


@dataclass
class Entity:
    """A synchronizable business record (quote, job, ...).

    Attributes:
        id: Stable UUID, generated by the client or the server
        entity_type: Record type, e.g. "quote"
        payload: Opaque business data
        version: Server-authoritative counter, 0 until first acknowledged push
        updated_at: Time of the last local mutation or applied remote state
        sync_status: Position in the sync lifecycle
        deleted: Tombstone for a local delete waiting to be pushed
        last_synced_at: Time the remote last confirmed this entity
        last_error: Last sync error message, if any
        base_payload: Payload the server last confirmed (merge ancestor)
    """

    id: str
    entity_type: str
    payload: dict[str, Any]
    version: int = 0
    updated_at: datetime = field(default_factory=utcnow)
    sync_status: EntitySyncStatus = EntitySyncStatus.LOCAL_ONLY
    deleted: bool = False
    last_synced_at: datetime | None = None
    last_error: str | None = None
    base_payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "payload": self.payload,
            "version": self.version,
            "updated_at": format_timestamp(self.updated_at),
            "sync_status": self.sync_status.value,
            "deleted": self.deleted,
            "last_synced_at": format_timestamp(self.last_synced_at),
            "last_error": self.last_error,
            "base_payload": self.base_payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Entity:
        """Create from dictionary."""
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            payload=data.get("payload") or {},
            version=int(data.get("version", 0)),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
            sync_status=EntitySyncStatus(data.get("sync_status", "local_only")),
            deleted=bool(data.get("deleted", False)),
            last_synced_at=parse_timestamp(data.get("last_synced_at")),
            last_error=data.get("last_error"),
            base_payload=data.get("base_payload"),
        )


@dataclass
class RemoteEntity:
    """An entity as returned by the Remote Sync API."""

    id: str
    entity_type: str
    payload: dict[str, Any]
    version: int
    updated_at: datetime

    @classmethod
    def from_dict(cls, entity_type: str, data: dict[str, Any]) -> RemoteEntity:
        """Create from an API response object."""
        return cls(
            id=str(data["id"]),
            entity_type=entity_type,
            payload=data.get("payload") or {},
            version=int(data.get("version", 0)),
            updated_at=parse_timestamp(data.get("updated_at")) or utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "payload": self.payload,
            "version": self.version,
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass
class PushAck:
    """Remote acknowledgement of an accepted push."""

    entity_id: str
    version: int | None
    updated_at: datetime | None = None


# =============================================================================
# Sync Queue
# =============================================================================


@dataclass
class SyncQueueItem:
    """A pending operation against one entity.

    Attributes:
        id: Queue item ID
        entity_type: Type of the target entity
        entity_id: ID of the target entity
        operation: create, update or delete
        payload_snapshot: Entity payload at enqueue time
        base_version: Entity version known when the operation was queued
        retry_count: Failed attempts so far
        next_retry_at: Earliest time the item may be pushed again
        priority: Queue priority
        dead_letter: Excluded from automatic retry until operator action
        created_at: Enqueue time (FIFO order per entity)
        last_error: Last failure message
        failed_at: Time the item was dead-lettered
        blocked: Held behind an unresolved conflict on the entity
    """

    id: str
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload_snapshot: dict[str, Any] | None
    base_version: int = 0
    retry_count: int = 0
    next_retry_at: datetime = field(default_factory=utcnow)
    priority: SyncPriority = SyncPriority.NORMAL
    dead_letter: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_error: str | None = None
    failed_at: datetime | None = None
    blocked: bool = False

    def is_ready(self, now: datetime) -> bool:
        """Whether the item is eligible for the next batch."""
        return not self.dead_letter and not self.blocked and self.next_retry_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation.value,
            "payload_snapshot": self.payload_snapshot,
            "base_version": self.base_version,
            "retry_count": self.retry_count,
            "next_retry_at": format_timestamp(self.next_retry_at),
            "priority": int(self.priority),
            "dead_letter": self.dead_letter,
            "created_at": format_timestamp(self.created_at),
            "last_error": self.last_error,
            "failed_at": format_timestamp(self.failed_at),
            "blocked": self.blocked,
        }


@dataclass
class QueueStats:
    """Queue statistics for operator dashboards."""

    total: int
    pending: int
    backed_off: int
    blocked: int
    dead_letter: int
    by_priority: dict[str, int] = field(default_factory=dict)
    oldest_pending: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "backed_off": self.backed_off,
            "blocked": self.blocked,
            "dead_letter": self.dead_letter,
            "by_priority": self.by_priority,
            "oldest_pending": format_timestamp(self.oldest_pending),
        }


# =============================================================================
# Conflicts
# =============================================================================


@dataclass
class ConflictRecord:
    """A divergence that requires manual resolution.

    Both representations are retained until a resolution is received. The
    record is kept after resolution (``resolved=True``) so that repeating
    the same resolution returns the same outcome.
    """

    entity_type: str
    entity_id: str
    local_payload: dict[str, Any] | None
    local_operation: SyncOperation
    remote: RemoteEntity
    conflicting_fields: list[str] = field(default_factory=list)
    detected_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    resolution: str | None = None
    resolved_payload: dict[str, Any] | None = None
    resolved_version: int | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "local_payload": self.local_payload,
            "local_operation": self.local_operation.value,
            "remote": self.remote.to_dict(),
            "conflicting_fields": self.conflicting_fields,
            "detected_at": format_timestamp(self.detected_at),
            "resolved": self.resolved,
            "resolution": self.resolution,
            "resolved_payload": self.resolved_payload,
            "resolved_version": self.resolved_version,
            "resolved_at": format_timestamp(self.resolved_at),
        }


# =============================================================================
# Observable state
# =============================================================================


@dataclass
class ConnectionState:
    """Online/offline state published by the connection monitor."""

    is_online: bool
    last_online: datetime | None = None
    last_offline: datetime | None = None

    @property
    def status(self) -> str:
        return "online" if self.is_online else "offline"


@dataclass
class SyncSnapshot:
    """UI-observable sync status."""

    state: str
    is_online: bool
    pending_count: int
    dead_letter_count: int
    conflict_count: int
    last_sync_at: datetime | None

    @property
    def is_synced(self) -> bool:
        return self.pending_count == 0 and self.conflict_count == 0 and self.state != "error"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "state": self.state,
            "is_online": self.is_online,
            "pending_count": self.pending_count,
            "dead_letter_count": self.dead_letter_count,
            "conflict_count": self.conflict_count,
            "last_sync_at": format_timestamp(self.last_sync_at),
            "is_synced": self.is_synced,
        }
