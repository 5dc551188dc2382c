"""
Abstract local store interface.

The local store is the single source of truth on the device. User-facing
mutation code writes business payloads through ``put`` and
``put_and_enqueue``; the sync orchestrator writes sync-derived state
(``sync_status``, ``version``) through ``update_sync_state``,
``apply_remote`` and ``rebase_entity``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime

from ..protocol import (
    ConflictRecord,
    Entity,
    EntitySyncStatus,
    RemoteEntity,
    SyncQueueItem,
)


class LocalStore(ABC):
    """Durable, process-local storage of entities, queue, watermarks and conflicts.

    All writes are transactional. The only error surfaced from local writes
    is ``StorageExhaustedError``.
    """

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def initialize(self) -> None:
        """Open the store and create the schema."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""

    async def __aenter__(self) -> LocalStore:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # =========================================================================
    # Entities
    # =========================================================================

    @abstractmethod
    async def put(self, entity: Entity) -> None:
        """Insert or replace an entity.

        Raises:
            ValidationError: If the write would lower the stored version
            StorageExhaustedError: If the store is full
        """

    @abstractmethod
    async def get(self, entity_type: str, entity_id: str) -> Entity | None:
        """Get an entity (including tombstones) or None."""

    @abstractmethod
    async def query_all(self, entity_type: str, include_deleted: bool = False) -> list[Entity]:
        """All entities of a type, ordered by updated_at."""

    @abstractmethod
    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        """Physically remove an entity row. Returns True if it existed."""

    @abstractmethod
    async def purge_unsynced(self, entity_type: str, entity_id: str) -> int | None:
        """Remove an entity the remote has never seen, with all its queue items.

        In one transaction, and only while the entity is still at version 0
        and neither ``syncing`` nor in ``conflict``. Returns the number of
        queue items removed, or None if nothing was purged.
        """

    @abstractmethod
    async def put_and_enqueue(self, entity: Entity, item: SyncQueueItem) -> None:
        """Write an entity and enqueue its sync operation atomically."""

    @abstractmethod
    async def update_sync_state(
        self,
        entity_type: str,
        entity_id: str,
        sync_status: EntitySyncStatus,
        version: int | None = None,
        last_error: str | None = None,
        last_synced_at: datetime | None = None,
        base_payload: dict | None = None,
    ) -> Entity | None:
        """Update sync-derived fields of an entity.

        ``version`` never decreases: the stored value becomes
        ``max(stored, version)``. Returns the updated entity, or None if
        the entity no longer exists.
        """

    @abstractmethod
    async def confirm_push(
        self,
        entity_type: str,
        entity_id: str,
        version: int,
        base_payload: dict | None,
        synced_at: datetime,
        requeue: Callable[[Entity], SyncQueueItem] | None = None,
    ) -> EntitySyncStatus | None:
        """Record a remote acknowledgement of a pushed payload.

        In one transaction: the entity becomes ``synced`` only if it has no
        active queue items left and its stored payload equals
        ``base_payload`` (the acknowledged snapshot); otherwise it stays
        ``pending``. When nothing is queued but the payloads differ,
        ``requeue`` is called with the updated entity and the item it
        returns is enqueued. The version becomes ``max(stored, version)``.
        Returns the resulting status, or None if the entity no longer exists.
        """

    @abstractmethod
    async def apply_remote(self, remote: RemoteEntity, expected: Entity | None) -> bool:
        """Overwrite the local copy with an authoritative remote entity.

        ``expected`` is the local entity as the caller last read it (None if
        it did not exist). The write only happens if the stored row still
        matches, so a user mutation made in between is never overwritten.
        The stored version never decreases. Returns True if written.
        """

    @abstractmethod
    async def rebase_entity(
        self,
        entity: Entity,
        expected: Entity,
        item: SyncQueueItem | None,
    ) -> bool:
        """Replace an entity and collapse its active queue items into ``item``.

        Active (non dead-letter) queue rows for the entity are deleted and
        ``item`` (if any) is inserted in their place, all in one
        transaction. The write only happens if the stored ``updated_at``
        still equals ``expected.updated_at``. Returns True if written.
        """

    # =========================================================================
    # Sync queue
    # =========================================================================

    @abstractmethod
    async def enqueue(self, item: SyncQueueItem) -> None:
        """Insert a queue item."""

    @abstractmethod
    async def get_queue_item(self, item_id: str) -> SyncQueueItem | None:
        """Get a queue item by ID."""

    @abstractmethod
    async def list_queue_items(
        self,
        dead_letter: bool | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> list[SyncQueueItem]:
        """Queue items in creation order, optionally filtered."""

    @abstractmethod
    async def update_queue_item(self, item: SyncQueueItem) -> bool:
        """Persist retry metadata of a queue item. Returns True if it existed."""

    @abstractmethod
    async def delete_queue_item(self, item_id: str) -> bool:
        """Remove a queue item. Returns True if it existed."""

    @abstractmethod
    async def delete_queue_items_for_entity(
        self, entity_type: str, entity_id: str, include_dead_letter: bool = False
    ) -> int:
        """Remove the queue items of one entity. Returns the number removed."""

    @abstractmethod
    async def count_ready(self, now: datetime) -> int:
        """Items with dead_letter = false, not blocked, and next_retry_at <= now."""

    # =========================================================================
    # Watermarks and metadata
    # =========================================================================

    @abstractmethod
    async def get_watermark(self, entity_type: str) -> str | None:
        """Pull watermark for an entity type."""

    @abstractmethod
    async def set_watermark(self, entity_type: str, watermark: str) -> None:
        """Store the pull watermark for an entity type."""

    @abstractmethod
    async def get_meta(self, key: str) -> str | None:
        """Read a sync metadata value."""

    @abstractmethod
    async def set_meta(self, key: str, value: str) -> None:
        """Write a sync metadata value."""

    # =========================================================================
    # Conflicts
    # =========================================================================

    @abstractmethod
    async def save_conflict(self, conflict: ConflictRecord) -> None:
        """Insert or replace the conflict record of an entity."""

    @abstractmethod
    async def open_conflict(self, conflict: ConflictRecord, last_error: str) -> None:
        """Record a conflict and hold back the entity until it is resolved.

        In one transaction: the conflict record is saved, the entity's
        active queue items are blocked and its status becomes ``conflict``
        with ``last_error``.
        """

    @abstractmethod
    async def get_conflict(self, entity_type: str, entity_id: str) -> ConflictRecord | None:
        """Get the conflict record of an entity (resolved or not)."""

    @abstractmethod
    async def list_conflicts(self, include_resolved: bool = False) -> list[ConflictRecord]:
        """Conflict records ordered by detection time."""
