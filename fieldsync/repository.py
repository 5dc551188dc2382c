"""
User-facing mutation surface.

Every create/update/delete writes the local store and enqueues the sync
operation in one transaction, then nudges the orchestrator. Reads always
come from the local store, so the UI never waits on the network.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .exceptions import EntityNotFoundError, ValidationError
from .payloads import EntityPayload, parse_payload, payload_to_dict
from .protocol import Entity, EntitySyncStatus, SyncOperation
from .store.base import LocalStore
from .sync.orchestrator import SyncOrchestrator
from .sync.queue import SyncQueueManager
from .utils import utcnow

logger = logging.getLogger(__name__)

# A sync write landing between read and write makes the store reject the
# stale version; the mutation is retried on a fresh read.
_MUTATION_ATTEMPTS = 3


class EntityRepository:
    """Local-first CRUD for synchronizable entities.

    Example:
        >>> repo = EntityRepository(store, orchestrator.queue, orchestrator)
        >>> quote = await repo.create("quote", {"customer_name": "Ada", "status": "draft"})
        >>> await repo.update("quote", quote.id, {"notes": "Gate code 1234"})
    """

    def __init__(
        self,
        store: LocalStore,
        queue: SyncQueueManager,
        orchestrator: SyncOrchestrator | None = None,
    ):
        self.store = store
        self.queue = queue
        self.orchestrator = orchestrator

    async def _after_mutation(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.notify_local_mutation()

    async def _conflict_pending(self, entity_type: str, entity_id: str) -> bool:
        conflict = await self.store.get_conflict(entity_type, entity_id)
        return conflict is not None and not conflict.resolved

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, entity_type: str, entity_id: str) -> Entity | None:
        """Get an entity, or None if missing or deleted."""
        entity = await self.store.get(entity_type, entity_id)
        if entity is None or entity.deleted:
            return None
        return entity

    async def get_payload(self, entity_type: str, entity_id: str) -> EntityPayload | None:
        """Typed business view of an entity's payload."""
        entity = await self.get(entity_type, entity_id)
        return None if entity is None else parse_payload(entity_type, entity.payload)

    async def list_all(self, entity_type: str) -> list[Entity]:
        return await self.store.query_all(entity_type)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create(
        self,
        entity_type: str,
        payload: dict[str, Any] | EntityPayload,
        entity_id: str | None = None,
        sync: bool = True,
    ) -> Entity:
        """Create an entity locally and queue it for push.

        Args:
            entity_type: Entity type, e.g. "quote"
            payload: Business data (dict or typed payload)
            entity_id: Client-generated ID (a UUID is generated if omitted)
            sync: False keeps the entity local-only until its first update

        Raises:
            ValidationError: If an entity with this ID already exists
            StorageExhaustedError: If the local store is full
        """
        if not isinstance(payload, dict):
            payload = payload_to_dict(payload)

        entity_id = entity_id or str(uuid.uuid4())
        if await self.store.get(entity_type, entity_id) is not None:
            raise ValidationError("id", "entity already exists", entity_id)

        entity = Entity(
            id=entity_id,
            entity_type=entity_type,
            payload=dict(payload),
            sync_status=EntitySyncStatus.PENDING if sync else EntitySyncStatus.LOCAL_ONLY,
        )
        if sync:
            await self.store.put_and_enqueue(entity, self.queue.new_item(entity, SyncOperation.CREATE))
        else:
            await self.store.put(entity)

        logger.debug(f"Created {entity_type}/{entity_id}")
        await self._after_mutation()
        return entity

    async def update(
        self,
        entity_type: str,
        entity_id: str,
        changes: dict[str, Any],
        replace: bool = False,
    ) -> Entity:
        """Apply changes to an entity and queue the update.

        Args:
            changes: Fields to set (merged into the payload)
            replace: Replace the whole payload instead of merging

        Raises:
            EntityNotFoundError: If the entity does not exist or was deleted
        """
        for attempt in range(_MUTATION_ATTEMPTS):
            entity = await self.get(entity_type, entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_type, entity_id)

            blocked = await self._conflict_pending(entity_type, entity_id)
            items = await self.queue.items_for_entity(entity_type, entity_id)
            first_push = entity.version == 0 and not items
            operation = SyncOperation.CREATE if first_push else SyncOperation.UPDATE

            entity.payload = dict(changes) if replace else {**entity.payload, **changes}
            entity.updated_at = utcnow()
            entity.sync_status = EntitySyncStatus.CONFLICT if blocked else EntitySyncStatus.PENDING

            try:
                await self.store.put_and_enqueue(
                    entity, self.queue.new_item(entity, operation, blocked=blocked)
                )
            except ValidationError:
                if attempt == _MUTATION_ATTEMPTS - 1:
                    raise
                continue
            break

        logger.debug(f"Updated {entity_type}/{entity_id} ({operation.value})")
        await self._after_mutation()
        return entity

    async def delete(self, entity_type: str, entity_id: str) -> None:
        """Delete an entity.

        An entity the server has never seen is removed together with its
        queued operations. Otherwise a tombstone stays until the remote
        acknowledges the delete.

        Raises:
            EntityNotFoundError: If the entity does not exist or was deleted
        """
        for attempt in range(_MUTATION_ATTEMPTS):
            entity = await self.get(entity_type, entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_type, entity_id)

            never_pushed = entity.version == 0 and entity.sync_status not in (
                EntitySyncStatus.SYNCING,
                EntitySyncStatus.CONFLICT,
            )
            if never_pushed:
                removed = await self.store.purge_unsynced(entity_type, entity_id)
                if removed is None:
                    # A push started in the meantime; the next attempt writes a tombstone
                    if attempt == _MUTATION_ATTEMPTS - 1:
                        raise ValidationError(
                            "sync_status", "entity changed while it was being deleted"
                        )
                    continue
                logger.debug(
                    f"Deleted unsynced {entity_type}/{entity_id} ({removed} queued operations dropped)"
                )
                break

            blocked = await self._conflict_pending(entity_type, entity_id)
            entity.deleted = True
            entity.updated_at = utcnow()
            entity.sync_status = EntitySyncStatus.CONFLICT if blocked else EntitySyncStatus.PENDING

            try:
                await self.store.put_and_enqueue(
                    entity, self.queue.new_item(entity, SyncOperation.DELETE, blocked=blocked)
                )
            except ValidationError:
                if attempt == _MUTATION_ATTEMPTS - 1:
                    raise
                continue
            logger.debug(f"Deleted {entity_type}/{entity_id} (tombstone queued)")
            break

        await self._after_mutation()
