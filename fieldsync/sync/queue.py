"""
Durable sync queue.

Wraps the queue tables of the local store with retry metadata, backoff
and dead-lettering. Operations for one entity are served strictly in
creation order; across entities the ready batch is ordered by priority,
then creation time.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from ..exceptions import QueueItemNotFoundError
from ..protocol import Entity, QueueStats, SyncOperation, SyncPriority, SyncQueueItem
from ..store.base import LocalStore
from ..utils import utcnow
from .backoff import BackoffPolicy
from .events import EventBus, SyncEventType

logger = logging.getLogger(__name__)

CRITICAL_PRIORITY_FIELDS = ("status", "customer_email", "customer_phone")
HIGH_PRIORITY_FIELDS = ("total_inc_gst", "deposit")


def determine_priority(operation: SyncOperation, payload: dict[str, Any] | None) -> SyncPriority:
    """Queue priority for an operation.

    Deletes are high priority; status and customer contact changes are
    critical; financial totals are high; everything else is normal.
    """
    if operation == SyncOperation.DELETE:
        return SyncPriority.HIGH

    payload = payload or {}
    if any(payload.get(name) for name in CRITICAL_PRIORITY_FIELDS):
        return SyncPriority.CRITICAL
    if any(name in payload for name in HIGH_PRIORITY_FIELDS):
        return SyncPriority.HIGH
    return SyncPriority.NORMAL


class SyncQueueManager:
    """Ordered, durable list of pending operations.

    Handles:
    - Building queue items for local mutations
    - Selecting the ready batch (one head item per entity)
    - Success/failure bookkeeping with exponential backoff
    - Dead-lettering and explicit operator recovery
    """

    def __init__(
        self,
        store: LocalStore,
        backoff: BackoffPolicy | None = None,
        events: EventBus | None = None,
        auto_promote_after: int = 3,
    ):
        """Initialize the queue manager.

        Args:
            store: Local store holding the queue rows
            backoff: Retry backoff policy and ceiling
            events: Bus that receives dead-letter notifications
            auto_promote_after: Failed attempts after which an item moves to HIGH priority
        """
        self.store = store
        self.backoff = backoff or BackoffPolicy()
        self.events = events or EventBus()
        self.auto_promote_after = auto_promote_after

    def new_item(
        self,
        entity: Entity,
        operation: SyncOperation,
        base_version: int | None = None,
        priority: SyncPriority | None = None,
        blocked: bool = False,
    ) -> SyncQueueItem:
        """Build a queue item for a local mutation of ``entity``."""
        payload = None if operation == SyncOperation.DELETE else dict(entity.payload)
        now = utcnow()
        return SyncQueueItem(
            id=str(uuid.uuid4()),
            entity_type=entity.entity_type,
            entity_id=entity.id,
            operation=operation,
            payload_snapshot=payload,
            base_version=entity.version if base_version is None else base_version,
            next_retry_at=now,
            priority=priority or determine_priority(operation, entity.payload),
            created_at=now,
            blocked=blocked,
        )

    async def enqueue(self, item: SyncQueueItem) -> None:
        await self.store.enqueue(item)
        logger.debug(
            f"Enqueued {item.operation.value} for {item.entity_type}/{item.entity_id} "
            f"(priority {item.priority.name})"
        )

    async def get_ready_batch(
        self, max_items: int, now: datetime | None = None
    ) -> list[SyncQueueItem]:
        """Items ready to push, at most one per entity.

        The candidate for an entity is its earliest non dead-letter item; if
        that item is blocked or still backing off, the entity is skipped so
        later operations never overtake it.
        """
        now = now or utcnow()
        heads: dict[tuple[str, str], SyncQueueItem] = {}
        for item in await self.store.list_queue_items(dead_letter=False):
            heads.setdefault((item.entity_type, item.entity_id), item)

        ready = [item for item in heads.values() if item.is_ready(now)]
        ready.sort(key=lambda item: (int(item.priority), item.created_at))
        return ready[:max_items]

    async def mark_succeeded(self, item_id: str) -> bool:
        """Remove an acknowledged item. Replaying is a no-op.

        Returns:
            True if the item was removed by this call
        """
        removed = await self.store.delete_queue_item(item_id)
        if removed:
            logger.debug(f"Queue item {item_id} succeeded")
        return removed

    async def mark_failed(
        self, item_id: str, error: str, now: datetime | None = None
    ) -> SyncQueueItem | None:
        """Record a transient failure.

        Increments ``retry_count`` and schedules the next attempt with
        backoff. Reaching the retry ceiling moves the item to dead-letter.

        Returns:
            The updated item, or None if it no longer exists
        """
        item = await self.store.get_queue_item(item_id)
        if item is None or item.dead_letter:
            return item

        now = now or utcnow()
        item.retry_count += 1
        item.last_error = error

        if self.backoff.exhausted(item.retry_count):
            return await self._move_to_dead_letter(item, error, now)

        item.next_retry_at = self.backoff.next_retry_at(item.retry_count, now)
        if item.retry_count >= self.auto_promote_after and item.priority > SyncPriority.HIGH:
            item.priority = SyncPriority.HIGH
            logger.info(
                f"Auto-promoted queue item {item.id} to HIGH priority "
                f"after {item.retry_count} retries"
            )

        await self.store.update_queue_item(item)
        logger.warning(
            f"Queue item {item.id} failed (attempt {item.retry_count}/{self.backoff.max_retries}), "
            f"next retry at {item.next_retry_at.isoformat()}: {error}"
        )
        return item

    async def dead_letter(
        self, item_id: str, error: str, now: datetime | None = None
    ) -> SyncQueueItem | None:
        """Move an item to dead-letter at once (permanent rejection)."""
        item = await self.store.get_queue_item(item_id)
        if item is None or item.dead_letter:
            return item

        item.retry_count += 1
        item.last_error = error
        return await self._move_to_dead_letter(item, error, now or utcnow())

    async def _move_to_dead_letter(
        self, item: SyncQueueItem, error: str, now: datetime
    ) -> SyncQueueItem:
        item.dead_letter = True
        item.failed_at = now
        await self.store.update_queue_item(item)

        logger.error(
            f"Queue item {item.id} ({item.operation.value} {item.entity_type}/{item.entity_id}) "
            f"moved to dead-letter after {item.retry_count} attempts: {error}"
        )
        await self.events.emit(
            SyncEventType.DEAD_LETTERED,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            item_id=item.id,
            operation=item.operation.value,
            retry_count=item.retry_count,
            error=error,
        )
        return item

    # =========================================================================
    # Counts and inspection
    # =========================================================================

    async def pending_count(self, now: datetime | None = None) -> int:
        """Items that would be attempted right now.

        Backed-off, blocked and dead-letter items are not counted.
        """
        return await self.store.count_ready(now or utcnow())

    async def dead_letter_count(self) -> int:
        return len(await self.store.list_queue_items(dead_letter=True))

    async def list_dead_letters(self) -> list[SyncQueueItem]:
        return await self.store.list_queue_items(dead_letter=True)

    async def items_for_entity(self, entity_type: str, entity_id: str) -> list[SyncQueueItem]:
        """Active (non dead-letter) items of one entity in creation order."""
        return await self.store.list_queue_items(
            dead_letter=False, entity_type=entity_type, entity_id=entity_id
        )

    async def stats(self, now: datetime | None = None) -> QueueStats:
        """Queue statistics for operator dashboards."""
        now = now or utcnow()
        items = await self.store.list_queue_items()

        active = [item for item in items if not item.dead_letter]
        by_priority: dict[str, int] = {}
        for item in active:
            by_priority[item.priority.name] = by_priority.get(item.priority.name, 0) + 1

        return QueueStats(
            total=len(items),
            pending=sum(1 for item in active if item.is_ready(now)),
            backed_off=sum(1 for item in active if not item.blocked and item.next_retry_at > now),
            blocked=sum(1 for item in active if item.blocked),
            dead_letter=len(items) - len(active),
            by_priority=by_priority,
            oldest_pending=min((item.created_at for item in active), default=None),
        )

    # =========================================================================
    # Operator recovery
    # =========================================================================

    async def _get_dead_letter(self, item_id: str) -> SyncQueueItem:
        item = await self.store.get_queue_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        if not item.dead_letter:
            raise QueueItemNotFoundError(item_id, "item is not in the dead-letter queue")
        return item

    async def retry_dead_letter(
        self, item_id: str, priority: SyncPriority = SyncPriority.CRITICAL
    ) -> SyncQueueItem:
        """Re-queue a dead-letter item for immediate retry with a fresh retry budget.

        If later writes for the entity were confirmed while the item sat in
        the dead-letter queue, the item is rebased onto the stored entity so
        the retry carries the current payload instead of the old snapshot.

        Raises:
            QueueItemNotFoundError: If the item does not exist or is not dead-lettered
        """
        item = await self._get_dead_letter(item_id)
        conflict = await self.store.get_conflict(item.entity_type, item.entity_id)

        entity = await self.store.get(item.entity_type, item.entity_id)
        if (
            entity is not None
            and not entity.deleted
            and item.operation != SyncOperation.DELETE
            and entity.version > item.base_version
        ):
            item.payload_snapshot = dict(entity.payload)
            item.base_version = entity.version
            item.operation = SyncOperation.UPDATE
            logger.info(
                f"Rebased dead-letter item {item_id} onto {item.entity_type}/{item.entity_id} "
                f"version {entity.version}"
            )

        item.dead_letter = False
        item.retry_count = 0
        item.failed_at = None
        item.next_retry_at = utcnow()
        item.priority = priority
        item.blocked = conflict is not None and not conflict.resolved
        await self.store.update_queue_item(item)

        logger.info(f"Retrying dead-letter item {item_id} with {priority.name} priority")
        return item

    async def discard_dead_letter(self, item_id: str) -> None:
        """Permanently remove a dead-letter item.

        Raises:
            QueueItemNotFoundError: If the item does not exist or is not dead-lettered
        """
        await self._get_dead_letter(item_id)
        await self.store.delete_queue_item(item_id)
        logger.warning(f"Discarded dead-letter item {item_id}")

    async def clear_dead_letters(self) -> int:
        """Remove every dead-letter item. Returns the number removed."""
        items = await self.store.list_queue_items(dead_letter=True)
        for item in items:
            await self.store.delete_queue_item(item.id)
        if items:
            logger.warning(f"Cleared {len(items)} items from the dead-letter queue")
        return len(items)
