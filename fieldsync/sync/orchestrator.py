"""
Synchronization orchestrator.

Runs sync cycles between the local store and the Remote Sync API:
- Push: queued local operations → remote, bounded concurrency
- Pull: remote changes since the per-type watermark → local store
- Conflict detection, auto-merge and manual resolution
- Retry with backoff and dead-lettering via the queue manager
- Triggers: connection restored, periodic timer, local mutation

Only one cycle runs at a time. A trigger that arrives during a cycle
marks it for one more run after it finishes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..exceptions import (
    AuthenticationError,
    ConflictNotFoundError,
    EntityNotFoundError,
    FieldSyncError,
    PermanentRejectionError,
    StorageExhaustedError,
    TransientSyncError,
    VersionConflictError,
)
from ..logging_utils import SyncLoggerAdapter
from ..protocol import (
    ConflictRecord,
    ConnectionState,
    Entity,
    EntitySyncStatus,
    PushAck,
    RemoteEntity,
    SyncOperation,
    SyncPriority,
    SyncQueueItem,
    SyncSnapshot,
)
from ..store.base import LocalStore
from ..utils import canonical_json, format_timestamp, parse_timestamp, utcnow
from .backoff import BackoffPolicy
from .conflict import ConflictResolver, MergeOutcome, Resolution
from .connection import ConnectionMonitor
from .events import EventBus, SyncEventType
from .queue import SyncQueueManager
from .remote import RemoteSyncApi

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_at"


class SyncState(Enum):
    """Current state of the orchestrator."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    PAUSED = "paused"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a sync cycle."""

    success: bool
    pushed: int = 0
    pulled: int = 0
    merged: int = 0
    conflicts: int = 0
    dead_lettered: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "merged": self.merged,
            "conflicts": self.conflicts,
            "dead_lettered": self.dead_lettered,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "skipped": self.skipped,
        }


class SyncOrchestrator:
    """Offline-first sync engine.

    Handles:
    - Pushing queued operations with per-entity FIFO ordering
    - Pulling remote changes and merging them into the local store
    - Routing version conflicts to the conflict resolver
    - Pausing on authentication failures until ``resume()``
    - Publishing state to observers through the event bus

    Example:
        >>> orchestrator = SyncOrchestrator(store, remote, config=config)
        >>> await orchestrator.start()
        >>> result = await orchestrator.sync_now()
        >>> await orchestrator.stop()
    """

    # Bound on push batches within one cycle
    MAX_PUSH_ROUNDS = 25

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteSyncApi,
        config: SyncConfig | None = None,
        queue: SyncQueueManager | None = None,
        resolver: ConflictResolver | None = None,
        monitor: ConnectionMonitor | None = None,
        events: EventBus | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Local store (source of truth on the device)
            remote: Remote Sync API client
            config: Sync configuration
            queue: Queue manager (built from config if omitted)
            resolver: Conflict resolver
            monitor: Connection monitor (built from config if omitted)
            events: Event bus shared with observers
        """
        self.store = store
        self.remote = remote
        self.config = config or SyncConfig()
        self.events = events or EventBus()
        self.queue = queue or SyncQueueManager(
            store,
            BackoffPolicy(
                base_seconds=self.config.backoff_base_seconds,
                max_seconds=self.config.backoff_max_seconds,
                max_retries=self.config.max_retries,
            ),
            self.events,
            auto_promote_after=self.config.auto_promote_after,
        )
        self.resolver = resolver or ConflictResolver()
        self.monitor = monitor or ConnectionMonitor(
            debounce_seconds=self.config.debounce_seconds,
            reachability_host=self.config.connectivity_host,
            reachability_interval_seconds=self.config.connectivity_interval_seconds,
            reachability_timeout_seconds=self.config.connectivity_timeout_seconds,
        )

        self._state = SyncState.IDLE if self.monitor.is_online else SyncState.OFFLINE
        self._paused = False
        self._in_progress = False
        self._rerun = False
        self._cycle_task: asyncio.Task[SyncResult] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._unsubscribe_connection: Any = None
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._last_sync_at = None
        self._last_pending: int | None = None

    @property
    def state(self) -> SyncState:
        """Get current sync state."""
        return self._state

    @property
    def is_online(self) -> bool:
        return self.monitor.is_online

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug(f"Sync state {previous.value} -> {state.value}")
        await self.events.emit(SyncEventType.STATE_CHANGED, state=state.value, previous=previous.value)

    def _resting_state(self) -> SyncState:
        if self._paused:
            return SyncState.PAUSED
        if not self.monitor.is_online:
            return SyncState.OFFLINE
        return SyncState.IDLE

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self) -> SyncSnapshot:
        """Get current sync status."""
        if self._last_sync_at is None:
            self._last_sync_at = parse_timestamp(await self.store.get_meta(LAST_SYNC_KEY))

        return SyncSnapshot(
            state=self._state.value,
            is_online=self.monitor.is_online,
            pending_count=await self.queue.pending_count(),
            dead_letter_count=await self.queue.dead_letter_count(),
            conflict_count=len(await self.store.list_conflicts()),
            last_sync_at=self._last_sync_at,
        )

    async def _publish_pending_count(self) -> None:
        pending = await self.queue.pending_count()
        if pending != self._last_pending:
            self._last_pending = pending
            await self.events.emit(SyncEventType.PENDING_COUNT_CHANGED, pending_count=pending)

    # =========================================================================
    # Triggers
    # =========================================================================

    async def sync_now(self) -> SyncResult:
        """Run a sync cycle now, or join the one already running.

        Returns:
            Result of the last cycle run by the active task
        """
        if self._cycle_task is not None and not self._cycle_task.done():
            self._rerun = True
            return await asyncio.shield(self._cycle_task)

        self._cycle_task = asyncio.create_task(self._run_cycles())
        return await asyncio.shield(self._cycle_task)

    def trigger(self) -> None:
        """Request a cycle without waiting for it."""
        if self._paused or not self.monitor.is_online:
            return
        if self._in_progress:
            self._rerun = True
            return
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.create_task(self._run_cycles())

    async def notify_local_mutation(self) -> None:
        """Called after every local mutation has been committed."""
        await self._publish_pending_count()
        self.trigger()

    async def _run_cycles(self) -> SyncResult:
        self._in_progress = True
        try:
            while True:
                self._rerun = False
                result = await self._run_cycle()
                if not self._rerun or result.skipped:
                    return result
                logger.debug("Sync triggered during cycle; running again")
        finally:
            self._in_progress = False

    async def _run_cycle(self) -> SyncResult:
        if self._paused:
            await self._set_state(SyncState.PAUSED)
            return SyncResult(success=False, errors=["Sync paused"], skipped=True)

        if not self.monitor.is_online:
            await self._set_state(SyncState.OFFLINE)
            return SyncResult(success=False, errors=["No network connectivity"], skipped=True)

        start = time.monotonic()
        result = SyncResult(success=False)

        try:
            await self._set_state(SyncState.PUSHING)
            await self._push_phase(result)

            if not self._paused and self.monitor.is_online:
                await self._set_state(SyncState.PULLING)
                await self._pull_phase(result)

            result.success = not result.errors and not self._paused
            if result.success:
                self._last_sync_at = utcnow()
                await self.store.set_meta(LAST_SYNC_KEY, format_timestamp(self._last_sync_at))

            await self._set_state(self._resting_state())

        except Exception as e:
            logger.error(f"Sync cycle failed: {e}")
            result.success = False
            result.errors.append(str(e))
            await self._set_state(SyncState.ERROR)

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Sync cycle finished: pushed={result.pushed} pulled={result.pulled} "
            f"merged={result.merged} conflicts={result.conflicts} "
            f"dead_lettered={result.dead_lettered} errors={len(result.errors)} "
            f"in {result.duration_ms}ms"
        )
        await self.events.emit(SyncEventType.SYNC_COMPLETED, **result.to_dict())
        await self._publish_pending_count()
        return result

    # =========================================================================
    # Push
    # =========================================================================

    async def _push_phase(self, result: SyncResult) -> None:
        attempted: set[str] = set()

        for _ in range(self.MAX_PUSH_ROUNDS):
            if self._paused or not self.monitor.is_online:
                return

            batch = [
                item
                for item in await self.queue.get_ready_batch(self.config.batch_size)
                if item.id not in attempted
            ]
            if not batch:
                return

            attempted.update(item.id for item in batch)
            await asyncio.gather(*(self._push_item(item, result) for item in batch))

    async def _push_item(self, item: SyncQueueItem, result: SyncResult) -> None:
        async with self._semaphore:
            # Unstarted items stay untouched when the connection drops or sync pauses
            if self._paused or not self.monitor.is_online:
                return

            # The batch was read before this slot was acquired
            current = await self.store.get_queue_item(item.id)
            if current is None or current.dead_letter or current.blocked:
                logger.debug(
                    f"Skipping {item.operation.value} for {item.entity_type}/{item.entity_id}: "
                    f"queue item {item.id} is no longer ready"
                )
                return
            item = current

            entity = await self.store.get(item.entity_type, item.entity_id)
            base_version = max(item.base_version, entity.version if entity else 0)
            if entity is not None:
                marked = await self.store.update_sync_state(
                    item.entity_type, item.entity_id, EntitySyncStatus.SYNCING,
                    last_error=entity.last_error,
                )
                if marked is None:
                    entity = None
            # Only a delete may go out for an entity that was removed locally
            if entity is None and item.operation != SyncOperation.DELETE:
                await self.store.delete_queue_item(item.id)
                logger.info(
                    f"Dropped {item.operation.value} for {item.entity_type}/{item.entity_id}: "
                    f"entity no longer exists"
                )
                return

            try:
                async with asyncio.timeout(self.config.request_timeout_seconds):
                    ack = await self.remote.push(item, base_version)

            except VersionConflictError as e:
                await self._on_push_conflict(item, e.remote, result)

            except AuthenticationError as e:
                await self._restore_status(item, entity)
                await self._pause_for_auth(e)

            except PermanentRejectionError as e:
                await self._on_push_rejected(item, str(e), result)

            except (TransientSyncError, TimeoutError) as e:
                message = str(e) or "Request timed out"
                await self._on_push_failed(item, message, result)

            except StorageExhaustedError:
                raise

            except Exception as e:
                logger.error(f"Unexpected error pushing {item.entity_type}/{item.entity_id}: {e}")
                await self._on_push_failed(item, str(e), result)

            else:
                await self._on_push_accepted(item, base_version, ack, result)

    async def _restore_status(self, item: SyncQueueItem, entity: Entity | None) -> None:
        if entity is not None:
            await self.store.update_sync_state(
                item.entity_type, item.entity_id, entity.sync_status, last_error=entity.last_error
            )

    async def _on_push_accepted(
        self, item: SyncQueueItem, base_version: int, ack: PushAck, result: SyncResult
    ) -> None:
        await self.queue.mark_succeeded(item.id)
        result.pushed += 1

        if item.operation == SyncOperation.DELETE:
            remaining = await self.queue.items_for_entity(item.entity_type, item.entity_id)
            if not remaining:
                await self.store.delete_entity(item.entity_type, item.entity_id)
            logger.info(f"Delete of {item.entity_type}/{item.entity_id} acknowledged")
            await self.events.emit(
                SyncEventType.ENTITY_SYNCED, item.entity_type, item.entity_id, deleted=True
            )
            return

        version = ack.version if ack.version is not None else base_version + 1
        status = await self.store.confirm_push(
            item.entity_type,
            item.entity_id,
            version,
            item.payload_snapshot,
            utcnow(),
            requeue=lambda entity: self.queue.new_item(
                entity, SyncOperation.UPDATE, base_version=entity.version
            ),
        )
        logger.info(
            f"Pushed {item.operation.value} {item.entity_type}/{item.entity_id} "
            f"-> version {version} ({status.value if status else 'gone'})"
        )
        await self.events.emit(
            SyncEventType.ENTITY_SYNCED,
            item.entity_type,
            item.entity_id,
            version=version,
            sync_status=status.value if status else None,
        )

    async def _on_push_failed(self, item: SyncQueueItem, error: str, result: SyncResult) -> None:
        updated = await self.queue.mark_failed(item.id, error)
        await self.store.update_sync_state(
            item.entity_type, item.entity_id, EntitySyncStatus.ERROR, last_error=error
        )
        result.errors.append(f"Failed to push {item.entity_type}/{item.entity_id}: {error}")
        if updated is not None and updated.dead_letter:
            result.dead_lettered += 1

    async def _on_push_rejected(self, item: SyncQueueItem, error: str, result: SyncResult) -> None:
        log = SyncLoggerAdapter(
            logger,
            {"entity_type": item.entity_type, "entity_id": item.entity_id, "item_id": item.id},
        )
        log.warning(f"Push of {item.operation.value} rejected by remote: {error}")
        await self.queue.dead_letter(item.id, error)
        await self.store.update_sync_state(
            item.entity_type, item.entity_id, EntitySyncStatus.ERROR, last_error=error
        )
        result.dead_lettered += 1
        result.errors.append(f"Rejected {item.entity_type}/{item.entity_id}: {error}")

    async def _on_push_conflict(
        self, item: SyncQueueItem, remote: RemoteEntity | None, result: SyncResult
    ) -> None:
        entity = await self.store.get(item.entity_type, item.entity_id)
        if remote is None or entity is None:
            await self._on_push_failed(item, "Version conflict without remote state", result)
            return

        await self._reconcile(entity, remote, result)

    async def _pause_for_auth(self, error: AuthenticationError) -> None:
        if self._paused:
            return
        self._paused = True
        logger.warning(f"Authentication failed ({error.status}); sync paused")
        await self._set_state(SyncState.PAUSED)
        await self.events.emit(SyncEventType.AUTH_REQUIRED, status=error.status, error=str(error))

    # =========================================================================
    # Conflicts
    # =========================================================================

    async def _latest_operation(self, entity: Entity) -> tuple[SyncOperation, list[SyncQueueItem]]:
        items = await self.queue.items_for_entity(entity.entity_type, entity.id)
        if entity.deleted:
            return SyncOperation.DELETE, items
        return (items[-1].operation if items else SyncOperation.UPDATE), items

    async def _reconcile(self, entity: Entity, remote: RemoteEntity, result: SyncResult) -> None:
        """Merge a divergent remote entity into a local entity with unsynced changes."""
        operation, items = await self._latest_operation(entity)
        merge = self.resolver.resolve(entity, remote, operation)

        if merge.outcome == MergeOutcome.MANUAL:
            await self._record_conflict(entity, remote, operation, merge.conflicting_fields)
            result.conflicts += 1
            return

        payload = merge.payload or {}
        version = max(entity.version, remote.version)
        in_sync = canonical_json(payload) == canonical_json(remote.payload)

        rebased = Entity(
            id=entity.id,
            entity_type=entity.entity_type,
            payload=payload,
            version=version,
            updated_at=remote.updated_at if in_sync else utcnow(),
            sync_status=EntitySyncStatus.SYNCED if in_sync else EntitySyncStatus.PENDING,
            deleted=False,
            last_synced_at=utcnow() if in_sync else entity.last_synced_at,
            last_error=None,
            base_payload=dict(remote.payload),
        )
        item = None
        if not in_sync:
            item = self.queue.new_item(
                rebased,
                SyncOperation.UPDATE,
                base_version=remote.version,
                priority=min((i.priority for i in items), default=None),
            )
            if items:
                item.created_at = items[0].created_at

        if not await self.store.rebase_entity(rebased, expected=entity, item=item):
            logger.debug(f"{entity.entity_type}/{entity.id} changed during merge; retrying later")
            return

        if len(items) > 1:
            logger.info(
                f"Coalesced {len(items)} queued operations for {entity.entity_type}/{entity.id} "
                f"into one update against version {remote.version}"
            )

        if merge.outcome == MergeOutcome.AUTO_MERGED:
            result.merged += 1
            await self.events.emit(
                SyncEventType.AUTO_MERGED,
                entity.entity_type,
                entity.id,
                remote_version=remote.version,
                merged_fields=merge.merged_fields,
            )

    async def _record_conflict(
        self,
        entity: Entity,
        remote: RemoteEntity,
        operation: SyncOperation,
        conflicting_fields: list[str],
    ) -> None:
        existing = await self.store.get_conflict(entity.entity_type, entity.id)
        record = ConflictRecord(
            entity_type=entity.entity_type,
            entity_id=entity.id,
            local_payload=None if operation == SyncOperation.DELETE else dict(entity.payload),
            local_operation=operation,
            remote=remote,
            conflicting_fields=conflicting_fields,
        )
        await self.store.open_conflict(
            record, last_error=f"Conflicting fields: {', '.join(conflicting_fields)}"
        )

        logger.warning(
            f"Conflict on {entity.entity_type}/{entity.id} (remote version {remote.version}): "
            f"{', '.join(conflicting_fields)}"
        )
        if existing is None or existing.resolved:
            await self.events.emit(
                SyncEventType.CONFLICT_DETECTED,
                entity.entity_type,
                entity.id,
                conflicting_fields=conflicting_fields,
                remote_version=remote.version,
            )

    async def list_conflicts(self) -> list[ConflictRecord]:
        """Unresolved conflicts."""
        return await self.store.list_conflicts()

    async def resolve_conflict(
        self, entity_type: str, entity_id: str, resolution: Resolution
    ) -> Entity:
        """Apply a user decision to a pending conflict.

        Resolving again with the same choice returns the current entity
        without further changes.

        Raises:
            ConflictNotFoundError: No conflict exists, or it was already
                resolved with a different choice
            EntityNotFoundError: The entity no longer exists locally
            ValidationError: A merged resolution without a payload
        """
        conflict = await self.store.get_conflict(entity_type, entity_id)
        if conflict is None:
            raise ConflictNotFoundError(entity_type, entity_id)

        if conflict.resolved:
            if conflict.resolution != resolution.choice.value:
                raise ConflictNotFoundError(
                    entity_type, entity_id, f"already resolved as {conflict.resolution}"
                )
            entity = await self.store.get(entity_type, entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_type, entity_id)
            return entity

        entity = await self.store.get(entity_type, entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_type, entity_id)

        # Local edits made while in conflict belong to the local side
        if conflict.local_operation != SyncOperation.DELETE:
            conflict.local_payload = dict(entity.payload)
        payload = self.resolver.apply_resolution(conflict, resolution)

        resolved, item = self._resolved_entity(entity, conflict, payload)
        if not await self.store.rebase_entity(resolved, expected=entity, item=item):
            raise FieldSyncError(
                f"Entity {entity_type}/{entity_id} changed while resolving; try again",
                {"entity_type": entity_type, "entity_id": entity_id},
            )

        conflict.resolved = True
        conflict.resolution = resolution.choice.value
        conflict.resolved_payload = payload
        conflict.resolved_version = resolved.version
        conflict.resolved_at = utcnow()
        await self.store.save_conflict(conflict)

        logger.info(f"Conflict on {entity_type}/{entity_id} resolved: {resolution.choice.value}")
        await self.events.emit(
            SyncEventType.CONFLICT_RESOLVED,
            entity_type,
            entity_id,
            resolution=resolution.choice.value,
            version=resolved.version,
        )
        await self.notify_local_mutation()
        return resolved

    def _resolved_entity(
        self, entity: Entity, conflict: ConflictRecord, payload: dict[str, Any] | None
    ) -> tuple[Entity, SyncQueueItem | None]:
        remote = conflict.remote
        version = max(entity.version, remote.version)
        now = utcnow()

        if payload is not None and canonical_json(payload) == canonical_json(remote.payload):
            resolved = Entity(
                id=entity.id,
                entity_type=entity.entity_type,
                payload=dict(remote.payload),
                version=version,
                updated_at=now,
                sync_status=EntitySyncStatus.SYNCED,
                last_synced_at=now,
                base_payload=dict(remote.payload),
            )
            return resolved, None

        deleted = payload is None
        resolved = Entity(
            id=entity.id,
            entity_type=entity.entity_type,
            payload=dict(entity.payload) if deleted else payload,
            version=version,
            updated_at=now,
            sync_status=EntitySyncStatus.PENDING,
            deleted=deleted,
            last_synced_at=entity.last_synced_at,
            base_payload=dict(remote.payload),
        )
        operation = SyncOperation.DELETE if deleted else SyncOperation.UPDATE
        item = self.queue.new_item(
            resolved,
            operation,
            base_version=remote.version,
            priority=SyncPriority.CRITICAL,
        )
        return resolved, item

    # =========================================================================
    # Pull
    # =========================================================================

    async def _pull_phase(self, result: SyncResult) -> None:
        for entity_type in self.config.entity_types:
            if self._paused:
                return

            since = await self.store.get_watermark(entity_type)
            try:
                async with asyncio.timeout(self.config.request_timeout_seconds):
                    remotes = await self.remote.pull(entity_type, since)
            except AuthenticationError as e:
                await self._pause_for_auth(e)
                return
            except (TransientSyncError, PermanentRejectionError, TimeoutError) as e:
                result.errors.append(f"Pull failed for {entity_type}: {str(e) or 'Request timed out'}")
                continue

            newest = parse_timestamp(since) if since else None
            failed = False
            for remote in remotes:
                try:
                    await self._apply_pulled(remote, result)
                except StorageExhaustedError:
                    raise
                except FieldSyncError as e:
                    failed = True
                    result.errors.append(f"Failed to apply {entity_type}/{remote.id}: {e}")
                    continue
                if newest is None or remote.updated_at > newest:
                    newest = remote.updated_at

            if not failed and newest is not None and remotes:
                await self.store.set_watermark(entity_type, format_timestamp(newest))

    async def _apply_pulled(self, remote: RemoteEntity, result: SyncResult) -> None:
        local = await self.store.get(remote.entity_type, remote.id)

        if local is None:
            if await self.store.apply_remote(remote, expected=None):
                result.pulled += 1
            return

        if local.sync_status == EntitySyncStatus.LOCAL_ONLY:
            logger.warning(f"Remote {remote.entity_type}/{remote.id} collides with a local-only entity")
            return

        if local.sync_status == EntitySyncStatus.CONFLICT:
            conflict = await self.store.get_conflict(remote.entity_type, remote.id)
            if conflict is not None and not conflict.resolved:
                if remote.version > conflict.remote.version:
                    conflict.remote = remote
                    await self.store.save_conflict(conflict)
                return

        if remote.version <= local.version:
            return

        items = await self.queue.items_for_entity(remote.entity_type, remote.id)
        if not items and not local.deleted:
            if await self.store.apply_remote(remote, expected=local):
                result.pulled += 1
            return

        await self._reconcile(local, remote, result)

    # =========================================================================
    # Dead letters
    # =========================================================================

    async def list_dead_letters(self) -> list[SyncQueueItem]:
        return await self.queue.list_dead_letters()

    async def retry_dead_letter(self, item_id: str) -> SyncQueueItem:
        """Re-queue a dead-letter item at critical priority and trigger a cycle."""
        item = await self.queue.retry_dead_letter(item_id)
        if not item.blocked:
            await self.store.update_sync_state(
                item.entity_type, item.entity_id, EntitySyncStatus.PENDING
            )
        await self.notify_local_mutation()
        return item

    async def discard_dead_letter(self, item_id: str) -> None:
        """Permanently drop a dead-letter item."""
        await self.queue.discard_dead_letter(item_id)
        await self._publish_pending_count()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _on_connection_change(self, state: ConnectionState) -> None:
        await self.events.emit(SyncEventType.CONNECTION_CHANGED, is_online=state.is_online)
        if not self._in_progress:
            await self._set_state(self._resting_state())
        if state.is_online:
            self.trigger()

    async def start(self) -> None:
        """Subscribe to connection changes and start the periodic timer."""
        if self._periodic_task is not None:
            return

        self._unsubscribe_connection = self.monitor.subscribe(self._on_connection_change)
        await self.monitor.start()

        async def periodic_loop() -> None:
            while True:
                try:
                    await asyncio.sleep(self.config.sync_interval_seconds)
                    if self.monitor.is_online and not self._paused:
                        if await self.queue.pending_count() > 0:
                            self.trigger()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Periodic sync check failed: {e}")

        self._periodic_task = asyncio.create_task(periodic_loop())
        logger.info(f"Sync orchestrator started (interval {self.config.sync_interval_seconds}s)")
        self.trigger()

    async def stop(self) -> None:
        """Stop timers and wait for the running cycle to finish."""
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

        if self._unsubscribe_connection is not None:
            self._unsubscribe_connection()
            self._unsubscribe_connection = None
        await self.monitor.stop()

        if self._cycle_task is not None and not self._cycle_task.done():
            await self._cycle_task
        logger.info("Sync orchestrator stopped")

    async def pause(self) -> None:
        """Pause sync operations."""
        self._paused = True
        await self._set_state(SyncState.PAUSED)

    async def resume(self) -> None:
        """Resume sync operations (e.g. after re-authentication)."""
        if not self._paused:
            return
        self._paused = False
        await self._set_state(self._resting_state())
        logger.info("Sync resumed")
        self.trigger()
