"""
Tests for the SQLite local store.

Uses real SQLite (in-memory) for accurate testing.
"""

import sqlite3
import uuid
from datetime import timedelta

import pytest

from fieldsync.exceptions import StorageExhaustedError, StorageIOError, ValidationError
from fieldsync.protocol import (
    ConflictRecord,
    Entity,
    EntitySyncStatus,
    RemoteEntity,
    SyncOperation,
    SyncPriority,
    SyncQueueItem,
)
from fieldsync.store.sqlite import SQLiteLocalStore, SQLiteStoreConfig
from fieldsync.utils import utcnow


def make_entity(entity_id="q-1", version=0, **payload) -> Entity:
    return Entity(
        id=entity_id,
        entity_type="quote",
        payload=payload or {"customer_name": "Ada"},
        version=version,
        sync_status=EntitySyncStatus.PENDING,
    )


def make_item(entity_id="q-1", item_id=None, **kwargs) -> SyncQueueItem:
    return SyncQueueItem(
        id=item_id or str(uuid.uuid4()),
        entity_type="quote",
        entity_id=entity_id,
        operation=kwargs.pop("operation", SyncOperation.UPDATE),
        payload_snapshot={"customer_name": "Ada"},
        **kwargs,
    )


class TestSQLiteInitialization:
    """Tests for store initialization."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self, monkeypatch):
        """Store creates from the environment, in memory by default."""
        monkeypatch.delenv("FIELDSYNC_DB_PATH", raising=False)
        store = await SQLiteLocalStore.create()
        assert store._initialized is True
        assert store.config.db_path == ":memory:"
        await store.close()

    @pytest.mark.asyncio
    async def test_create_file_database(self, tmp_path):
        """A file database survives reopening."""
        config = SQLiteStoreConfig(db_path=tmp_path / "nested" / "sync.db")
        store = await SQLiteLocalStore.create(config)
        await store.put(make_entity())
        await store.close()

        reopened = await SQLiteLocalStore.create(config)
        entity = await reopened.get("quote", "q-1")
        await reopened.close()

        assert entity is not None
        assert entity.payload == {"customer_name": "Ada"}

    @pytest.mark.asyncio
    async def test_operations_after_close_fail(self, store):
        """Writes on a closed store raise StorageIOError."""
        await store.close()
        with pytest.raises(StorageIOError):
            await store.put(make_entity())


class TestEntityOperations:
    """Tests for entity reads and writes."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        """A written entity is readable immediately."""
        entity = make_entity(customer_name="Ada", notes="Back gate")
        await store.put(entity)

        loaded = await store.get("quote", "q-1")
        assert loaded is not None
        assert loaded.payload == {"customer_name": "Ada", "notes": "Back gate"}
        assert loaded.sync_status == EntitySyncStatus.PENDING
        assert loaded.updated_at == entity.updated_at

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        """Unknown ids return None."""
        assert await store.get("quote", "nope") is None

    @pytest.mark.asyncio
    async def test_entity_types_are_separate(self, store):
        """The same id under two types is two entities."""
        await store.put(make_entity("x"))
        await store.put(Entity(id="x", entity_type="job", payload={"job_type": "fence"}))

        assert (await store.get("quote", "x")).payload == {"customer_name": "Ada"}
        assert (await store.get("job", "x")).payload == {"job_type": "fence"}

    @pytest.mark.asyncio
    async def test_version_may_not_decrease(self, store):
        """Writing a lower version than stored is rejected."""
        await store.put(make_entity(version=3))

        with pytest.raises(ValidationError) as exc_info:
            await store.put(make_entity(version=2))

        assert exc_info.value.field == "version"
        assert (await store.get("quote", "q-1")).version == 3

    @pytest.mark.asyncio
    async def test_query_all_excludes_deleted(self, store):
        """Tombstones are hidden unless asked for."""
        await store.put(make_entity("a"))
        tombstone = make_entity("b")
        tombstone.deleted = True
        await store.put(tombstone)

        assert [e.id for e in await store.query_all("quote")] == ["a"]
        assert {e.id for e in await store.query_all("quote", include_deleted=True)} == {"a", "b"}

    @pytest.mark.asyncio
    async def test_delete_entity(self, store):
        """Hard delete reports whether a row was removed."""
        await store.put(make_entity())
        assert await store.delete_entity("quote", "q-1") is True
        assert await store.delete_entity("quote", "q-1") is False
        assert await store.get("quote", "q-1") is None

    @pytest.mark.asyncio
    async def test_purge_unsynced(self, store):
        """An entity never pushed goes away with all its queue items, dead letters included."""
        await store.put_and_enqueue(make_entity(), make_item(item_id="a"))
        await store.enqueue(make_item(item_id="dead", dead_letter=True))
        await store.enqueue(make_item("other", item_id="b"))

        assert await store.purge_unsynced("quote", "q-1") == 2

        assert await store.get("quote", "q-1") is None
        assert [item.id for item in await store.list_queue_items()] == ["b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("version", "status"),
        [
            (1, EntitySyncStatus.PENDING),
            (0, EntitySyncStatus.SYNCING),
            (0, EntitySyncStatus.CONFLICT),
        ],
    )
    async def test_purge_unsynced_refuses_known_entities(self, store, version, status):
        """Nothing is removed once the remote may have seen the entity."""
        entity = make_entity(version=version)
        entity.sync_status = status
        await store.put_and_enqueue(entity, make_item(item_id="a"))

        assert await store.purge_unsynced("quote", "q-1") is None

        assert await store.get("quote", "q-1") is not None
        assert await store.get_queue_item("a") is not None

    @pytest.mark.asyncio
    async def test_purge_unsynced_missing_entity(self, store):
        assert await store.purge_unsynced("quote", "gone") is None

    @pytest.mark.asyncio
    async def test_update_sync_state_never_lowers_version(self, store):
        """Sync state updates keep the highest version seen."""
        await store.put(make_entity(version=5))

        entity = await store.update_sync_state(
            "quote", "q-1", EntitySyncStatus.SYNCED, version=4
        )

        assert entity.version == 5
        assert entity.sync_status == EntitySyncStatus.SYNCED


class TestAtomicWrites:
    """Tests for the entity write + enqueue transaction."""

    @pytest.mark.asyncio
    async def test_put_and_enqueue(self, store):
        """Entity and queue item are written together."""
        await store.put_and_enqueue(make_entity(), make_item(item_id="i-1"))

        assert await store.get("quote", "q-1") is not None
        assert (await store.get_queue_item("i-1")).entity_id == "q-1"

    @pytest.mark.asyncio
    async def test_failed_enqueue_rolls_back_entity(self, store):
        """If the enqueue fails the entity write is not kept either."""
        await store.enqueue(make_item("other", item_id="dup"))

        with pytest.raises(StorageIOError):
            await store.put_and_enqueue(make_entity(), make_item(item_id="dup"))

        assert await store.get("quote", "q-1") is None
        assert len(await store.list_queue_items()) == 1

    @pytest.mark.asyncio
    async def test_storage_full_raises_exhausted(self, store):
        """A full database surfaces StorageExhaustedError and keeps nothing."""
        await store.conn.execute("PRAGMA max_page_count = 1")
        entity = make_entity(notes="x" * 200_000)

        with pytest.raises(StorageExhaustedError) as exc_info:
            await store.put_and_enqueue(entity, make_item(item_id="big"))

        assert exc_info.value.operation == "put_and_enqueue"
        assert await store.get("quote", "q-1") is None
        assert await store.get_queue_item("big") is None


class TestSyncWrites:
    """Tests for the compare-and-set writes used by the orchestrator."""

    @pytest.mark.asyncio
    async def test_confirm_push_without_queued_changes(self, store):
        """With nothing else queued the entity becomes synced."""
        await store.put(make_entity())

        status = await store.confirm_push("quote", "q-1", 1, {"customer_name": "Ada"}, utcnow())

        entity = await store.get("quote", "q-1")
        assert status == EntitySyncStatus.SYNCED
        assert entity.version == 1
        assert entity.base_payload == {"customer_name": "Ada"}
        assert entity.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_confirm_push_with_newer_change_stays_pending(self, store):
        """A newer queued change keeps the entity pending."""
        await store.put_and_enqueue(make_entity(), make_item())

        status = await store.confirm_push("quote", "q-1", 1, None, utcnow())

        assert status == EntitySyncStatus.PENDING
        assert (await store.get("quote", "q-1")).version == 1

    @pytest.mark.asyncio
    async def test_confirm_push_of_stale_snapshot_requeues(self, store):
        """An acknowledged payload older than the stored one is not synced.

        The entity stays pending and an update of the stored payload is
        queued at the acknowledged version.
        """
        entity = make_entity(version=2, status="sent", notes="gate code 1234")
        await store.put(entity)
        built = []

        def requeue(current: Entity) -> SyncQueueItem:
            built.append(current)
            return SyncQueueItem(
                id="follow-up",
                entity_type="quote",
                entity_id=current.id,
                operation=SyncOperation.UPDATE,
                payload_snapshot=dict(current.payload),
                base_version=current.version,
            )

        status = await store.confirm_push(
            "quote", "q-1", 3, {"status": "sent", "notes": ""}, utcnow(), requeue=requeue
        )

        stored = await store.get("quote", "q-1")
        assert status == EntitySyncStatus.PENDING
        assert stored.sync_status == EntitySyncStatus.PENDING
        assert stored.version == 3
        assert stored.base_payload == {"status": "sent", "notes": ""}
        assert built[0].version == 3

        item = await store.get_queue_item("follow-up")
        assert item.payload_snapshot == {"status": "sent", "notes": "gate code 1234"}
        assert item.base_version == 3

    @pytest.mark.asyncio
    async def test_confirm_push_matching_snapshot_does_not_requeue(self, store):
        """Key order does not matter when comparing payloads."""
        await store.put(make_entity(status="sent", notes="x"))

        def requeue(current: Entity) -> SyncQueueItem:
            raise AssertionError("nothing should be queued")

        status = await store.confirm_push(
            "quote", "q-1", 1, {"notes": "x", "status": "sent"}, utcnow(), requeue=requeue
        )

        assert status == EntitySyncStatus.SYNCED
        assert await store.list_queue_items() == []

    @pytest.mark.asyncio
    async def test_confirm_push_missing_entity(self, store):
        """Confirming an entity that is gone returns None."""
        assert await store.confirm_push("quote", "gone", 1, None, utcnow()) is None

    @pytest.mark.asyncio
    async def test_apply_remote_insert(self, store):
        """A remote entity unknown locally is inserted as synced."""
        remote = RemoteEntity("r-1", "quote", {"status": "sent"}, 4, utcnow())

        assert await store.apply_remote(remote, expected=None) is True

        entity = await store.get("quote", "r-1")
        assert entity.version == 4
        assert entity.sync_status == EntitySyncStatus.SYNCED
        assert entity.base_payload == {"status": "sent"}

    @pytest.mark.asyncio
    async def test_apply_remote_rejects_stale_expectation(self, store):
        """The overwrite is skipped if the entity changed since it was read."""
        entity = make_entity()
        await store.put(entity)
        stale = make_entity()
        stale.updated_at = entity.updated_at - timedelta(seconds=1)
        remote = RemoteEntity("q-1", "quote", {"status": "sent"}, 2, utcnow())

        assert await store.apply_remote(remote, expected=None) is False
        assert await store.apply_remote(remote, expected=stale) is False
        assert await store.apply_remote(remote, expected=entity) is True
        assert (await store.get("quote", "q-1")).payload == {"status": "sent"}

    @pytest.mark.asyncio
    async def test_rebase_collapses_active_items(self, store):
        """Rebasing replaces active items with one and keeps dead letters."""
        entity = make_entity()
        await store.put_and_enqueue(entity, make_item(item_id="a"))
        await store.enqueue(make_item(item_id="b"))
        await store.enqueue(make_item(item_id="dead", dead_letter=True))

        rebased = make_entity(version=3, customer_name="Ada", notes="merged")
        assert await store.rebase_entity(rebased, expected=entity, item=make_item(item_id="c"))

        ids = [item.id for item in await store.list_queue_items()]
        assert sorted(ids) == ["c", "dead"]
        assert (await store.get("quote", "q-1")).version == 3


class TestQueueOperations:
    """Tests for queue rows."""

    @pytest.mark.asyncio
    async def test_list_in_creation_order(self, store):
        """Items list oldest first."""
        now = utcnow()
        await store.enqueue(make_item(item_id="late", created_at=now))
        await store.enqueue(make_item(item_id="early", created_at=now - timedelta(seconds=5)))

        assert [i.id for i in await store.list_queue_items()] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_update_queue_item_round_trip(self, store):
        """Retry metadata persists."""
        item = make_item(item_id="i-1")
        await store.enqueue(item)

        item.retry_count = 4
        item.priority = SyncPriority.HIGH
        item.last_error = "503"
        assert await store.update_queue_item(item) is True

        loaded = await store.get_queue_item("i-1")
        assert loaded.retry_count == 4
        assert loaded.priority == SyncPriority.HIGH
        assert loaded.last_error == "503"

    @pytest.mark.asyncio
    async def test_count_ready(self, store):
        """Only ready items are counted."""
        now = utcnow()
        await store.enqueue(make_item("a", item_id="ready", next_retry_at=now))
        await store.enqueue(
            make_item("b", item_id="backing-off", next_retry_at=now + timedelta(minutes=1))
        )
        await store.enqueue(make_item("c", item_id="dead", dead_letter=True))
        await store.enqueue(make_item("d", item_id="blocked", blocked=True))

        assert await store.count_ready(now) == 1

    @pytest.mark.asyncio
    async def test_delete_items_for_entity(self, store):
        """Dead letters survive unless explicitly included."""
        await store.enqueue(make_item(item_id="a"))
        await store.enqueue(make_item(item_id="dead", dead_letter=True))

        assert await store.delete_queue_items_for_entity("quote", "q-1") == 1
        assert await store.delete_queue_items_for_entity(
            "quote", "q-1", include_dead_letter=True
        ) == 1


class TestWatermarksAndConflicts:
    """Tests for watermarks, metadata and persisted conflicts."""

    @pytest.mark.asyncio
    async def test_watermark_round_trip(self, store):
        """Watermarks are kept per entity type."""
        assert await store.get_watermark("quote") is None
        await store.set_watermark("quote", "2024-01-01T00:00:00.000000+00:00")
        await store.set_watermark("quote", "2024-02-01T00:00:00.000000+00:00")

        assert await store.get_watermark("quote") == "2024-02-01T00:00:00.000000+00:00"
        assert await store.get_watermark("job") is None

    @pytest.mark.asyncio
    async def test_meta_round_trip(self, store):
        """Metadata values overwrite."""
        await store.set_meta("last_sync_at", "a")
        await store.set_meta("last_sync_at", "b")
        assert await store.get_meta("last_sync_at") == "b"

    @pytest.mark.asyncio
    async def test_conflict_round_trip(self, store):
        """Both representations survive a restart of the record."""
        remote = RemoteEntity("q-1", "quote", {"status": "accepted"}, 2, utcnow())
        await store.save_conflict(
            ConflictRecord(
                entity_type="quote",
                entity_id="q-1",
                local_payload={"status": "declined"},
                local_operation=SyncOperation.UPDATE,
                remote=remote,
                conflicting_fields=["status"],
            )
        )

        conflict = await store.get_conflict("quote", "q-1")
        assert conflict.local_payload == {"status": "declined"}
        assert conflict.remote.payload == {"status": "accepted"}
        assert conflict.remote.version == 2
        assert conflict.conflicting_fields == ["status"]

    @pytest.mark.asyncio
    async def test_resolved_conflicts_hidden_by_default(self, store):
        """Listing skips resolved conflicts unless asked for."""
        remote = RemoteEntity("q-1", "quote", {}, 2, utcnow())
        record = ConflictRecord("quote", "q-1", {}, SyncOperation.UPDATE, remote)
        record.resolved = True
        record.resolution = "accept_remote"
        await store.save_conflict(record)

        assert await store.list_conflicts() == []
        assert len(await store.list_conflicts(include_resolved=True)) == 1

    @pytest.mark.asyncio
    async def test_open_conflict(self, store):
        """Opening a conflict saves it, blocks active items and marks the entity."""
        await store.put_and_enqueue(make_entity(), make_item(item_id="a"))
        await store.enqueue(make_item(item_id="dead", dead_letter=True))
        await store.enqueue(make_item("other", item_id="b"))
        remote = RemoteEntity("q-1", "quote", {"status": "accepted"}, 2, utcnow())

        await store.open_conflict(
            ConflictRecord("quote", "q-1", {"status": "declined"}, SyncOperation.UPDATE, remote),
            last_error="Conflicting fields: status",
        )

        entity = await store.get("quote", "q-1")
        assert entity.sync_status == EntitySyncStatus.CONFLICT
        assert entity.last_error == "Conflicting fields: status"
        assert [c.entity_id for c in await store.list_conflicts()] == ["q-1"]
        assert (await store.get_queue_item("a")).blocked is True
        assert (await store.get_queue_item("dead")).blocked is False
        assert (await store.get_queue_item("b")).blocked is False
        assert await store.count_ready(utcnow()) == 1

    @pytest.mark.asyncio
    async def test_open_conflict_rolls_back_on_failure(self, store, monkeypatch):
        """A failed write leaves neither the record nor blocked items behind."""
        await store.put_and_enqueue(make_entity(), make_item(item_id="a"))
        remote = RemoteEntity("q-1", "quote", {"status": "accepted"}, 2, utcnow())
        record = ConflictRecord("quote", "q-1", {}, SyncOperation.UPDATE, remote)
        conn = store.conn
        real_execute = conn.execute

        def failing_execute(sql, *args, **kwargs):
            if sql.startswith("UPDATE entities"):
                raise sqlite3.OperationalError("disk I/O error")
            return real_execute(sql, *args, **kwargs)

        with monkeypatch.context() as patch:
            patch.setattr(conn, "execute", failing_execute)
            with pytest.raises(StorageIOError):
                await store.open_conflict(record, last_error="Conflicting fields: status")

        assert await store.get_conflict("quote", "q-1") is None
        assert (await store.get_queue_item("a")).blocked is False
        assert (await store.get("quote", "q-1")).sync_status == EntitySyncStatus.PENDING
