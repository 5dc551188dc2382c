"""
SQLite local store.

Wraps an embedded SQLite database (via aiosqlite) as the durable,
process-local source of truth for entities, the sync queue, pull
watermarks and unresolved conflicts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import (
    StorageConnectionError,
    StorageExhaustedError,
    StorageIOError,
    ValidationError,
)
from ..protocol import (
    ConflictRecord,
    Entity,
    EntitySyncStatus,
    RemoteEntity,
    SyncOperation,
    SyncPriority,
    SyncQueueItem,
)
from ..utils import canonical_json, format_timestamp, parse_timestamp, utcnow
from .base import LocalStore

logger = logging.getLogger(__name__)


# =============================================================================
# Column Definitions
# =============================================================================

ENTITY_COLUMNS = (
    "entity_type",
    "id",
    "payload",
    "version",
    "updated_at",
    "sync_status",
    "deleted",
    "last_synced_at",
    "last_error",
    "base_payload",
)

QUEUE_COLUMNS = (
    "id",
    "entity_type",
    "entity_id",
    "operation",
    "payload_snapshot",
    "base_version",
    "retry_count",
    "next_retry_at",
    "priority",
    "dead_letter",
    "created_at",
    "last_error",
    "failed_at",
    "blocked",
)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS entities (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    payload TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    sync_status TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    last_error TEXT,
    base_payload TEXT,
    PRIMARY KEY (entity_type, id)
);

CREATE TABLE IF NOT EXISTS sync_queue (
    id TEXT NOT NULL PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload_snapshot TEXT,
    base_version INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 3,
    dead_letter INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_error TEXT,
    failed_at TEXT,
    blocked INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS watermarks (
    entity_type TEXT NOT NULL PRIMARY KEY,
    watermark TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT NOT NULL PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS conflicts (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    local_payload TEXT,
    local_operation TEXT NOT NULL,
    remote TEXT NOT NULL,
    conflicting_fields TEXT NOT NULL,
    detected_at TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolution TEXT,
    resolved_payload TEXT,
    resolved_version INTEGER,
    resolved_at TEXT,
    PRIMARY KEY (entity_type, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_queue_entity
    ON sync_queue (entity_type, entity_id, created_at);
CREATE INDEX IF NOT EXISTS idx_queue_ready
    ON sync_queue (dead_letter, blocked, next_retry_at);
CREATE INDEX IF NOT EXISTS idx_entities_status
    ON entities (entity_type, sync_status);
"""


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _is_storage_full(error: sqlite3.Error) -> bool:
    if getattr(error, "sqlite_errorcode", None) == sqlite3.SQLITE_FULL:
        return True
    return "full" in str(error).lower()


@dataclass
class SQLiteStoreConfig:
    """Configuration for the SQLite local store."""

    db_path: str | Path = ":memory:"

    @classmethod
    def from_env(cls) -> SQLiteStoreConfig:
        """Create config from environment variables."""
        return cls(db_path=os.environ.get("FIELDSYNC_DB_PATH", ":memory:"))


class SQLiteLocalStore(LocalStore):
    """
    SQLite implementation of the local store.

    Features:
    - Single file database (or in-memory for tests)
    - Entity write and queue enqueue in one transaction
    - Serialized write transactions on the shared connection
    """

    def __init__(self, config: SQLiteStoreConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, config: SQLiteStoreConfig | None = None) -> SQLiteLocalStore:
        """Create and initialize the store."""
        if config is None:
            config = SQLiteStoreConfig.from_env()

        store = cls(config)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        """Open the connection and create tables."""
        if self._initialized:
            return

        db_path = str(self.config.db_path)
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

            self.conn = await aiosqlite.connect(db_path)
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA journal_mode = WAL")
            await self.conn.executescript(_SCHEMA_SQL)
            await self.conn.commit()
            self._initialized = True
            logger.info(f"SQLite local store initialized: {db_path}")

        except (sqlite3.Error, OSError) as e:
            raise StorageConnectionError(db_path, e) from e

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run a write transaction; commit on success, roll back on any error."""
        if self.conn is None:
            raise StorageIOError(operation, str(self.config.db_path))

        async with self._write_lock:
            try:
                yield self.conn
                await self.conn.commit()
            except sqlite3.Error as e:
                await self.conn.rollback()
                if _is_storage_full(e):
                    logger.error(f"Local storage exhausted during {operation}: {e}")
                    raise StorageExhaustedError(operation, str(self.config.db_path), e) from e
                raise StorageIOError(operation, str(self.config.db_path), e) from e
            except BaseException:
                await self.conn.rollback()
                raise

    async def _fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        assert self.conn is not None
        async with self.conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        assert self.conn is not None
        async with self.conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _row_to_entity(row: aiosqlite.Row) -> Entity:
        return Entity(
            id=row["id"],
            entity_type=row["entity_type"],
            payload=_loads(row["payload"]) or {},
            version=row["version"],
            updated_at=parse_timestamp(row["updated_at"]) or utcnow(),
            sync_status=EntitySyncStatus(row["sync_status"]),
            deleted=bool(row["deleted"]),
            last_synced_at=parse_timestamp(row["last_synced_at"]),
            last_error=row["last_error"],
            base_payload=_loads(row["base_payload"]),
        )

    @staticmethod
    def _entity_params(entity: Entity) -> tuple:
        return (
            entity.entity_type,
            entity.id,
            _dumps(entity.payload),
            entity.version,
            format_timestamp(entity.updated_at),
            entity.sync_status.value,
            int(entity.deleted),
            format_timestamp(entity.last_synced_at),
            entity.last_error,
            _dumps(entity.base_payload),
        )

    @staticmethod
    def _row_to_item(row: aiosqlite.Row) -> SyncQueueItem:
        return SyncQueueItem(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=SyncOperation(row["operation"]),
            payload_snapshot=_loads(row["payload_snapshot"]),
            base_version=row["base_version"],
            retry_count=row["retry_count"],
            next_retry_at=parse_timestamp(row["next_retry_at"]) or utcnow(),
            priority=SyncPriority(row["priority"]),
            dead_letter=bool(row["dead_letter"]),
            created_at=parse_timestamp(row["created_at"]) or utcnow(),
            last_error=row["last_error"],
            failed_at=parse_timestamp(row["failed_at"]),
            blocked=bool(row["blocked"]),
        )

    @staticmethod
    def _item_params(item: SyncQueueItem) -> tuple:
        return (
            item.id,
            item.entity_type,
            item.entity_id,
            item.operation.value,
            _dumps(item.payload_snapshot),
            item.base_version,
            item.retry_count,
            format_timestamp(item.next_retry_at),
            int(item.priority),
            int(item.dead_letter),
            format_timestamp(item.created_at),
            item.last_error,
            format_timestamp(item.failed_at),
            int(item.blocked),
        )

    async def _upsert_entity(self, conn: aiosqlite.Connection, entity: Entity) -> None:
        placeholders = ", ".join("?" for _ in ENTITY_COLUMNS)
        await conn.execute(
            f"INSERT OR REPLACE INTO entities ({', '.join(ENTITY_COLUMNS)}) "
            f"VALUES ({placeholders})",
            self._entity_params(entity),
        )

    async def _insert_item(self, conn: aiosqlite.Connection, item: SyncQueueItem) -> None:
        placeholders = ", ".join("?" for _ in QUEUE_COLUMNS)
        await conn.execute(
            f"INSERT INTO sync_queue ({', '.join(QUEUE_COLUMNS)}) VALUES ({placeholders})",
            self._item_params(item),
        )

    async def _stored_version(self, entity_type: str, entity_id: str) -> int | None:
        row = await self._fetchone(
            "SELECT version FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type, entity_id),
        )
        return None if row is None else row["version"]

    async def _check_version(self, entity: Entity) -> None:
        stored = await self._stored_version(entity.entity_type, entity.id)
        if stored is not None and entity.version < stored:
            raise ValidationError(
                "version",
                f"version may not decrease (stored {stored})",
                str(entity.version),
            )

    # =========================================================================
    # Entities
    # =========================================================================

    async def put(self, entity: Entity) -> None:
        async with self._transaction("put") as conn:
            await self._check_version(entity)
            await self._upsert_entity(conn, entity)

    async def get(self, entity_type: str, entity_id: str) -> Entity | None:
        row = await self._fetchone(
            f"SELECT {', '.join(ENTITY_COLUMNS)} FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type, entity_id),
        )
        return None if row is None else self._row_to_entity(row)

    async def query_all(self, entity_type: str, include_deleted: bool = False) -> list[Entity]:
        sql = f"SELECT {', '.join(ENTITY_COLUMNS)} FROM entities WHERE entity_type = ?"
        if not include_deleted:
            sql += " AND deleted = 0"
        sql += " ORDER BY updated_at, id"
        rows = await self._fetchall(sql, (entity_type,))
        return [self._row_to_entity(row) for row in rows]

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        async with self._transaction("delete_entity") as conn:
            cursor = await conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id),
            )
            return cursor.rowcount > 0

    async def purge_unsynced(self, entity_type: str, entity_id: str) -> int | None:
        async with self._transaction("purge_unsynced") as conn:
            row = await self._fetchone(
                "SELECT version, sync_status FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id),
            )
            if (
                row is None
                or row["version"] > 0
                or row["sync_status"]
                in (EntitySyncStatus.SYNCING.value, EntitySyncStatus.CONFLICT.value)
            ):
                return None

            cursor = await conn.execute(
                "DELETE FROM sync_queue WHERE entity_type = ? AND entity_id = ?",
                (entity_type, entity_id),
            )
            removed = cursor.rowcount
            await conn.execute(
                "DELETE FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id),
            )
        return removed

    async def put_and_enqueue(self, entity: Entity, item: SyncQueueItem) -> None:
        async with self._transaction("put_and_enqueue") as conn:
            await self._check_version(entity)
            await self._upsert_entity(conn, entity)
            await self._insert_item(conn, item)
        logger.debug(
            f"Stored {entity.entity_type}/{entity.id} and queued {item.operation.value} {item.id}"
        )

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
        async with self._transaction("update_sync_state") as conn:
            await conn.execute(
                """
                UPDATE entities SET
                    sync_status = ?,
                    version = MAX(version, COALESCE(?, version)),
                    last_error = ?,
                    last_synced_at = COALESCE(?, last_synced_at),
                    base_payload = COALESCE(?, base_payload)
                WHERE entity_type = ? AND id = ?
                """,
                (
                    sync_status.value,
                    version,
                    last_error,
                    format_timestamp(last_synced_at),
                    _dumps(base_payload),
                    entity_type,
                    entity_id,
                ),
            )
        return await self.get(entity_type, entity_id)

    async def confirm_push(
        self,
        entity_type: str,
        entity_id: str,
        version: int,
        base_payload: dict | None,
        synced_at: datetime,
        requeue: Callable[[Entity], SyncQueueItem] | None = None,
    ) -> EntitySyncStatus | None:
        async with self._transaction("confirm_push") as conn:
            row = await self._fetchone(
                f"SELECT {', '.join(ENTITY_COLUMNS)} FROM entities WHERE entity_type = ? AND id = ?",
                (entity_type, entity_id),
            )
            if row is None:
                return None
            entity = self._row_to_entity(row)

            row = await self._fetchone(
                "SELECT COUNT(*) AS n FROM sync_queue "
                "WHERE entity_type = ? AND entity_id = ? AND dead_letter = 0",
                (entity_type, entity_id),
            )
            queued = row["n"] > 0
            # The remote only holds what was pushed, not what is stored now
            diverged = canonical_json(entity.payload) != canonical_json(base_payload)
            status = (
                EntitySyncStatus.PENDING if queued or diverged else EntitySyncStatus.SYNCED
            )
            await conn.execute(
                """
                UPDATE entities SET
                    sync_status = ?,
                    version = MAX(version, ?),
                    last_error = NULL,
                    last_synced_at = ?,
                    base_payload = COALESCE(?, base_payload)
                WHERE entity_type = ? AND id = ?
                """,
                (
                    status.value,
                    version,
                    format_timestamp(synced_at),
                    _dumps(base_payload),
                    entity_type,
                    entity_id,
                ),
            )

            if diverged and not queued and requeue is not None:
                entity.version = max(entity.version, version)
                entity.sync_status = status
                if base_payload is not None:
                    entity.base_payload = base_payload
                await self._insert_item(conn, requeue(entity))
                logger.info(
                    f"Acknowledged payload of {entity_type}/{entity_id} is stale; "
                    f"queued the stored payload at version {entity.version}"
                )
        return status

    async def apply_remote(self, remote: RemoteEntity, expected: Entity | None) -> bool:
        async with self._transaction("apply_remote") as conn:
            row = await self._fetchone(
                "SELECT version, updated_at FROM entities WHERE entity_type = ? AND id = ?",
                (remote.entity_type, remote.id),
            )
            if expected is None:
                if row is not None:
                    return False
                stored_version = 0
            else:
                if row is None or row["updated_at"] != format_timestamp(expected.updated_at):
                    return False
                stored_version = row["version"]

            entity = Entity(
                id=remote.id,
                entity_type=remote.entity_type,
                payload=remote.payload,
                version=max(stored_version, remote.version),
                updated_at=remote.updated_at,
                sync_status=EntitySyncStatus.SYNCED,
                deleted=False,
                last_synced_at=utcnow(),
                last_error=None,
                base_payload=remote.payload,
            )
            await self._upsert_entity(conn, entity)
            return True

    async def rebase_entity(
        self,
        entity: Entity,
        expected: Entity,
        item: SyncQueueItem | None,
    ) -> bool:
        async with self._transaction("rebase_entity") as conn:
            row = await self._fetchone(
                "SELECT version, updated_at FROM entities WHERE entity_type = ? AND id = ?",
                (entity.entity_type, entity.id),
            )
            if row is None or row["updated_at"] != format_timestamp(expected.updated_at):
                return False
            if entity.version < row["version"]:
                raise ValidationError(
                    "version",
                    f"version may not decrease (stored {row['version']})",
                    str(entity.version),
                )

            await self._upsert_entity(conn, entity)
            cursor = await conn.execute(
                "DELETE FROM sync_queue "
                "WHERE entity_type = ? AND entity_id = ? AND dead_letter = 0",
                (entity.entity_type, entity.id),
            )
            collapsed = cursor.rowcount
            if item is not None:
                await self._insert_item(conn, item)

        logger.debug(
            f"Rebased {entity.entity_type}/{entity.id} at version {entity.version} "
            f"({collapsed} queued operations collapsed)"
        )
        return True

    # =========================================================================
    # Sync queue
    # =========================================================================

    async def enqueue(self, item: SyncQueueItem) -> None:
        async with self._transaction("enqueue") as conn:
            await self._insert_item(conn, item)

    async def get_queue_item(self, item_id: str) -> SyncQueueItem | None:
        row = await self._fetchone(
            f"SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue WHERE id = ?", (item_id,)
        )
        return None if row is None else self._row_to_item(row)

    async def list_queue_items(
        self,
        dead_letter: bool | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
    ) -> list[SyncQueueItem]:
        clauses: list[str] = []
        params: list[Any] = []
        if dead_letter is not None:
            clauses.append("dead_letter = ?")
            params.append(int(dead_letter))
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(entity_id)

        sql = f"SELECT {', '.join(QUEUE_COLUMNS)} FROM sync_queue"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"

        rows = await self._fetchall(sql, tuple(params))
        return [self._row_to_item(row) for row in rows]

    async def update_queue_item(self, item: SyncQueueItem) -> bool:
        async with self._transaction("update_queue_item") as conn:
            cursor = await conn.execute(
                """
                UPDATE sync_queue SET
                    operation = ?, payload_snapshot = ?, base_version = ?,
                    retry_count = ?, next_retry_at = ?, priority = ?, dead_letter = ?,
                    created_at = ?, last_error = ?, failed_at = ?, blocked = ?
                WHERE id = ?
                """,
                (
                    item.operation.value,
                    _dumps(item.payload_snapshot),
                    item.base_version,
                    item.retry_count,
                    format_timestamp(item.next_retry_at),
                    int(item.priority),
                    int(item.dead_letter),
                    format_timestamp(item.created_at),
                    item.last_error,
                    format_timestamp(item.failed_at),
                    int(item.blocked),
                    item.id,
                ),
            )
            return cursor.rowcount > 0

    async def delete_queue_item(self, item_id: str) -> bool:
        async with self._transaction("delete_queue_item") as conn:
            cursor = await conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            return cursor.rowcount > 0

    async def delete_queue_items_for_entity(
        self, entity_type: str, entity_id: str, include_dead_letter: bool = False
    ) -> int:
        sql = "DELETE FROM sync_queue WHERE entity_type = ? AND entity_id = ?"
        if not include_dead_letter:
            sql += " AND dead_letter = 0"
        async with self._transaction("delete_queue_items_for_entity") as conn:
            cursor = await conn.execute(sql, (entity_type, entity_id))
            return cursor.rowcount

    async def count_ready(self, now: datetime) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM sync_queue "
            "WHERE dead_letter = 0 AND blocked = 0 AND next_retry_at <= ?",
            (format_timestamp(now),),
        )
        return row["n"] if row else 0

    # =========================================================================
    # Watermarks and metadata
    # =========================================================================

    async def get_watermark(self, entity_type: str) -> str | None:
        row = await self._fetchone(
            "SELECT watermark FROM watermarks WHERE entity_type = ?", (entity_type,)
        )
        return row["watermark"] if row else None

    async def set_watermark(self, entity_type: str, watermark: str) -> None:
        async with self._transaction("set_watermark") as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO watermarks (entity_type, watermark) VALUES (?, ?)",
                (entity_type, watermark),
            )

    async def get_meta(self, key: str) -> str | None:
        row = await self._fetchone("SELECT value FROM sync_meta WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set_meta(self, key: str, value: str) -> None:
        async with self._transaction("set_meta") as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)", (key, value)
            )

    # =========================================================================
    # Conflicts
    # =========================================================================

    @staticmethod
    def _row_to_conflict(row: aiosqlite.Row) -> ConflictRecord:
        remote = json.loads(row["remote"])
        return ConflictRecord(
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            local_payload=_loads(row["local_payload"]),
            local_operation=SyncOperation(row["local_operation"]),
            remote=RemoteEntity.from_dict(row["entity_type"], remote),
            conflicting_fields=json.loads(row["conflicting_fields"]),
            detected_at=parse_timestamp(row["detected_at"]) or utcnow(),
            resolved=bool(row["resolved"]),
            resolution=row["resolution"],
            resolved_payload=_loads(row["resolved_payload"]),
            resolved_version=row["resolved_version"],
            resolved_at=parse_timestamp(row["resolved_at"]),
        )

    async def _write_conflict(self, conn: aiosqlite.Connection, conflict: ConflictRecord) -> None:
        await conn.execute(
            """
            INSERT OR REPLACE INTO conflicts (
                entity_type, entity_id, local_payload, local_operation, remote,
                conflicting_fields, detected_at, resolved, resolution,
                resolved_payload, resolved_version, resolved_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.entity_type,
                conflict.entity_id,
                _dumps(conflict.local_payload),
                conflict.local_operation.value,
                json.dumps(conflict.remote.to_dict()),
                json.dumps(conflict.conflicting_fields),
                format_timestamp(conflict.detected_at),
                int(conflict.resolved),
                conflict.resolution,
                _dumps(conflict.resolved_payload),
                conflict.resolved_version,
                format_timestamp(conflict.resolved_at),
            ),
        )

    async def save_conflict(self, conflict: ConflictRecord) -> None:
        async with self._transaction("save_conflict") as conn:
            await self._write_conflict(conn, conflict)

    async def open_conflict(self, conflict: ConflictRecord, last_error: str) -> None:
        async with self._transaction("open_conflict") as conn:
            await self._write_conflict(conn, conflict)
            await conn.execute(
                "UPDATE sync_queue SET blocked = 1 "
                "WHERE entity_type = ? AND entity_id = ? AND dead_letter = 0",
                (conflict.entity_type, conflict.entity_id),
            )
            await conn.execute(
                "UPDATE entities SET sync_status = ?, last_error = ? "
                "WHERE entity_type = ? AND id = ?",
                (
                    EntitySyncStatus.CONFLICT.value,
                    last_error,
                    conflict.entity_type,
                    conflict.entity_id,
                ),
            )

    async def get_conflict(self, entity_type: str, entity_id: str) -> ConflictRecord | None:
        row = await self._fetchone(
            "SELECT * FROM conflicts WHERE entity_type = ? AND entity_id = ?",
            (entity_type, entity_id),
        )
        return None if row is None else self._row_to_conflict(row)

    async def list_conflicts(self, include_resolved: bool = False) -> list[ConflictRecord]:
        sql = "SELECT * FROM conflicts"
        if not include_resolved:
            sql += " WHERE resolved = 0"
        sql += " ORDER BY detected_at"
        rows = await self._fetchall(sql)
        return [self._row_to_conflict(row) for row in rows]
