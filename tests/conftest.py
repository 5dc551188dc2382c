"""
Shared test configuration and fixtures.

Provides an in-memory SQLite store, an in-memory fake of the Remote Sync
API, and a factory that wires a complete client (store, orchestrator,
repository) so tests can simulate several devices against one server.
"""

import asyncio
from dataclasses import dataclass, replace
from datetime import timedelta

import pytest

from fieldsync.config import SyncConfig
from fieldsync.exceptions import PermanentRejectionError, VersionConflictError
from fieldsync.protocol import PushAck, RemoteEntity, SyncOperation, SyncQueueItem
from fieldsync.repository import EntityRepository
from fieldsync.store.sqlite import SQLiteLocalStore, SQLiteStoreConfig
from fieldsync.sync.connection import ConnectionMonitor
from fieldsync.sync.orchestrator import SyncOrchestrator
from fieldsync.sync.remote import RemoteSyncApi
from fieldsync.utils import canonical_json, parse_timestamp, utcnow


def _snapshot(entity: RemoteEntity) -> RemoteEntity:
    return replace(entity, payload=dict(entity.payload))


class FakeRemoteApi(RemoteSyncApi):
    """
    In-memory Remote Sync API.

    Behaves like the real server: versions start at 1 and advance by one
    per accepted write, a write against a stale base version gets a 409
    carrying the current state, and pulls return entities changed after
    the watermark. Queue ``push_errors`` to make the next pushes fail.
    """

    def __init__(self):
        self.entities: dict[tuple[str, str], RemoteEntity] = {}
        self.push_errors: list[Exception] = []
        self.pull_errors: list[Exception] = []
        self.pushes: list[tuple[SyncQueueItem, int]] = []
        self.pulls: list[tuple[str, str | None]] = []
        self.push_delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0
        self._last_write = None

    def _tick(self):
        now = utcnow()
        if self._last_write is not None and now <= self._last_write:
            now = self._last_write + timedelta(microseconds=1)
        self._last_write = now
        return now

    def server_update(self, entity_type: str, entity_id: str, payload: dict) -> RemoteEntity:
        """Simulate a write by another client directly on the server."""
        current = self.entities.get((entity_type, entity_id))
        entity = RemoteEntity(
            id=entity_id,
            entity_type=entity_type,
            payload=dict(payload),
            version=current.version + 1 if current else 1,
            updated_at=self._tick(),
        )
        self.entities[(entity_type, entity_id)] = entity
        return entity

    async def push(self, item: SyncQueueItem, base_version: int) -> PushAck:
        self.pushes.append((item, base_version))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.push_delay:
                await asyncio.sleep(self.push_delay)
            if self.push_errors:
                raise self.push_errors.pop(0)
            return self._apply(item, base_version)
        finally:
            self.in_flight -= 1

    def _apply(self, item: SyncQueueItem, base_version: int) -> PushAck:
        key = (item.entity_type, item.entity_id)
        current = self.entities.get(key)

        if item.operation == SyncOperation.CREATE:
            if current is not None:
                if canonical_json(current.payload) == canonical_json(item.payload_snapshot):
                    return PushAck(item.entity_id, current.version, current.updated_at)
                raise VersionConflictError(item.entity_id, _snapshot(current))
            created = self.server_update(item.entity_type, item.entity_id, item.payload_snapshot)
            return PushAck(item.entity_id, created.version, created.updated_at)

        if item.operation == SyncOperation.UPDATE:
            if current is None:
                raise PermanentRejectionError("Entity does not exist", status=404)
            if base_version < current.version:
                raise VersionConflictError(item.entity_id, _snapshot(current))
            updated = self.server_update(item.entity_type, item.entity_id, item.payload_snapshot)
            return PushAck(item.entity_id, updated.version, updated.updated_at)

        if current is None:
            return PushAck(item.entity_id, None)
        if base_version < current.version:
            raise VersionConflictError(item.entity_id, _snapshot(current))
        del self.entities[key]
        return PushAck(item.entity_id, current.version + 1)

    async def pull(self, entity_type: str, since: str | None) -> list[RemoteEntity]:
        self.pulls.append((entity_type, since))
        if self.pull_errors:
            raise self.pull_errors.pop(0)
        watermark = parse_timestamp(since)
        changed = [
            _snapshot(entity)
            for (etype, _), entity in self.entities.items()
            if etype == entity_type and (watermark is None or entity.updated_at > watermark)
        ]
        return sorted(changed, key=lambda e: e.updated_at)


@dataclass
class Client:
    """One device: its own store, orchestrator and repository."""

    store: SQLiteLocalStore
    orchestrator: SyncOrchestrator
    repo: EntityRepository

    @property
    def monitor(self) -> ConnectionMonitor:
        return self.orchestrator.monitor

    @property
    def queue(self):
        return self.orchestrator.queue


@pytest.fixture
async def store():
    """Fixture providing an initialized in-memory SQLite store."""
    store = await SQLiteLocalStore.create(SQLiteStoreConfig(db_path=":memory:"))
    yield store
    await store.close()


@pytest.fixture
def remote():
    """Fixture providing a fresh fake Remote Sync API (one server per test)."""
    return FakeRemoteApi()


@pytest.fixture
async def make_client(remote):
    """
    Factory fixture building clients that share the ``remote`` server.

    Clients are built with a zero debounce connection monitor. By default the
    repository is not wired to the orchestrator, so cycles run only when a
    test calls ``sync_now``; pass ``auto_sync=True`` for mutation triggers.
    """
    clients: list[Client] = []

    async def factory(online: bool = True, auto_sync: bool = False, **config) -> Client:
        store = await SQLiteLocalStore.create(SQLiteStoreConfig(db_path=":memory:"))
        config.setdefault("entity_types", ["quote", "job"])
        orchestrator = SyncOrchestrator(
            store,
            remote,
            config=SyncConfig(**config),
            monitor=ConnectionMonitor(debounce_seconds=0, initial_online=online),
        )
        repo = EntityRepository(store, orchestrator.queue, orchestrator if auto_sync else None)
        client = Client(store, orchestrator, repo)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.orchestrator.stop()
        await client.store.close()
