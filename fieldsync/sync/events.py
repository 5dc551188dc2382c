"""
Observer interface for sync state.

The orchestrator and the queue manager publish ``SyncEvent`` objects to an
``EventBus``; UI code subscribes to the event types it renders (pending
count, last successful sync, conflicts, dead letters, auth prompts).

Example:
    >>> bus = EventBus()
    >>> unsubscribe = bus.subscribe(
    ...     lambda event: print(event.data["pending_count"]),
    ...     event_types={SyncEventType.PENDING_COUNT_CHANGED},
    ... )
    >>> unsubscribe()
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..utils import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class SyncEventType(Enum):
    """Types of sync events."""

    STATE_CHANGED = "state_changed"
    PENDING_COUNT_CHANGED = "pending_count_changed"
    SYNC_COMPLETED = "sync_completed"
    ENTITY_SYNCED = "entity_synced"
    AUTO_MERGED = "auto_merged"
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"
    DEAD_LETTERED = "dead_lettered"
    AUTH_REQUIRED = "auth_required"
    CONNECTION_CHANGED = "connection_changed"


@dataclass
class SyncEvent:
    """A sync event published to observers."""

    event_type: SyncEventType
    entity_type: str | None = None
    entity_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "data": self.data,
            "timestamp": format_timestamp(self.timestamp),
        }


EventCallback = Callable[[SyncEvent], Awaitable[None] | None]


class EventBus:
    """Fan-out of sync events to subscribers.

    Callbacks may be plain functions or coroutines. A failing callback is
    logged and never affects other subscribers or the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventCallback, frozenset[SyncEventType] | None]] = []

    def subscribe(
        self,
        callback: EventCallback,
        event_types: Iterable[SyncEventType] | None = None,
    ) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: Called with every matching event
            event_types: Event types to receive (all if None)

        Returns:
            Function that removes the subscription
        """
        entry = (callback, frozenset(event_types) if event_types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: SyncEvent) -> None:
        """Deliver an event to every matching subscriber."""
        for callback, event_types in list(self._subscribers):
            if event_types is not None and event.event_type not in event_types:
                continue
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Sync event callback failed for {event.event_type.value}: {e}")

    async def emit(
        self,
        event_type: SyncEventType,
        entity_type: str | None = None,
        entity_id: str | None = None,
        **data: Any,
    ) -> SyncEvent:
        """Build and publish an event."""
        event = SyncEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data,
        )
        await self.publish(event)
        return event
