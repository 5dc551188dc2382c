"""
Custom exceptions for the sync engine.

Local store, queue and remote client raise these exceptions so the
orchestrator can classify failures consistently:

- Local: StorageExhaustedError (fatal, surfaced immediately)
- Transient network: TransientSyncError (retried with backoff)
- Validation/permanent: PermanentRejectionError (dead-lettered at once)
- Version conflict: VersionConflictError (routed to the conflict resolver)
- Auth: AuthenticationError (sync paused, re-authentication requested)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .protocol import RemoteEntity


class FieldSyncError(Exception):
    """Base exception for all sync engine errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageIOError(FieldSyncError):
    """Raised when a local storage operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageExhaustedError(FieldSyncError):
    """Raised when the local store has run out of space.

    This is the only error local operations surface to callers; it is fatal
    for the mutation that triggered it.
    """

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Local storage exhausted during {operation}", details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(FieldSyncError):
    """Raised when the local database cannot be opened.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class EntityNotFoundError(FieldSyncError):
    """Raised when an entity is not found in the local store."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(
            f"Entity not found: {entity_type}/{entity_id}",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class QueueItemNotFoundError(FieldSyncError):
    """Raised when an operator action targets a queue item that does not exist."""

    def __init__(self, item_id: str, reason: str | None = None):
        details = {"item_id": item_id}
        if reason:
            details["reason"] = reason
        super().__init__(f"Queue item not found: {item_id}", details)
        self.item_id = item_id


class ValidationError(FieldSyncError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class SyncError(FieldSyncError):
    """Raised when a remote sync request fails."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        entity_id: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if status is not None:
            details["status"] = status
        if entity_id:
            details["entity_id"] = entity_id
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.status = status
        self.entity_id = entity_id
        self.cause = cause


class TransientSyncError(SyncError):
    """Network failure, timeout or 5xx response. Retried with backoff."""


class PermanentRejectionError(SyncError):
    """4xx validation rejection. Retrying would be rejected again."""


class AuthenticationError(SyncError):
    """401/403 response. Sync pauses until re-authentication."""


class VersionConflictError(SyncError):
    """409 response. Carries the current remote state of the entity."""

    def __init__(self, entity_id: str, remote: RemoteEntity | None, message: str | None = None):
        super().__init__(
            message or f"Version conflict for entity {entity_id}",
            status=409,
            entity_id=entity_id,
        )
        self.remote = remote
        if remote is not None:
            self.details["remote_version"] = remote.version


class ConflictNotFoundError(FieldSyncError):
    """Raised when resolving a conflict that does not exist."""

    def __init__(self, entity_type: str, entity_id: str, reason: str | None = None):
        details = {"entity_type": entity_type, "entity_id": entity_id}
        if reason:
            details["reason"] = reason
        super().__init__(f"No conflict pending for {entity_type}/{entity_id}", details)
        self.entity_type = entity_type
        self.entity_id = entity_id
