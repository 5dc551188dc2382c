"""
Sync engine configuration.

Configuration can be provided directly, from environment variables, or
from a YAML settings file:

Environment Variables:
    FIELDSYNC_DB_PATH: SQLite database path (default: ~/.fieldsync/fieldsync.db)
    FIELDSYNC_API_URL: Base URL of the Remote Sync API
    FIELDSYNC_ENTITY_TYPES: Comma-separated entity types to pull (default: quote,job)
    FIELDSYNC_BATCH_SIZE: Max queue items per push batch (default: 10)
    FIELDSYNC_MAX_RETRIES: Retry ceiling before dead-letter (default: 10)
    FIELDSYNC_SYNC_INTERVAL: Periodic sync interval in seconds (default: 30)
    FIELDSYNC_REQUEST_TIMEOUT: Per-request timeout in seconds (default: 15)
    FIELDSYNC_MAX_CONCURRENCY: Simultaneous push requests (default: 5)

Settings file (``~/.fieldsync/settings.yaml``):

```yaml
sync:
  api_base_url: "https://api.example.com"
  entity_types: ["quote", "job"]
  batch_size: 20
  backoff:
    base_seconds: 2
    max_seconds: 300
```
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
import yaml

from .exceptions import ValidationError

DEFAULT_HOME = Path.home() / ".fieldsync"


@dataclass
class SyncConfig:
    """Configuration for the sync engine.

    Attributes:
        db_path: SQLite database path, or ":memory:"
        api_base_url: Base URL of the Remote Sync API
        entity_types: Entity types pulled from the remote on every cycle
        batch_size: Max queue items claimed per push batch
        max_retries: Retry ceiling; exceeding it dead-letters the item
        backoff_base_seconds: First backoff window
        backoff_max_seconds: Backoff cap
        auto_promote_after: Failed attempts after which an item moves to HIGH priority
        sync_interval_seconds: Periodic trigger while online with a non-empty queue
        request_timeout_seconds: Bound on every push/pull request
        max_concurrency: Simultaneous push requests across different entities
        debounce_seconds: Connection state debounce window
        connectivity_host: Host resolved by the connectivity check (None disables checking)
        connectivity_interval_seconds: Check interval
        connectivity_timeout_seconds: Check timeout
    """

    db_path: str | Path = ":memory:"
    api_base_url: str | None = None
    entity_types: list[str] = field(default_factory=lambda: ["quote", "job"])

    # Queue
    batch_size: int = 10
    max_retries: int = 10
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    auto_promote_after: int = 3

    # Orchestrator
    sync_interval_seconds: float = 30.0
    request_timeout_seconds: float = 15.0
    max_concurrency: int = 5

    # Connection monitor
    debounce_seconds: float = 0.25
    connectivity_host: str | None = None
    connectivity_interval_seconds: float = 15.0
    connectivity_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValidationError("batch_size", "must be >= 1", str(self.batch_size))
        if self.max_retries < 0:
            raise ValidationError("max_retries", "must be >= 0", str(self.max_retries))
        if self.max_concurrency < 1:
            raise ValidationError("max_concurrency", "must be >= 1", str(self.max_concurrency))
        if self.backoff_base_seconds <= 0 or self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValidationError(
                "backoff",
                "base must be > 0 and max must be >= base",
                f"{self.backoff_base_seconds}/{self.backoff_max_seconds}",
            )

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from environment variables."""
        entity_types = os.environ.get("FIELDSYNC_ENTITY_TYPES", "quote,job")

        return cls(
            db_path=os.environ.get("FIELDSYNC_DB_PATH", str(DEFAULT_HOME / "fieldsync.db")),
            api_base_url=os.environ.get("FIELDSYNC_API_URL"),
            entity_types=[t.strip() for t in entity_types.split(",") if t.strip()],
            batch_size=int(os.environ.get("FIELDSYNC_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("FIELDSYNC_MAX_RETRIES", "10")),
            sync_interval_seconds=float(os.environ.get("FIELDSYNC_SYNC_INTERVAL", "30")),
            request_timeout_seconds=float(os.environ.get("FIELDSYNC_REQUEST_TIMEOUT", "15")),
            max_concurrency=int(os.environ.get("FIELDSYNC_MAX_CONCURRENCY", "5")),
            connectivity_host=os.environ.get("FIELDSYNC_CONNECTIVITY_HOST"),
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> SyncConfig:
        """Create config from the ``sync`` section of a YAML settings file.

        Missing files and missing keys fall back to defaults.
        """
        path = path or DEFAULT_HOME / "settings.yaml"
        if not path.exists():
            return cls()

        content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        return cls.from_dict(content.get("sync", {}))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Create config from a plain dictionary (unknown keys are ignored)."""
        data = dict(data)
        backoff = data.pop("backoff", None) or {}
        if "base_seconds" in backoff:
            data["backoff_base_seconds"] = backoff["base_seconds"]
        if "max_seconds" in backoff:
            data["backoff_max_seconds"] = backoff["max_seconds"]

        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


async def get_device_id(home: Path | None = None) -> str:
    """Get or create the persistent device ID.

    The device ID is stored in ``<home>/.device_id`` and persists across runs.
    It is attached to pushes so the server can attribute edits.
    """
    home = home or DEFAULT_HOME
    id_path = home / ".device_id"

    if await aiofiles.os.path.exists(id_path):
        async with aiofiles.open(id_path, encoding="utf-8") as f:
            device_id = (await f.read()).strip()
        if device_id:
            return device_id

    device_id = str(uuid.uuid4())
    await aiofiles.os.makedirs(home, exist_ok=True)
    async with aiofiles.open(id_path, "w", encoding="utf-8") as f:
        await f.write(device_id)
    return device_id
