"""
Remote Sync API.

``RemoteSyncApi`` is the contract the orchestrator pushes to and pulls
from. ``HttpRemoteSyncApi`` implements it over HTTP with aiohttp:

    POST   /entities/{type}                    {id, payload, client_version: 0}
    PUT    /entities/{type}/{id}               {payload, base_version}
    DELETE /entities/{type}/{id}?base_version=N
    GET    /entities/{type}?since=<watermark>

Every failure is mapped onto the sync exception taxonomy so callers never
see aiohttp exceptions.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from ..exceptions import (
    AuthenticationError,
    PermanentRejectionError,
    TransientSyncError,
    VersionConflictError,
)
from ..protocol import PushAck, RemoteEntity, SyncOperation, SyncQueueItem
from ..utils import parse_timestamp

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]

TRANSIENT_STATUS_CODES = (408, 429)


class RemoteSyncApi(ABC):
    """Contract of the central store as seen by the sync engine."""

    @abstractmethod
    async def push(self, item: SyncQueueItem, base_version: int) -> PushAck:
        """Send one queued operation.

        Raises:
            VersionConflictError: Remote version is newer than ``base_version``
            TransientSyncError: Network failure, timeout or 5xx
            PermanentRejectionError: Validation rejection (4xx)
            AuthenticationError: 401/403
        """

    @abstractmethod
    async def pull(self, entity_type: str, since: str | None) -> list[RemoteEntity]:
        """Entities of a type changed after the watermark ``since``."""

    async def close(self) -> None:
        """Release network resources."""


class HttpRemoteSyncApi(RemoteSyncApi):
    """aiohttp client for the Remote Sync API.

    Example:
        >>> api = HttpRemoteSyncApi(
        ...     "https://api.example.com",
        ...     token_provider=auth.get_token,
        ...     device_id=device_id,
        ... )
        >>> ack = await api.push(item, base_version=3)
        >>> await api.close()
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        token_provider: TokenProvider | None = None,
        device_id: str | None = None,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: API root, e.g. "https://api.example.com"
            token: Static bearer token
            token_provider: Async callable returning the current bearer token
            device_id: Sent as X-Device-Id for attribution
            timeout_seconds: Total timeout per request
            session: Externally managed aiohttp session
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.token_provider = token_provider
        self.device_id = device_id
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        token = await self.token_provider() if self.token_provider else self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.device_id:
            headers["X-Device-Id"] = self.device_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        entity_type: str,
        entity_id: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (None if empty)."""
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json,
                headers=await self._headers(),
            ) as response:
                body = await self._read_body(response)
                status = response.status
        except (aiohttp.ClientError, TimeoutError) as e:
            raise TransientSyncError(
                f"{method} {path} failed: {e or type(e).__name__}",
                entity_id=entity_id,
                cause=e,
            ) from e

        if status < 400:
            return body

        message = self._error_message(body) or f"{method} {path} returned {status}"
        if status in (401, 403):
            raise AuthenticationError(message, status=status, entity_id=entity_id)
        if status == 409:
            remote = self._conflict_remote(entity_type, entity_id, body)
            raise VersionConflictError(entity_id or "", remote, message)
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise TransientSyncError(message, status=status, entity_id=entity_id)
        raise PermanentRejectionError(message, status=status, entity_id=entity_id)

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text:
            return None
        try:
            return await response.json(content_type=None)
        except ValueError:
            return {"message": text}

    @staticmethod
    def _error_message(body: Any) -> str | None:
        if isinstance(body, dict):
            for key in ("message", "error", "detail"):
                if isinstance(body.get(key), str):
                    return body[key]
        return None

    @staticmethod
    def _conflict_remote(entity_type: str, entity_id: str | None, body: Any) -> RemoteEntity | None:
        """Extract the current remote state from a 409 body."""
        if not isinstance(body, dict):
            return None
        data = body.get("current") or body.get("remote") or body
        if not isinstance(data, dict) or "version" not in data:
            return None
        data = dict(data)
        data.setdefault("id", entity_id)
        return RemoteEntity.from_dict(entity_type, data)

    async def push(self, item: SyncQueueItem, base_version: int) -> PushAck:
        entity_path = f"/entities/{item.entity_type}"

        if item.operation == SyncOperation.CREATE:
            body = await self._request(
                "POST",
                entity_path,
                item.entity_type,
                item.entity_id,
                json={"id": item.entity_id, "payload": item.payload_snapshot, "client_version": 0},
            )
        elif item.operation == SyncOperation.UPDATE:
            body = await self._request(
                "PUT",
                f"{entity_path}/{item.entity_id}",
                item.entity_type,
                item.entity_id,
                json={"payload": item.payload_snapshot, "base_version": base_version},
            )
        else:
            body = await self._request(
                "DELETE",
                f"{entity_path}/{item.entity_id}",
                item.entity_type,
                item.entity_id,
                params={"base_version": base_version},
            )

        logger.debug(f"Pushed {item.operation.value} {item.entity_type}/{item.entity_id}")
        if not isinstance(body, dict):
            return PushAck(entity_id=item.entity_id, version=None)

        version = body.get("version")
        return PushAck(
            entity_id=str(body.get("id", item.entity_id)),
            version=int(version) if version is not None else None,
            updated_at=parse_timestamp(body.get("updated_at")),
        )

    async def pull(self, entity_type: str, since: str | None) -> list[RemoteEntity]:
        params = {"since": since} if since else None
        body = await self._request("GET", f"/entities/{entity_type}", entity_type, params=params)

        if isinstance(body, dict):
            body = body.get("data", [])
        if not isinstance(body, list):
            raise TransientSyncError(f"Unexpected pull response for {entity_type}")

        try:
            entities = [RemoteEntity.from_dict(entity_type, data) for data in body]
        except (KeyError, TypeError, ValueError) as e:
            raise TransientSyncError(
                f"Malformed entity in pull response for {entity_type}: {e!r}", cause=e
            ) from e
        logger.debug(f"Pulled {len(entities)} {entity_type} entities since {since}")
        return entities
