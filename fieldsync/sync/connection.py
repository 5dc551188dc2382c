"""
Connection monitor.

Tracks online/offline state from platform signals (``report``) and an
optional reachability check, and notifies subscribers of debounced
transitions. The monitor never raises to its callers: subscriber errors
are logged, and a failed detection counts as online so the sync engine
keeps trying.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import socket
from collections.abc import Awaitable, Callable

from ..protocol import ConnectionState
from ..utils import utcnow

logger = logging.getLogger(__name__)

ConnectionCallback = Callable[[ConnectionState], Awaitable[None] | None]


class ConnectionMonitor:
    """Debounced online/offline state.

    Changes reported within the debounce window collapse into one: when
    the window closes, only the state current at that moment is emitted,
    and only if it differs from the last emitted state.

    Example:
        >>> monitor = ConnectionMonitor(reachability_host="api.example.com")
        >>> unsubscribe = monitor.subscribe(lambda s: print(s.status))
        >>> await monitor.start()
        >>> monitor.report(False)  # platform says the network went away
    """

    def __init__(
        self,
        debounce_seconds: float = 0.25,
        reachability_host: str | None = None,
        reachability_interval_seconds: float = 15.0,
        reachability_timeout_seconds: float = 5.0,
        initial_online: bool = True,
    ):
        """Initialize the monitor.

        Args:
            debounce_seconds: Window in which state changes are collapsed
            reachability_host: Host resolved by the reachability check (None disables it)
            reachability_interval_seconds: Seconds between checks
            reachability_timeout_seconds: Bound on a single check
            initial_online: State assumed before any signal arrives
        """
        self.debounce_seconds = debounce_seconds
        self.reachability_host = reachability_host
        self.reachability_interval_seconds = reachability_interval_seconds
        self.reachability_timeout_seconds = reachability_timeout_seconds

        now = utcnow()
        self._reported = initial_online
        self._emitted = initial_online
        self._last_online = now if initial_online else None
        self._last_offline = None if initial_online else now

        self._subscribers: list[ConnectionCallback] = []
        self._debounce_task: asyncio.Task[None] | None = None
        self._reachability_task: asyncio.Task[None] | None = None
        self._notify_tasks: set[asyncio.Task[None]] = set()
        self._online_event = asyncio.Event()
        if initial_online:
            self._online_event.set()

    @property
    def is_online(self) -> bool:
        """Last emitted state."""
        return self._emitted

    def get_state(self) -> ConnectionState:
        return ConnectionState(
            is_online=self._emitted,
            last_online=self._last_online,
            last_offline=self._last_offline,
        )

    def subscribe(self, callback: ConnectionCallback) -> Callable[[], None]:
        """Register a transition callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def report(self, is_online: bool | None) -> None:
        """Feed a platform connectivity signal.

        ``None`` (unknown) is treated as online.
        """
        is_online = True if is_online is None else bool(is_online)
        self._reported = is_online

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to deliver callbacks on; just record the state
            self._set_emitted(is_online)
            return

        if self.debounce_seconds <= 0:
            if is_online != self._emitted:
                self._set_emitted(is_online)
                task = loop.create_task(self._notify(self.get_state()))
                self._notify_tasks.add(task)
                task.add_done_callback(self._notify_tasks.discard)
            return

        if self._debounce_task is None or self._debounce_task.done():
            if is_online != self._emitted:
                self._debounce_task = loop.create_task(self._debounce())

    async def _debounce(self) -> None:
        while True:
            await asyncio.sleep(self.debounce_seconds)
            if self._reported == self._emitted:
                logger.debug("Connection flapped inside debounce window; no transition emitted")
                return
            self._set_emitted(self._reported)
            await self._notify(self.get_state())
            if self._reported == self._emitted:
                return

    def _set_emitted(self, is_online: bool) -> None:
        self._emitted = is_online
        if is_online:
            self._last_online = utcnow()
            self._online_event.set()
        else:
            self._last_offline = utcnow()
            self._online_event.clear()
        logger.info(f"Connection state: {'online' if is_online else 'offline'}")

    async def _notify(self, state: ConnectionState) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Connection callback failed: {e}")

    async def wait_for_online(self, timeout: float | None = None) -> bool:
        """Wait until the monitor reports online.

        Returns:
            True if online, False if the timeout elapsed first
        """
        if self._emitted:
            return True
        try:
            async with asyncio.timeout(timeout):
                await self._online_event.wait()
        except TimeoutError:
            return False
        return True

    # =========================================================================
    # Reachability check
    # =========================================================================

    async def check_connectivity(self) -> bool:
        """Resolve the reachability host on a worker thread.

        Returns:
            False only when resolution fails or times out; True otherwise
        """
        if not self.reachability_host:
            return True
        try:
            async with asyncio.timeout(self.reachability_timeout_seconds):
                await asyncio.to_thread(socket.getaddrinfo, self.reachability_host, None)
            return True
        except (OSError, TimeoutError):
            return False
        except Exception as e:
            logger.warning(f"Connectivity check failed, assuming online: {e}")
            return True

    async def start(self) -> None:
        """Start the check loop (no-op without a reachability host)."""
        if self._reachability_task is not None or not self.reachability_host:
            return

        async def check_loop() -> None:
            while True:
                try:
                    self.report(await self.check_connectivity())
                    await asyncio.sleep(self.reachability_interval_seconds)
                except asyncio.CancelledError:
                    break

        self._reachability_task = asyncio.create_task(check_loop())
        logger.info(f"Connection monitor checking {self.reachability_host}")

    async def stop(self) -> None:
        """Stop the check loop and any pending debounce."""
        for task in (self._reachability_task, self._debounce_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reachability_task = None
        self._debounce_task = None
