"""
SplitEasy — Connectivity Monitor.

Pings the remote store on an interval and tells listeners (the Sync Engine,
the Realtime Event Router) when the client goes offline or comes back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from spliteasy.ports.remote_port import RemoteStorePort

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    def __init__(
        self,
        remote: RemoteStorePort | None,
        interval_seconds: float | None = None,
        online: bool = True,
    ) -> None:
        if interval_seconds is None:
            from spliteasy.config import settings
            interval_seconds = settings.CONNECTION_CHECK_INTERVAL_SECONDS

        self._remote = remote
        self._interval = interval_seconds
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    async def set_online(self, online: bool) -> None:
        """Record a connectivity signal; listeners hear only about transitions."""
        if online == self._online:
            return
        self._online = online
        if online:
            logger.info("Reconnected to remote store")
        else:
            logger.warning("Lost connection to remote store")
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception as exc:
                logger.error("Connectivity listener failed: %s", exc)

    async def check(self) -> bool:
        """Ping the remote store once and report any transition."""
        if self._remote is None:
            return False
        try:
            reachable = await self._remote.ping()
        except Exception as exc:
            logger.debug("Connection check failed: %s", exc)
            reachable = False
        await self.set_online(reachable)
        return reachable

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.check()
