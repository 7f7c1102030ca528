"""Connectivity signal — injected online/offline state with change notifications.

The hosting process flips the state (e.g. from a network probe or the
``set_connectivity`` tool); the coordinator, sync engine and recovery engine
subscribe to it instead of hooking platform events directly.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


@runtime_checkable
class ConnectivitySignal(Protocol):
    """Abstract online/offline signal."""

    @property
    def is_online(self) -> bool:
        ...

    def subscribe(self, listener: ConnectivityListener) -> None:
        ...

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        ...


class ConnectivityMonitor:
    """Settable connectivity state.

    Listeners are awaited in subscription order on every transition, so a
    caller of :meth:`set_online` knows queue draining and the restored-sync
    run have finished when it returns.

    Usage::

        monitor = ConnectivityMonitor(online=False)
        monitor.subscribe(on_change)
        await monitor.set_online(True)   # awaits on_change(True)
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, online: bool) -> None:
        """Update the state and notify listeners if it changed."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
