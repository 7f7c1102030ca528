"""Tests for the connectivity monitor."""

from __future__ import annotations

import asyncio

from shs.core.connectivity import ConnectivityMonitor, ConnectivitySignal


def _run(coro):
    """Run an async coroutine synchronously (no pytest-asyncio required)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestConnectivityMonitor:
    def test_satisfies_protocol(self):
        assert isinstance(ConnectivityMonitor(), ConnectivitySignal)

    def test_listeners_awaited_in_order(self):
        monitor = ConnectivityMonitor(online=True)
        seen: list[str] = []

        async def first(online):
            seen.append(f"first:{online}")

        async def second(online):
            seen.append(f"second:{online}")

        monitor.subscribe(first)
        monitor.subscribe(second)
        _run(monitor.set_online(False))
        assert seen == ["first:False", "second:False"]
        assert monitor.is_online is False

    def test_no_notification_without_change(self):
        monitor = ConnectivityMonitor(online=True)
        seen: list[bool] = []

        async def listener(online):
            seen.append(online)

        monitor.subscribe(listener)
        _run(monitor.set_online(True))
        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        monitor = ConnectivityMonitor(online=False)
        seen: list[bool] = []

        async def broken(online):
            raise RuntimeError("listener bug")

        async def healthy(online):
            seen.append(online)

        monitor.subscribe(broken)
        monitor.subscribe(healthy)
        _run(monitor.set_online(True))
        assert seen == [True]

    def test_subscribe_is_idempotent_and_unsubscribe(self):
        monitor = ConnectivityMonitor(online=True)
        seen: list[bool] = []

        async def listener(online):
            seen.append(online)

        monitor.subscribe(listener)
        monitor.subscribe(listener)
        _run(monitor.set_online(False))
        monitor.unsubscribe(listener)
        _run(monitor.set_online(True))
        assert seen == [False]
