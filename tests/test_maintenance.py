"""Tests for the post-update reconnect loop."""

from __future__ import annotations

import pytest

from client.maintenance import MaintenanceReconnector, ReconnectPhase


def _probe_sequence(results: list[bool]):
    calls = []

    async def probe() -> bool:
        calls.append(len(calls))
        return results[len(calls) - 1] if len(calls) <= len(results) else results[-1]

    return probe, calls


@pytest.mark.asyncio()
async def test_reloads_exactly_once_after_server_returns() -> None:
    probe, calls = _probe_sequence([False] * 5 + [True, True, True])
    reloads = []
    phases = []
    reconnector = MaintenanceReconnector(
        probe,
        on_reload=lambda: reloads.append("reload"),
        interval=0,
        initial_delay=0,
        on_phase=phases.append,
    )

    assert await reconnector.run() is ReconnectPhase.HEALTHY
    assert await reconnector.run() is ReconnectPhase.HEALTHY

    assert reloads == ["reload"]
    assert len(calls) == 6
    assert reconnector.attempts == 6
    assert phases == [ReconnectPhase.WAITING_FOR_SERVER, ReconnectPhase.HEALTHY]


@pytest.mark.asyncio()
async def test_async_reload_callback_is_awaited() -> None:
    probe, _ = _probe_sequence([True])
    reloads = []

    async def reload() -> None:
        reloads.append("reload")

    reconnector = MaintenanceReconnector(probe, on_reload=reload, interval=0, initial_delay=0)
    await reconnector.run()
    assert reloads == ["reload"]


@pytest.mark.asyncio()
async def test_gives_up_after_max_attempts() -> None:
    probe, calls = _probe_sequence([False])
    reloads = []
    reconnector = MaintenanceReconnector(
        probe, on_reload=lambda: reloads.append("reload"), interval=0, max_attempts=4, initial_delay=0
    )

    assert await reconnector.run() is ReconnectPhase.GAVE_UP
    assert reloads == []
    assert len(calls) == 4


def test_starts_in_updating_phase() -> None:
    async def probe() -> bool:
        return True

    reconnector = MaintenanceReconnector(probe, on_reload=lambda: None)
    assert reconnector.phase is ReconnectPhase.UPDATING
