"""Tests for StreamHub subscriptions: replay, live delivery, ordering and eviction."""

from __future__ import annotations

import asyncio

import pytest

from core.errors import Forbidden, Gone, NotFound
from models.frames import LogFrame, StatusFrame
from models.task import TaskState
from services.hub import StreamHub
from services.registry import TaskRegistry


async def _collect(hub: StreamHub, task_id: str, viewer=None) -> list:
    frames = []
    async with hub.open(task_id, viewer=viewer) as sub:
        async for frame in sub:
            frames.append(frame)
    return frames


@pytest.mark.asyncio()
async def test_late_subscriber_gets_full_backlog_then_status() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry)
    task = registry.create("php", "install", "8.2")
    task.append("Installing PHP 8.2...")
    task.append("Done")
    task.finish(TaskState.COMPLETED)

    frames = await _collect(hub, task.task_id)

    assert frames == [
        LogFrame(data="Installing PHP 8.2..."),
        LogFrame(data="Done"),
        StatusFrame(status=TaskState.COMPLETED),
    ]


@pytest.mark.asyncio()
async def test_live_subscribers_each_see_every_line_in_order() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry)
    task = registry.create("php", "install", "8.2")
    task.append("line 0")

    readers = [asyncio.create_task(_collect(hub, task.task_id)) for _ in range(3)]
    await asyncio.sleep(0)
    assert hub.subscriber_count(task.task_id) == 3

    for i in range(1, 50):
        task.append(f"line {i}")
        if i % 7 == 0:
            await asyncio.sleep(0)
    task.finish(TaskState.FAILED)

    results = await asyncio.wait_for(asyncio.gather(*readers), 5)

    expected = [LogFrame(data=f"line {i}") for i in range(50)] + [StatusFrame(status=TaskState.FAILED)]
    for frames in results:
        assert frames == expected
    assert hub.subscriber_count() == 0


@pytest.mark.asyncio()
async def test_status_frame_is_delivered_exactly_once_and_last() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry)
    task = registry.create("php", "install", "8.2")

    reader = asyncio.create_task(_collect(hub, task.task_id))
    await asyncio.sleep(0)
    task.append("only line")
    task.finish(TaskState.COMPLETED)
    task.finish(TaskState.FAILED)

    frames = await asyncio.wait_for(reader, 5)
    statuses = [f for f in frames if isinstance(f, StatusFrame)]
    assert statuses == [StatusFrame(status=TaskState.COMPLETED)]
    assert frames[-1] is statuses[0]


@pytest.mark.asyncio()
async def test_disconnecting_subscriber_does_not_affect_others() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry)
    task = registry.create("php", "install", "8.2")

    quitter = hub.open(task.task_id)
    stayer = asyncio.create_task(_collect(hub, task.task_id))
    async with quitter:
        task.append("first")
        assert await quitter.__anext__() == LogFrame(data="first")
    await asyncio.sleep(0)
    assert hub.subscriber_count(task.task_id) == 1

    task.append("second")
    task.finish(TaskState.COMPLETED)
    frames = await asyncio.wait_for(stayer, 5)
    assert [f.data for f in frames if isinstance(f, LogFrame)] == ["first", "second"]


@pytest.mark.asyncio()
async def test_evicted_task_raises_gone_for_attached_subscriber() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry, grace_period=60)
    task = registry.create("php", "install", "8.2")

    sub = hub.open(task.task_id)
    async with sub:
        task.finish(TaskState.COMPLETED)
        hub.sweep_once(now=task.terminated_at + 61)
        with pytest.raises(Gone):
            await sub.__anext__()

    with pytest.raises(NotFound):
        hub.open(task.task_id)


@pytest.mark.asyncio()
async def test_sweep_keeps_tasks_inside_grace_period() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry, grace_period=60)
    task = registry.create("php", "install", "8.2")
    task.finish(TaskState.COMPLETED)

    assert hub.sweep_once(now=task.terminated_at + 30) == []
    assert (await _collect(hub, task.task_id))[-1] == StatusFrame(status=TaskState.COMPLETED)


@pytest.mark.asyncio()
async def test_non_admin_viewer_only_sees_own_tasks() -> None:
    registry = TaskRegistry()
    hub = StreamHub(registry)
    task = registry.create("php", "install", "8.2", owner="alice")
    task.finish(TaskState.COMPLETED)

    with pytest.raises(Forbidden):
        hub.open(task.task_id, viewer={"user": "bob", "role": "operator"})

    assert await _collect(hub, task.task_id, viewer={"user": "alice", "role": "operator"})
    assert await _collect(hub, task.task_id, viewer={"user": "root", "role": "admin"})
