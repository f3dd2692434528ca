"""Tests for the client-side task stream consumer."""

from __future__ import annotations

import asyncio
import json

import pytest
import websockets

from client.consumer import StreamOutcome, TaskStreamConsumer


class _FakeConnection:
    def __init__(self, messages: list[str], close_code: int | None = 1000, error: Exception | None = None):
        self._messages = messages
        self._error = error
        self.close_code = close_code
        self.close_reason = ""

    async def __aenter__(self) -> "_FakeConnection":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            await asyncio.sleep(0)
            yield message
        if self._error is not None:
            raise self._error


def _log(line: str) -> str:
    return json.dumps({"type": "log", "data": line})


def _status(state: str) -> str:
    return json.dumps({"type": "status", "status": state})


@pytest.mark.asyncio()
async def test_completed_stream_reports_success_once() -> None:
    results: list[bool] = []
    consumer = TaskStreamConsumer(on_complete=results.append)
    consumer.reset("task-1")

    for message in (_log("Installing PHP 8.2..."), _log("Done"), _status("completed"), _status("failed")):
        consumer.feed(message)

    view = consumer.close(1000)
    assert view.logs == ["Installing PHP 8.2...", "Done"]
    assert view.outcome is StreamOutcome.COMPLETED
    assert results == [True]


@pytest.mark.asyncio()
async def test_inline_sentinel_reports_failure() -> None:
    results: list[bool] = []
    consumer = TaskStreamConsumer(on_complete=results.append)
    consumer.reset("task-2")

    for message in (_log("Installing..."), _log("Error: package not found"), _log("__STATUS__failed")):
        consumer.feed(message)

    assert consumer.view.logs == ["Installing...", "Error: package not found"]
    assert consumer.view.outcome is StreamOutcome.FAILED
    assert consumer.view.success is False
    assert results == [False]


@pytest.mark.asyncio()
async def test_close_without_status_is_interrupted_not_success() -> None:
    completions: list[bool] = []
    interruptions = []
    consumer = TaskStreamConsumer(on_complete=completions.append, on_interrupted=interruptions.append)
    consumer.reset("task-3")
    consumer.feed(_log("Installing..."))

    view = consumer.close(1006, "abnormal")

    assert view.outcome is StreamOutcome.INTERRUPTED
    assert view.success is None
    assert view.close_code == 1006
    assert completions == []
    assert interruptions == [view]


@pytest.mark.asyncio()
async def test_reset_clears_previous_task_state() -> None:
    consumer = TaskStreamConsumer()
    consumer.reset("task-a")
    consumer.feed(_log("old"))
    consumer.feed(_status("completed"))

    view = consumer.reset("task-b")
    assert view.logs == []
    assert view.outcome is StreamOutcome.RUNNING


@pytest.mark.asyncio()
async def test_watch_renders_lines_in_order() -> None:
    rendered: list[str] = []

    async def slow_render(line: str) -> None:
        await asyncio.sleep(0.001)
        rendered.append(line)

    messages = [_log(f"line {i}") for i in range(20)] + [_status("completed")]
    consumer = TaskStreamConsumer(on_line=slow_render, connect=lambda url: _FakeConnection(messages))

    view = await consumer.watch("ws://panel/api/v1/ws/tasks/task-4", "task-4")

    assert view.outcome is StreamOutcome.COMPLETED
    assert rendered == [f"line {i}" for i in range(20)]
    assert view.close_code == 1000


@pytest.mark.asyncio()
async def test_watch_treats_dropped_connection_as_interrupted() -> None:
    error = websockets.ConnectionClosedError(None, None)
    consumer = TaskStreamConsumer(
        connect=lambda url: _FakeConnection([_log("Installing...")], close_code=1006, error=error)
    )

    view = await consumer.watch("ws://panel/api/v1/ws/tasks/task-5", "task-5")

    assert view.logs == ["Installing..."]
    assert view.outcome is StreamOutcome.INTERRUPTED
    assert view.close_code == 1006


@pytest.mark.asyncio()
async def test_watch_connection_refused_is_interrupted() -> None:
    def refuse(url: str):
        raise ConnectionRefusedError("refused")

    view = await TaskStreamConsumer(connect=refuse).watch("ws://panel/x", "task-6")

    assert view.outcome is StreamOutcome.INTERRUPTED
    assert view.close_code is None


@pytest.mark.asyncio()
async def test_completion_fires_after_slow_renders_finish() -> None:
    rendered: list[str] = []
    seen_at_completion: list[list[str]] = []

    async def slow_render(line: str) -> None:
        await asyncio.sleep(0.01)
        rendered.append(line)

    def on_complete(success: bool) -> None:
        seen_at_completion.append(list(rendered))

    messages = [_log("a"), _log("b"), _status("completed")]
    consumer = TaskStreamConsumer(
        on_line=slow_render,
        on_complete=on_complete,
        connect=lambda url: _FakeConnection(messages),
    )

    await consumer.watch("ws://panel/api/v1/ws/tasks/task-7", "task-7")

    assert seen_at_completion == [["a", "b"]]
    assert rendered == ["a", "b"]


@pytest.mark.asyncio()
async def test_coroutine_callbacks_are_awaited() -> None:
    events: list[object] = []

    async def on_complete(success: bool) -> None:
        await asyncio.sleep(0)
        events.append(success)

    async def on_interrupted(view) -> None:
        await asyncio.sleep(0)
        events.append(view.outcome)

    finished = TaskStreamConsumer(
        on_complete=on_complete,
        connect=lambda url: _FakeConnection([_log("x"), _status("failed")]),
    )
    await finished.watch("ws://panel/api/v1/ws/tasks/task-8", "task-8")
    assert events == [False]

    dropped = TaskStreamConsumer(
        on_interrupted=on_interrupted,
        connect=lambda url: _FakeConnection([_log("x")], close_code=1006),
    )
    await dropped.watch("ws://panel/api/v1/ws/tasks/task-9", "task-9")
    assert events == [False, StreamOutcome.INTERRUPTED]
