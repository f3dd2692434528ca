"""Tests for PTY sessions and the terminal stream endpoint."""

from __future__ import annotations

import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

import websockets

from client.terminal import TerminalClient
from conftest import wait_until
from models.frames import Data, Resize, decode_terminal_frame, encode_resize
from services.terminal import PtySession, SessionState


async def _read_until(session: PtySession, needle: bytes, timeout: float = 10.0) -> bytes:
    buffer = b""

    async def _loop() -> bytes:
        nonlocal buffer
        async for chunk in session.output():
            buffer += chunk
            if needle in buffer:
                return buffer
        return buffer

    return await asyncio.wait_for(_loop(), timeout)


class _FakeTerminalSocket:
    def __init__(self, messages=(), close_code: int | None = 1000, close_reason: str = "", error=None):
        self._messages = list(messages)
        self._error = error
        self.sent: list[bytes] = []
        self.close_code = close_code
        self.close_reason = close_reason
        self.closed = False

    async def send(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self._messages:
            await asyncio.sleep(0)
            yield message
        if self._error is not None:
            raise self._error


def _connector(socket: _FakeTerminalSocket):
    seen: dict = {}

    async def connect(url: str, **kwargs):
        seen["url"] = url
        seen.update(kwargs)
        return socket

    return connect, seen


@pytest.mark.asyncio()
async def test_resize_is_applied_before_following_input() -> None:
    session = PtySession(["/bin/sh"], rows=24, cols=80)
    session.start()
    try:
        assert session.state is SessionState.ATTACHED
        session.resize(40, 120)
        session.write(b"stty size\n")
        output = await _read_until(session, b"40 120")
        assert b"40 120" in output
        assert session.get_size() == (40, 120)
    finally:
        await asyncio.to_thread(session.close)


@pytest.mark.asyncio()
async def test_output_ends_when_shell_exits() -> None:
    session = PtySession(["/bin/sh"], rows=24, cols=80)
    session.start()
    try:
        session.write(b"exit 7\n")
        await _read_until(session, b"never-printed")
        assert session.exit_code == 7
    finally:
        await asyncio.to_thread(session.close)


@pytest.mark.asyncio()
async def test_close_is_idempotent_and_terminal() -> None:
    session = PtySession(["/bin/sh"])
    session.start()

    await asyncio.to_thread(session.close)
    await asyncio.to_thread(session.close)

    assert session.state is SessionState.TERMINATED
    session.write(b"ignored\n")
    with pytest.raises(RuntimeError):
        session.start()


def test_terminal_stream_resize_then_command(client, app, admin_token) -> None:
    manager = app.state.terminal_manager

    with client.websocket_connect(f"/api/v1/ws/terminal?token={admin_token}") as ws:
        ws.send_bytes(encode_resize(40, 120))
        ws.send_bytes(b"stty size\n")
        output = b""
        for _ in range(200):
            output += ws.receive_bytes()
            if b"40 120" in output:
                break
        assert b"40 120" in output
        assert manager.active_count() == 1

        ws.send_bytes(b"exit\n")
        with pytest.raises(WebSocketDisconnect) as exc:
            for _ in range(200):
                ws.receive_bytes()
    assert exc.value.code == 1000
    assert wait_until(lambda: manager.active_count() == 0)


def test_malformed_resize_frame_is_skipped(client, admin_token) -> None:
    with client.websocket_connect(f"/api/v1/ws/terminal?token={admin_token}") as ws:
        ws.send_bytes(b"\x01garbage")
        ws.send_bytes(encode_resize(24, 80))
        ws.send_bytes(b"echo still-$((20+22))\n")
        output = b""
        for _ in range(200):
            output += ws.receive_bytes()
            if b"still-42" in output:
                break
        assert b"still-42" in output


def test_client_disconnect_kills_shell(client, app, admin_token) -> None:
    manager = app.state.terminal_manager
    with client.websocket_connect(f"/api/v1/ws/terminal?token={admin_token}") as ws:
        ws.send_bytes(b"echo ready\n")
        output = b""
        while b"ready" not in output:
            output += ws.receive_bytes()
        assert manager.active_count() == 1

        ws.close()
        assert wait_until(lambda: manager.active_count() == 0)


def test_terminal_requires_admin(client, app) -> None:
    token = app.state.auth_service.issue_token("guest", role="operator")
    with client.websocket_connect(f"/api/v1/ws/terminal?token={token}") as ws:
        ws.receive_text()
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == 4003


def test_terminal_rejects_bad_token(client) -> None:
    with client.websocket_connect("/api/v1/ws/terminal?token=nope") as ws:
        ws.receive_text()
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_text()
    assert exc.value.code == 4001


@pytest.mark.asyncio()
async def test_viewport_is_sent_only_when_it_changes() -> None:
    socket = _FakeTerminalSocket()
    connect, seen = _connector(socket)

    async with TerminalClient("ws://panel/api/v1/ws/terminal?token=t", connect=connect) as term:
        assert await term.set_viewport(24, 80) is True
        assert await term.set_viewport(24, 80) is False
        assert await term.set_viewport(0, 80) is False
        assert await term.set_viewport(40, 120) is True

    assert [decode_terminal_frame(frame) for frame in socket.sent] == [
        Resize(rows=24, cols=80),
        Resize(rows=40, cols=120),
    ]
    assert seen["url"] == "ws://panel/api/v1/ws/terminal?token=t"
    assert seen["max_size"] is None
    assert socket.closed is True


@pytest.mark.asyncio()
async def test_keystrokes_are_sent_as_data_frames() -> None:
    socket = _FakeTerminalSocket()
    connect, _ = _connector(socket)

    async with TerminalClient("ws://panel/x", connect=connect) as term:
        await term.send_input(b"ls -la\r")
        await term.send_input(b"")
        await term.send_input(b"\x03")

    assert socket.sent == [b"ls -la\r", b"\x03"]
    assert [decode_terminal_frame(frame) for frame in socket.sent] == [
        Data(payload=b"ls -la\r"),
        Data(payload=b"\x03"),
    ]


@pytest.mark.asyncio()
async def test_run_renders_output_and_records_close() -> None:
    rendered: list[bytes] = []
    socket = _FakeTerminalSocket([b"$ ", "中文\r\n"], close_code=1000, close_reason="Process exited")
    connect, _ = _connector(socket)

    async with TerminalClient("ws://panel/x", render=rendered.append, connect=connect) as term:
        await term.run()

    assert rendered == [b"$ ", "中文\r\n".encode("utf-8")]
    assert term.close_code == 1000
    assert term.close_reason == "Process exited"


@pytest.mark.asyncio()
async def test_run_records_abnormal_close() -> None:
    socket = _FakeTerminalSocket(
        [b"partial"],
        close_code=1006,
        error=websockets.ConnectionClosedError(None, None),
    )
    connect, _ = _connector(socket)

    async with TerminalClient("ws://panel/x", render=lambda data: None, connect=connect) as term:
        await term.run()

    assert term.close_code == 1006
    assert term.close_reason == ""
