"""Tests for the REST client, using httpx mock transports."""

from __future__ import annotations

import json

import httpx
import pytest

from client.api import PanelClient


def _client(handler, base_url: str = "http://panel:8300", token: str = "") -> PanelClient:
    return PanelClient(base_url, token=token, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio()
async def test_probe_is_true_only_for_2xx() -> None:
    codes = iter([503, 200])

    async with _client(lambda request: httpx.Response(next(codes))) as client:
        assert await client.probe() is False
        assert await client.probe() is True


@pytest.mark.asyncio()
async def test_probe_is_false_when_server_is_down() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(refuse) as client:
        assert await client.probe() is False


@pytest.mark.asyncio()
async def test_login_stores_token_and_sends_bearer() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/api/v1/auth/login":
            return httpx.Response(200, json={"success": True, "token": "tok-1", "expires_at": 0})
        return httpx.Response(200, json={"success": True, "task_id": "task-abc", "name": "PHP 8.2 安装"})

    async with _client(handler) as client:
        assert await client.login("admin", "secret") == "tok-1"
        assert await client.start_task("php", "install", "8.2") == "task-abc"

    start = seen[-1]
    assert start.headers["Authorization"] == "Bearer tok-1"
    assert json.loads(start.content) == {"kind": "php", "action": "install", "target": "8.2", "options": {}}


@pytest.mark.asyncio()
async def test_error_status_raises() -> None:
    async with _client(lambda request: httpx.Response(409, json={"error": "busy"}), token="t") as client:
        with pytest.raises(httpx.HTTPStatusError):
            await client.start_task("php", "install", "8.2")


@pytest.mark.asyncio()
async def test_stream_url_switches_scheme_and_carries_token() -> None:
    async with _client(lambda r: httpx.Response(200), base_url="https://panel.example.com/", token="a b") as client:
        url = client.stream_url("/ws/tasks/task-1", framing="sentinel")
    assert url == "wss://panel.example.com/api/v1/ws/tasks/task-1?token=a+b&framing=sentinel"

    async with _client(lambda r: httpx.Response(200), token="t") as client:
        assert client.stream_url("/ws/terminal") == "ws://panel:8300/api/v1/ws/terminal?token=t"
