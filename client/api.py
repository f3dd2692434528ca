"""
面板 REST 客户端

封装登录、任务启动 / 查询 / 取消、自更新触发和存活探针，
并为流式端点拼出带令牌的 ws:// / wss:// 地址。
"""

from typing import Any, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx

from core.logger import get_logger

_logger = get_logger("client.api")


class PanelClient:
    """面板 HTTP API 客户端"""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: 面板地址，如 http://127.0.0.1:8300
            token: 已有的 Bearer Token
            timeout: 单次请求超时（秒）
            transport: 自定义传输层（测试时注入）
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "PanelClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        resp = await self._client.request(method, f"/api/v1{path}", headers=self._headers(), **kwargs)
        resp.raise_for_status()
        return resp.json()

    async def login(self, username: str, password: str) -> str:
        data = await self._request("POST", "/auth/login", json={"username": username, "password": password})
        self.token = data["token"]
        _logger.info(f"已登录: {username}")
        return self.token

    async def start_task(
        self,
        kind: str,
        action: str,
        target: str,
        options: Optional[dict[str, Any]] = None,
    ) -> str:
        """启动任务，返回 task_id"""
        data = await self._request(
            "POST",
            "/tasks/start",
            json={"kind": kind, "action": action, "target": target, "options": options or {}},
        )
        return data["task_id"]

    async def get_task(self, task_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/tasks/{task_id}")
        return data["data"]

    async def cancel_task(self, task_id: str) -> bool:
        data = await self._request("POST", f"/tasks/{task_id}/cancel")
        return bool(data.get("success"))

    async def trigger_update(self) -> str:
        data = await self._request("POST", "/system/update")
        return data["task_id"]

    async def probe(self) -> bool:
        """存活探针：2xx 即视为服务已恢复，连接失败或其他状态码均为 False"""
        try:
            resp = await self._client.get("/api/v1/system/health")
        except httpx.HTTPError as e:
            _logger.debug(f"存活探针失败: {e!r}")
            return False
        return resp.is_success

    def stream_url(self, path: str, **params: str) -> str:
        """
        流式端点地址。

        Examples:
            client.stream_url("/ws/tasks/task-abc")
            # -> ws://host:8300/api/v1/ws/tasks/task-abc?token=...
        """
        scheme, netloc, base_path, _, _ = urlsplit(self.base_url)
        ws_scheme = "wss" if scheme == "https" else "ws"
        query = {"token": self.token, **params}
        return urlunsplit((ws_scheme, netloc, f"{base_path}/api/v1{path}", urlencode(query), ""))
