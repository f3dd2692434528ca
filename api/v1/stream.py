"""
流式传输网关

两个 WebSocket 端点：
- /ws/tasks/{task_id}?token=...&framing=json|sentinel   任务日志订阅
- /ws/terminal?token=...                                 交互式终端

令牌通过查询参数携带（浏览器握手时无法设置自定义请求头）。
连接期间令牌过期或被注销，网关主动关闭连接；
任一端关闭连接都会释放订阅或结束终端进程。
"""

import asyncio
import contextlib
import time

from fastapi import APIRouter, Query, WebSocket

from core.errors import Forbidden, Gone, PanelError, Unauthorized
from core.logger import get_logger
from models.frames import Resize, decode_terminal_frame, encode_task_frame
from services.auth import ROLE_ADMIN

router = APIRouter(prefix="/ws", tags=["stream"])
_logger = get_logger("api.stream")

# 令牌有效性复查间隔（秒），覆盖注销场景；过期时刻本身会被精确等待
_TOKEN_RECHECK_INTERVAL = 5.0

_RED = "\x1b[31m"
_GREEN = "\x1b[32m"
_YELLOW = "\x1b[33m"
_RESET = "\x1b[0m"


async def _close(websocket: WebSocket, code: int = 1000, reason: str = ""):
    with contextlib.suppress(Exception):
        await websocket.close(code=code, reason=reason)


async def _watch_token(auth_service, token: str, session: dict):
    """令牌失效（过期或注销）时返回"""
    while True:
        remaining = session["expires_at"] - time.time()
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, _TOKEN_RECHECK_INTERVAL))
        if auth_service.validate_token(token) is None:
            return


async def _drain_client(websocket: WebSocket):
    """读取并丢弃客户端消息，直到对端断开"""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _race(**coros) -> tuple[str, asyncio.Task]:
    """
    并发运行多个协程，返回最先结束的那个 (名称, Task)，其余全部取消。
    """
    jobs = {asyncio.create_task(coro): name for name, coro in coros.items()}
    try:
        done, _ = await asyncio.wait(jobs, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
    first = next(job for job in jobs if job in done)
    return jobs[first], first


def _authenticate(websocket: WebSocket, token: str) -> dict:
    session = websocket.app.state.auth_service.validate_token(token)
    if not session:
        raise Unauthorized("令牌无效或已过期")
    return session


# ──────────────────────────────────────────────
# 任务日志订阅
# ──────────────────────────────────────────────

@router.websocket("/tasks/{task_id}")
async def task_stream(
    websocket: WebSocket,
    task_id: str,
    token: str = Query(default=""),
    framing: str = Query(default="json"),
):
    """
    任务日志流。

    framing=json：每条消息是 {"type": "log", "data": ...} 或 {"type": "status", "status": ...}
    framing=sentinel：每条消息是纯文本日志行，状态以 "__STATUS__<state>" 行表示
    """
    await websocket.accept()
    auth_service = websocket.app.state.auth_service
    hub = websocket.app.state.stream_hub

    try:
        session = _authenticate(websocket, token)
        subscription = hub.open(task_id, viewer=session)
    except PanelError as e:
        _logger.info(f"任务流拒绝: {task_id}: {e.message}")
        await _close(websocket, e.close_code, e.reason)
        return

    sentinel = framing == "sentinel"

    async def forward():
        async for frame in subscription:
            await websocket.send_text(encode_task_frame(frame, sentinel=sentinel))

    async with subscription:
        winner, job = await _race(
            forward=forward(),
            client=_drain_client(websocket),
            token=_watch_token(auth_service, token, session),
        )

    if winner == "forward":
        exc = job.exception()
        if exc is None:
            await _close(websocket, 1000, "Task finished")
        elif isinstance(exc, Gone):
            await _close(websocket, Gone.close_code, Gone.reason)
        else:
            _logger.warning(f"任务流转发中断: {task_id}: {exc!r}")
            await _close(websocket, 1011, "Stream error")
    elif winner == "token":
        _logger.info(f"令牌失效，关闭任务流: {task_id}")
        await _close(websocket, Unauthorized.close_code, "Token expired")


# ──────────────────────────────────────────────
# 交互式终端
# ──────────────────────────────────────────────

def _banner(user: str) -> bytes:
    title = f"TaskStream 终端 ({user})"
    return (
        f"{_GREEN}╔{'═' * 44}╗\r\n"
        f"║  {title:<42}║\r\n"
        f"╚{'═' * 44}╝{_RESET}\r\n"
    ).encode("utf-8")


async def _reject_terminal(websocket: WebSocket, error: PanelError):
    await websocket.send_text(f"\r\n{_RED}{error.message}{_RESET}\r\n")
    await _close(websocket, error.close_code, error.reason)


@router.websocket("/terminal")
async def terminal_stream(websocket: WebSocket, token: str = Query(default="")):
    """
    交互式终端。

    客户端 → 服务端：二进制帧，0x01 + "rows,cols" 为尺寸控制帧，其余为按键字节
    服务端 → 客户端：二进制帧，原始 PTY 输出
    """
    await websocket.accept()
    auth_service = websocket.app.state.auth_service
    manager = websocket.app.state.terminal_manager
    config = websocket.app.state.config

    try:
        session = _authenticate(websocket, token)
    except Unauthorized as e:
        await _reject_terminal(websocket, e)
        return
    if session.get("role") != ROLE_ADMIN:
        await _reject_terminal(websocket, Forbidden("终端需要管理员权限"))
        return

    try:
        pty = manager.open(session["user"])
    except OSError as e:
        _logger.error(f"终端启动失败: {e}")
        await websocket.send_text(f"\r\n{_RED}终端启动失败: {e}{_RESET}\r\n")
        await _close(websocket, 4500, "Shell start failed")
        return

    async def pump_output():
        async for chunk in pty.output():
            await websocket.send_bytes(chunk)

    async def pump_input():
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            raw = message.get("bytes")
            if raw is None:
                raw = message.get("text") or ""
            try:
                frame = decode_terminal_frame(raw)
            except ValueError as e:
                _logger.warning(f"忽略非法终端控制帧: {e}")
                continue
            # 顺序处理：尺寸变更在下一帧数据写入之前生效
            if isinstance(frame, Resize):
                pty.resize(frame.rows, frame.cols)
            else:
                pty.write(frame.payload)

    try:
        if config.get("terminal.banner", True):
            await websocket.send_bytes(_banner(session["user"]))

        winner, _ = await _race(
            output=pump_output(),
            input=pump_input(),
            token=_watch_token(auth_service, token, session),
        )

        if winner == "output":
            code = pty.exit_code if pty.exit_code is not None else "?"
            with contextlib.suppress(Exception):
                await websocket.send_bytes(
                    f"\r\n{_YELLOW}[进程已退出，退出码 {code}]{_RESET}\r\n".encode("utf-8")
                )
            await _close(websocket, 1000, "Process exited")
        elif winner == "token":
            with contextlib.suppress(Exception):
                await websocket.send_bytes(f"\r\n{_RED}[会话已过期]{_RESET}\r\n".encode("utf-8"))
            await _close(websocket, Unauthorized.close_code, "Token expired")
    finally:
        await asyncio.to_thread(manager.close, pty)
