"""
任务日志流消费者

连接 /ws/tasks/{task_id}，把收到的每条消息还原为有序日志 + 任务状态：
- status 帧（或内联的状态哨兵）更新状态，并且只触发一次完成回调
- 其余消息按到达顺序追加到日志
- 连接在收到终态之前关闭，结果记为 interrupted，不会误报成功

日志渲染通过队列与读取解耦，渲染慢不会拖住连接的读取。
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

import websockets

from core.logger import get_logger
from models.frames import LogFrame, StatusFrame, decode_task_message
from models.task import TaskState

_logger = get_logger("client.consumer")


class StreamOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    # 连接中断，任务真实结果未知
    INTERRUPTED = "interrupted"


@dataclass
class TaskLogView:
    """客户端看到的任务：日志 + 结果"""

    task_id: str = ""
    logs: list[str] = field(default_factory=list)
    outcome: StreamOutcome = StreamOutcome.RUNNING
    close_code: Optional[int] = None
    close_reason: str = ""

    @property
    def finished(self) -> bool:
        return self.outcome is not StreamOutcome.RUNNING

    @property
    def success(self) -> Optional[bool]:
        """completed → True，failed → False，其余未知"""
        if self.outcome is StreamOutcome.COMPLETED:
            return True
        if self.outcome is StreamOutcome.FAILED:
            return False
        return None



class TaskStreamConsumer:
    """
    用法：
        consumer = TaskStreamConsumer(on_line=print, on_complete=lambda ok: ...)
        view = await consumer.watch(client.stream_url(f"/ws/tasks/{task_id}"), task_id)
    """

    def __init__(
        self,
        on_line: Optional[Callable[[str], Any]] = None,
        on_complete: Optional[Callable[[bool], Any]] = None,
        on_interrupted: Optional[Callable[[TaskLogView], Any]] = None,
        connect=websockets.connect,
    ):
        """
        Args:
            on_line: 每行日志的渲染回调
            on_complete: 收到终态时调用一次，参数为是否成功
            on_interrupted: 未收到终态就断开时调用
            connect: WebSocket 连接工厂（测试时注入）

        三个回调都可以是协程函数。watch() 期间它们在同一个渲染任务里
        按消息顺序执行，完成回调一定在之前所有日志行渲染之后。
        """
        self._on_line = on_line
        self._on_complete = on_complete
        self._on_interrupted = on_interrupted
        self._connect = connect
        self._render_queue: asyncio.Queue = asyncio.Queue()
        self._renderer: Optional[asyncio.Task] = None
        self._detached: set[asyncio.Future] = set()
        self.view = TaskLogView()

    def reset(self, task_id: str = "") -> TaskLogView:
        """开始观察新任务前清空本地状态"""
        self.view = TaskLogView(task_id=task_id)
        self._render_queue = asyncio.Queue()
        return self.view

    def feed(self, raw: Union[str, bytes]) -> Union[LogFrame, StatusFrame]:
        """处理一条入站消息，返回解码后的帧"""
        frame = decode_task_message(raw)
        view = self.view

        if view.finished:
            _logger.debug(f"任务已结束，忽略后续消息: {raw!r:.60}")
            return frame

        if isinstance(frame, StatusFrame):
            view.outcome = StreamOutcome(frame.status.value)
            if self._on_complete:
                self._dispatch(self._on_complete, frame.status is TaskState.COMPLETED)
            return frame

        view.logs.append(frame.data)
        if self._on_line:
            self._dispatch(self._on_line, frame.data)
        return frame

    def close(self, code: Optional[int] = None, reason: str = "") -> TaskLogView:
        """连接已关闭：记录关闭码，未收到终态则判为 interrupted"""
        view = self.view
        view.close_code = code
        view.close_reason = reason
        if not view.finished:
            view.outcome = StreamOutcome.INTERRUPTED
            _logger.warning(f"任务流在终态之前关闭: {view.task_id} code={code} reason={reason!r}")
            if self._on_interrupted:
                self._dispatch(self._on_interrupted, view)
        return view

    def _dispatch(self, callback: Callable[..., Any], *args):
        # watch() 期间排队交给渲染任务；单独使用 feed()/close() 时直接调用
        if self._renderer is not None:
            self._render_queue.put_nowait((callback, args))
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._detached.add(future)
            future.add_done_callback(self._on_detached_done)

    def _on_detached_done(self, future: asyncio.Future):
        self._detached.discard(future)
        if not future.cancelled() and future.exception() is not None:
            _logger.error(f"回调执行失败: {future.exception()!r}")

    async def _render_loop(self):
        while True:
            item = await self._render_queue.get()
            if item is None:
                return
            callback, args = item
            result = callback(*args)
            if inspect.isawaitable(result):
                await result

    async def watch(self, url: str, task_id: str = "") -> TaskLogView:
        """连接任务流直到关闭，返回最终视图"""
        self.reset(task_id)
        self._renderer = asyncio.create_task(self._render_loop())
        code: Optional[int] = None
        reason = ""

        try:
            try:
                async with self._connect(url) as ws:
                    try:
                        async for message in ws:
                            self.feed(message)
                    except websockets.ConnectionClosed as e:
                        _logger.warning(f"任务流连接异常断开: {e}")
                    code = ws.close_code
                    reason = ws.close_reason or ""
            except (OSError, websockets.InvalidHandshake) as e:
                _logger.error(f"任务流连接失败: {e}")
                reason = str(e)
            self.close(code, reason)
        finally:
            renderer, self._renderer = self._renderer, None
            self._render_queue.put_nowait(None)
            await renderer

        return self.view
