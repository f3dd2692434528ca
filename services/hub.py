"""
流式分发中心

每个订阅者持有独立游标：先回放已有日志，再转发新日志，
任务进入终态后投递恰好一个状态帧并结束。
多个订阅者互不影响，断开的订阅者只释放自己的资源。

终止任务在宽限期后由清扫协程回收；仍挂着的订阅者收到 Gone。
"""

import asyncio
import time
from collections import defaultdict
from typing import Optional, Union

from core.errors import Forbidden, Gone
from core.logger import get_logger
from models.frames import LogFrame, StatusFrame
from services.auth import ROLE_ADMIN
from services.registry import Task, TaskRegistry

_logger = get_logger("services.hub")


class Subscription:
    """
    单个订阅者的流。

    用法：
        async with hub.open(task_id) as sub:
            async for frame in sub:
                ...
    """

    def __init__(self, hub: "StreamHub", task: Task):
        self._hub = hub
        self.task = task
        self.cursor = 0
        self._finished = False
        self._attached = False

    async def __aenter__(self) -> "Subscription":
        self._hub._attach(self)
        self._attached = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self._attached:
            self._attached = False
            self._hub._detach(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Union[LogFrame, StatusFrame]:
        if self._finished:
            raise StopAsyncIteration

        task = self.task
        while True:
            if task.evicted:
                self._finished = True
                raise Gone(f"任务已过期回收: {task.task_id}")

            if self.cursor < len(task.log):
                index = self.cursor
                self.cursor += 1
                if index == task.status_index:
                    self._finished = True
                    return StatusFrame(status=task.state)
                return LogFrame(data=task.log[index])

            await task.wait_changed()


class StreamHub:
    """按任务分组管理订阅者，并负责过期任务回收"""

    def __init__(self, registry: TaskRegistry, grace_period: float = 300):
        self._registry = registry
        self._grace_period = grace_period
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def open(self, task_id: str, viewer: Optional[dict] = None) -> Subscription:
        """
        为任务创建一个订阅。

        Args:
            task_id: 任务 ID
            viewer: 会话信息（含 user / role）。非 admin 只能订阅自己的任务

        Raises:
            NotFound: 任务不存在或已回收
            Forbidden: 无权查看该任务
        """
        task = self._registry.get(task_id)
        if viewer is not None and viewer.get("role") != ROLE_ADMIN and viewer.get("user") != task.owner:
            raise Forbidden(f"无权查看任务: {task_id}")
        return Subscription(self, task)

    def _attach(self, sub: Subscription):
        self._subscribers[sub.task.task_id].add(sub)
        _logger.info(
            f"订阅者接入: {sub.task.task_id} "
            f"(当前 {len(self._subscribers[sub.task.task_id])} 个)"
        )

    def _detach(self, sub: Subscription):
        task_id = sub.task.task_id
        subs = self._subscribers.get(task_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[task_id]
        _logger.info(f"订阅者断开: {task_id} (已投递 {sub.cursor}/{len(sub.task.log)} 行)")

    def subscriber_count(self, task_id: Optional[str] = None) -> int:
        if task_id is not None:
            return len(self._subscribers.get(task_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def sweep_once(self, now: Optional[float] = None) -> list[str]:
        """回收超过宽限期的终止任务"""
        evicted = self._registry.evict_expired(now or time.time(), self._grace_period)
        for task_id in evicted:
            remaining = self.subscriber_count(task_id)
            if remaining:
                _logger.warning(f"任务 {task_id} 已回收，仍有 {remaining} 个订阅者将收到 Gone")
        return evicted

    async def run_sweeper(self, interval: float = 10):
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_once()
            except Exception:
                _logger.exception("任务回收异常")
