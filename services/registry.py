"""
任务注册表

负责：
- 任务身份、状态与只追加日志的内存保存
- 日志追加 / 终态切换后唤醒所有等待中的读者
- 终止后保留一段宽限期，供迟到的订阅者拉取完整日志，然后回收

单写者约定：只有 TaskRunner 调用 Task.append() / Task.finish()；
StreamHub 只读。所有调用都发生在同一个事件循环上，
一次追加或终态切换之间没有 await，读者看到的 log 长度单调递增。
"""

import asyncio
import time
import uuid
from typing import Any, Optional

from core.errors import NotFound
from core.logger import get_logger
from models.frames import encode_sentinel
from models.task import TaskInfo, TaskState

_logger = get_logger("services.registry")


class Task:
    """一个服务端长时间操作的运行记录"""

    def __init__(
        self,
        task_id: str,
        kind: str,
        action: str,
        target: str,
        options: Optional[dict[str, Any]] = None,
        owner: str = "",
        name: str = "",
        lock_key: str = "",
    ):
        self.task_id = task_id
        self.kind = kind
        self.action = action
        self.target = target
        self.options = dict(options or {})
        self.owner = owner
        self.name = name or f"{kind} {action} {target}"
        self.lock_key = lock_key

        self.state = TaskState.RUNNING
        self.log: list[str] = []
        self.created_at = time.time()
        self.terminated_at: Optional[float] = None
        # 哨兵状态行在 log 中的下标；读者据此识别终态，而不是靠文本匹配
        self.status_index: Optional[int] = None
        self.evicted = False

        self._changed = asyncio.Event()

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def _notify(self):
        event, self._changed = self._changed, asyncio.Event()
        event.set()

    def append(self, line: str):
        """追加一行日志（仅 TaskRunner 调用）"""
        if self.is_terminal:
            _logger.warning(f"任务 {self.task_id} 已终止，丢弃迟到的日志: {line[:60]}")
            return
        self.log.append(line)
        self._notify()

    def finish(self, state: TaskState) -> bool:
        """
        切换到终态并追加哨兵状态行（仅 TaskRunner 调用）。

        Returns:
            是否真正发生了切换（已是终态时返回 False）
        """
        if not state.is_terminal:
            raise ValueError(f"不是终态: {state}")
        if self.is_terminal:
            return False

        self.state = state
        self.terminated_at = time.time()
        self.status_index = len(self.log)
        self.log.append(encode_sentinel(state))
        self._notify()
        return True

    def mark_evicted(self):
        self.evicted = True
        self._notify()

    async def wait_changed(self):
        """等待下一次追加 / 终态切换 / 回收"""
        await self._changed.wait()

    def display_log(self) -> list[str]:
        """去掉哨兵状态行后的日志副本"""
        if self.status_index is None:
            return list(self.log)
        return self.log[:self.status_index] + self.log[self.status_index + 1:]

    def snapshot(self) -> TaskInfo:
        return TaskInfo(
            task_id=self.task_id,
            kind=self.kind,
            action=self.action,
            target=self.target,
            name=self.name,
            owner=self.owner,
            state=self.state,
            created_at=self.created_at,
            terminated_at=self.terminated_at,
            log=self.display_log(),
        )

    def __repr__(self) -> str:
        return f"<Task {self.task_id} {self.state.value} lines={len(self.log)}>"


class TaskRegistry:
    """保留中的任务表（进程内）"""

    def __init__(self):
        self._tasks: dict[str, Task] = {}

    def create(
        self,
        kind: str,
        action: str,
        target: str,
        options: Optional[dict[str, Any]] = None,
        owner: str = "",
        name: str = "",
        lock_key: str = "",
    ) -> Task:
        task_id = f"task-{uuid.uuid4().hex[:12]}"
        task = Task(
            task_id,
            kind,
            action,
            target,
            options=options,
            owner=owner,
            name=name,
            lock_key=lock_key,
        )
        self._tasks[task_id] = task
        _logger.info(f"任务登记: {task_id} [{kind}/{action}/{target}] owner={owner}")
        return task

    def find(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(f"任务不存在: {task_id}")
        return task

    def list_tasks(self) -> list[Task]:
        """最新的在前"""
        return sorted(self._tasks.values(), key=lambda t: t.created_at, reverse=True)

    def running(self) -> list[Task]:
        return [t for t in self._tasks.values() if not t.is_terminal]

    def find_running_by_lock(self, lock_key: str) -> Optional[Task]:
        for task in self._tasks.values():
            if not task.is_terminal and task.lock_key == lock_key:
                return task
        return None

    def evict(self, task_id: str) -> bool:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        task.mark_evicted()
        _logger.info(f"任务已回收: {task_id}")
        return True

    def evict_expired(self, now: float, grace_period: float) -> list[str]:
        """回收终止时间早于 now - grace_period 的任务"""
        expired = [
            t.task_id for t in self._tasks.values()
            if t.terminated_at is not None and now - t.terminated_at >= grace_period
        ]
        for task_id in expired:
            self.evict(task_id)
        return expired

    def __len__(self) -> int:
        return len(self._tasks)
