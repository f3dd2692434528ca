"""
任务执行器

负责：
- 校验启动参数、检测互斥冲突、登记任务
- 把操作作为独立的 asyncio 任务在后台执行，调用方不阻塞
- 输出逐行写入任务日志，结束时切换到 completed / failed
- 取消、看门狗、关闭时保证任务绝不停留在 running
"""

import asyncio
import time
from collections.abc import Sequence
from typing import Any, Optional

from core.errors import Conflict, InvalidRequest, OperationError
from core.logger import get_logger
from models.frames import STATUS_SENTINEL
from models.task import TaskState
from services.executor import CommandExecutor, CommandTimeout
from services.operations import Operation, OperationCatalog, OperationContext, default_catalog
from services.registry import Task, TaskRegistry

_logger = get_logger("services.runner")


class TaskRunner:
    """任务执行器（任务日志的唯一写者）"""

    def __init__(
        self,
        registry: TaskRegistry,
        config=None,
        catalog: Optional[OperationCatalog] = None,
        executor: Optional[CommandExecutor] = None,
    ):
        """
        Args:
            registry: TaskRegistry 实例
            config: ConfigManager 实例（可选，测试时可省略）
            catalog: 操作目录，默认使用内置目录
            executor: 命令执行器
        """
        self._registry = registry
        self._config = config
        self._catalog = catalog or default_catalog()
        self._command_timeout = self._cfg("tasks.command_timeout", 1800)
        self._max_runtime = self._cfg("tasks.max_runtime", 3600)
        self._executor = executor or CommandExecutor(default_timeout=self._command_timeout)

        # 运行中的后台作业：{task_id: asyncio.Task}
        self._jobs: dict[str, asyncio.Task] = {}

    def _cfg(self, key: str, default: Any) -> Any:
        if self._config is None:
            return default
        return self._config.get(key, default)

    # ──────────────────────────────────────────
    # 启动 / 取消
    # ──────────────────────────────────────────

    def start(
        self,
        kind: str,
        action: str,
        target: str,
        options: Optional[dict[str, Any]] = None,
        owner: str = "admin",
    ) -> Task:
        """
        启动一个任务并立即返回，操作在后台执行。

        校验、冲突检测与登记之间没有 await，
        同一事件循环上并发的两次 start 不会同时通过冲突检测。

        Raises:
            InvalidRequest: 参数缺失或非法
            Conflict: 同一互斥键上已有任务在运行
        """
        kind = (kind or "").strip()
        action = (action or "").strip()
        target = (target or "").strip()
        options = dict(options or {})

        missing = [name for name, value in (("kind", kind), ("action", action), ("target", target)) if not value]
        if missing:
            raise InvalidRequest(f"缺少必填字段: {', '.join(missing)}")

        op = self._catalog.resolve(kind, action)
        op.check(target, options)

        lock_key = op.key(target, options)
        existing = self._registry.find_running_by_lock(lock_key)
        if existing is not None:
            raise Conflict(f"{existing.name} 正在执行中 ({existing.task_id})")

        task = self._registry.create(
            kind,
            action,
            target,
            options=options,
            owner=owner,
            name=op.describe(target, options),
            lock_key=lock_key,
        )
        job = asyncio.create_task(self._execute(task, op), name=f"task:{task.task_id}")
        job.add_done_callback(lambda _job: self._on_job_done(task))
        self._jobs[task.task_id] = job
        return task

    def _on_job_done(self, task: Task):
        self._jobs.pop(task.task_id, None)
        # 作业在首次调度前就被取消时不会进入 _execute
        if not task.is_terminal:
            self._fail(task, "⛔ 任务已被取消")

    def cancel(self, task_id: str) -> bool:
        """
        取消运行中的任务。

        Returns:
            是否发出了取消（任务不存在或已结束时返回 False）
        """
        self._registry.get(task_id)
        job = self._jobs.get(task_id)
        if job is None or job.done():
            return False
        _logger.info(f"取消任务: {task_id}")
        job.cancel()
        return True

    # ──────────────────────────────────────────
    # 执行
    # ──────────────────────────────────────────

    def _append_output(self, task: Task, line: str):
        # 进程输出不得伪造状态行
        if line.startswith(STATUS_SENTINEL):
            line = " " + line
        task.append(line)

    def _fail(self, task: Task, line: str):
        task.append(line)
        if task.finish(TaskState.FAILED):
            _logger.warning(f"任务失败: {task.task_id} ({line})")

    def _context(self, task: Task) -> OperationContext:
        async def run(argv: Sequence[str], check: bool = True, timeout: Optional[float] = None) -> int:
            try:
                code = await self._executor.stream(
                    argv,
                    lambda line: self._append_output(task, line),
                    timeout=timeout or self._command_timeout,
                )
            except FileNotFoundError:
                if check:
                    raise OperationError(f"命令不存在: {argv[0]}")
                task.append(f"⚠️ 命令不存在: {argv[0]}")
                return 127
            if check and code != 0:
                raise OperationError(f"命令执行失败 (退出码 {code}): {' '.join(argv)}")
            return code

        async def probe(argv: Sequence[str], timeout: float = 30) -> tuple[int, str]:
            try:
                return await self._executor.capture(argv, timeout=timeout)
            except FileNotFoundError:
                return 127, ""

        return OperationContext(
            log=task.append,
            run=run,
            probe=probe,
            spawn_detached=self._executor.spawn_detached,
            config=self._config,
        )

    async def _execute(self, task: Task, op: Operation):
        _logger.info(f"任务开始: {task.task_id} {task.name}")
        try:
            task.append(f"🚀 {task.name} 开始执行...")
            task.append("")
            await op.handler(self._context(task), task.target, task.options)
        except asyncio.CancelledError:
            task.append("")
            self._fail(task, "⛔ 任务已被取消")
            raise
        except (OperationError, CommandTimeout) as e:
            task.append("")
            self._fail(task, f"❌ 错误: {e}")
        except Exception as e:
            _logger.exception(f"任务执行异常: {task.task_id}")
            task.append("")
            self._fail(task, f"❌ 错误: {e}")
        else:
            task.append("")
            task.append(f"✅ {task.name} 执行成功!")
            task.finish(TaskState.COMPLETED)
            _logger.info(f"任务完成: {task.task_id}")

    # ──────────────────────────────────────────
    # 看门狗 / 关闭
    # ──────────────────────────────────────────

    def watchdog_once(self, now: Optional[float] = None) -> list[str]:
        """
        检查所有 running 任务：
        - 后台作业已不存在或已结束却没有终态 → 直接判为 failed
        - 运行超过 max_runtime → 取消作业（作业自身会写入 failed）

        Returns:
            本轮被处理的任务 ID
        """
        now = now or time.time()
        handled = []
        for task in self._registry.running():
            job = self._jobs.get(task.task_id)
            if job is None or job.done():
                self._fail(task, "❌ 错误: 任务执行器异常终止")
                handled.append(task.task_id)
            elif now - task.created_at > self._max_runtime:
                _logger.warning(f"任务超过最长运行时间 {self._max_runtime}s，取消: {task.task_id}")
                task.append(f"⏱️ 超过最长运行时间 ({self._max_runtime} 秒)")
                job.cancel()
                handled.append(task.task_id)
        return handled

    async def run_watchdog(self, interval: Optional[float] = None):
        interval = interval or self._cfg("tasks.watchdog_interval", 5)
        while True:
            await asyncio.sleep(interval)
            try:
                self.watchdog_once()
            except Exception:
                _logger.exception("看门狗检查异常")

    async def shutdown(self):
        """取消所有运行中的任务并等待其写入终态"""
        jobs = list(self._jobs.values())
        if not jobs:
            return
        _logger.info(f"正在停止 {len(jobs)} 个运行中的任务...")
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self.watchdog_once()

    @property
    def active_count(self) -> int:
        return len(self._jobs)

    @property
    def catalog(self) -> OperationCatalog:
        return self._catalog
