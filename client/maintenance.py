"""
自更新后的重连

触发自更新后服务进程会被重启，流式通道不再可信：
改为按固定间隔轮询存活探针，首次成功即调用一次 reload，
超过最大尝试次数则放弃。

状态：updating -> waiting_for_server -> healthy | gave_up
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Optional

from core.logger import get_logger

_logger = get_logger("client.maintenance")


class ReconnectPhase(str, Enum):
    UPDATING = "updating"
    WAITING_FOR_SERVER = "waiting_for_server"
    HEALTHY = "healthy"
    GAVE_UP = "gave_up"


class MaintenanceReconnector:
    """有限次数的存活探针轮询"""

    def __init__(
        self,
        probe: Callable[[], Awaitable[bool]],
        on_reload: Callable[[], Any],
        interval: float = 3.0,
        max_attempts: int = 100,
        initial_delay: float = 2.0,
        on_phase: Optional[Callable[[ReconnectPhase], Any]] = None,
    ):
        """
        Args:
            probe: 存活探针，服务可用时返回 True
            on_reload: 服务恢复后调用一次（可为协程函数）
            interval: 两次探测之间的间隔（秒）
            max_attempts: 最大探测次数
            initial_delay: 首次探测前的等待（给服务留出退出的时间）
            on_phase: 状态变化回调
        """
        self._probe = probe
        self._on_reload = on_reload
        self._interval = interval
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay
        self._on_phase = on_phase
        self.phase = ReconnectPhase.UPDATING
        self.attempts = 0

    def _enter(self, phase: ReconnectPhase):
        self.phase = phase
        _logger.info(f"重连状态: {phase.value}")
        if self._on_phase:
            self._on_phase(phase)

    async def run(self) -> ReconnectPhase:
        """轮询直到恢复或放弃；重复调用不会再次触发 reload"""
        if self.phase in (ReconnectPhase.HEALTHY, ReconnectPhase.GAVE_UP):
            return self.phase

        await asyncio.sleep(self._initial_delay)
        self._enter(ReconnectPhase.WAITING_FOR_SERVER)

        while self.attempts < self._max_attempts:
            self.attempts += 1
            if await self._probe():
                self._enter(ReconnectPhase.HEALTHY)
                result = self._on_reload()
                if inspect.isawaitable(result):
                    await result
                return self.phase
            _logger.debug(f"服务尚未恢复 (第 {self.attempts}/{self._max_attempts} 次)")
            await asyncio.sleep(self._interval)

        _logger.warning(f"服务在 {self._max_attempts} 次探测后仍未恢复，放弃等待")
        self._enter(ReconnectPhase.GAVE_UP)
        return self.phase
