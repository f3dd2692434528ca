"""
伪终端会话

每个 WebSocket 连接独占一个 PTY 进程：
- 键盘输入原样写入 PTY
- PTY 输出由读取线程送入 asyncio 队列，单一协程按产生顺序转发
- 尺寸控制帧立即应用到 PTY（在处理下一帧数据之前）
- 连接关闭或进程退出即终止，连同子进程树一起结束，不留孤儿进程

状态机：starting -> attached -> terminated，terminated 不可逆。
"""

import asyncio
import os
import threading
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from enum import Enum
from typing import Optional

import ptyprocess

from core.logger import get_logger
from services.executor import kill_process_tree

_logger = get_logger("services.terminal")


class SessionState(str, Enum):
    STARTING = "starting"
    ATTACHED = "attached"
    TERMINATED = "terminated"


class PtySession:
    """一个交互式伪终端进程"""

    def __init__(
        self,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        rows: int = 24,
        cols: int = 80,
        read_size: int = 4096,
        user: str = "",
    ):
        self.session_id = f"term-{uuid.uuid4().hex[:8]}"
        self.user = user
        self.rows = rows
        self.cols = cols
        self.state = SessionState.STARTING
        self.exit_code: Optional[int] = None

        self._argv = list(argv)
        self._cwd = cwd
        self._env = env
        self._read_size = read_size
        self._process: Optional[ptyprocess.PtyProcess] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def start(self):
        """启动 PTY 进程与读取线程（需在事件循环中调用）"""
        if self.state is not SessionState.STARTING:
            raise RuntimeError(f"会话状态不允许启动: {self.state.value}")

        self._loop = asyncio.get_running_loop()
        self._process = ptyprocess.PtyProcess.spawn(
            self._argv,
            cwd=self._cwd,
            env=self._env,
            dimensions=(self.rows, self.cols),
        )
        self.state = SessionState.ATTACHED

        self._reader = threading.Thread(
            target=self._read_loop, name=f"pty-reader-{self.session_id}", daemon=True
        )
        self._reader.start()
        _logger.info(f"终端会话已启动: {self.session_id} PID={self._process.pid} {self.rows}x{self.cols}")

    def _deliver(self, item: Optional[bytes]):
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # 事件循环已关闭
            pass

    def _read_loop(self):
        """读取线程：持续读取 PTY 输出，EOF 时投递 None"""
        try:
            while True:
                try:
                    data = self._process.read(self._read_size)
                except (EOFError, OSError, ValueError):
                    break
                if data:
                    self._deliver(data)
        finally:
            self._collect_exit_code()
            self._deliver(None)

    def _collect_exit_code(self):
        # EOF 可能略早于进程退出，短暂等待回收
        for _ in range(20):
            try:
                if not self._process.isalive():
                    self.exit_code = self._process.exitstatus
                    return
            except ptyprocess.PtyProcessError:
                return
            time.sleep(0.05)

    async def output(self) -> AsyncIterator[bytes]:
        """按产生顺序迭代 PTY 输出，进程退出后结束"""
        while True:
            data = await self._queue.get()
            if data is None:
                return
            yield data

    def write(self, data: bytes):
        if self.state is not SessionState.ATTACHED or not data:
            return
        try:
            self._process.write(data)
        except OSError as e:
            _logger.warning(f"写入终端失败: {self.session_id}: {e}")

    def resize(self, rows: int, cols: int):
        if self.state is not SessionState.ATTACHED:
            return
        self._process.setwinsize(rows, cols)
        self.rows, self.cols = rows, cols
        _logger.debug(f"终端尺寸调整: {self.session_id} -> {rows}x{cols}")

    def get_size(self) -> tuple[int, int]:
        return self._process.getwinsize()

    def close(self):
        """终止进程树并释放 PTY（可重复调用）"""
        if self.state is SessionState.TERMINATED:
            return
        previous = self.state
        self.state = SessionState.TERMINATED
        if previous is SessionState.STARTING or self._process is None:
            return

        if self._process.isalive():
            kill_process_tree(self._process.pid, timeout=1.0)
        try:
            self._process.close(force=True)
        except (OSError, ptyprocess.PtyProcessError) as e:
            _logger.warning(f"关闭 PTY 失败: {self.session_id}: {e}")
        if self._reader is not None:
            self._reader.join(timeout=2)
        _logger.info(f"终端会话已关闭: {self.session_id} exit_code={self.exit_code}")


class TerminalManager:
    """活动终端会话表"""

    def __init__(self, config=None):
        self._config = config
        self._sessions: dict[str, PtySession] = {}

    def _cfg(self, key: str, default):
        if self._config is None:
            return default
        return self._config.get(key, default)

    def _build_env(self, shell: str, home: str, user: str) -> dict[str, str]:
        env = os.environ.copy()
        env.update({
            "TERM": "xterm-256color",
            "HOME": home,
            "SHELL": shell,
            "LANG": "en_US.UTF-8",
            "LC_ALL": "en_US.UTF-8",
        })
        if user:
            env["USER"] = user
        return env

    def open(self, user: str = "") -> PtySession:
        """
        为连接创建并启动一个终端会话。

        Raises:
            OSError: PTY 或 Shell 无法启动
        """
        argv = list(self._cfg("terminal.shell", ["/bin/bash", "-l"]))
        home = self._cfg("terminal.cwd", "") or os.path.expanduser("~")
        session = PtySession(
            argv,
            cwd=home if os.path.isdir(home) else None,
            env=self._build_env(argv[0], home, user),
            rows=int(self._cfg("terminal.rows", 24)),
            cols=int(self._cfg("terminal.cols", 80)),
            read_size=int(self._cfg("terminal.read_size", 4096)),
            user=user,
        )
        session.start()
        self._sessions[session.session_id] = session
        return session

    def close(self, session: PtySession):
        self._sessions.pop(session.session_id, None)
        session.close()

    def active_count(self) -> int:
        return len(self._sessions)

    async def close_all(self):
        sessions = list(self._sessions.values())
        for session in sessions:
            await asyncio.to_thread(self.close, session)
