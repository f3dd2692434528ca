"""
命令执行器

以 argv 列表执行系统命令（不经过 shell 拼接），支持：
- stdout/stderr 合并为一条有序输出流，逐行回调
- 超时控制
- 命令未正常结束（取消、超时、读取出错）时按进程树整体终止（psutil），不留孤儿进程
- 超长无换行的输出分段交出，不会让任务失败
"""

import asyncio
import os
import signal
import subprocess
from collections.abc import Callable, Sequence
from typing import Optional

import psutil

from core.logger import get_logger

_logger = get_logger("services.executor")

# 单行输出上限（apt 进度条可能不含换行）
_LINE_LIMIT = 1024 * 1024


class CommandTimeout(Exception):
    """命令在限定时间内未结束"""


def decode_output(data: bytes) -> str:
    """尝试多种编码解码输出"""
    if not data:
        return ""
    for encoding in ("utf-8", "gbk"):
        try:
            return data.decode(encoding)
        except UnicodeDecodeError:
            continue
    return data.decode("utf-8", errors="replace")


def kill_process_tree(pid: int, timeout: float = 3.0):
    """先 SIGTERM 整棵进程树，超时未退出的再 SIGKILL"""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue

    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    if alive:
        _logger.warning(f"进程树 {pid} 有 {len(alive)} 个进程被强制结束")


class CommandExecutor:
    """流式命令执行器"""

    def __init__(self, default_timeout: float = 1800, env: Optional[dict[str, str]] = None):
        self._default_timeout = default_timeout
        self._env = env

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.setdefault("DEBIAN_FRONTEND", "noninteractive")
        if self._env:
            env.update(self._env)
        return env

    async def stream(
        self,
        argv: Sequence[str],
        on_line: Callable[[str], None],
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> int:
        """
        执行命令，把每一行输出（已去掉行尾换行）交给 on_line。

        Returns:
            进程退出码

        Raises:
            CommandTimeout: 超时（进程树已被终止）
            FileNotFoundError: 可执行文件不存在
            asyncio.CancelledError: 被取消（进程树已被终止）
        """
        timeout = timeout or self._default_timeout
        _logger.info(f"执行命令: {' '.join(argv)}")

        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=cwd,
            env=self._build_env(),
            start_new_session=True,
            limit=_LINE_LIMIT,
        )

        async def _read_line() -> bytes:
            try:
                return await proc.stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                return e.partial
            except asyncio.LimitOverrunError as e:
                # 超长且无换行的输出按上限切成多行交出
                _logger.debug(f"输出行超过 {_LINE_LIMIT} 字节，分段读取")
                return await proc.stdout.read(e.consumed)

        async def _pump():
            while True:
                raw = await _read_line()
                if not raw:
                    break
                on_line(decode_output(raw).rstrip("\r\n"))
            return await proc.wait()

        try:
            exit_code = await asyncio.wait_for(_pump(), timeout=timeout)
        except asyncio.TimeoutError:
            _logger.warning(f"命令执行超时({timeout}s): {argv[0]}")
            raise CommandTimeout(f"命令执行超时 ({timeout} 秒)")
        finally:
            # 超时、取消或读取出错时进程可能仍在运行
            if proc.returncode is None:
                _logger.warning(f"命令未正常结束，终止进程树: pid={proc.pid}")
                await asyncio.shield(asyncio.to_thread(kill_process_tree, proc.pid))

        _logger.info(f"命令执行完成: exit_code={exit_code}")
        return exit_code

    async def capture(self, argv: Sequence[str], timeout: float = 30) -> tuple[int, str]:
        """
        静默执行一个探测命令，返回 (exit_code, 输出文本)。
        输出不会进入任务日志。
        """
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=self._build_env(),
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.send_signal(signal.SIGKILL)
            await proc.wait()
            raise CommandTimeout(f"探测命令超时 ({timeout} 秒)")
        return proc.returncode, decode_output(out)

    async def spawn_detached(self, argv: Sequence[str], log_path: str, cwd: Optional[str] = None) -> int:
        """
        在新会话中启动一个与本进程脱离的后台进程，返回其 PID。

        用于自更新：脚本会重启本服务，必须在服务进程退出后继续运行。
        """
        def _spawn() -> int:
            with open(log_path, "ab") as log_file:
                proc = subprocess.Popen(
                    list(argv),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    cwd=cwd,
                    env=self._build_env(),
                    start_new_session=True,
                    close_fds=True,
                )
            return proc.pid

        pid = await asyncio.to_thread(_spawn)
        _logger.info(f"后台进程已脱离启动: pid={pid} argv={' '.join(argv)}")
        return pid
