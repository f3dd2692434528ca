"""
终端流客户端

- 收到的字节原样交给渲染器（默认写到本地 stdout）
- 按键作为数据帧发送
- 可视区域尺寸变化时发送尺寸控制帧（连接建立时先发一次初始尺寸）

run_interactive() 把本地 TTY 切到 raw 模式，并在 SIGWINCH 时同步远端尺寸。
"""

import asyncio
import contextlib
import os
import shutil
import signal
import sys
import termios
import tty
from collections.abc import Callable
from typing import Any, Optional

import websockets

from core.logger import get_logger
from models.frames import encode_resize

_logger = get_logger("client.terminal")


def _write_stdout(data: bytes):
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()


class TerminalClient:
    """
    用法：
        async with TerminalClient(url) as term:
            await term.set_viewport(24, 80)
            await term.send_input(b"ls\\n")
            await term.run()
    """

    def __init__(
        self,
        url: str,
        render: Optional[Callable[[bytes], Any]] = None,
        connect=websockets.connect,
    ):
        self._url = url
        self._render = render or _write_stdout
        self._connect = connect
        self._ws = None
        self._viewport: Optional[tuple[int, int]] = None
        self.close_code: Optional[int] = None
        self.close_reason = ""

    async def __aenter__(self) -> "TerminalClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def connect(self):
        self._ws = await self._connect(self._url, max_size=None)
        _logger.debug("终端连接已建立")

    async def close(self):
        if self._ws is not None:
            with contextlib.suppress(websockets.WebSocketException, OSError):
                await self._ws.close()

    async def send_input(self, data: bytes):
        if data:
            await self._ws.send(data)

    async def set_viewport(self, rows: int, cols: int) -> bool:
        """
        同步可视区域尺寸，尺寸未变时不发送。

        Returns:
            是否发送了尺寸控制帧
        """
        if rows <= 0 or cols <= 0 or self._viewport == (rows, cols):
            return False
        self._viewport = (rows, cols)
        await self._ws.send(encode_resize(rows, cols))
        return True

    async def run(self):
        """把收到的输出交给渲染器，直到连接关闭"""
        try:
            async for message in self._ws:
                if isinstance(message, str):
                    message = message.encode("utf-8")
                self._render(message)
        except websockets.ConnectionClosed as e:
            _logger.debug(f"终端连接断开: {e}")
        self.close_code = self._ws.close_code
        self.close_reason = self._ws.close_reason or ""

    async def run_interactive(self):
        """接管本地 TTY：raw 模式输入、窗口变化同步尺寸"""
        loop = asyncio.get_running_loop()
        stdin_fd = sys.stdin.fileno()
        old_attrs = termios.tcgetattr(stdin_fd)
        input_queue: asyncio.Queue = asyncio.Queue()

        def on_stdin():
            data = os.read(stdin_fd, 4096)
            input_queue.put_nowait(data)

        def on_winch():
            size = shutil.get_terminal_size()
            loop.create_task(self.set_viewport(size.lines, size.columns))

        async def pump_input():
            while True:
                data = await input_queue.get()
                if not data:
                    return
                await self.send_input(data)

        size = shutil.get_terminal_size()
        await self.set_viewport(size.lines, size.columns)

        tty.setraw(stdin_fd)
        loop.add_reader(stdin_fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, on_winch)
        sender = asyncio.create_task(pump_input())
        try:
            await self.run()
        finally:
            sender.cancel()
            loop.remove_signal_handler(signal.SIGWINCH)
            loop.remove_reader(stdin_fd)
            termios.tcsetattr(stdin_fd, termios.TCSADRAIN, old_attrs)
            with contextlib.suppress(asyncio.CancelledError):
                await sender
