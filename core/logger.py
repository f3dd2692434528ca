"""
日志工具模块

基于 Python 标准 logging 模块，提供：
- 彩色控制台输出（ANSI，无第三方依赖）
- 文件日志 + 自动轮转，error.log 仅记录 ERROR+
- 临时模式（Bootstrap 阶段，仅 stderr）
- 重配置（Config 加载后用正式配置接管）
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional


_RESET = "\033[0m"

# 级别 → 颜色
_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG:    "\033[96m",
    logging.INFO:     "\033[92m",
    logging.WARNING:  "\033[93m",
    logging.ERROR:    "\033[91m",
    logging.CRITICAL: "\033[41m\033[97m\033[1m",
}


class ColoredFormatter(logging.Formatter):
    """
    控制台彩色 Formatter。
    只着色级别名和消息文本，时间戳与位置信息保持默认颜色。
    """

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None,
                 colorize: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        if not self._colorize:
            return super().format(record)

        orig_levelname = record.levelname
        orig_msg = record.msg
        color = _LEVEL_COLORS.get(record.levelno, "")

        record.levelname = f"{color}{record.levelname:<8}{_RESET}"
        record.msg = f"{color}{record.msg}{_RESET}"
        try:
            return super().format(record)
        finally:
            # 恢复原始值，避免污染文件 Handler 的输出
            record.levelname = orig_levelname
            record.msg = orig_msg


_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 所有模块 Logger 都挂在这个根下（taskstream.services.hub 等）
_ROOT_LOGGER_NAME = "taskstream"

_manager: Optional["LogManager"] = None


class LogManager:
    """
    管理根 Logger 上所有 Handler 的生命周期。

    两个阶段：
    1. setup_temporary：仅 stderr，用于 Bootstrap
    2. reconfigure：按 logging 配置段装配 Console/File Handler
    """

    def __init__(self):
        self._root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []
        self._configured = False

    @property
    def logger(self) -> logging.Logger:
        return self._root_logger

    def _clear_handlers(self):
        for handler in self._handlers:
            self._root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def _add(self, handler: logging.Handler):
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def setup_temporary(self) -> logging.Logger:
        """临时 Logger：stderr + DEBUG + [BOOT] 前缀"""
        self._clear_handlers()
        self._root_logger.setLevel(logging.DEBUG)

        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(ColoredFormatter(
            fmt="%(asctime)s | %(levelname)-8s | [BOOT] %(message)s",
            datefmt=_DEFAULT_DATE_FORMAT,
        ))
        self._add(handler)
        return self._root_logger

    def reconfigure(self, config: dict) -> logging.Logger:
        """
        使用 logging 配置段重新装配 Handler。

        Args:
            config: logging 配置段（level / console / file / format）
        """
        self._clear_handlers()

        level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
        self._root_logger.setLevel(level)
        log_format = config.get("format", _DEFAULT_FORMAT)

        console_cfg = config.get("console", {})
        if console_cfg.get("enabled", True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(ColoredFormatter(
                fmt=log_format,
                datefmt=_DEFAULT_DATE_FORMAT,
                colorize=console_cfg.get("colorize", True),
            ))
            self._add(console_handler)

        file_cfg = config.get("file", {})
        if file_cfg.get("enabled", True):
            log_dir = file_cfg.get("directory", "logs")
            if not os.path.isabs(log_dir):
                project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
                log_dir = os.path.join(project_root, log_dir)
            os.makedirs(log_dir, exist_ok=True)

            max_bytes = file_cfg.get("max_size_mb", 10) * 1024 * 1024
            backup_count = file_cfg.get("backup_count", 5)
            file_formatter = logging.Formatter(fmt=log_format, datefmt=_DEFAULT_DATE_FORMAT)

            for filename, handler_level in (
                (file_cfg.get("app_log", "app.log"), level),
                (file_cfg.get("error_log", "error.log"), logging.ERROR),
            ):
                handler = RotatingFileHandler(
                    os.path.join(log_dir, filename),
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                handler.setLevel(handler_level)
                handler.setFormatter(file_formatter)
                self._add(handler)

        self._configured = True
        return self._root_logger

    @property
    def is_configured(self) -> bool:
        return self._configured


def _get_manager() -> "LogManager":
    global _manager
    if _manager is None:
        _manager = LogManager()
    return _manager


# ──────────────────────────────────────────────
# 公共 API
# ──────────────────────────────────────────────

def create_temporary_logger() -> logging.Logger:
    """创建临时 Logger（Bootstrap 阶段使用）"""
    return _get_manager().setup_temporary()


def reconfigure_logger(config: dict) -> logging.Logger:
    """清除临时 Handler，按 logging 配置段装配正式 Handler"""
    return _get_manager().reconfigure(config)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取子 Logger。

    Args:
        name: 模块名，如 "services.hub"，会挂到根 Logger 下
              （taskstream.services.hub）。
    """
    if name is None:
        return logging.getLogger(_ROOT_LOGGER_NAME)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
