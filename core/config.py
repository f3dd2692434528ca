"""
配置管理器模块

提供：
- YAML 文件加载（默认 config.yaml，或 --config 指定路径）
- 环境变量覆盖（APP_ 前缀，双下划线表示层级）
- 深度合并（默认 < YAML < 环境变量）
- 点号路径访问（config.get("tasks.grace_period")）
- 冻结锁定（防止运行期意外修改）
"""

import argparse
import copy
import logging
import os
from typing import Any, Optional

import yaml


# 环境变量前缀
_ENV_PREFIX = "APP_"
# 环境变量中表示嵌套层级的分隔符
_ENV_SEPARATOR = "__"


# ──────────────────────────────────────────────
# 内置默认配置（当 YAML 文件缺失时作为回退）
# ──────────────────────────────────────────────

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "app": {
        "name": "TaskStream",
        "version": "0.1.0",
        "env": "development",
        "debug": False,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8300,
        # WebSocket 协议层心跳：断线的订阅者最迟 2 个周期内被回收
        "ws_ping_interval": 20.0,
        "ws_ping_timeout": 20.0,
    },
    "security": {
        "admin_user": "admin",
        "admin_password": "",
        "token_ttl": 86400,
    },
    "tasks": {
        "grace_period": 300,
        "sweep_interval": 10,
        "watchdog_interval": 5,
        "max_runtime": 3600,
        "command_timeout": 1800,
    },
    "terminal": {
        "shell": ["/bin/bash", "-l"],
        "cwd": "",
        "rows": 24,
        "cols": 80,
        "read_size": 4096,
        "banner": True,
    },
    "update": {
        "script": "/opt/serverpanel/scripts/update-server.sh",
        "log_file": "/tmp/serverpanel-update.log",
    },
    "logging": {
        "level": "INFO",
        "console": {
            "enabled": True,
            "colorize": True,
        },
        "file": {
            "enabled": True,
            "directory": "logs",
            "max_size_mb": 10,
            "backup_count": 5,
            "app_log": "app.log",
            "error_log": "error.log",
        },
        "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
    },
}


# ──────────────────────────────────────────────
# 工具函数
# ──────────────────────────────────────────────

def _deep_merge(base: dict, override: dict) -> dict:
    """
    深度合并两个字典。override 中的值会覆盖 base 中的值。
    对于嵌套字典会递归合并，而非直接替换。
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_env_value(value: str) -> Any:
    """把环境变量字符串解析为 bool / None / int / float，否则保持字符串"""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none", ""):
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def _set_nested(data: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        if key not in data or not isinstance(data[key], dict):
            data[key] = {}
        data = data[key]
    data[keys[-1]] = value


def _get_nested(data: dict, keys: list[str], default: Any = None) -> Any:
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


# ──────────────────────────────────────────────
# 配置管理器
# ──────────────────────────────────────────────

class ConfigManager:
    """
    配置管理器。

    加载优先级（从低到高）：
    1. 内置默认值
    2. YAML 配置文件
    3. 环境变量（APP_ 前缀）

    使用方式：
        config = ConfigManager(logger=temp_logger)
        config.load()
        grace = config.get("tasks.grace_period")
        config.freeze()
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._data: dict[str, Any] = copy.deepcopy(_BUILTIN_DEFAULTS)
        self._frozen = False
        self._logger = logger or logging.getLogger(__name__)
        self._config_file_path: Optional[str] = None
        self._project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

    def load(self, config_path: Optional[str] = None) -> "ConfigManager":
        """
        按优先级加载配置。

        Args:
            config_path: 可选的配置文件路径。不传时依次尝试
                         命令行 --config 和项目根目录下的 config.yaml。

        Returns:
            self（支持链式调用）
        """
        self._logger.info("开始加载配置系统")

        self._data = copy.deepcopy(_BUILTIN_DEFAULTS)

        final_path = config_path or self._parse_cli_args()
        if final_path is None:
            final_path = os.path.join(self._project_root, "config.yaml")
        self._config_file_path = os.path.abspath(final_path)

        self._load_yaml(self._config_file_path)
        self._load_env_overrides()
        self._log_effective_config()

        self._logger.info("配置系统加载完成")
        return self

    def _parse_cli_args(self) -> Optional[str]:
        """解析命令行参数，返回 --config 路径（如果有）"""
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("-c", "--config", type=str, default=None,
                            help="自定义配置文件路径")
        args, _ = parser.parse_known_args()

        if args.config:
            self._logger.info(f"命令行指定配置文件: {args.config}")
        return args.config

    def _load_yaml(self, path: str):
        """从 YAML 文件加载配置，文件不存在时写出一份默认配置"""
        if not os.path.isfile(path):
            self._logger.info(f"配置文件不存在，正在创建默认配置: {path}")
            try:
                os.makedirs(os.path.dirname(path), exist_ok=True)
                with open(path, "w", encoding="utf-8") as f:
                    yaml.safe_dump(
                        _BUILTIN_DEFAULTS,
                        f,
                        default_flow_style=False,
                        allow_unicode=True,
                        sort_keys=False,
                    )
            except OSError as e:
                self._logger.warning(f"生成默认配置文件失败: {e}，将使用内置默认配置")
            return

        self._logger.info(f"正在加载配置文件: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self._logger.error(f"YAML 解析失败: {e}")
            self._logger.warning("将使用内置默认配置继续运行")
            return
        except OSError as e:
            self._logger.error(f"读取配置文件失败: {e}")
            return

        if yaml_data is None:
            self._logger.warning("配置文件为空，使用内置默认配置")
            return
        if not isinstance(yaml_data, dict):
            self._logger.error(f"配置文件格式错误（期望字典，得到 {type(yaml_data).__name__}）")
            return

        self._data = _deep_merge(self._data, yaml_data)
        self._logger.info(f"已合并 YAML 配置（{len(yaml_data)} 个顶级键）")

    def _load_env_overrides(self):
        """从环境变量加载覆盖配置"""
        overrides_count = 0

        for key, value in sorted(os.environ.items()):
            if not key.startswith(_ENV_PREFIX):
                continue

            parts = key[len(_ENV_PREFIX):].lower().split(_ENV_SEPARATOR.lower())
            parsed_value = _parse_env_value(value)
            _set_nested(self._data, parts, parsed_value)
            self._logger.debug(f"环境变量覆盖: {'.'.join(parts)} = {parsed_value!r}")
            overrides_count += 1

        if overrides_count > 0:
            self._logger.info(f"已应用 {overrides_count} 个环境变量覆盖")

    def _log_effective_config(self):
        """打印最终生效的关键配置"""
        self._logger.info("-" * 40)
        self._logger.info("当前生效配置:")
        self._logger.info(f"  应用名称:   {self.get('app.name')} v{self.get('app.version')}")
        self._logger.info(f"  服务地址:   {self.get('server.host')}:{self.get('server.port')}")
        self._logger.info(f"  任务保留:   {self.get('tasks.grace_period')} 秒")
        self._logger.info(f"  终端 Shell: {' '.join(self.get('terminal.shell', []))}")
        self._logger.info(f"  日志级别:   {self.get('logging.level')}")
        self._logger.info(f"  配置文件:   {self._config_file_path}")
        self._logger.info("-" * 40)

    # ──────────────────────────────────────────
    # 公共 API
    # ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """
        按点号路径获取配置值。

        Examples:
            config.get("server.port")              # -> 8300
            config.get("tasks.grace_period")       # -> 300
            config.get("db.host", "localhost")     # -> "localhost" (不存在时)
        """
        return _get_nested(self._data, key.split("."), default)

    def set(self, key: str, value: Any):
        """
        按点号路径设置配置值。

        Raises:
            RuntimeError: 配置已冻结时
        """
        if self._frozen:
            raise RuntimeError(f"配置已冻结，无法修改: {key}")
        _set_nested(self._data, key.split("."), value)

    def freeze(self):
        """冻结配置，之后的 set() 调用将抛出 RuntimeError"""
        self._frozen = True
        self._logger.debug("配置已冻结，不再允许修改")

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> dict[str, Any]:
        """返回配置的深拷贝字典"""
        return copy.deepcopy(self._data)

    @property
    def config_file_path(self) -> Optional[str]:
        return self._config_file_path

    @property
    def project_root(self) -> str:
        return self._project_root

    def __repr__(self) -> str:
        status = "frozen" if self._frozen else "mutable"
        return f"<ConfigManager({status}, keys={list(self._data.keys())})>"
