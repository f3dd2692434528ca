"""
引导加载器模块

解决 Config 与 Logger 之间的循环依赖：
1. 创建临时 Logger（仅 stderr，DEBUG）
2. 使用临时 Logger 加载 Config
3. 用 Config 中的 logging 段重新配置正式 Logger
4. 冻结 Config，返回 (config, logger)
"""

import logging
from typing import Optional

from core.config import ConfigManager
from core.logger import create_temporary_logger, reconfigure_logger


def init(config_path: Optional[str] = None) -> tuple[ConfigManager, logging.Logger]:
    """
    初始化配置与日志基础设施。

    Args:
        config_path: 可选的配置文件路径

    Returns:
        (config, logger) 元组
    """
    temp_logger = create_temporary_logger()
    temp_logger.debug("引导加载器启动")

    config = ConfigManager(logger=temp_logger)
    config.load(config_path=config_path)

    logging_config = config.get("logging", {})
    logger = reconfigure_logger(logging_config)
    logger.info(
        f"日志系统已切换到正式模式 (级别: {logging_config.get('level', 'INFO')}, "
        f"文件日志: {'启用' if logging_config.get('file', {}).get('enabled', True) else '禁用'})"
    )

    config.freeze()
    return config, logger
