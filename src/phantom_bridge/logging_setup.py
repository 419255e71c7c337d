"""日志配置。

库本身只使用 ``logging.getLogger(__name__)``，不会在导入时配置日志；
需要输出时由应用（或 ``python -m phantom_bridge``）调用 configure_logging()。
"""

from __future__ import annotations

import logging
import sys

from .config import Config, get_config

__all__ = ["configure_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> logging.Handler:
    """配置 phantom_bridge 命名空间的日志输出。

    - 默认模式：输出到 stderr，INFO 级别
    - PHANTOM_LOG_DEBUG 模式：输出到临时文件，DEBUG 级别

    Args:
        config: 配置（默认使用全局配置）

    Returns:
        新安装的 handler
    """
    config = config or get_config()
    package_logger = logging.getLogger("phantom_bridge")

    handler: logging.Handler
    if config.log_debug and config.log_file:
        handler = logging.FileHandler(config.log_file, encoding="utf-8")
        level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        level = logging.INFO

    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # 重复调用时替换之前安装的 handler
    for existing in list(package_logger.handlers):
        if getattr(existing, "_phantom_bridge", False):
            package_logger.removeHandler(existing)
            existing.close()
    handler._phantom_bridge = True  # type: ignore[attr-defined]

    package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False

    if config.log_file and config.log_debug:
        package_logger.info(f"Debug log file: {config.log_file}")

    return handler
