"""phantom-bridge 环境变量配置管理。

环境变量:
    PHANTOM_BIN: 外部解释器可执行文件
        - 默认 phantomjs

    PHANTOM_ARGS: 每次启动都附加的参数（shell 风格分割）
        - 例: "--web-security=no --ignore-ssl-errors=true"
        - 放在 start(*args) 的参数之前，脚本路径始终是最后一个参数

    PHANTOM_RUN_TIMEOUT: run() 默认超时时间（秒）
        - 默认 30
        - 0 / none = 不超时

    PHANTOM_FORCE_TIMEOUT: force_shutdown() 等待优雅退出的时间（秒）
        - 默认 3

    PHANTOM_KILL_TIMEOUT: 发送 kill 后等待进程回收的时间（秒）
        - 默认 1

    PHANTOM_MAX_EMPTY_READS: 读线程容忍的连续空读次数
        - 默认 100

    PHANTOM_EMPTY_READ_INTERVAL: 两次空读之间的间隔（秒）
        - 默认 0.01

    PHANTOM_MAILBOX_SIZE: 结果信箱容量
        - 默认 1

    PHANTOM_BUFFER_SIZE: 管道读缓冲大小（KB）
        - 默认 2048

    PHANTOM_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件，DEBUG 级别)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_BINARY = "phantomjs"
DEFAULT_RUN_TIMEOUT = 30.0
DEFAULT_FORCE_TIMEOUT = 3.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_MAX_EMPTY_READS = 100
DEFAULT_EMPTY_READ_INTERVAL = 0.01
DEFAULT_MAILBOX_SIZE = 1
DEFAULT_BUFFER_SIZE_KB = 2048


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(
    value: str | None,
    default: float,
    minimum: float,
    maximum: float,
) -> float:
    """解析浮点数环境变量，非法值返回默认值，合法值限制在范围内。"""
    if not value:
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    return max(minimum, min(number, maximum))


def _parse_int(value: str | None, default: int, minimum: int, maximum: int) -> int:
    """解析整数环境变量。"""
    if not value:
        return default
    try:
        number = int(value)
    except ValueError:
        return default
    return max(minimum, min(number, maximum))


def _parse_timeout(value: str | None, default: float | None) -> float | None:
    """解析超时时间。

    Returns:
        秒数；0 / none / off 表示不超时（None）
    """
    if value is None or not value.strip():
        return default
    text = value.strip().lower()
    if text in ("none", "off", "never"):
        return None
    try:
        number = float(text)
    except ValueError:
        return default
    if number <= 0:
        return None
    return number


def _parse_args(value: str | None) -> list[str]:
    """按 shell 规则分割参数列表。"""
    if not value or not value.strip():
        return []
    try:
        return shlex.split(value)
    except ValueError:
        # 引号不匹配时退化为按空白分割
        return value.split()


@dataclass
class Config:
    """phantom-bridge 配置。

    Attributes:
        binary: 外部解释器可执行文件
        default_args: 每次启动都附加的参数
        run_timeout: run() 默认超时（None = 不超时）
        force_timeout: force_shutdown() 的优雅等待时间
        kill_timeout: kill 之后的等待时间
        max_empty_reads: 读线程连续空读预算
        empty_read_interval: 空读之间的间隔
        mailbox_size: 结果信箱容量
        buffer_size: 管道读缓冲大小（KB）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    binary: str = DEFAULT_BINARY
    default_args: list[str] = field(default_factory=list)
    run_timeout: float | None = DEFAULT_RUN_TIMEOUT
    force_timeout: float = DEFAULT_FORCE_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    max_empty_reads: int = DEFAULT_MAX_EMPTY_READS
    empty_read_interval: float = DEFAULT_EMPTY_READ_INTERVAL
    mailbox_size: int = DEFAULT_MAILBOX_SIZE
    buffer_size: int = DEFAULT_BUFFER_SIZE_KB
    log_debug: bool = False
    log_file: str | None = None

    @property
    def buffer_bytes(self) -> int:
        """管道读缓冲大小（字节）。"""
        return self.buffer_size * 1024

    def __repr__(self) -> str:
        return (
            f"Config(binary={self.binary}, "
            f"default_args={self.default_args}, "
            f"run_timeout={self.run_timeout}, "
            f"force_timeout={self.force_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"max_empty_reads={self.max_empty_reads}, "
            f"mailbox_size={self.mailbox_size}, "
            f"buffer_size={self.buffer_size}KB, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "phantom-bridge"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"phantom_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    env = os.environ
    log_debug = _parse_bool(env.get("PHANTOM_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        binary=(env.get("PHANTOM_BIN") or "").strip() or DEFAULT_BINARY,
        default_args=_parse_args(env.get("PHANTOM_ARGS")),
        run_timeout=_parse_timeout(env.get("PHANTOM_RUN_TIMEOUT"), DEFAULT_RUN_TIMEOUT),
        force_timeout=_parse_float(
            env.get("PHANTOM_FORCE_TIMEOUT"), DEFAULT_FORCE_TIMEOUT, 0.1, 60.0
        ),
        kill_timeout=_parse_float(
            env.get("PHANTOM_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1, 30.0
        ),
        max_empty_reads=_parse_int(
            env.get("PHANTOM_MAX_EMPTY_READS"), DEFAULT_MAX_EMPTY_READS, 1, 100_000
        ),
        empty_read_interval=_parse_float(
            env.get("PHANTOM_EMPTY_READ_INTERVAL"), DEFAULT_EMPTY_READ_INTERVAL, 0.0, 1.0
        ),
        mailbox_size=_parse_int(env.get("PHANTOM_MAILBOX_SIZE"), DEFAULT_MAILBOX_SIZE, 1, 1024),
        buffer_size=_parse_int(
            env.get("PHANTOM_BUFFER_SIZE"), DEFAULT_BUFFER_SIZE_KB, 1, 1024 * 1024
        ),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
