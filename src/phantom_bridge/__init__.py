"""phantom-bridge - 驱动常驻 phantomjs 进程的行协议客户端。

环境变量:
    PHANTOM_BIN: phantomjs 可执行文件 (默认 phantomjs)
    PHANTOM_ARGS: 每次启动附加的参数
    PHANTOM_RUN_TIMEOUT: run() 默认超时 (默认 30s)
    PHANTOM_FORCE_TIMEOUT: force_shutdown() 优雅等待时间 (默认 3s)
    PHANTOM_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    from phantom_bridge import start

    with start() as p:
        p.load("var a = 2;")
        p.run("function() { return a + 2; }")   # -> 4
"""

__version__ = "0.1.0"

from .config import Config, get_config, load_config, reload_config
from .errors import (
    ConcurrentRunError,
    DeadInstanceError,
    LifecycleError,
    PhantomError,
    ProtocolError,
    ReadErrorKind,
    RunTimeoutError,
    ScriptError,
    SendError,
    SpawnError,
    StreamReadError,
)
from .logging_setup import configure_logging
from .runtime import (
    AsyncPhantom,
    InstanceState,
    Phantom,
    PhantomLauncher,
    WrapperScript,
    get_launcher,
    start,
)

__all__ = [
    "__version__",
    "AsyncPhantom",
    "Config",
    "ConcurrentRunError",
    "DeadInstanceError",
    "InstanceState",
    "LifecycleError",
    "Phantom",
    "PhantomError",
    "PhantomLauncher",
    "ProtocolError",
    "ReadErrorKind",
    "RunTimeoutError",
    "ScriptError",
    "SendError",
    "SpawnError",
    "StreamReadError",
    "WrapperScript",
    "configure_logging",
    "get_config",
    "get_launcher",
    "load_config",
    "reload_config",
    "start",
]
