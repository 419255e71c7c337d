"""phantom-bridge 异常类。

所有异常都在触发它的调用方线程中同步抛出；读线程从不抛异常，
只把终止原因记录到实例上。
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

__all__ = [
    "PhantomError",
    "SpawnError",
    "SendError",
    "ReadErrorKind",
    "StreamReadError",
    "ProtocolError",
    "ScriptError",
    "DeadInstanceError",
    "LifecycleError",
    "RunTimeoutError",
    "ConcurrentRunError",
]


class PhantomError(Exception):
    """phantom-bridge 基础异常。"""
    pass


class SpawnError(PhantomError):
    """管道创建或进程启动失败（不可重试）。

    Attributes:
        argv: 启动时使用的完整命令行
    """

    def __init__(self, message: str, argv: Sequence[str] = ()) -> None:
        self.argv = list(argv)
        super().__init__(message)


class SendError(PhantomError):
    """写 stdin 失败，视为进程已死。"""
    pass


class ReadErrorKind(str, Enum):
    """读流终止原因。

    - END_OF_STREAM: 连续空读超过预算，流已关闭
    - CLOSED_DESCRIPTOR: 底层描述符已关闭（进程已不在）
    - OTHER: 其它 I/O 错误
    """

    END_OF_STREAM = "end_of_stream"
    CLOSED_DESCRIPTOR = "closed_descriptor"
    OTHER = "other"


class StreamReadError(PhantomError):
    """stdout/stderr 读线程的终止条件。

    Attributes:
        stream: 流名称（stdout/stderr）
        kind: 终止原因
    """

    def __init__(self, stream: str, kind: ReadErrorKind, detail: str = "") -> None:
        self.stream = stream
        self.kind = kind
        self.detail = detail
        message = f"{stream} reader stopped: {kind.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProtocolError(PhantomError):
    """RES 行的负载不是合法 JSON。

    Attributes:
        payload: 原始负载文本
    """

    def __init__(self, message: str, payload: str) -> None:
        self.payload = payload
        super().__init__(message)


class ScriptError(PhantomError):
    """被托管的代码抛出了异常，携带 stderr 上的原始文本。"""

    def __init__(self, text: str) -> None:
        self.text = text
        super().__init__(text)


class DeadInstanceError(PhantomError):
    """实例已关闭或已检测到进程死亡。"""
    pass


class LifecycleError(PhantomError):
    """等待/杀死进程失败，或优雅退出返回非零状态。

    Attributes:
        returncode: 进程退出码（未知时为 None）
    """

    def __init__(self, message: str, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class RunTimeoutError(PhantomError):
    """run() 在超时时间内没有收到任何结果。"""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"no reply from phantomjs within {timeout}s")


class ConcurrentRunError(PhantomError):
    """同一实例上有另一个 run() 正在进行。"""
    pass
