"""交互式入口：启动一个 phantomjs 实例并逐行执行输入。

每一行输入都作为函数源码交给 run()，结果以 JSON 打印；
以 ``:load `` 开头的行交给 load()。EOF 时优雅退出，Ctrl+C 强制关闭。

用法:
    python -m phantom_bridge [phantomjs 参数...]
"""

from __future__ import annotations

import json
import logging
import sys
from typing import TextIO

from .config import get_config
from .errors import PhantomError, ScriptError
from .logging_setup import configure_logging
from .runtime import Phantom, PhantomLauncher

__all__ = ["main", "repl"]

logger = logging.getLogger(__name__)

LOAD_PREFIX = ":load "


def repl(phantom: Phantom, stdin: TextIO, stdout: TextIO) -> None:
    """读取 stdin 直到 EOF，把每一行发送给 phantom。

    ScriptError 只打印，不中断循环；其它 PhantomError 向上抛出。
    """
    for raw in stdin:
        line = raw.strip()
        if not line:
            continue
        if line.startswith(LOAD_PREFIX):
            phantom.load(line[len(LOAD_PREFIX):])
            continue
        try:
            result = phantom.run(line)
        except ScriptError as e:
            print(f"error: {e.text}", file=stdout, flush=True)
            continue
        print(json.dumps(result, ensure_ascii=False), file=stdout, flush=True)


def main(argv: list[str] | None = None) -> int:
    """主入口点。"""
    args = sys.argv[1:] if argv is None else argv
    config = get_config()
    configure_logging(config)

    launcher = PhantomLauncher(config)
    try:
        phantom = launcher.start(*args)
    except PhantomError as e:
        logger.error(f"Cannot start phantomjs: {e}")
        return 1

    try:
        repl(phantom, sys.stdin, sys.stdout)
    except KeyboardInterrupt:
        logger.info("Interrupted, forcing shutdown")
        phantom.force_shutdown()
        return 130
    except PhantomError as e:
        logger.error(f"phantomjs session failed: {e}")
        phantom.force_shutdown()
        return 1

    try:
        phantom.exit()
    except PhantomError as e:
        logger.error(f"phantomjs did not exit cleanly: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
