"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from phantom_bridge.config import Config  # noqa: E402
from phantom_bridge.runtime import Phantom, PhantomLauncher, WrapperScript  # noqa: E402

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"

# 用 Python 实现同一行协议的假 phantomjs
FAKE_PHANTOM_PATH = FIXTURES_DIR / "fake_phantom.py"


@pytest.fixture
def fake_config() -> Config:
    """启动假 phantomjs 的配置（短超时）。"""
    return Config(
        binary=sys.executable,
        default_args=["-u", str(FAKE_PHANTOM_PATH)],
        run_timeout=10.0,
        force_timeout=0.5,
        kill_timeout=2.0,
        max_empty_reads=5,
        empty_read_interval=0.01,
    )


@pytest.fixture
def wrapper_script(tmp_path: Path) -> WrapperScript:
    """写到临时目录的 wrapper 脚本。"""
    return WrapperScript(b"// test wrapper\n", directory=tmp_path)


@pytest.fixture
def launcher(fake_config: Config, wrapper_script: WrapperScript) -> PhantomLauncher:
    """使用假 phantomjs 的 launcher。"""
    return PhantomLauncher(fake_config, wrapper_script)


@pytest.fixture
def phantom(launcher: PhantomLauncher) -> Iterator[Phantom]:
    """已启动的实例，测试结束后强制关闭。"""
    instance = launcher.start()
    try:
        yield instance
    finally:
        instance.force_shutdown()
