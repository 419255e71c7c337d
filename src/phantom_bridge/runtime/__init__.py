"""Runtime module for the phantomjs process and its line protocol.

This module provides the process supervisor, the stdout/stderr reader
threads, the shared wrapper script and an anyio-based async facade.
"""

from __future__ import annotations

from .aio import AsyncPhantom
from .process import InstanceState, Phantom, PhantomLauncher, get_launcher, start
from .reader import ClassifiedLine, LineKind, Mailbox, StreamReader
from .script import WrapperScript

__all__ = [
    "AsyncPhantom",
    "ClassifiedLine",
    "InstanceState",
    "LineKind",
    "Mailbox",
    "Phantom",
    "PhantomLauncher",
    "StreamReader",
    "WrapperScript",
    "get_launcher",
    "start",
]
