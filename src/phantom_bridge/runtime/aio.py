"""Async facade over ``Phantom`` for asyncio/trio applications.

The blocking calls run in anyio worker threads; an ``anyio.Lock`` keeps
one command in flight per instance, which is the only mode the line
protocol supports.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import Any

import anyio
import anyio.to_thread

from .process import _CONFIG_TIMEOUT, Phantom, PhantomLauncher, get_launcher

__all__ = ["AsyncPhantom"]

logger = logging.getLogger(__name__)


class AsyncPhantom:
    """Async wrapper around one phantomjs instance.

    Example:
        async with await AsyncPhantom.start() as p:
            await p.load("var a = 2;")
            value = await p.run("function() { return a; }")
    """

    def __init__(self, phantom: Phantom) -> None:
        self._phantom = phantom
        self._lock = anyio.Lock()

    @classmethod
    async def start(
        cls,
        *args: str,
        launcher: PhantomLauncher | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> "AsyncPhantom":
        """Spawn phantomjs in a worker thread.

        Raises:
            SpawnError: The process could not be started
        """
        launcher = launcher or get_launcher()
        phantom = await anyio.to_thread.run_sync(
            functools.partial(launcher.start, *args, on_log=on_log)
        )
        return cls(phantom)

    @property
    def phantom(self) -> Phantom:
        """The underlying synchronous handle."""
        return self._phantom

    async def run(self, code: str, timeout: float | None = _CONFIG_TIMEOUT) -> Any:
        """See ``Phantom.run``."""
        async with self._lock:
            return await anyio.to_thread.run_sync(
                functools.partial(self._phantom.run, code, timeout)
            )

    async def load(self, code: str) -> None:
        """See ``Phantom.load``."""
        async with self._lock:
            await anyio.to_thread.run_sync(self._phantom.load, code)

    async def exit(self) -> None:
        """See ``Phantom.exit``."""
        await anyio.to_thread.run_sync(self._phantom.exit)

    async def force_shutdown(self) -> None:
        """See ``Phantom.force_shutdown``.

        Not serialized with ``run()``: a blocked run is woken with
        ``DeadInstanceError``. Shielded so a cancelled caller cannot leave
        the process running.
        """
        with anyio.CancelScope(shield=True):
            await anyio.to_thread.run_sync(self._phantom.force_shutdown)

    async def __aenter__(self) -> "AsyncPhantom":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.exit()
        else:
            logger.debug(f"Leaving AsyncPhantom block with {exc_type.__name__}, forcing shutdown")
            await self.force_shutdown()

    def __repr__(self) -> str:
        return f"AsyncPhantom({self._phantom!r})"
