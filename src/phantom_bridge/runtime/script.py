"""Reference-counted companion script shared by every phantomjs instance.

The script file is created when the first instance acquires it and removed
when the last instance releases it. Its content is supplied by the caller
(by default the ``wrapper.js`` shipped in ``phantom_bridge/data``) and is
otherwise opaque to this module.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from importlib import resources
from pathlib import Path

__all__ = [
    "WrapperScript",
    "default_wrapper_source",
]

logger = logging.getLogger(__name__)

WRAPPER_PREFIX = "phantom-bridge-wrapper-"
WRAPPER_SUFFIX = ".js"

ScriptSource = Callable[[], bytes]


def default_wrapper_source() -> bytes:
    """Return the bundled ``wrapper.js`` companion script."""
    return resources.files("phantom_bridge").joinpath("data/wrapper.js").read_bytes()


class WrapperScript:
    """On-disk companion script with a live-instance counter.

    The file exists exactly while ``refcount > 0``: it is written on the
    0 -> 1 transition and unlinked on the 1 -> 0 transition. All counter and
    filesystem mutations happen under one lock.

    Example:
        script = WrapperScript()
        path = script.acquire()   # file created
        ...
        script.release()          # file removed
    """

    def __init__(
        self,
        source: ScriptSource | bytes | None = None,
        *,
        directory: str | os.PathLike[str] | None = None,
    ) -> None:
        """
        Args:
            source: Script bytes, or a callable producing them on first acquire
            directory: Where to create the file (None = system temp dir)
        """
        if source is None:
            source = default_wrapper_source
        self._source = source
        self._directory = os.fspath(directory) if directory is not None else None
        self._lock = threading.Lock()
        self._refcount = 0
        self._path: Path | None = None

    @property
    def refcount(self) -> int:
        """Number of live instances depending on the file."""
        with self._lock:
            return self._refcount

    @property
    def path(self) -> Path | None:
        """Current file path, or None while nobody holds the script."""
        with self._lock:
            return self._path

    def acquire(self) -> Path:
        """Register one more dependent instance and return the file path.

        Raises:
            OSError: If the file cannot be created. The counter is left untouched.
        """
        with self._lock:
            if self._refcount == 0:
                self._path = self._create()
                logger.debug(f"Created wrapper script {self._path}")
            self._refcount += 1
            assert self._path is not None
            return self._path

    def release(self) -> None:
        """Drop one dependent instance; removes the file on the last release."""
        with self._lock:
            if self._refcount == 0:
                logger.warning("WrapperScript.release() called with no live instances")
                return
            self._refcount -= 1
            if self._refcount > 0:
                return
            path, self._path = self._path, None

            if path is None:
                return
            try:
                path.unlink()
                logger.debug(f"Removed wrapper script {path}")
            except FileNotFoundError:
                logger.debug(f"Wrapper script already gone: {path}")
            except OSError as e:
                logger.warning(f"Failed to remove wrapper script {path}: {e}")

    @contextmanager
    def lease(self) -> Iterator[Path]:
        """Hold the script for the duration of a ``with`` block."""
        path = self.acquire()
        try:
            yield path
        finally:
            self.release()

    def _create(self) -> Path:
        data = self._source() if callable(self._source) else self._source
        fd, name = tempfile.mkstemp(
            prefix=WRAPPER_PREFIX,
            suffix=WRAPPER_SUFFIX,
            dir=self._directory,
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except BaseException:
            Path(name).unlink(missing_ok=True)
            raise
        return Path(name)

    def __repr__(self) -> str:
        return f"WrapperScript(refcount={self._refcount}, path={self._path})"
