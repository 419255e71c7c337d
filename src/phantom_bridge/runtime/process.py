"""phantomjs process supervisor and line-protocol client.

This module provides:
- Process spawn with the shared wrapper script appended to the argv
- Two reader threads (stdout/stderr) feeding a bounded mailbox
- ``run()``: send one command and wait for exactly one of result/error/shutdown
- ``load()``: fire-and-forget evaluation in the hosted global context
- Exactly-once teardown (graceful exit, or bounded wait followed by kill)

Key design points:
- One command in flight per instance; callers serialize ``run()`` calls
- POSIX: start_new_session=True so a forced kill takes the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Teardown is a LIVE/BROKEN -> EXITING -> CLOSED transition under one lock

Wire protocol (newline-terminated, on the child's stdin):

    RUN <code>\\nEND      -> one reply: "RES <json>" on stdout or a line on stderr
    EVAL <code>\\nEND     -> no reply
    EVAL phantom.exit()\\nEND -> the child exits
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..config import Config, get_config
from ..errors import (
    ConcurrentRunError,
    DeadInstanceError,
    LifecycleError,
    PhantomError,
    ProtocolError,
    RunTimeoutError,
    ScriptError,
    SendError,
    SpawnError,
    StreamReadError,
)
from .reader import (
    ClassifiedLine,
    LineKind,
    Mailbox,
    StreamReader,
    classify_stderr_line,
    classify_stdout_line,
)
from .script import WrapperScript

__all__ = [
    "InstanceState",
    "Phantom",
    "PhantomLauncher",
    "get_launcher",
    "start",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

EXIT_COMMAND = "phantom.exit()"
END_MARKER = "END"

WAIT_POLL_INTERVAL = 0.05
READER_JOIN_TIMEOUT = 1.0

# Sentinel: use the configured run timeout
_CONFIG_TIMEOUT: Any = object()


class InstanceState(str, Enum):
    """Lifecycle of one phantomjs instance.

    - LIVE: accepting run()/load()
    - BROKEN: process or stream found dead; teardown still pending
    - EXITING: teardown in progress
    - CLOSED: process reaped, pipes closed, wrapper reference released
    """

    LIVE = "live"
    BROKEN = "broken"
    EXITING = "exiting"
    CLOSED = "closed"


def _build_subprocess_kwargs(config: Config) -> dict[str, Any]:
    """Build platform-specific Popen kwargs."""
    kwargs: dict[str, Any] = {"bufsize": config.buffer_bytes}

    if IS_WINDOWS:
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        # POSIX: start_new_session (equivalent to setsid)
        kwargs["start_new_session"] = True

    return kwargs


def _encode_command(verb: str, code: str) -> bytes:
    """Build the ``<verb> <code>`` / ``END`` envelope."""
    lines = code.split("\n")
    if any(line.rstrip("\r") == END_MARKER for line in lines[1:]):
        raise ValueError(f"code must not contain a bare {END_MARKER!r} line")
    return f"{verb} {code}\n{END_MARKER}\n".encode("utf-8")


class Phantom:
    """Handle to one running phantomjs process.

    Instances are created by ``PhantomLauncher.start()`` (or the module level
    ``start()``); the constructor expects an already-spawned process whose
    wrapper script reference has been acquired on its behalf.

    Example:
        with start("--web-security=no") as p:
            p.load("var a = 2;")
            assert p.run("function() { return a + 2; }") == 4
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        script: WrapperScript,
        config: Config,
        *,
        argv: list[str] | None = None,
        on_log: Callable[[str], None] | None = None,
    ) -> None:
        """
        Args:
            process: Spawned child with stdin/stdout/stderr pipes
            script: Wrapper script this instance holds one reference to
            config: Timeouts and reader settings
            argv: Command line used to start the child (for diagnostics)
            on_log: Optional callback for stdout log lines
        """
        if process.stdin is None or process.stdout is None or process.stderr is None:
            raise ValueError("process must be started with stdin, stdout and stderr pipes")

        self._process = process
        self._script = script
        self._config = config
        self._argv = list(argv or [])
        self._label = f"phantomjs[{process.pid}]"

        self._state = InstanceState.LIVE
        self._state_lock = threading.Lock()
        self._dead_reason: PhantomError | None = None
        self._teardown_error: PhantomError | None = None
        self._closed = threading.Event()
        self._force_requested = threading.Event()
        self._killed = False
        self._exit_writer: threading.Thread | None = None

        self._run_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._mailbox = Mailbox(config.mailbox_size)

        self._readers = [
            StreamReader(
                "stdout",
                process.stdout,
                classify_stdout_line,
                self._mailbox,
                stop_event=self._stop_event,
                on_close=self._on_reader_closed,
                on_log=on_log,
                max_empty_reads=config.max_empty_reads,
                empty_read_interval=config.empty_read_interval,
                label=self._label,
            ),
            StreamReader(
                "stderr",
                process.stderr,
                classify_stderr_line,
                self._mailbox,
                stop_event=self._stop_event,
                on_close=self._on_reader_closed,
                max_empty_reads=config.max_empty_reads,
                empty_read_interval=config.empty_read_interval,
                label=self._label,
            ),
        ]
        for reader in self._readers:
            reader.start()

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    @property
    def state(self) -> InstanceState:
        return self._state

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_alive(self) -> bool:
        """True while the instance accepts commands and the child is running."""
        return self._state is InstanceState.LIVE and self._process.poll() is None

    def set_max_read_times(self, count: int) -> None:
        """Change the consecutive empty-read budget of both readers.

        Non-positive values are ignored.
        """
        if count > 0:
            for reader in self._readers:
                reader.max_empty_reads = count

    # =========================================================================
    # Commands
    # =========================================================================

    def run(self, code: str, timeout: float | None = _CONFIG_TIMEOUT) -> Any:
        """Invoke a JavaScript function and wait for its outcome.

        Args:
            code: Function source, e.g. ``function() { return 2 + 2; }`` or
                ``function(done) { done(4); }`` for asynchronous results
            timeout: Seconds to wait for the reply (None or <= 0 = forever,
                default = ``Config.run_timeout``)

        Returns:
            The decoded JSON value of the ``RES`` reply

        Raises:
            DeadInstanceError: The instance is torn down or its process died
            ScriptError: The hosted function threw
            ProtocolError: The reply payload is not valid JSON
            RunTimeoutError: No reply within ``timeout`` (the instance is
                marked broken, since a late reply can no longer be attributed)
            ConcurrentRunError: Another run() is in flight on this instance
            SendError: Writing the command failed
        """
        self._ensure_live()
        if timeout is _CONFIG_TIMEOUT:
            timeout = self._config.run_timeout
        if timeout is not None and timeout <= 0:
            timeout = None

        if not self._run_lock.acquire(blocking=False):
            raise ConcurrentRunError("another run() is already in flight on this instance")
        try:
            for item in self._mailbox.open():
                logger.warning(f"{self._label} discarding stale {item.stream} output: {item.text!r}")
            try:
                self._send("RUN", code)
                reply = self._wait_reply(timeout)
            finally:
                self._mailbox.seal()
        finally:
            self._run_lock.release()

        return self._decode(reply)

    def load(self, code: str) -> None:
        """Evaluate ``code`` in the hosted global context without waiting.

        Raises:
            DeadInstanceError: The instance is torn down or its process died
            SendError: Writing the command failed
        """
        self._ensure_live()
        self._send("EVAL", code)

    def _send(self, verb: str, code: str) -> None:
        data = _encode_command(verb, code)
        stdin = self._process.stdin
        assert stdin is not None
        with self._write_lock:
            try:
                stdin.write(data)
                stdin.flush()
            except (OSError, ValueError) as e:
                error = SendError(
                    f"cannot send {verb} command: phantomjs instance might be dead ({e})"
                )
                self._mark_broken(error)
                raise error from e
        logger.debug(f"{self._label} sent {verb} ({len(data)} bytes)")

    def _wait_reply(self, timeout: float | None) -> ClassifiedLine:
        try:
            item = self._mailbox.take(timeout)
        except queue.Empty:
            assert timeout is not None
            error = RunTimeoutError(timeout)
            self._mark_broken(error)
            raise error from None

        if item.kind is LineKind.SHUTDOWN:
            raise self._dead_error()
        if item.kind is LineKind.ERROR:
            raise ScriptError(item.text)
        return item

    @staticmethod
    def _decode(reply: ClassifiedLine) -> Any:
        try:
            return json.loads(reply.text)
        except ValueError as e:
            raise ProtocolError(f"invalid RES payload: {e}", reply.text) from e

    # =========================================================================
    # Liveness
    # =========================================================================

    def _ensure_live(self) -> None:
        if self._state is not InstanceState.LIVE:
            raise self._dead_error()

    def _dead_error(self) -> DeadInstanceError:
        reason = self._dead_reason
        message = f"{self._label} is no longer running (state={self._state.value})"
        if reason is not None:
            message = f"{message}: {reason}"
        error = DeadInstanceError(message)
        error.__cause__ = reason
        return error

    def _mark_broken(self, reason: PhantomError) -> None:
        with self._state_lock:
            if self._state is InstanceState.LIVE:
                self._state = InstanceState.BROKEN
                self._dead_reason = reason
                logger.warning(f"{self._label} marked broken: {reason}")
        self._mailbox.close()

    def _on_reader_closed(self, error: StreamReadError | None) -> None:
        if error is None or self._stop_event.is_set():
            return
        self._mark_broken(error)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def exit(self) -> None:
        """Ask phantomjs to exit and wait for it to terminate.

        Idempotent: later calls wait for the first teardown and return its
        outcome.

        Raises:
            LifecycleError: Waiting failed or the process exited non-zero
        """
        self._teardown(force=False)

    def force_shutdown(self) -> None:
        """Ask phantomjs to exit, kill it if it is still running after
        ``Config.force_timeout`` seconds.

        If an ``exit()`` is already waiting on a hung process, this call
        makes it escalate to a kill after the same grace period.

        Raises:
            LifecycleError: The process could not be killed or reaped
        """
        self._force_requested.set()
        self._teardown(force=True)

    def _teardown(self, *, force: bool) -> None:
        with self._state_lock:
            owner = self._state not in (InstanceState.EXITING, InstanceState.CLOSED)
            previous = self._state
            if owner:
                self._state = InstanceState.EXITING

        if not owner:
            self._closed.wait()
            if self._teardown_error is not None:
                raise self._teardown_error
            return

        error: PhantomError | None = None
        try:
            self._shutdown_process(force=force, previous=previous)
        except LifecycleError as e:
            error = e
        finally:
            self._release_resources()
            with self._state_lock:
                self._state = InstanceState.CLOSED
            self._teardown_error = error
            self._closed.set()

        if error is not None:
            raise error

    def _shutdown_process(self, *, force: bool, previous: InstanceState) -> None:
        process = self._process
        logger.debug(f"{self._label} shutting down (force={force}, state={previous.value})")

        # Wake any blocked run() and let the readers stop at end-of-stream
        self._mailbox.close()
        self._stop_event.set()

        if process.poll() is not None:
            logger.debug(f"{self._label} already exited returncode={process.returncode}")
            return

        deadline = time.monotonic() + self._config.force_timeout if force else None

        # The write may block on a full pipe or behind another writer; the kill
        # deadline must not depend on it
        self._exit_writer = threading.Thread(
            target=self._send_exit_command,
            name=f"{self._label}-exit-writer",
            daemon=True,
        )
        self._exit_writer.start()

        returncode = self._wait_or_kill(deadline)

        # A non-zero status is only an error for an instance that was healthy
        if not force and not self._killed and returncode != 0 and previous is InstanceState.LIVE:
            raise LifecycleError(
                f"{self._label} exited with status {returncode}", returncode
            )
        logger.debug(f"{self._label} terminated returncode={returncode}")

    def _send_exit_command(self) -> None:
        try:
            self._send("EVAL", EXIT_COMMAND)
        except SendError as e:
            logger.debug(f"{self._label} exit command not delivered: {e}")

    def _wait_or_kill(self, deadline: float | None) -> int:
        """Wait for natural exit until ``deadline`` (None = until escalated)."""
        process = self._process
        try:
            while True:
                if deadline is None and self._force_requested.is_set():
                    deadline = time.monotonic() + self._config.force_timeout
                if deadline is None:
                    wait_for = WAIT_POLL_INTERVAL
                else:
                    wait_for = min(WAIT_POLL_INTERVAL, deadline - time.monotonic())
                if wait_for <= 0:
                    break
                try:
                    return process.wait(timeout=wait_for)
                except subprocess.TimeoutExpired:
                    continue

            logger.debug(f"{self._label} did not exit in time, killing")
            self._kill_process()
            try:
                return process.wait(timeout=self._config.kill_timeout)
            except subprocess.TimeoutExpired:
                raise LifecycleError(f"{self._label} did not exit after kill") from None
        except OSError as e:
            raise LifecycleError(f"{self._label} wait/kill failed: {e}") from e

    def _kill_process(self) -> None:
        """Send SIGKILL to the process group (Windows: TerminateProcess)."""
        process = self._process
        if process.poll() is not None:
            return
        self._killed = True

        if IS_WINDOWS:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            return

        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()

    def _release_resources(self) -> None:
        process = self._process
        self._stop_event.set()
        self._mailbox.close()

        # Once the child is gone a pending exit write fails with EPIPE
        if self._exit_writer is not None:
            self._exit_writer.join(timeout=READER_JOIN_TIMEOUT)

        if self._exit_writer is not None and self._exit_writer.is_alive():
            # close() would wait on the writer's buffer lock
            logger.warning(f"{self._label} exit command write still blocked, leaving stdin open")
        elif process.stdin is not None:
            try:
                process.stdin.close()
            except OSError as e:
                logger.debug(f"{self._label} error closing stdin: {e}")

        for reader in self._readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)

        for reader, stream in zip(self._readers, (process.stdout, process.stderr)):
            if reader.is_alive():
                # Still blocked in readline(): something else holds the pipe open
                logger.warning(f"{self._label} {reader.stream_name} reader still running after exit")
                continue
            if stream is not None:
                try:
                    stream.close()
                except OSError as e:
                    logger.debug(f"{self._label} error closing {reader.stream_name}: {e}")

        self._script.release()
        logger.debug(f"{self._label} resources released (wrapper refcount={self._script.refcount})")

    # =========================================================================
    # Context manager
    # =========================================================================

    def __enter__(self) -> "Phantom":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.exit()
        else:
            self.force_shutdown()

    def __repr__(self) -> str:
        return f"Phantom(pid={self.pid}, state={self._state.value})"


class PhantomLauncher:
    """Factory that owns the shared wrapper script.

    Every instance started by one launcher shares its ``WrapperScript``; the
    file lives as long as at least one of them is not torn down.

    Example:
        launcher = PhantomLauncher()
        p1 = launcher.start()
        p2 = launcher.start("--ignore-ssl-errors=true")
        ...
        p1.exit()
        p2.exit()   # wrapper file removed here
    """

    def __init__(
        self,
        config: Config | None = None,
        script: WrapperScript | None = None,
    ) -> None:
        """
        Args:
            config: Settings (default: a copy of the global config)
            script: Shared wrapper script (default: bundled wrapper.js)
        """
        self.config = dataclasses.replace(config or get_config())
        self.script = script if script is not None else WrapperScript()

    def set_max_buffer_size(self, size_kb: int) -> None:
        """Set the pipe buffer size (KB) for instances started afterwards.

        Non-positive values are ignored.
        """
        if size_kb > 0:
            self.config.buffer_size = size_kb

    def start(self, *args: str, on_log: Callable[[str], None] | None = None) -> Phantom:
        """Spawn a new phantomjs process.

        The argv is ``[binary, *config.default_args, *args, <wrapper path>]``.

        Raises:
            SpawnError: The wrapper script or the process could not be created
        """
        try:
            script_path = self.script.acquire()
        except OSError as e:
            raise SpawnError(f"cannot create wrapper script: {e}") from e

        argv = [self.config.binary, *self.config.default_args, *args, str(script_path)]
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_build_subprocess_kwargs(self.config),
            )
        except (OSError, ValueError) as e:
            self.script.release()
            raise SpawnError(f"failed to start {argv[0]}: {e}", argv) from e

        logger.debug(f"Started phantomjs pid={process.pid} argv={argv}")

        try:
            return Phantom(process, self.script, self.config, argv=argv, on_log=on_log)
        except BaseException:
            process.kill()
            process.wait()
            self.script.release()
            raise

    def __repr__(self) -> str:
        return f"PhantomLauncher(binary={self.config.binary}, script={self.script!r})"


# 全局 launcher（延迟创建）
_launcher: PhantomLauncher | None = None
_launcher_lock = threading.Lock()


def get_launcher() -> PhantomLauncher:
    """Return the process-wide default launcher."""
    global _launcher
    with _launcher_lock:
        if _launcher is None:
            _launcher = PhantomLauncher()
        return _launcher


def start(*args: str, on_log: Callable[[str], None] | None = None) -> Phantom:
    """Start a phantomjs instance with the default launcher."""
    return get_launcher().start(*args, on_log=on_log)
