"""Background line readers for the phantomjs stdout/stderr pipes.

Each output stream gets one daemon thread that performs blocking
``readline()`` calls, classifies every line, and forwards replies into a
bounded ``Mailbox`` shared with the caller currently inside ``run()``.

Line classification:
- stdout ``RES <payload>``  -> RESULT (payload is JSON text)
- any other stdout line     -> LOG (logged, never completes a run)
- any stderr line           -> ERROR (the hosted error text)
- blank lines are ignored on both streams

Delivery policy: the mailbox only accepts lines while a ``run()`` is
waiting and has room. Everything else is logged as unclaimed output and
dropped instead of being buffered.
"""

from __future__ import annotations

import errno
import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import IO

from ..errors import ReadErrorKind, StreamReadError

__all__ = [
    "RESULT_PREFIX",
    "ClassifiedLine",
    "LineKind",
    "Mailbox",
    "StreamReader",
    "classify_stderr_line",
    "classify_stdout_line",
]

logger = logging.getLogger(__name__)

RESULT_PREFIX = "RES"


class LineKind(str, Enum):
    """Classification of one output line."""

    RESULT = "result"
    LOG = "log"
    ERROR = "error"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ClassifiedLine:
    """A line read from one of the output streams.

    Attributes:
        kind: Line classification
        text: RES payload for RESULT, the raw line otherwise
        stream: Stream name the line came from
    """

    kind: LineKind
    text: str
    stream: str = ""


SHUTDOWN_MARKER = ClassifiedLine(LineKind.SHUTDOWN, "", "")


def classify_stdout_line(line: str) -> ClassifiedLine | None:
    """Classify a stdout line; returns None for blank lines."""
    if not line.strip():
        return None
    if line == RESULT_PREFIX:
        return ClassifiedLine(LineKind.RESULT, "", "stdout")
    if line.startswith(RESULT_PREFIX + " "):
        return ClassifiedLine(LineKind.RESULT, line[len(RESULT_PREFIX) + 1:], "stdout")
    return ClassifiedLine(LineKind.LOG, line, "stdout")


def classify_stderr_line(line: str) -> ClassifiedLine | None:
    """Classify a stderr line; every non-blank line is an error reply."""
    if not line.strip():
        return None
    return ClassifiedLine(LineKind.ERROR, line, "stderr")


class Mailbox:
    """Bounded hand-off between the reader threads and one ``run()`` call.

    Lifecycle per invocation: ``open()`` drains stale lines and starts
    accepting, readers ``offer()``, the caller ``take()``s one line and then
    ``seal()``s. ``close()`` is one-shot: it stops acceptance for good and
    posts a shutdown marker so a blocked ``take()`` returns immediately.
    """

    def __init__(self, maxsize: int = 1) -> None:
        self._queue: queue.Queue[ClassifiedLine] = queue.Queue(maxsize=max(1, maxsize))
        self._lock = threading.Lock()
        self._accepting = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def accepting(self) -> bool:
        return self._accepting

    def open(self) -> list[ClassifiedLine]:
        """Start accepting lines for a new invocation.

        Returns:
            Stale lines left over from a previous invocation (discarded)
        """
        with self._lock:
            stale = self._drain()
            if not self._closed:
                self._accepting = True
            else:
                # Keep the marker visible to take()
                self._queue.put_nowait(SHUTDOWN_MARKER)
            return stale

    def seal(self) -> None:
        """Stop accepting lines once the invocation has its outcome."""
        with self._lock:
            self._accepting = False

    def offer(self, item: ClassifiedLine) -> bool:
        """Non-blocking delivery from a reader thread.

        Returns:
            False if nobody is waiting or the mailbox is full
        """
        with self._lock:
            if self._closed or not self._accepting:
                return False
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                return False
            return True

    def take(self, timeout: float | None = None) -> ClassifiedLine:
        """Block until a line (or the shutdown marker) arrives.

        Raises:
            queue.Empty: If ``timeout`` elapsed first
        """
        return self._queue.get(timeout=timeout)

    def close(self) -> None:
        """Raise the shutdown signal. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._accepting = False
            self._drain()
            self._queue.put_nowait(SHUTDOWN_MARKER)

    def _drain(self) -> list[ClassifiedLine]:
        drained: list[ClassifiedLine] = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except queue.Empty:
                return drained


class StreamReader(threading.Thread):
    """Daemon thread reading one output stream line by line.

    The loop ends when:
    - the stream reports end-of-stream ``max_empty_reads`` times in a row
      (immediately once ``stop_event`` is set)
    - the underlying descriptor turns out to be closed
    - any other I/O error occurs

    In every case ``on_close`` is called exactly once, with a
    ``StreamReadError`` describing the condition, or None when the reader
    stopped because shutdown was requested.
    """

    def __init__(
        self,
        name: str,
        stream: IO[bytes],
        classify: Callable[[str], ClassifiedLine | None],
        mailbox: Mailbox,
        *,
        stop_event: threading.Event,
        on_close: Callable[[StreamReadError | None], None] | None = None,
        on_log: Callable[[str], None] | None = None,
        max_empty_reads: int = 100,
        empty_read_interval: float = 0.01,
        label: str = "phantomjs",
    ) -> None:
        super().__init__(name=f"{label}-{name}-reader", daemon=True)
        self.stream_name = name
        self.max_empty_reads = max_empty_reads
        self.empty_read_interval = empty_read_interval
        self._stream = stream
        self._classify = classify
        self._mailbox = mailbox
        self._stop_event = stop_event
        self._on_close = on_close
        self._on_log = on_log
        self._label = label
        self.error: StreamReadError | None = None

    def run(self) -> None:
        error: StreamReadError | None = None
        try:
            error = self._read_loop()
        finally:
            self.error = error
            if error is not None:
                logger.debug(f"{self._label} {error}")
            if self._on_close:
                try:
                    self._on_close(error)
                except Exception as e:
                    logger.warning(f"Error in {self.stream_name} close callback: {e}")

    def _read_loop(self) -> StreamReadError | None:
        empty_reads = 0
        while True:
            try:
                raw = self._stream.readline()
            except ValueError as e:
                # Raised by io objects once they have been closed
                return self._stopped_or(ReadErrorKind.CLOSED_DESCRIPTOR, str(e))
            except OSError as e:
                kind = (
                    ReadErrorKind.CLOSED_DESCRIPTOR
                    if e.errno == errno.EBADF
                    else ReadErrorKind.OTHER
                )
                return self._stopped_or(kind, str(e))

            if not raw:
                if self._stop_event.is_set():
                    return None
                empty_reads += 1
                if empty_reads >= self.max_empty_reads:
                    return StreamReadError(
                        self.stream_name,
                        ReadErrorKind.END_OF_STREAM,
                        f"{empty_reads} consecutive empty reads",
                    )
                self._stop_event.wait(self.empty_read_interval)
                continue

            empty_reads = 0
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            item = self._classify(line)
            if item is not None:
                self._dispatch(item)

    def _stopped_or(self, kind: ReadErrorKind, detail: str) -> StreamReadError | None:
        if self._stop_event.is_set():
            return None
        return StreamReadError(self.stream_name, kind, detail)

    def _dispatch(self, item: ClassifiedLine) -> None:
        if item.kind is LineKind.LOG:
            logger.info(f"{self._label} {item.text}")
            if self._on_log:
                try:
                    self._on_log(item.text)
                except Exception as e:
                    logger.warning(f"Error in log callback: {e}")
            return

        if not self._mailbox.offer(item):
            logger.warning(
                f"{self._label} unclaimed {self.stream_name} output dropped: {item.text!r}"
            )
