"""StreamReader / Mailbox unit tests.

Test coverage:
- Line classification (RES / log / stderr error / blank)
- Mailbox accept window, drop policy, stale drain and shutdown marker
- Reader termination: end-of-stream budget, closed descriptor, other errors
- Shutdown signal stops a reader at end-of-stream without an error
"""

from __future__ import annotations

import errno
import io
import os
import queue
import threading

import pytest

from phantom_bridge.errors import ReadErrorKind, StreamReadError
from phantom_bridge.runtime.reader import (
    ClassifiedLine,
    LineKind,
    Mailbox,
    StreamReader,
    classify_stderr_line,
    classify_stdout_line,
)


# =============================================================================
# Classification
# =============================================================================


class TestClassification:
    """Test line classification."""

    def test_result_line(self):
        item = classify_stdout_line('RES {"a": 1}')
        assert item == ClassifiedLine(LineKind.RESULT, '{"a": 1}', "stdout")

    def test_bare_result_prefix(self):
        """A bare RES is a result with an empty payload."""
        item = classify_stdout_line("RES")
        assert item is not None
        assert item.kind is LineKind.RESULT
        assert item.text == ""

    def test_payload_keeps_inner_spaces(self):
        item = classify_stdout_line('RES "a b  c"')
        assert item is not None
        assert item.text == '"a b  c"'

    @pytest.mark.parametrize(
        "line",
        ["[WAITING]", "RESULT 4", "RES0 4", " RES 4", "console: RES 4"],
    )
    def test_log_lines(self, line: str):
        """Anything not starting with 'RES ' is log output."""
        item = classify_stdout_line(line)
        assert item is not None
        assert item.kind is LineKind.LOG
        assert item.text == line

    @pytest.mark.parametrize("line", ["", "   ", "\t"])
    def test_blank_lines_ignored(self, line: str):
        assert classify_stdout_line(line) is None
        assert classify_stderr_line(line) is None

    def test_stderr_line_is_error(self):
        item = classify_stderr_line("Ooops")
        assert item == ClassifiedLine(LineKind.ERROR, "Ooops", "stderr")

    def test_stderr_res_line_is_still_error(self):
        item = classify_stderr_line("RES 4")
        assert item is not None
        assert item.kind is LineKind.ERROR


# =============================================================================
# Mailbox
# =============================================================================


def _result(text: str) -> ClassifiedLine:
    return ClassifiedLine(LineKind.RESULT, text, "stdout")


class TestMailbox:
    """Test the bounded hand-off."""

    def test_offer_rejected_when_not_open(self):
        mailbox = Mailbox()
        assert mailbox.offer(_result("1")) is False

    def test_offer_and_take(self):
        mailbox = Mailbox()
        assert mailbox.open() == []
        assert mailbox.offer(_result("1")) is True
        assert mailbox.take(timeout=1) == _result("1")

    def test_full_mailbox_drops(self):
        mailbox = Mailbox(maxsize=1)
        mailbox.open()
        assert mailbox.offer(_result("1")) is True
        assert mailbox.offer(_result("2")) is False

    def test_seal_stops_acceptance(self):
        mailbox = Mailbox()
        mailbox.open()
        mailbox.seal()
        assert mailbox.accepting is False
        assert mailbox.offer(_result("1")) is False

    def test_open_drains_stale_lines(self):
        mailbox = Mailbox()
        mailbox.open()
        mailbox.offer(_result("old"))
        mailbox.seal()

        stale = mailbox.open()

        assert stale == [_result("old")]
        with pytest.raises(queue.Empty):
            mailbox.take(timeout=0.05)

    def test_take_timeout(self):
        mailbox = Mailbox()
        mailbox.open()
        with pytest.raises(queue.Empty):
            mailbox.take(timeout=0.05)

    def test_close_wakes_blocked_take(self):
        mailbox = Mailbox()
        mailbox.open()
        received: list[ClassifiedLine] = []

        thread = threading.Thread(target=lambda: received.append(mailbox.take()))
        thread.start()
        mailbox.close()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert received[0].kind is LineKind.SHUTDOWN

    def test_close_replaces_pending_lines(self):
        mailbox = Mailbox()
        mailbox.open()
        mailbox.offer(_result("1"))
        mailbox.close()

        assert mailbox.take(timeout=1).kind is LineKind.SHUTDOWN

    def test_closed_mailbox_rejects_and_reports_shutdown(self):
        mailbox = Mailbox()
        mailbox.close()
        mailbox.close()

        assert mailbox.closed is True
        mailbox.open()
        assert mailbox.offer(_result("1")) is False
        assert mailbox.take(timeout=1).kind is LineKind.SHUTDOWN


# =============================================================================
# StreamReader
# =============================================================================


class _RaisingStream:
    """Stream whose readline() raises the given exception."""

    def __init__(self, exc: BaseException) -> None:
        self._exc = exc

    def readline(self) -> bytes:
        raise self._exc


def _start_reader(
    stream,
    mailbox: Mailbox,
    *,
    name: str = "stdout",
    stop_event: threading.Event | None = None,
    max_empty_reads: int = 3,
    on_log=None,
) -> tuple[StreamReader, list[StreamReadError | None], threading.Event]:
    closed: list[StreamReadError | None] = []
    done = threading.Event()

    def on_close(error: StreamReadError | None) -> None:
        closed.append(error)
        done.set()

    classify = classify_stdout_line if name == "stdout" else classify_stderr_line
    reader = StreamReader(
        name,
        stream,
        classify,
        mailbox,
        stop_event=stop_event or threading.Event(),
        on_close=on_close,
        on_log=on_log,
        max_empty_reads=max_empty_reads,
        empty_read_interval=0.001,
        label="test",
    )
    reader.start()
    return reader, closed, done


class TestStreamReader:
    """Test reader threads against in-memory and pipe streams."""

    def test_logs_and_results(self):
        mailbox = Mailbox()
        mailbox.open()
        logs: list[str] = []
        stream = io.BytesIO(b"[WAITING]\nconsole output\n\nRES 42\n")

        reader, closed, done = _start_reader(stream, mailbox, on_log=logs.append)
        assert done.wait(timeout=5)
        reader.join(timeout=5)

        assert logs == ["[WAITING]", "console output"]
        assert mailbox.take(timeout=1) == _result("42")

    def test_end_of_stream_after_budget(self):
        mailbox = Mailbox()
        reader, closed, done = _start_reader(io.BytesIO(b""), mailbox, max_empty_reads=4)

        assert done.wait(timeout=5)
        assert len(closed) == 1
        error = closed[0]
        assert isinstance(error, StreamReadError)
        assert error.kind is ReadErrorKind.END_OF_STREAM
        assert error.stream == "stdout"
        assert reader.error is error

    def test_stop_event_ends_without_error(self):
        mailbox = Mailbox()
        stop = threading.Event()
        stop.set()
        reader, closed, done = _start_reader(io.BytesIO(b""), mailbox, stop_event=stop)

        assert done.wait(timeout=5)
        assert closed == [None]

    def test_closed_descriptor(self):
        mailbox = Mailbox()
        stream = _RaisingStream(ValueError("I/O operation on closed file."))
        reader, closed, done = _start_reader(stream, mailbox)

        assert done.wait(timeout=5)
        assert closed[0] is not None
        assert closed[0].kind is ReadErrorKind.CLOSED_DESCRIPTOR

    def test_ebadf_is_closed_descriptor(self):
        mailbox = Mailbox()
        stream = _RaisingStream(OSError(errno.EBADF, "Bad file descriptor"))
        reader, closed, done = _start_reader(stream, mailbox)

        assert done.wait(timeout=5)
        assert closed[0] is not None
        assert closed[0].kind is ReadErrorKind.CLOSED_DESCRIPTOR

    def test_other_io_error(self):
        mailbox = Mailbox()
        stream = _RaisingStream(OSError(errno.EIO, "Input/output error"))
        reader, closed, done = _start_reader(stream, mailbox)

        assert done.wait(timeout=5)
        assert closed[0] is not None
        assert closed[0].kind is ReadErrorKind.OTHER

    def test_unclaimed_output_dropped(self, caplog: pytest.LogCaptureFixture):
        """Replies arriving while nobody waits are logged and dropped."""
        mailbox = Mailbox()
        stream = io.BytesIO(b"Ooops\n")

        with caplog.at_level("WARNING", logger="phantom_bridge.runtime.reader"):
            reader, closed, done = _start_reader(stream, mailbox, name="stderr")
            assert done.wait(timeout=5)

        assert "unclaimed stderr output" in caplog.text
        mailbox.open()
        with pytest.raises(queue.Empty):
            mailbox.take(timeout=0.05)

    def test_pipe_stream(self):
        """Read from a real OS pipe, including a split write."""
        read_fd, write_fd = os.pipe()
        stream = os.fdopen(read_fd, "rb")
        mailbox = Mailbox()
        mailbox.open()

        reader, closed, done = _start_reader(stream, mailbox, name="stderr")
        os.write(write_fd, b"Type")
        os.write(write_fd, b"Error: boom\n")

        item = mailbox.take(timeout=5)
        assert item == ClassifiedLine(LineKind.ERROR, "TypeError: boom", "stderr")

        os.close(write_fd)
        assert done.wait(timeout=5)
        assert closed[0] is not None
        assert closed[0].kind is ReadErrorKind.END_OF_STREAM
        stream.close()

    def test_invalid_utf8_replaced(self):
        mailbox = Mailbox()
        mailbox.open()
        stream = io.BytesIO(b"RES \"\xff\"\n")

        reader, closed, done = _start_reader(stream, mailbox)
        assert done.wait(timeout=5)

        assert mailbox.take(timeout=1).text == '"�"'

    def test_crlf_stripped(self):
        mailbox = Mailbox()
        mailbox.open()
        reader, closed, done = _start_reader(io.BytesIO(b"RES 1\r\n"), mailbox)
        assert done.wait(timeout=5)
        assert mailbox.take(timeout=1).text == "1"
