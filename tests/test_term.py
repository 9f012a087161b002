import errno
import io
import os
import pty
import termios
import threading
import time
import unittest
from unittest import mock

from fillmem.term import (
    CLEANED_UP,
    EDITING,
    MAX_LINE,
    REST,
    EditBusyError,
    EditSession,
    InputReader,
    SessionClosedError,
    SetupError,
    SignalObserver,
    TerminalDriver,
)

REDRAW = b"\r\x1b[0K"


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def _session(prompt="> ", sigterm=None):
    out = io.BytesIO()
    return EditSession(TerminalDriver(out), prompt=prompt, sigterm=sigterm), out


def _feed(session, data: bytes):
    for b in data:
        session.feed(b)


class HungUpTty(io.BytesIO):
    """Output that starts failing with EIO after `ok_writes` writes."""

    def __init__(self, ok_writes):
        super().__init__()
        self.ok_writes = ok_writes

    def write(self, data):
        if self.ok_writes <= 0:
            raise OSError(errno.EIO, "Input/output error")
        self.ok_writes -= 1
        return super().write(data)


class _Editor:
    """Runs session.line() on a background thread."""

    def __init__(self, session):
        self.session = session
        self.result = "unset"
        self.error = None
        self.thread = threading.Thread(target=self._run, daemon=True)

    def _run(self):
        try:
            self.result = self.session.line()
        except Exception as e:  # surfaced through self.error
            self.error = e

    def start(self):
        self.thread.start()
        assert _wait_for(lambda: self.session.state == EDITING)
        return self

    def join(self):
        self.thread.join(5.0)
        assert not self.thread.is_alive()
        return self.result


class TestLineEditing(unittest.TestCase):
    def test_grow_line_is_returned(self):
        session, out = _session()
        _feed(session, b"grow 5\r")
        self.assertEqual(session.line(), "grow 5")
        self.assertEqual(session.state, REST)
        self.assertEqual(out.getvalue(), b"> grow 5\r\n")

    def test_buffer_capped(self):
        session, _ = _session()
        _feed(session, b"x" * (MAX_LINE + 10) + b"\r")
        self.assertEqual(session.line(), "x" * MAX_LINE)

    def test_backspace_on_empty_buffer_is_noop(self):
        session, out = _session()
        _feed(session, b"\x7f\x7fab\x7f\r")
        self.assertEqual(session.line(), "a")
        self.assertEqual(out.getvalue(), b"> ab\b \b\r\n")

    def test_ctrl_u_clears_and_redraws(self):
        session, out = _session()
        _feed(session, b"abc\x15d\r")
        self.assertEqual(session.line(), "d")
        self.assertIn(REDRAW + b"> d", out.getvalue())

    def test_unrecognized_control_byte_is_logged_with_bell(self):
        session, out = _session()
        _feed(session, b"a\x1b\r")
        self.assertEqual(session.line(), "a")
        self.assertIn(
            REDRAW + b"unrecognized byte 0x1b\r\n" + REDRAW + b"> a\x07",
            out.getvalue(),
        )

    def test_consecutive_lines(self):
        session, _ = _session()
        _feed(session, b"touch\rgrow 1\r")
        self.assertEqual(session.line(), "touch")
        self.assertEqual(session.line(), "grow 1")

    def test_interrupted_read_is_retried(self):
        session, _ = _session()
        session.mark_interrupted()
        _feed(session, b"ok\r")
        self.assertEqual(session.line(), "ok")


class TestSessionEnd(unittest.TestCase):
    def test_ctrl_c_ends_session(self):
        session, _ = _session()
        _feed(session, b"gr\x03")
        self.assertIsNone(session.line())
        self.assertEqual(session.state, CLEANED_UP)
        self.assertFalse(session.take_ctrlc())

    def test_ctrl_c_while_editing(self):
        session, _ = _session()
        editor = _Editor(session).start()
        _feed(session, b"grow")
        session.feed(0x03)
        self.assertIsNone(editor.join())
        self.assertEqual(session.state, CLEANED_UP)

    def test_ctrl_d_ends_session(self):
        session, _ = _session()
        _feed(session, b"ab\x04")
        self.assertIsNone(session.line())
        self.assertEqual(session.state, CLEANED_UP)

    def test_eof_ends_session(self):
        session, _ = _session()
        session.mark_eof()
        self.assertIsNone(session.line())
        self.assertEqual(session.state, CLEANED_UP)

    def test_sigterm_ends_session(self):
        observer = SignalObserver()
        session, _ = _session(sigterm=observer)
        editor = _Editor(session).start()
        observer.on_signal(15, None)
        self.assertIsNone(editor.join())
        self.assertEqual(session.state, CLEANED_UP)

    def test_line_after_cleanup_raises(self):
        session, _ = _session()
        session.cleanup()
        with self.assertRaises(SessionClosedError):
            session.line()

    def test_write_error_cleans_up(self):
        out = HungUpTty(ok_writes=1)
        session = EditSession(TerminalDriver(out), prompt="> ")
        session.feed(ord("a"))
        with self.assertRaises(OSError):
            session.line()
        self.assertEqual(session.state, CLEANED_UP)
        self.assertEqual(out.getvalue(), b"> ")

        with mock.patch("builtins.print") as p:
            session.log("after hangup")
        p.assert_called_once_with("after hangup", flush=True)


class TestCtrlC(unittest.TestCase):
    def test_take_ctrlc_consumes_flag(self):
        session, out = _session()
        _feed(session, b"abc\x03")
        self.assertTrue(session.take_ctrlc())
        self.assertFalse(session.take_ctrlc())
        self.assertEqual(out.getvalue(), b"^C\r\n")

    def test_ctrl_c_drops_typed_ahead_bytes(self):
        session, _ = _session()
        _feed(session, b"abc\x03")
        self.assertTrue(session.take_ctrlc())
        _feed(session, b"xy\r")
        self.assertEqual(session.line(), "xy")

    def test_second_ctrl_c_drops_bytes_between(self):
        session, _ = _session()
        _feed(session, b"\x03ab\x03")
        self.assertTrue(session.take_ctrlc())
        _feed(session, b"\r")
        self.assertEqual(session.line(), "")


class TestLogging(unittest.TestCase):
    def test_log_at_rest_is_immediate(self):
        session, out = _session()
        session.log("hello")
        self.assertEqual(out.getvalue(), b"hello\r\n")

    def test_log_after_cleanup_prints(self):
        session, _ = _session()
        session.cleanup()
        with mock.patch("builtins.print") as p:
            session.log("bye")
        p.assert_called_once_with("bye", flush=True)

    def test_log_while_editing_redraws_prompt(self):
        session, out = _session()
        editor = _Editor(session).start()
        _feed(session, b"ab")
        self.assertTrue(_wait_for(lambda: session.buffer == "ab"))

        session.log("stat 1")
        self.assertTrue(_wait_for(lambda: b"stat 1" in out.getvalue()))
        _feed(session, b"\r")
        self.assertEqual(editor.join(), "ab")

        self.assertEqual(
            out.getvalue(),
            b"> ab" + REDRAW + b"stat 1\r\n" + REDRAW + b"> ab" + b"\r\n",
        )

    def test_two_loggers_in_slot_order(self):
        session, out = _session()
        editor = _Editor(session).start()
        _feed(session, b"g")
        self.assertTrue(_wait_for(lambda: session.buffer == "g"))

        first = threading.Thread(target=session.log, args=("first",))
        first.start()
        first.join(5.0)
        second = threading.Thread(target=session.log, args=("second",))
        second.start()
        second.join(5.0)

        self.assertTrue(_wait_for(lambda: b"second" in out.getvalue()))
        _feed(session, b"\r")
        self.assertEqual(editor.join(), "g")

        data = out.getvalue()
        self.assertLess(data.index(b"first"), data.index(b"second"))
        for msg in (b"first", b"second"):
            self.assertIn(REDRAW + msg + b"\r\n" + REDRAW + b"> g", data)

    def test_log_blocks_while_slot_full(self):
        session, out = _session()
        # Editing with nobody draining the slot.
        session._state = EDITING
        session.log("first")

        second = threading.Thread(target=session.log, args=("second",), daemon=True)
        with mock.patch("builtins.print") as p:
            second.start()
            time.sleep(0.1)
            self.assertTrue(second.is_alive())
            self.assertNotIn(b"first", out.getvalue())

            session.cleanup()
            second.join(5.0)
            self.assertFalse(second.is_alive())
        self.assertTrue(out.getvalue().startswith(b"\r\nfirst"))
        p.assert_called_once_with("second", flush=True)

    def test_blocked_logger_resumes_when_editor_drains(self):
        session, out = _session()
        editor = _Editor(session).start()
        with session._cond:
            # Hold the editor off so the slot stays full.
            session._pending_log = "first"
            second = threading.Thread(target=session.log, args=("second",), daemon=True)
            second.start()
            time.sleep(0.05)
        second.join(5.0)
        self.assertFalse(second.is_alive())
        self.assertTrue(_wait_for(lambda: b"second" in out.getvalue()))
        _feed(session, b"\r")
        self.assertEqual(editor.join(), "")
        data = out.getvalue()
        self.assertLess(data.index(b"first"), data.index(b"second"))

    def test_second_editor_fails(self):
        session, _ = _session()
        editor = _Editor(session).start()
        with self.assertRaises(EditBusyError):
            session.line()
        _feed(session, b"\r")
        self.assertEqual(editor.join(), "")


class TestCleanup(unittest.TestCase):
    def test_cleanup_restores_once(self):
        session, out = _session()
        driver = session._driver
        with mock.patch.object(driver, "restore", wraps=driver.restore) as restore:
            for _ in range(3):
                session.cleanup()
        self.assertEqual(restore.call_count, 1)
        self.assertEqual(out.getvalue(), b"\r\n")

    def test_concurrent_cleanup(self):
        session, out = _session()
        threads = [threading.Thread(target=session.cleanup) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5.0)
        self.assertEqual(session.state, CLEANED_UP)
        self.assertEqual(out.getvalue(), b"\r\n")


class TestTerminalDriver(unittest.TestCase):
    def test_pipe_is_not_a_terminal(self):
        r, w = os.pipe()
        try:
            with os.fdopen(w, "wb") as out:
                with self.assertRaises(SetupError):
                    TerminalDriver(out).start()
        finally:
            os.close(r)

    def test_raw_mode_and_single_restore(self):
        master, slave = pty.openpty()
        out = os.fdopen(slave, "wb", buffering=0)
        try:
            before = termios.tcgetattr(slave)
            driver = TerminalDriver(out)
            driver.start()
            self.assertTrue(driver.raw)

            lflag = termios.tcgetattr(slave)[3]
            self.assertFalse(lflag & termios.ECHO)
            self.assertFalse(lflag & termios.ICANON)
            self.assertFalse(lflag & termios.ISIG)

            with mock.patch("fillmem.term.termios.tcsetattr", wraps=termios.tcsetattr) as setattr_:
                self.assertTrue(driver.restore())
                self.assertFalse(driver.restore())
                self.assertFalse(driver.restore())
            self.assertEqual(setattr_.call_count, 1)
            self.assertFalse(driver.raw)
            self.assertEqual(termios.tcgetattr(slave)[3], before[3])
        finally:
            out.close()
            os.close(master)


class TestInputReader(unittest.TestCase):
    def test_bytes_then_eof(self):
        r, w = os.pipe()
        session, _ = _session()
        reader = InputReader(session, r)
        reader.start()
        try:
            os.write(w, b"hi\r")
            self.assertEqual(session.line(), "hi")
            os.close(w)
            w = None
            reader.join(5.0)
            self.assertFalse(reader.is_alive())
            self.assertIsNone(session.line())
        finally:
            if w is not None:
                os.close(w)
            os.close(r)

    def test_ctrl_c_flushes_queued_input(self):
        r, w = os.pipe()
        session, _ = _session()
        InputReader(session, r).start()
        try:
            os.write(w, b"abc\x03")
            self.assertTrue(_wait_for(session.take_ctrlc))
            os.write(w, b"xy\r")
            self.assertEqual(session.line(), "xy")
        finally:
            os.close(w)
            os.close(r)


if __name__ == "__main__":
    unittest.main()
