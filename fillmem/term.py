"""
Raw-mode operator console with cross-thread log injection.

- TerminalDriver owns the output descriptor, switches it to raw mode and
  restores the saved attributes exactly once
- InputReader feeds bytes from stdin into the EditSession, one at a time
- EditSession is the line editor: one caller edits at a time while any
  thread may log() status lines without tearing the prompt
- SignalObserver turns SIGTERM into a flag the editor polls
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import sys
import termios
import threading
import tty
from collections import deque
from typing import BinaryIO, Deque, Optional

logger = logging.getLogger(__name__)


# ----------------------------
# Constants
# ----------------------------

MAX_LINE = 60
WAIT_TIMEOUT_S = 0.25

CTRL_C = 0x03
CTRL_D = 0x04
BELL = 0x07
CR = 0x0D
CTRL_U = 0x15
DEL = 0x7F

CLEAR_LINE = "\r\x1b[0K"
NEWLINE = "\r\n"
RUBOUT = "\b \b"

# EditSession states
REST = "rest"
EDITING = "editing"
CLEANED_UP = "cleaned-up"


class TermError(RuntimeError):
    pass


class SetupError(TermError):
    """The output is not a terminal, or the OS refused the mode change."""


class EditBusyError(TermError):
    """A second thread tried to edit while a line() call was in flight."""


class SessionClosedError(TermError):
    pass


# ----------------------------
# Terminal driver
# ----------------------------

class TerminalDriver:
    """Serialized writer for the terminal plus raw-mode lifecycle."""

    def __init__(self, out: BinaryIO):
        self._out = out
        self._lock = threading.Lock()
        self._saved_tattr: Optional[list] = None
        self._restored = False

    def start(self) -> None:
        try:
            fd = self._out.fileno()
        except (AttributeError, OSError, ValueError) as exc:
            raise SetupError(f"output has no file descriptor: {exc}") from exc
        if not os.isatty(fd):
            raise SetupError("output is not a terminal")
        with self._lock:
            try:
                self._saved_tattr = termios.tcgetattr(fd)
                tty.setraw(fd, termios.TCSANOW)
                termios.tcflush(fd, termios.TCIOFLUSH)
            except termios.error as exc:
                if self._saved_tattr is not None:
                    termios.tcsetattr(fd, termios.TCSANOW, self._saved_tattr)
                    self._saved_tattr = None
                raise SetupError(f"could not enter raw mode: {exc}") from exc
        logger.info("terminal in raw mode (fd %d)", fd)

    @property
    def raw(self) -> bool:
        return self._saved_tattr is not None and not self._restored

    def emit(self, data) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8", "replace")
        with self._lock:
            self._out.write(data)
            self._out.flush()

    def restore(self) -> bool:
        """Terminate the current line and put the saved attributes back.

        Returns False when a previous call already did it.
        """
        with self._lock:
            if self._restored:
                return False
            self._restored = True
            try:
                self._out.write(NEWLINE.encode())
                self._out.flush()
            except (OSError, ValueError):
                pass
            if self._saved_tattr is not None:
                try:
                    termios.tcsetattr(self._out.fileno(), termios.TCSADRAIN, self._saved_tattr)
                except (termios.error, OSError, ValueError) as exc:
                    logger.warning("could not restore terminal attributes: %s", exc)
            return True


# ----------------------------
# SIGTERM observer
# ----------------------------

class SignalObserver:
    """Flag set from a signal handler and only ever read afterwards."""

    def __init__(self) -> None:
        self._delivered = threading.Event()

    def install(self, signum: int = signal.SIGTERM) -> None:
        signal.signal(signum, self.on_signal)

    def on_signal(self, *_) -> None:
        # No terminal I/O in signal context; the editor notices within one wait.
        self._delivered.set()

    @property
    def delivered(self) -> bool:
        return self._delivered.is_set()


# ----------------------------
# Edit session
# ----------------------------

class EditSession:
    """
    Line editor shared between the editing thread, the input reader and any
    number of logging threads. All of the state below is guarded by one
    condition variable; terminal output goes through the driver's own lock.
    """

    def __init__(self, driver: TerminalDriver, prompt: str = "fillmem> ",
                 sigterm: Optional[SignalObserver] = None):
        self._driver = driver
        self._cond = threading.Condition(threading.Lock())
        self._sigterm = sigterm or SignalObserver()

        self.prompt = prompt
        self._state = REST
        self._buffer: list[str] = []
        self._input: Deque[int] = deque()
        self._pending_log: Optional[str] = None
        self._eof = False
        self._interrupted = False
        self._ctrlc = False

    @property
    def state(self) -> str:
        with self._cond:
            return self._state

    @property
    def buffer(self) -> str:
        with self._cond:
            return "".join(self._buffer)

    # --- producer side (InputReader)

    def feed(self, byte: int) -> None:
        with self._cond:
            if byte == CTRL_C:
                # Interrupt wins over anything typed ahead of it.
                self._input.clear()
                self._ctrlc = True
            else:
                self._input.append(byte)
            self._cond.notify_all()

    def mark_eof(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def mark_interrupted(self) -> None:
        with self._cond:
            self._interrupted = True
            self._cond.notify_all()

    # --- logging

    def log(self, msg: str) -> None:
        with self._cond:
            while True:
                if self._state == REST:
                    self._driver.emit(msg + NEWLINE)
                    return
                if self._state == CLEANED_UP:
                    print(msg, flush=True)
                    return
                if self._pending_log is None:
                    self._pending_log = msg
                    self._cond.notify_all()
                    return
                self._cond.wait()

    def take_ctrlc(self) -> bool:
        with self._cond:
            if not self._ctrlc:
                return False
            self._ctrlc = False
        self.log("^C")
        return True

    # --- editing

    def line(self) -> Optional[str]:
        """Read one line from the operator.

        Returns the submitted text, or None once the session has ended
        (Ctrl-C, Ctrl-D, end of input or SIGTERM). The terminal has been
        restored by the time None is returned.
        """
        with self._cond:
            if self._state == EDITING:
                raise EditBusyError("another thread is already editing")
            if self._state == CLEANED_UP:
                raise SessionClosedError("terminal already cleaned up")
            self._buffer.clear()
            self._state = EDITING
            self._cond.notify_all()

        try:
            with self._cond:
                self._driver.emit(self.prompt)
                text = self._edit()
        except BaseException:
            # Never leave the session in EDITING: loggers would park forever.
            self.cleanup()
            raise

        if text is None:
            self.cleanup()
        return text

    def _edit(self) -> Optional[str]:
        while True:
            if self._sigterm.delivered:
                logger.info("SIGTERM delivered; ending session")
                return None

            if self._ctrlc:
                self._ctrlc = False
                return None

            if self._interrupted:
                self._interrupted = False
                continue

            if self._eof:
                return None

            if self._pending_log is not None:
                msg, self._pending_log = self._pending_log, None
                self._cond.notify_all()
                self._log_while_editing(msg)
                continue

            if not self._input:
                self._cond.wait(WAIT_TIMEOUT_S)
                continue

            b = self._input.popleft()
            self._cond.notify_all()

            if 0x20 <= b <= 0x7E:
                if len(self._buffer) < MAX_LINE:
                    self._buffer.append(chr(b))
                    self._driver.emit(chr(b))
            elif b in (CTRL_C, CTRL_D):
                return None
            elif b == CR:
                text = "".join(self._buffer)
                self._buffer.clear()
                self._state = REST
                self._cond.notify_all()
                self._driver.emit(NEWLINE)
                self._flush_pending()
                return text
            elif b == DEL:
                if self._buffer:
                    self._buffer.pop()
                    self._driver.emit(RUBOUT)
            elif b == CTRL_U:
                self._buffer.clear()
                self._redraw_prompt()
            else:
                self._log_while_editing(f"unrecognized byte 0x{b:02x}")
                self._driver.emit(chr(BELL))

    def _redraw_prompt(self) -> None:
        self._driver.emit(CLEAR_LINE + self.prompt + "".join(self._buffer))

    def _log_while_editing(self, msg: str) -> None:
        # Back to column 0, wipe the prompt, print the message, then put the
        # prompt and the partial line back underneath it.
        self._driver.emit(CLEAR_LINE + msg + NEWLINE)
        self._redraw_prompt()

    def _flush_pending(self) -> None:
        if self._pending_log is not None:
            msg, self._pending_log = self._pending_log, None
            self._driver.emit(msg + NEWLINE)
            self._cond.notify_all()

    # --- teardown

    def cleanup(self) -> None:
        with self._cond:
            if self._state == CLEANED_UP:
                return
            if self._pending_log is not None:
                msg, self._pending_log = self._pending_log, None
                try:
                    self._driver.emit(NEWLINE + msg)
                except (OSError, ValueError) as exc:
                    logger.warning("dropped pending log %r: %s", msg, exc)
            self._driver.restore()
            self._state = CLEANED_UP
            self._cond.notify_all()
        logger.info("terminal restored")


# ----------------------------
# Input reader
# ----------------------------

class InputReader:
    """Blocking one-byte reads from stdin, forwarded to the session."""

    def __init__(self, session: EditSession, fd: int):
        self._session = session
        self._fd = fd
        self._thread = threading.Thread(target=self._run, name="stdin", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        while True:
            try:
                ch = os.read(self._fd, 1)
            except InterruptedError:
                self._session.mark_interrupted()
                continue
            except OSError as exc:
                logger.warning("stdin read failed: %s", exc)
                self._session.mark_eof()
                return
            if not ch:
                logger.info("stdin closed")
                self._session.mark_eof()
                return
            self._session.feed(ch[0])


def start_terminal(prompt: str = "fillmem> ", stdin: Optional[BinaryIO] = None,
                   stdout: Optional[BinaryIO] = None) -> EditSession:
    """Enter raw mode and start reading input.

    Must run on the main thread so the SIGTERM handler can be installed.
    Raises SetupError if stdout is not a usable terminal.
    """
    stdin = stdin if stdin is not None else sys.stdin.buffer
    stdout = stdout if stdout is not None else sys.stdout.buffer

    sigterm = SignalObserver()
    sigterm.install(signal.SIGTERM)

    driver = TerminalDriver(stdout)
    driver.start()

    session = EditSession(driver, prompt=prompt, sigterm=sigterm)
    atexit.register(session.cleanup)

    InputReader(session, stdin.fileno()).start()
    return session


__all__ = [
    "MAX_LINE",
    "REST",
    "EDITING",
    "CLEANED_UP",
    "TermError",
    "SetupError",
    "EditBusyError",
    "SessionClosedError",
    "TerminalDriver",
    "SignalObserver",
    "EditSession",
    "InputReader",
    "start_terminal",
]
