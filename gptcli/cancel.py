"""Cancellation token and the Esc-key listener that sets it."""

import os
import sys
import threading
import time
from contextlib import contextmanager

_IS_WINDOWS = sys.platform == "win32"
_ESC = "\x1b"


class CancelToken:
    """Set once by the listener (or Ctrl-C); polled by the transport."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


def _poll_windows(token: CancelToken, stop: threading.Event) -> None:
    import msvcrt

    while not stop.is_set() and not token.cancelled:
        if msvcrt.kbhit():
            ch = msvcrt.getch()
            if ch == b"\x1b":
                # Bare Esc vs. the start of an escape sequence
                time.sleep(0.05)
                if not msvcrt.kbhit():
                    token.cancel()
                    return
                while msvcrt.kbhit():
                    msvcrt.getch()
        time.sleep(0.05)


def _poll_posix(token: CancelToken, stop: threading.Event, fd: int) -> None:
    import select
    import termios
    import tty

    old_settings = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        while not stop.is_set() and not token.cancelled:
            ready, _, _ = select.select([fd], [], [], 0.1)
            if not ready:
                continue
            ch = os.read(fd, 1).decode(errors="ignore")
            if ch != _ESC:
                continue
            more, _, _ = select.select([fd], [], [], 0.05)
            if not more:
                token.cancel()
                return
            # Swallow the rest of an arrow-key style sequence
            while select.select([fd], [], [], 0.01)[0]:
                os.read(fd, 1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


@contextmanager
def watch_for_cancel(token: CancelToken):
    """Listen for a bare Esc key press while the block runs.

    Does nothing when stdin is not a terminal. The terminal mode is
    restored and the listener thread joined on every exit path.
    """
    try:
        fd = sys.stdin.fileno()
        interactive = os.isatty(fd)
    except (AttributeError, ValueError, OSError):
        interactive = False
    if not interactive:
        yield token
        return

    stop = threading.Event()
    if _IS_WINDOWS:
        target, args = _poll_windows, (token, stop)
    else:
        target, args = _poll_posix, (token, stop, fd)
    thread = threading.Thread(target=target, args=args, daemon=True, name="cancel-key")
    thread.start()
    try:
        yield token
    finally:
        stop.set()
        thread.join(timeout=1)
