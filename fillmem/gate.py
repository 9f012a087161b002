from __future__ import annotations

import threading
from typing import Optional


class BusyGate:
    """Keeps the editor from prompting while a command is still running."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._busy = False

    @property
    def busy(self) -> bool:
        with self._cond:
            return self._busy

    def mark_busy(self) -> None:
        with self._cond:
            self._busy = True
            self._cond.notify_all()

    def mark_idle(self) -> None:
        with self._cond:
            self._busy = False
            self._cond.notify_all()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Park until no command is running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._busy, timeout)
