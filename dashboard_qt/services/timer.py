from __future__ import annotations

import logging
from typing import Callable, Optional

from PySide6.QtCore import QObject, QTimer


_logger = logging.getLogger(__name__)


class QtTimerBackend:
    """Single-shot QTimers as autosave debounce tokens.

    Must be used from the thread that owns the event loop.
    """

    def __init__(self, parent: Optional[QObject] = None) -> None:
        self._parent = parent
        self._active: set[QTimer] = set()

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> QTimer:
        timer = QTimer(self._parent)
        timer.setSingleShot(True)
        timer.setInterval(max(0, int(round(float(delay_s) * 1000))))

        def _fire() -> None:
            self._release(timer)
            callback()

        timer.timeout.connect(_fire)
        self._active.add(timer)
        timer.start()
        return timer

    def cancel(self, token: QTimer) -> None:
        if token is None:
            return
        token.stop()
        self._release(token)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def _release(self, timer: QTimer) -> None:
        if timer in self._active:
            self._active.discard(timer)
            timer.deleteLater()
