from __future__ import annotations

import logging
from typing import Callable, Optional

from PySide6.QtCore import QTimer

from dashboard_core.autosave import Autosaver
from dashboard_core.errors import StorageError


_logger = logging.getLogger(__name__)


def _noop(*_args) -> None:
    return None


class StatusService:
    def __init__(
        self,
        *,
        set_text: Callable[[str], None],
        set_busy: Optional[Callable[[bool], None]] = None,
        set_progress: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._set_text = set_text
        self._set_busy = set_busy or _noop
        self._set_progress = set_progress or _noop
        self._busy_count = 0

    def set_status(self, text: str) -> None:
        QTimer.singleShot(0, lambda: self._set_text(str(text)))

    def set_busy(self, busy: bool) -> None:
        def _apply() -> None:
            if busy:
                self._busy_count += 1
                self._set_busy(True)
                return
            self._busy_count = max(0, self._busy_count - 1)
            if self._busy_count == 0:
                self._set_busy(False)

        QTimer.singleShot(0, _apply)

    def set_progress(self, value: Optional[int]) -> None:
        def _apply() -> None:
            if value is None:
                self._set_progress(0)
            else:
                self._set_progress(int(value))

        QTimer.singleShot(0, _apply)


class AutosaveStatus:
    """Mirrors autosave health into a StatusService.

    The degraded message stays up until a later write succeeds.
    """

    SAVED = "All changes saved"
    DEGRADED = "Changes are kept in memory only"

    def __init__(self, autosaver: Autosaver, status: StatusService) -> None:
        self._status = status
        self.degraded = autosaver.degraded
        self.text = ""
        autosaver.on_result(self._on_result)

    def _on_result(self, ok: bool, error: Optional[StorageError]) -> None:
        if ok:
            self.text = self.SAVED
        else:
            self.text = f"{self.DEGRADED}: {error}"
        if self.degraded and ok:
            _logger.info("Autosave healthy again")
        self.degraded = not ok
        self._status.set_status(self.text)
