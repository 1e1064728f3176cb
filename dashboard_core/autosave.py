"""Debounced autosave.

Every history change (re)starts a single idle timer. When the timer fires the
current state is serialised and written under the fixed store key, so a burst
of edits produces one write per quiet period.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Protocol

from dashboard_core.errors import StorageError, StorageWriteError
from dashboard_core.history import CommandHistory
from dashboard_core.snapshot import dumps_snapshot, utc_now_iso
from dashboard_core.storage import STORAGE_KEY, KeyValueStore


_logger = logging.getLogger(__name__)

DEFAULT_DELAY_S = 2.0

# Reasons that do not change persisted content.
_IGNORED_REASONS = {"select", "reset"}

# Runs a write job somewhere; must call back exactly once with None or the error.
Submitter = Callable[[Callable[[], None], Callable[[Optional[Exception]], None]], None]
ResultListener = Callable[[bool, Optional[StorageError]], None]


class TimerBackend(Protocol):
    def schedule(self, delay_s: float, callback: Callable[[], None]) -> Any:
        ...

    def cancel(self, token: Any) -> None:
        ...


def run_inline(job: Callable[[], None], done: Callable[[Optional[Exception]], None]) -> None:
    try:
        job()
    except Exception as exc:
        done(exc)
        return
    done(None)


class Autosaver:
    def __init__(
        self,
        history: CommandHistory,
        store: KeyValueStore,
        timer: TimerBackend,
        *,
        delay_s: float = DEFAULT_DELAY_S,
        key: str = STORAGE_KEY,
        theme_getter: Optional[Callable[[], str]] = None,
        submit: Optional[Submitter] = None,
    ) -> None:
        self._history = history
        self._store = store
        self._timer = timer
        self._delay_s = float(delay_s)
        self._key = key
        self._theme_getter = theme_getter or (lambda: "light")
        self._submit = submit or run_inline
        self._token: Any = None
        self._listeners: List[ResultListener] = []
        self.degraded = False
        self.last_error: Optional[StorageError] = None
        self.last_saved_at: Optional[str] = None
        self.writes = 0
        self._unsubscribe = history.subscribe(self._on_history)

    @property
    def pending(self) -> bool:
        return self._token is not None

    def on_result(self, listener: ResultListener) -> None:
        self._listeners.append(listener)

    def _on_history(self, reason: str, _command: Any) -> None:
        if reason in _IGNORED_REASONS:
            return
        self.schedule()

    def schedule(self) -> None:
        """Restart the idle timer."""
        if self._token is not None:
            self._timer.cancel(self._token)
        self._token = self._timer.schedule(self._delay_s, self._fire)

    def cancel(self) -> None:
        if self._token is not None:
            self._timer.cancel(self._token)
            self._token = None

    def _fire(self) -> None:
        self._token = None
        self._write()

    def flush(self) -> None:
        """Write now if a save is pending."""
        if self._token is None:
            return
        self.cancel()
        self._write()

    def close(self) -> None:
        self.cancel()
        self._unsubscribe()

    def _write(self) -> None:
        saved_at = utc_now_iso()
        try:
            text = dumps_snapshot(self._history.view(), theme=self._theme_getter(), saved_at=saved_at)
        except (TypeError, ValueError) as exc:
            self._report(StorageWriteError(f"Dashboard could not be serialised: {exc}"), saved_at)
            return

        def _job() -> None:
            self._store.write(self._key, text)

        def _done(error: Optional[Exception]) -> None:
            if error is not None and not isinstance(error, StorageError):
                error = StorageWriteError(str(error))
            self._report(error, saved_at)

        self._submit(_job, _done)

    def _report(self, error: Optional[StorageError], saved_at: str) -> None:
        if error is None:
            self.writes += 1
            self.last_saved_at = saved_at
            if self.degraded:
                _logger.info("Autosave recovered")
            self.degraded = False
            self.last_error = None
            _logger.debug("Autosaved dashboard at %s", saved_at)
        else:
            self.degraded = True
            self.last_error = error
            _logger.warning("Autosave failed, continuing in memory: %s", error)
        for listener in list(self._listeners):
            listener(error is None, error)
