from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Optional

from dashboard_core.commands import Command, apply_forward, apply_inverse, describe
from dashboard_core.errors import UnknownWidgetError
from dashboard_core.model import DashboardState, StateView


_logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 100

# listener(reason, command); reason is "execute", "undo", "redo", "reset" or "select".
HistoryListener = Callable[[str, Optional[Command]], None]


class CommandHistory:
    """Owner of the DashboardState and its undo/redo log.

    `current_index` counts the applied entries: entries before it are applied,
    entries from it onwards form the redo tail. When the log grows past
    `capacity` the oldest entry is dropped and can no longer be undone.
    """

    def __init__(self, state: Optional[DashboardState] = None, *, capacity: int = DEFAULT_CAPACITY) -> None:
        self._state = state if state is not None else DashboardState()
        self._capacity = max(1, int(capacity))
        self._log: List[Command] = []
        self._index = 0
        self._evicted = 0
        self._listeners: List[HistoryListener] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def evicted(self) -> int:
        return self._evicted

    def __len__(self) -> int:
        return len(self._log)

    def entries(self) -> List[Command]:
        return list(self._log)

    def applied(self) -> List[Command]:
        return list(self._log[: self._index])

    def can_undo(self) -> bool:
        return self._index > 0

    def can_redo(self) -> bool:
        return self._index < len(self._log)

    def view(self) -> StateView:
        return self._state.view()

    def subscribe(self, listener: HistoryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def build(self, builder: Callable[[DashboardState], Command]) -> Command:
        """Run a command builder against the owned state (read only)."""
        return builder(self._state)

    def execute(self, command: Command) -> None:
        # Apply to a copy first so a failing command leaves the state untouched.
        candidate = self._state.clone()
        apply_forward(candidate, command)
        self._state = candidate

        del self._log[self._index :]
        self._log.append(command)
        self._index += 1
        if len(self._log) > self._capacity:
            drop = len(self._log) - self._capacity
            del self._log[:drop]
            self._index -= drop
            self._evicted += drop
            _logger.debug("History over capacity; evicted %d entries", drop)
        _logger.debug("Applied %s (%d/%d)", describe(command), self._index, len(self._log))
        self._notify("execute", command)

    def undo(self) -> bool:
        if self._index == 0:
            return False
        command = self._log[self._index - 1]
        apply_inverse(self._state, command)
        self._index -= 1
        _logger.debug("Undid %s", describe(command))
        self._notify("undo", command)
        return True

    def redo(self) -> bool:
        if self._index == len(self._log):
            return False
        command = self._log[self._index]
        apply_forward(self._state, command)
        self._index += 1
        _logger.debug("Redid %s", describe(command))
        self._notify("redo", command)
        return True

    def select_widget(self, widget_id: Optional[str]) -> None:
        if widget_id is not None and self._state.widget(widget_id) is None:
            raise UnknownWidgetError(widget_id)
        self._state.selected_widget_id = widget_id
        self._notify("select", None)

    def reset(self, state: Optional[DashboardState] = None) -> None:
        """Replace the state wholesale (startup load) and forget the log."""
        self._state = state if state is not None else DashboardState()
        self._log = []
        self._index = 0
        self._evicted = 0
        self._notify("reset", None)

    def clear(self) -> None:
        self._log = []
        self._index = 0

    def _notify(self, reason: str, command: Optional[Command]) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason, command)
            except Exception:
                _logger.exception("History listener failed (%s)", reason)


def replay(commands: Iterable[Command], state: Optional[DashboardState] = None) -> DashboardState:
    """Apply forward effects in order, starting from an empty state by default."""
    out = state.clone() if state is not None else DashboardState()
    for command in commands:
        apply_forward(out, command)
    return out
