"""Pytest fixtures shared across the dashboard test suite."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Callable, Dict, List, Tuple

import pytest

from dashboard_core.csv_io import parse_csv
from dashboard_core.history import CommandHistory
from dashboard_core.model import Dataset


SALES_CSV = "Region,Sales\nNorth,10\nSouth,5\nNorth,7\n"

ORDERS_CSV = (
    "Month,Region,Units,Active\n"
    "3,North,10,true\n"
    "1,South,4,false\n"
    "2,North,6,true\n"
    "1,North,2,true\n"
    "3,South,n/a,false\n"
)


class ManualTimer:
    """Deterministic TimerBackend driven by `advance(seconds)`."""

    def __init__(self) -> None:
        self.now = 0.0
        self._next_token = 0
        self._pending: Dict[int, Tuple[float, Callable[[], None]]] = {}
        self.fired: List[float] = []

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> int:
        self._next_token += 1
        self._pending[self._next_token] = (self.now + float(delay_s), callback)
        return self._next_token

    def cancel(self, token: Any) -> None:
        self._pending.pop(token, None)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def advance(self, seconds: float) -> None:
        target = self.now + float(seconds)
        while True:
            due = [(at, tok) for tok, (at, _cb) in self._pending.items() if at <= target]
            if not due:
                break
            at, tok = min(due)
            _at, callback = self._pending.pop(tok)
            self.now = at
            self.fired.append(at)
            callback()
        self.now = target


@pytest.fixture
def timer() -> ManualTimer:
    """Return a fake clock usable wherever a TimerBackend is expected."""

    return ManualTimer()


@pytest.fixture
def sales_csv() -> str:
    """Return the Region/Sales CSV text."""

    return SALES_CSV


@pytest.fixture
def sales() -> Dataset:
    """Return the small Region/Sales dataset."""

    return parse_csv(SALES_CSV, "sales.csv", dataset_id="ds_sales")


@pytest.fixture
def orders() -> Dataset:
    """Return a dataset with numeric, text and boolean columns."""

    return parse_csv(ORDERS_CSV, "orders.csv", dataset_id="ds_orders")


@pytest.fixture
def history() -> CommandHistory:
    """Return an empty command history."""

    return CommandHistory()


def pytest_collection_modifyitems(items: Sequence[pytest.Item]) -> None:
    """Enforce that every test has exactly one speed marker.

    - `unit`: pure, fast tests with no event loop and no filesystem.
    - `integration`: tests touching the filesystem, several modules end to
      end, or a Qt event loop.
    """

    invalid: list[str] = []
    for item in items:
        has_unit = item.get_closest_marker("unit") is not None
        has_integration = item.get_closest_marker("integration") is not None
        if has_unit == has_integration:
            markers = []
            if has_unit:
                markers.append("unit")
            if has_integration:
                markers.append("integration")
            invalid.append(f"{item.nodeid} (markers={markers or 'none'})")

    if invalid:
        joined = "\n".join(f"- {nodeid}" for nodeid in invalid)
        raise pytest.UsageError(
            "Each test must have exactly one speed marker: `@pytest.mark.unit` or "
            "`@pytest.mark.integration`.\n"
            f"Offending tests:\n{joined}"
        )
