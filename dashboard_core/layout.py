"""Grid layout model.

Widgets live on a 12 column grid with unbounded rows. After every add, move or
resize the layout is compacted: visible widgets are visited in (row, col)
order and each one is pushed down until it no longer overlaps a widget placed
before it. Widgets never move up.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from dashboard_core.errors import LayoutError
from dashboard_core.model import GRID_COLUMNS, GridPosition, Widget

# (widget id, position, visible)
LayoutItem = Tuple[str, GridPosition, bool]


def overlaps(a: GridPosition, b: GridPosition) -> bool:
    return a.col < b.right and b.col < a.right and a.row < b.bottom and b.row < a.bottom


def layout_items(widgets: Iterable[Widget]) -> List[LayoutItem]:
    return [(w.id, w.position, bool(w.visible)) for w in widgets]


def compact(items: Sequence[LayoutItem]) -> Dict[str, GridPosition]:
    """Return the compacted position of every item (hidden items unchanged).

    The sort is stable, so widgets sharing a (row, col) keep their input order
    and the earlier one stays put.
    """
    out: Dict[str, GridPosition] = {wid: pos for wid, pos, _visible in items}
    visible = [(wid, pos.clamped()) for wid, pos, vis in items if vis]
    ordered = sorted(visible, key=lambda item: (item[1].row, item[1].col))

    placed: List[GridPosition] = []
    for wid, pos in ordered:
        row = pos.row
        candidate = pos
        while any(overlaps(candidate, other) for other in placed):
            row += 1
            candidate = GridPosition(col=pos.col, row=row, width=pos.width, height=pos.height)
        placed.append(candidate)
        out[wid] = candidate
    return out


def assert_no_overlap(items: Sequence[LayoutItem]) -> None:
    visible = [(wid, pos) for wid, pos, vis in items if vis]
    for i, (wid_a, a) in enumerate(visible):
        if not a.is_valid():
            raise LayoutError(f"Widget {wid_a} is outside the grid: {a}")
        for wid_b, b in visible[i + 1 :]:
            if overlaps(a, b):
                raise LayoutError(f"Widgets {wid_a} and {wid_b} overlap")


def first_free_position(items: Sequence[LayoutItem], width: int, height: int) -> GridPosition:
    """Top-most, then left-most slot where a width x height widget fits."""
    size = GridPosition(col=0, row=0, width=width, height=height).clamped()
    taken = [pos for _wid, pos, vis in items if vis]
    row = 0
    while True:
        for col in range(0, GRID_COLUMNS - size.width + 1):
            candidate = GridPosition(col=col, row=row, width=size.width, height=size.height)
            if not any(overlaps(candidate, other) for other in taken):
                return candidate
        row += 1


def bottom_row(items: Sequence[LayoutItem]) -> int:
    return max((pos.bottom for _wid, pos, vis in items if vis), default=0)
