from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import pandas as pd


GRID_COLUMNS = 12

Cell = Optional[str]


def new_widget_id() -> str:
    return f"w_{uuid.uuid4().hex}"


def new_dataset_id() -> str:
    return f"ds_{uuid.uuid4().hex}"


class FieldType(str, Enum):
    TEXT = "text"
    NUMERIC = "numeric"
    DATE = "date"
    BOOLEAN = "boolean"


class Aggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class WidgetType(str, Enum):
    LINE = "line"
    BAR = "bar"
    PIE = "pie"
    SCATTER = "scatter"
    AREA = "area"
    RADAR = "radar"
    CANDLESTICK = "candlestick"
    HEATMAP = "heatmap"
    TREEMAP = "treemap"
    KPI = "kpi"
    TABLE = "table"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def variants(self) -> Tuple[str, ...]:
        return WIDGET_VARIANTS.get(self, ("basic",))


_DISPLAY_NAMES: Dict[WidgetType, str] = {
    WidgetType.LINE: "Line Chart",
    WidgetType.BAR: "Bar Chart",
    WidgetType.PIE: "Pie Chart",
    WidgetType.SCATTER: "Scatter Plot",
    WidgetType.AREA: "Area Chart",
    WidgetType.RADAR: "Radar Chart",
    WidgetType.CANDLESTICK: "Candlestick",
    WidgetType.HEATMAP: "Heatmap",
    WidgetType.TREEMAP: "Treemap",
    WidgetType.KPI: "KPI",
    WidgetType.TABLE: "Table",
}

# First entry is the default variant.
WIDGET_VARIANTS: Dict[WidgetType, Tuple[str, ...]] = {
    WidgetType.LINE: ("basic", "smooth", "step", "stacked", "area"),
    WidgetType.BAR: ("basic", "stacked", "grouped", "race", "waterfall"),
    WidgetType.PIE: ("basic", "doughnut", "rose"),
    WidgetType.SCATTER: ("basic", "bubble"),
    WidgetType.AREA: ("basic", "stacked"),
}


@dataclass(frozen=True)
class Field:
    name: str
    field_type: FieldType = FieldType.TEXT


@dataclass(frozen=True)
class Dataset:
    """An imported table. Never mutated; a re-upload produces a new instance."""

    id: str
    name: str
    fields: Tuple[Field, ...]
    # One tuple per source row, aligned with `fields`; None marks an empty cell.
    rows: Tuple[Tuple[Cell, ...], ...] = ()
    size_bytes: int = 0
    uploaded_at: str = ""

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def has_field(self, name: Optional[str]) -> bool:
        return name is not None and any(f.name == name for f in self.fields)

    def field(self, name: str) -> Optional[Field]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def column_index(self, name: str) -> int:
        return self.field_names.index(name)

    def record(self, index: int) -> Dict[str, Cell]:
        return dict(zip(self.field_names, self.rows[index]))

    def records(self) -> Iterator[Dict[str, Cell]]:
        names = self.field_names
        for row in self.rows:
            yield dict(zip(names, row))

    def column(self, name: str) -> List[Cell]:
        idx = self.column_index(name)
        return [row[idx] for row in self.rows]

    def frame(self) -> pd.DataFrame:
        """Rows as an object-dtype DataFrame (raw cells, None for empty)."""
        return pd.DataFrame(list(self.rows), columns=self.field_names, dtype=object)


@dataclass(frozen=True)
class DataMapping:
    dataset_id: str
    x_field: str
    y_field: str
    series_field: Optional[str] = None
    aggregation: Aggregation = Aggregation.SUM

    def referenced_fields(self) -> List[str]:
        out = [self.x_field, self.y_field]
        if self.series_field:
            out.append(self.series_field)
        return out


@dataclass(frozen=True)
class GridPosition:
    col: int = 0
    row: int = 0
    width: int = 4
    height: int = 4

    @property
    def right(self) -> int:
        return self.col + self.width

    @property
    def bottom(self) -> int:
        return self.row + self.height

    def is_valid(self) -> bool:
        return (
            self.col >= 0
            and self.row >= 0
            and self.width >= 1
            and self.height >= 1
            and self.col + self.width <= GRID_COLUMNS
        )

    def clamped(self) -> "GridPosition":
        width = min(max(1, int(self.width)), GRID_COLUMNS)
        height = max(1, int(self.height))
        col = min(max(0, int(self.col)), GRID_COLUMNS - width)
        row = max(0, int(self.row))
        return GridPosition(col=col, row=row, width=width, height=height)

    def moved(self, col: int, row: int) -> "GridPosition":
        return GridPosition(col=int(col), row=int(row), width=self.width, height=self.height).clamped()

    def resized(self, width: int, height: int) -> "GridPosition":
        return GridPosition(col=self.col, row=self.row, width=int(width), height=int(height)).clamped()


@dataclass
class Widget:
    id: str
    widget_type: WidgetType
    title: str = ""
    variant: str = "basic"
    position: GridPosition = field(default_factory=GridPosition)
    mapping: Optional[DataMapping] = None
    style: Dict[str, Any] = field(default_factory=dict)
    z_index: int = 0
    visible: bool = True

    def copy(self) -> "Widget":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Layer:
    widget_id: str
    visible: bool
    z_index: int


@dataclass
class DashboardState:
    """Root of truth for one dashboard. Mutated only by the command history."""

    datasets: Dict[str, Dataset] = field(default_factory=dict)
    # Kept sorted by z_index (paint order, bottom first).
    widgets: List[Widget] = field(default_factory=list)
    active_dataset_id: Optional[str] = None
    # Selection is ephemeral UI state; it is neither persisted nor compared.
    selected_widget_id: Optional[str] = field(default=None, compare=False)

    def widget_index(self, widget_id: str) -> int:
        for i, w in enumerate(self.widgets):
            if w.id == widget_id:
                return i
        return -1

    def widget(self, widget_id: str) -> Optional[Widget]:
        idx = self.widget_index(widget_id)
        return None if idx < 0 else self.widgets[idx]

    def renumber_z(self) -> None:
        for i, w in enumerate(self.widgets):
            w.z_index = i

    def layers(self) -> List[Layer]:
        return [Layer(widget_id=w.id, visible=w.visible, z_index=w.z_index) for w in self.widgets]

    def clone(self) -> "DashboardState":
        # Datasets are frozen and can be shared; widgets are copied.
        return DashboardState(
            datasets=dict(self.datasets),
            widgets=[w.copy() for w in self.widgets],
            active_dataset_id=self.active_dataset_id,
            selected_widget_id=self.selected_widget_id,
        )

    def view(self) -> "StateView":
        return StateView(
            datasets=MappingProxyType(dict(self.datasets)),
            widgets=tuple(w.copy() for w in self.widgets),
            active_dataset_id=self.active_dataset_id,
            selected_widget_id=self.selected_widget_id,
        )


@dataclass(frozen=True)
class StateView:
    """Read-only snapshot of a DashboardState, detached from later mutations."""

    datasets: Mapping[str, Dataset]
    widgets: Tuple[Widget, ...]
    active_dataset_id: Optional[str] = None
    selected_widget_id: Optional[str] = None

    def widget(self, widget_id: str) -> Optional[Widget]:
        for w in self.widgets:
            if w.id == widget_id:
                return w
        return None

    def dataset(self, dataset_id: Optional[str]) -> Optional[Dataset]:
        if dataset_id is None:
            return None
        return self.datasets.get(dataset_id)

    def dataset_by_name(self, name: str) -> Optional[Dataset]:
        # Most recently added wins when names repeat.
        found = None
        for ds in self.datasets.values():
            if ds.name == name:
                found = ds
        return found

    def layers(self) -> List[Layer]:
        return [Layer(widget_id=w.id, visible=w.visible, z_index=w.z_index) for w in self.widgets]

    def to_state(self) -> DashboardState:
        return DashboardState(
            datasets=dict(self.datasets),
            widgets=[w.copy() for w in self.widgets],
            active_dataset_id=self.active_dataset_id,
            selected_widget_id=self.selected_widget_id,
        )
