"""Aggregation engine.

Turns a Dataset plus a DataMapping into the neutral `SeriesData` structure the
rendering translator consumes, and computes single KPI values.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from dashboard_core.csv_io import parse_date, parse_number
from dashboard_core.errors import UnknownDatasetError, UnknownFieldError
from dashboard_core.model import Aggregation, DataMapping, Dataset, FieldType, StateView


_logger = logging.getLogger(__name__)

_X = "__x"
_S = "__s"
_Y = "__y"


@dataclass
class Series:
    name: str
    values: List[Optional[float]] = field(default_factory=list)


@dataclass
class SeriesData:
    categories: List[str] = field(default_factory=list)
    series: List[Series] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": list(self.categories),
            "series": [{"name": s.name, "values": list(s.values)} for s in self.series],
        }


def resolve_dataset(view: StateView, mapping: DataMapping) -> Dataset:
    ds = view.dataset(mapping.dataset_id)
    if ds is None:
        raise UnknownDatasetError(mapping.dataset_id)
    return ds


def validate_mapping(dataset: Dataset, mapping: DataMapping) -> None:
    """Raise UnknownFieldError for the first mapped field the dataset lacks."""
    for name in mapping.referenced_fields():
        if not dataset.has_field(name):
            raise UnknownFieldError(name, dataset.name)


def _label(value: Any) -> str:
    return "" if value is None else str(value)


def _category_order(labels: List[str], field_type: FieldType) -> List[str]:
    if field_type == FieldType.NUMERIC:
        parse: Callable[[str], Any] = lambda v: parse_number(v or None)
    elif field_type == FieldType.DATE:
        parse = lambda v: parse_date(v or None)
    else:
        return labels

    keyed: List[Tuple[int, Any, int, str]] = []
    for pos, label in enumerate(labels):
        parsed = parse(label)
        # Unparseable labels go last, in first-appearance order.
        if parsed is None:
            keyed.append((1, 0, pos, label))
        else:
            keyed.append((0, parsed, pos, label))
    keyed.sort(key=lambda k: (k[0], k[1], k[2]))
    return [k[3] for k in keyed]


def _nan_to_none(value: float) -> Optional[float]:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return None
    return float(value)


def aggregate(dataset: Dataset, mapping: DataMapping) -> SeriesData:
    """Group rows by (x value, series value) and aggregate the y field.

    Sum/Avg/Min/Max only see y values that parse as numbers. A group without
    any such value sums to 0 and has no Avg/Min/Max. Count counts rows.
    """
    validate_mapping(dataset, mapping)

    frame = dataset.frame()
    work = pd.DataFrame(
        {
            _X: frame[mapping.x_field].map(_label),
            _S: (frame[mapping.series_field].map(_label) if mapping.series_field else ""),
            _Y: frame[mapping.y_field].map(parse_number).astype(float),
        }
    )

    x_field = dataset.field(mapping.x_field)
    x_type = x_field.field_type if x_field is not None else FieldType.TEXT
    categories = _category_order(list(pd.unique(work[_X])), x_type)
    if mapping.series_field:
        series_names = [str(s) for s in pd.unique(work[_S])]
    else:
        series_names = [""]

    grouped = work.groupby([_X, _S], sort=False)[_Y]
    agg = mapping.aggregation
    if agg == Aggregation.COUNT:
        table = grouped.size().astype(float)
    elif agg == Aggregation.SUM:
        table = grouped.sum(min_count=0)
    elif agg == Aggregation.AVG:
        table = grouped.mean()
    elif agg == Aggregation.MIN:
        table = grouped.min()
    else:
        table = grouped.max()

    empty_value: Optional[float] = 0.0 if agg in (Aggregation.SUM, Aggregation.COUNT) else None
    lookup: Dict[Tuple[str, str], float] = {key: val for key, val in table.items()}

    out = SeriesData(categories=categories)
    for s_name in series_names:
        values: List[Optional[float]] = []
        for cat in categories:
            if (cat, s_name) in lookup:
                values.append(_nan_to_none(lookup[(cat, s_name)]))
            else:
                values.append(empty_value)
        out.series.append(Series(name=(s_name if mapping.series_field else mapping.y_field), values=values))

    _logger.debug(
        "Aggregated %s (%s of %s by %s): %d categories, %d series",
        dataset.name,
        agg.value,
        mapping.y_field,
        mapping.x_field,
        len(categories),
        len(out.series),
    )
    return out


def aggregate_view(view: StateView, mapping: DataMapping) -> SeriesData:
    return aggregate(resolve_dataset(view, mapping), mapping)


# --- KPI widgets ---


class KpiAggregation(str, Enum):
    SUM = "sum"
    AVERAGE = "average"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    FIRST = "first"
    LAST = "last"

    @property
    def display_name(self) -> str:
        return {
            KpiAggregation.SUM: "Total",
            KpiAggregation.AVERAGE: "Average",
            KpiAggregation.COUNT: "Count",
            KpiAggregation.MIN: "Minimum",
            KpiAggregation.MAX: "Maximum",
            KpiAggregation.FIRST: "First",
            KpiAggregation.LAST: "Latest",
        }[self]


@dataclass(frozen=True)
class KpiValue:
    value: float
    formatted: str
    aggregation: KpiAggregation


def _with_commas(value: float) -> str:
    return f"{value:,.0f}"


def format_kpi_number(value: float, field_type: FieldType = FieldType.NUMERIC) -> str:
    if field_type != FieldType.NUMERIC:
        return f"{value:.0f}"
    magnitude = abs(value)
    if magnitude >= 1_000_000_000:
        return f"{value / 1_000_000_000:.1f}B"
    if magnitude >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if float(value).is_integer():
        return _with_commas(value)
    return f"{value:.2f}"


def compute_kpi(dataset: Dataset, field_name: str, aggregation: KpiAggregation) -> Optional[KpiValue]:
    """Reduce one field to a single number. None when no value parses."""
    fld = dataset.field(field_name)
    if fld is None:
        raise UnknownFieldError(field_name, dataset.name)

    parsed = [parse_number(v) for v in dataset.column(field_name)]
    values = np.asarray([v for v in parsed if v is not None], dtype=float)
    if values.size == 0:
        return None

    if aggregation == KpiAggregation.SUM:
        value = float(np.sum(values))
    elif aggregation == KpiAggregation.AVERAGE:
        value = float(np.mean(values))
    elif aggregation == KpiAggregation.COUNT:
        value = float(values.size)
        return KpiValue(value=value, formatted=_with_commas(value), aggregation=aggregation)
    elif aggregation == KpiAggregation.MIN:
        value = float(np.min(values))
    elif aggregation == KpiAggregation.MAX:
        value = float(np.max(values))
    elif aggregation == KpiAggregation.FIRST:
        value = float(values[0])
    else:
        value = float(values[-1])
    return KpiValue(value=value, formatted=format_kpi_number(value, fld.field_type), aggregation=aggregation)
