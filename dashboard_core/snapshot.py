"""PersistedSnapshot encoding, decoding and schema migration."""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from dashboard_core.errors import IncompatibleOrCorruptError, StorageError
from dashboard_core.layout import compact, layout_items
from dashboard_core.model import (
    Aggregation,
    DashboardState,
    DataMapping,
    Dataset,
    Field,
    FieldType,
    GridPosition,
    StateView,
    Widget,
    WidgetType,
)
from dashboard_core.settings import normalize_theme
from dashboard_core.storage import CORRUPT_SUFFIX, STORAGE_KEY, KeyValueStore


_logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
SNAPSHOT_KIND = "dashboard_snapshot"


def utc_now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# --- encoding ---


def encode_mapping(mapping: Optional[DataMapping]) -> Optional[Dict[str, Any]]:
    if mapping is None:
        return None
    return {
        "datasetId": str(mapping.dataset_id),
        "xField": str(mapping.x_field),
        "yField": str(mapping.y_field),
        "seriesField": (None if mapping.series_field is None else str(mapping.series_field)),
        "aggregation": mapping.aggregation.value,
    }


def encode_position(pos: GridPosition) -> Dict[str, int]:
    return {"col": int(pos.col), "row": int(pos.row), "width": int(pos.width), "height": int(pos.height)}


def encode_widget(w: Widget) -> Dict[str, Any]:
    return {
        "id": str(w.id),
        "title": str(w.title or ""),
        "widgetType": w.widget_type.value,
        "variant": str(w.variant or "basic"),
        "position": encode_position(w.position),
        "mapping": encode_mapping(w.mapping),
        "style": dict(w.style or {}),
        "zIndex": int(w.z_index),
        "visible": bool(w.visible),
    }


def encode_dataset(ds: Dataset) -> Dict[str, Any]:
    return {
        "id": str(ds.id),
        "name": str(ds.name),
        "sizeBytes": int(ds.size_bytes),
        "uploadedAt": str(ds.uploaded_at or ""),
        "fields": [{"name": f.name, "type": f.field_type.value} for f in ds.fields],
        "rows": [list(r) for r in ds.rows],
    }


def encode_snapshot(view: StateView, *, theme: str = "light", saved_at: Optional[str] = None) -> Dict[str, Any]:
    return {
        "schemaVersion": CURRENT_SCHEMA_VERSION,
        "kind": SNAPSHOT_KIND,
        "savedAt": saved_at or utc_now_iso(),
        "theme": normalize_theme(theme),
        "activeDatasetId": view.active_dataset_id,
        "datasets": [encode_dataset(ds) for ds in view.datasets.values()],
        "widgets": [encode_widget(w) for w in view.widgets],
    }


def dumps_snapshot(view: StateView, *, theme: str = "light", saved_at: Optional[str] = None) -> str:
    return json.dumps(encode_snapshot(view, theme=theme, saved_at=saved_at), ensure_ascii=False)


# --- migrations ---


def _legacy_cell(value: Any) -> Optional[str]:
    # v1 stored typed JSON values; v2 keeps raw cell text.
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value)
    return text if text != "" else None


def _migrate_v1_to_v2(payload: Dict[str, Any]) -> Dict[str, Any]:
    datasets: List[Dict[str, Any]] = []
    for row in payload.get("datasets") or []:
        datasets.append(
            {
                "id": str(row["id"]),
                "name": str(row.get("name", "") or row["id"]),
                "sizeBytes": 0,
                "uploadedAt": str(row.get("uploaded_at", "") or ""),
                "fields": [
                    {"name": str(f["name"]), "type": str(f.get("field_type", "text")).lower()}
                    for f in (row.get("fields") or [])
                ],
                "rows": [[_legacy_cell(v) for v in r] for r in (row.get("data") or [])],
            }
        )

    hidden = {
        str(layer.get("widget_id"))
        for layer in (payload.get("layers") or [])
        if isinstance(layer, dict) and layer.get("visible") is False
    }

    widgets: List[Dict[str, Any]] = []
    for z, row in enumerate(payload.get("widgets") or []):
        grid = row.get("grid_position") or {}
        config = row.get("chart_config") or {}
        dm = config.get("data_mapping") or {}
        y_axis = dm.get("y_axis") or []
        mapping = None
        if dm.get("dataset_id") and dm.get("x_axis") and y_axis:
            mapping = {
                "datasetId": str(dm["dataset_id"]),
                "xField": str(dm["x_axis"]),
                "yField": str(y_axis[0]),
                "seriesField": (None if dm.get("category") in (None, "") else str(dm["category"])),
                "aggregation": str(dm.get("aggregation") or "sum").lower(),
            }
        style_raw = config.get("style_options") or "{}"
        style = json.loads(style_raw) if isinstance(style_raw, str) else dict(style_raw)
        widgets.append(
            {
                "id": str(row["id"]),
                "title": str(row.get("title", "") or ""),
                "widgetType": str(row.get("widget_type", "line")).lower(),
                "variant": "basic",
                "position": {
                    "col": int(grid.get("x", 0)),
                    "row": int(grid.get("y", 0)),
                    "width": int(grid.get("width", 4)),
                    "height": int(grid.get("height", 4)),
                },
                "mapping": mapping,
                "style": style if isinstance(style, dict) else {},
                "zIndex": z,
                "visible": str(row["id"]) not in hidden,
            }
        )

    return {
        "schemaVersion": 2,
        "kind": SNAPSHOT_KIND,
        "savedAt": str(payload.get("saved_at", "") or ""),
        "theme": payload.get("theme", "light"),
        "activeDatasetId": payload.get("active_dataset_id"),
        "datasets": datasets,
        "widgets": widgets,
    }


# Ordered: MIGRATIONS[n] upgrades a version-n payload to n + 1.
MIGRATIONS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
}


def _schema_version(payload: Dict[str, Any]) -> int:
    raw = payload.get("schemaVersion", payload.get("schema_version"))
    if isinstance(raw, bool) or raw is None:
        raise IncompatibleOrCorruptError("missing schema version")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise IncompatibleOrCorruptError(f"bad schema version {raw!r}", schema_version=raw) from exc


def migrate(payload: Dict[str, Any]) -> Dict[str, Any]:
    version = _schema_version(payload)
    if version > CURRENT_SCHEMA_VERSION or version < 1:
        raise IncompatibleOrCorruptError(f"unsupported schema version {version}", schema_version=version)
    out = payload
    while version < CURRENT_SCHEMA_VERSION:
        step = MIGRATIONS.get(version)
        if step is None:
            raise IncompatibleOrCorruptError(f"no migration from version {version}", schema_version=version)
        try:
            out = step(out)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise IncompatibleOrCorruptError(f"migration from version {version} failed: {exc}", schema_version=version) from exc
        _logger.info("Migrated snapshot from schema %d to %d", version, version + 1)
        version += 1
    return out


# --- decoding ---


def decode_mapping(raw: Any) -> Optional[DataMapping]:
    if raw is None:
        return None
    series = raw.get("seriesField")
    return DataMapping(
        dataset_id=str(raw["datasetId"]),
        x_field=str(raw["xField"]),
        y_field=str(raw["yField"]),
        series_field=(None if series in (None, "") else str(series)),
        aggregation=Aggregation(str(raw.get("aggregation") or "sum")),
    )


def decode_position(raw: Dict[str, Any]) -> GridPosition:
    return GridPosition(
        col=int(raw.get("col", 0)),
        row=int(raw.get("row", 0)),
        width=int(raw.get("width", 4)),
        height=int(raw.get("height", 4)),
    )


def decode_widget(raw: Dict[str, Any]) -> Widget:
    style = raw.get("style") or {}
    if not isinstance(style, dict):
        raise ValueError("widget style must be an object")
    return Widget(
        id=str(raw["id"]),
        widget_type=WidgetType(str(raw["widgetType"])),
        title=str(raw.get("title", "") or ""),
        variant=str(raw.get("variant") or "basic"),
        position=decode_position(raw.get("position") or {}),
        mapping=decode_mapping(raw.get("mapping")),
        style=dict(style),
        z_index=int(raw.get("zIndex", 0)),
        visible=bool(raw.get("visible", True)),
    )


def decode_dataset(raw: Dict[str, Any]) -> Dataset:
    fields = tuple(Field(name=str(f["name"]), field_type=FieldType(str(f.get("type", "text")))) for f in raw["fields"])
    rows = []
    for r in raw.get("rows") or []:
        if len(r) != len(fields):
            raise ValueError(f"dataset {raw.get('id')} has a row of {len(r)} cells for {len(fields)} fields")
        rows.append(tuple(None if v is None else str(v) for v in r))
    return Dataset(
        id=str(raw["id"]),
        name=str(raw.get("name", "") or raw["id"]),
        fields=fields,
        rows=tuple(rows),
        size_bytes=int(raw.get("sizeBytes", 0) or 0),
        uploaded_at=str(raw.get("uploadedAt", "") or ""),
    )


def decode_snapshot(payload: Any) -> Tuple[DashboardState, str]:
    """Decode a stored payload (any supported version) into a fresh state.

    Raises:
        IncompatibleOrCorruptError: for future versions or malformed payloads.
    """
    if not isinstance(payload, dict):
        raise IncompatibleOrCorruptError("snapshot must be a JSON object")
    data = migrate(payload)
    try:
        state = DashboardState()
        for raw in data.get("datasets") or []:
            ds = decode_dataset(raw)
            state.datasets[ds.id] = ds
        widgets = [decode_widget(raw) for raw in data.get("widgets") or []]
        widgets.sort(key=lambda w: w.z_index)
        state.widgets = widgets
        active = data.get("activeDatasetId")
        state.active_dataset_id = str(active) if active in state.datasets else None
        theme = normalize_theme(data.get("theme"))
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise IncompatibleOrCorruptError(str(exc), schema_version=data.get("schemaVersion")) from exc

    state.renumber_z()
    # Stored layouts are not trusted to respect the grid invariant.
    positions = compact(layout_items(state.widgets))
    for w in state.widgets:
        if positions[w.id] != w.position:
            _logger.info("Repositioned stored widget %s from %s to %s", w.id, w.position, positions[w.id])
            w.position = positions[w.id]
    return state, theme


def loads_snapshot(text: str) -> Tuple[DashboardState, str]:
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise IncompatibleOrCorruptError(f"invalid JSON: {exc}") from exc
    return decode_snapshot(payload)


@dataclass
class LoadResult:
    state: DashboardState
    theme: str = "light"
    error: Optional[StorageError] = None
    found: bool = False


def load_state(store: KeyValueStore, *, key: str = STORAGE_KEY) -> LoadResult:
    """Read the store once at startup.

    Missing key: empty state. Unreadable or incompatible payload: empty state
    plus the error; the raw payload is copied to `key + ".corrupt"` and the
    original entry is left as it was.
    """
    try:
        raw = store.read(key)
    except (OSError, StorageError) as exc:
        _logger.warning("Could not read stored dashboard: %s", exc)
        err = exc if isinstance(exc, StorageError) else IncompatibleOrCorruptError(f"read failed: {exc}")
        return LoadResult(state=DashboardState(), error=err)

    if raw is None:
        return LoadResult(state=DashboardState())

    try:
        state, theme = loads_snapshot(raw)
    except IncompatibleOrCorruptError as exc:
        _logger.warning("Stored dashboard rejected, starting empty: %s", exc)
        try:
            store.write(key + CORRUPT_SUFFIX, raw)
        except StorageError as copy_exc:
            _logger.warning("Could not keep a copy of the rejected payload: %s", copy_exc)
        return LoadResult(state=DashboardState(), error=exc, found=True)

    _logger.info("Loaded dashboard: %d datasets, %d widgets", len(state.datasets), len(state.widgets))
    return LoadResult(state=state, theme=theme, found=True)
