"""Tests for snapshot encoding, migration and startup load."""

from __future__ import annotations

import json

import pytest

from dashboard_core import commands as cmds
from dashboard_core.errors import IncompatibleOrCorruptError, QuotaExceededError, StorageWriteError
from dashboard_core.model import Aggregation, DataMapping, FieldType, GridPosition, Widget, WidgetType
from dashboard_core.snapshot import (
    CURRENT_SCHEMA_VERSION,
    decode_snapshot,
    dumps_snapshot,
    encode_snapshot,
    load_state,
    loads_snapshot,
    migrate,
)
from dashboard_core.storage import CORRUPT_SUFFIX, STORAGE_KEY, JsonFileStore, MemoryStore


def _populated(history, sales):
    history.execute(history.build(lambda s: cmds.add_dataset(s, sales)))
    widget = Widget(id="w1", widget_type=WidgetType.LINE, title="Sales", variant="smooth", style={"color": "#123456"})
    history.execute(history.build(lambda s: cmds.add_widget(s, widget)))
    history.execute(
        history.build(lambda s: cmds.update_mapping(s, "w1", DataMapping(sales.id, "Region", "Sales", aggregation=Aggregation.AVG)))
    )
    hidden = Widget(id="w2", widget_type=WidgetType.TABLE, position=GridPosition(4, 0, 8, 3))
    history.execute(history.build(lambda s: cmds.add_widget(s, hidden)))
    history.execute(history.build(lambda s: cmds.set_visibility(s, "w2", False)))
    return history.view()


V1_PAYLOAD = {
    "schema_version": 1,
    "theme": "business",
    "saved_at": "2023-05-01T10:00:00Z",
    "active_dataset_id": "ds1",
    "datasets": [
        {
            "id": "ds1",
            "name": "legacy.csv",
            "uploaded_at": "2023-04-30T09:00:00Z",
            "fields": [{"name": "Region", "field_type": "Text"}, {"name": "Sales", "field_type": "Numeric"}],
            "data": [["North", 1200.0], ["South", 800]],
        }
    ],
    "widgets": [
        {
            "id": "a",
            "widget_type": "Bar",
            "title": "By region",
            "grid_position": {"x": 0, "y": 0, "width": 6, "height": 4},
            "chart_config": {
                "data_mapping": {"dataset_id": "ds1", "x_axis": "Region", "y_axis": ["Sales"], "aggregation": "Sum"},
                "style_options": "{\"color\": \"red\"}",
            },
        },
        {
            "id": "b",
            "widget_type": "Kpi",
            "grid_position": {"x": 0, "y": 0, "width": 3, "height": 2},
            "chart_config": {},
        },
    ],
    "layers": [{"widget_id": "b", "visible": True}, {"widget_id": "a", "visible": True}],
}


@pytest.mark.unit
def test_snapshot_round_trip(history, sales) -> None:
    """Encoding then decoding reproduces the dashboard state."""

    view = _populated(history, sales)
    text = dumps_snapshot(view, theme="dark", saved_at="2024-01-01T00:00:00Z")
    state, theme = loads_snapshot(text)
    assert theme == "dark"
    assert state == view.to_state()
    assert state.widget("w2").visible is False


@pytest.mark.unit
def test_snapshot_layout(history, sales) -> None:
    """Snapshots carry the schema version, kind and camelCase keys."""

    payload = encode_snapshot(_populated(history, sales), saved_at="2024-01-01T00:00:00Z")
    assert payload["schemaVersion"] == CURRENT_SCHEMA_VERSION
    assert payload["savedAt"] == "2024-01-01T00:00:00Z"
    assert payload["activeDatasetId"] == sales.id
    widget = payload["widgets"][0]
    assert widget["mapping"] == {
        "datasetId": sales.id,
        "xField": "Region",
        "yField": "Sales",
        "seriesField": None,
        "aggregation": "avg",
    }
    assert payload["datasets"][0]["rows"] == [["North", "10"], ["South", "5"], ["North", "7"]]


@pytest.mark.unit
def test_v1_payload_is_migrated() -> None:
    """A version 1 payload upgrades to the current schema and decodes."""

    state, theme = decode_snapshot(json.loads(json.dumps(V1_PAYLOAD)))
    assert theme == "dark"
    ds = state.datasets["ds1"]
    assert [f.field_type for f in ds.fields] == [FieldType.TEXT, FieldType.NUMERIC]
    assert ds.rows == (("North", "1200"), ("South", "800"))
    assert state.active_dataset_id == "ds1"

    a = state.widget("a")
    assert a.widget_type == WidgetType.BAR
    assert a.mapping == DataMapping("ds1", "Region", "Sales", None, Aggregation.SUM)
    assert a.style == {"color": "red"}
    b = state.widget("b")
    assert b.widget_type == WidgetType.KPI
    assert b.mapping is None
    # Both were stored at (0, 0); compaction separates them on load.
    assert a.position == GridPosition(0, 0, 6, 4)
    assert b.position == GridPosition(0, 4, 3, 2)


@pytest.mark.unit
@pytest.mark.parametrize(
    "payload",
    [
        {"schemaVersion": CURRENT_SCHEMA_VERSION + 1, "datasets": [], "widgets": []},
        {"schemaVersion": 0},
        {"datasets": []},
        {"schemaVersion": "two"},
        {"schemaVersion": 2, "widgets": [{"id": "x", "widgetType": "hologram"}]},
        {"schemaVersion": 2, "datasets": [{"id": "d", "fields": [{"name": "a"}], "rows": [["1", "2"]]}]},
        ["not", "an", "object"],
    ],
)
def test_incompatible_payloads_are_rejected(payload) -> None:
    """Future versions and malformed payloads raise IncompatibleOrCorruptError."""

    with pytest.raises(IncompatibleOrCorruptError):
        decode_snapshot(payload)


@pytest.mark.unit
def test_migrate_leaves_current_version_alone() -> None:
    """A current payload passes through migrate unchanged."""

    payload = {"schemaVersion": CURRENT_SCHEMA_VERSION, "datasets": [], "widgets": []}
    assert migrate(payload) is payload


@pytest.mark.unit
def test_load_state_missing_key_starts_empty() -> None:
    """No stored snapshot yields an empty state without an error."""

    result = load_state(MemoryStore())
    assert result.error is None
    assert result.found is False
    assert result.state.widgets == [] and result.state.datasets == {}


@pytest.mark.unit
def test_load_state_keeps_copy_of_corrupt_payload() -> None:
    """A rejected payload is copied aside and the original key is untouched."""

    raw = json.dumps({"schemaVersion": 99, "widgets": []})
    store = MemoryStore({STORAGE_KEY: raw})
    result = load_state(store)
    assert isinstance(result.error, IncompatibleOrCorruptError)
    assert result.error.schema_version == 99
    assert result.state.widgets == []
    assert store.data[STORAGE_KEY + CORRUPT_SUFFIX] == raw
    assert store.data[STORAGE_KEY] == raw


@pytest.mark.unit
def test_load_state_invalid_json() -> None:
    """Text that is not JSON is treated as corrupt."""

    store = MemoryStore({STORAGE_KEY: "{not json"})
    result = load_state(store)
    assert isinstance(result.error, IncompatibleOrCorruptError)
    assert store.data[STORAGE_KEY + CORRUPT_SUFFIX] == "{not json"


@pytest.mark.unit
def test_memory_store_quota() -> None:
    """Writes above the quota raise QuotaExceededError and store nothing."""

    store = MemoryStore(quota_bytes=4)
    with pytest.raises(QuotaExceededError):
        store.write("k", "too long")
    assert store.read("k") is None


@pytest.mark.integration
def test_json_file_store_round_trip(tmp_path, history, sales) -> None:
    """The file store persists snapshots that load back unchanged."""

    store = JsonFileStore(tmp_path / "store")
    view = _populated(history, sales)
    store.write(STORAGE_KEY, dumps_snapshot(view, theme="light"))
    assert store.path_for(STORAGE_KEY).exists()
    assert list((tmp_path / "store").glob("*.tmp")) == []

    result = load_state(store)
    assert result.error is None
    assert result.found is True
    assert result.state == view.to_state()


@pytest.mark.integration
def test_json_file_store_write_failure(tmp_path) -> None:
    """An unwritable directory surfaces as StorageWriteError."""

    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    store = JsonFileStore(blocker / "sub")
    with pytest.raises(StorageWriteError):
        store.write(STORAGE_KEY, "{}")
