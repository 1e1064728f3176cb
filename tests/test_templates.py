"""Tests for template export, validation and import."""

from __future__ import annotations

import json

import pytest

from dashboard_core.dashboard import MAPPING_INVALID, OK, UNMAPPED, Dashboard
from dashboard_core.errors import TemplateValidationError, UnsupportedTemplateVersionError
from dashboard_core.model import Aggregation, DataMapping, GridPosition
from dashboard_core.templates import (
    ERROR,
    TEMPLATE_SCHEMA_VERSION,
    WARNING,
    export_template,
    import_template,
    validate_template,
)

pytestmark = pytest.mark.unit


def _designed(sales_csv: str) -> Dashboard:
    dash = Dashboard()
    ds = dash.ingest_csv(sales_csv, "sales.csv")
    chart = dash.add_widget("bar", title="Sales by region", variant="stacked", position=GridPosition(0, 0, 6, 4))
    dash.set_mapping(chart, ds.id, "Region", "Sales", aggregation=Aggregation.AVG)
    dash.update_style(chart, {"color": "#0088ff"})
    dash.add_widget("table", title="Raw", position=GridPosition(6, 0, 6, 4))
    dash.set_theme("dark")
    return dash


def test_export_contains_no_rows(sales_csv) -> None:
    """Templates describe dataset shapes, never their data."""

    payload = _designed(sales_csv).export_template(title="Weekly")
    assert payload["schemaVersion"] == TEMPLATE_SCHEMA_VERSION
    assert payload["metadata"]["title"] == "Weekly"
    assert payload["theme"] == "dark"
    assert payload["datasets"] == [
        {"name": "sales.csv", "fields": [{"name": "Region", "type": "text"}, {"name": "Sales", "type": "numeric"}]}
    ]
    text = json.dumps(payload)
    assert "North" not in text and "rows" not in text
    chart = payload["widgets"][0]
    assert chart["mapping"]["dataset"] == "sales.csv"
    assert chart["variant"] == "stacked"


def test_round_trip_into_empty_dashboard_with_matching_dataset(sales_csv) -> None:
    """A template applied to a dashboard with the same dataset renders identically."""

    source = _designed(sales_csv)
    payload = json.loads(json.dumps(source.export_template()))

    target = Dashboard()
    target.ingest_csv(sales_csv, "sales.csv")
    result = target.import_template(payload)
    assert result.warnings == []
    assert target.theme == "dark"

    src_widgets = source.view().widgets
    dst_widgets = target.view().widgets
    assert [(w.widget_type, w.title, w.variant, w.position, w.style) for w in dst_widgets] == [
        (w.widget_type, w.title, w.variant, w.position, w.style) for w in src_widgets
    ]
    assert {w.id for w in dst_widgets}.isdisjoint({w.id for w in src_widgets})
    chart_src, chart_dst = src_widgets[0], dst_widgets[0]
    assert target.series_for(chart_dst.id) == source.series_for(chart_src.id)
    assert target.widget_condition(chart_dst.id).status == OK
    assert target.widget_condition(dst_widgets[1].id).status == UNMAPPED


def test_import_is_one_undo_step(sales_csv) -> None:
    """Undo removes every imported widget at once."""

    payload = _designed(sales_csv).export_template()
    target = Dashboard()
    target.ingest_csv(sales_csv, "sales.csv")
    target.import_template(payload)
    assert len(target.view().widgets) == 2
    target.undo()
    assert target.view().widgets == ()
    assert len(target.view().datasets) == 1


def test_missing_dataset_or_field_marks_mapping_invalid(sales_csv) -> None:
    """Unbound mappings are imported but reported as invalid."""

    payload = _designed(sales_csv).export_template()

    empty = Dashboard()
    result = empty.import_template(payload)
    chart = empty.view().widgets[0]
    assert chart.mapping.dataset_id == "sales.csv"
    assert empty.widget_condition(chart.id).status == MAPPING_INVALID
    assert any("not loaded" in w.message for w in result.warnings)

    other = Dashboard()
    other.ingest_csv("Region,Units\nNorth,1\n", "sales.csv")
    result = other.import_template(payload)
    cond = other.widget_condition(other.view().widgets[0].id)
    assert cond.status == MAPPING_INVALID
    assert "Sales" in cond.message
    assert any("lacks field" in w.message for w in result.warnings)


def test_import_replace_swaps_existing_widgets(sales_csv) -> None:
    """replace=True removes current widgets in the same undo step."""

    payload = _designed(sales_csv).export_template()
    target = Dashboard()
    target.ingest_csv(sales_csv, "sales.csv")
    old = target.add_widget("pie")
    target.import_template(payload, replace=True)
    ids = [w.id for w in target.view().widgets]
    assert old not in ids and len(ids) == 2
    target.undo()
    assert [w.id for w in target.view().widgets] == [old]


@pytest.mark.parametrize("version", [2, "2.0", None])
def test_unsupported_versions_are_rejected(version) -> None:
    """Unknown template versions raise before anything is imported."""

    with pytest.raises(UnsupportedTemplateVersionError):
        validate_template({"schemaVersion": version, "widgets": []})


@pytest.mark.parametrize("version", [1, "1", "1.0", "1-0-0"])
def test_supported_versions(version) -> None:
    """Legacy string versions are accepted."""

    issues = validate_template({"schemaVersion": version, "widgets": []})
    assert [i.severity for i in issues] == [WARNING]


def test_validation_reports_blocking_errors() -> None:
    """Bad types, variants, grid positions and aggregations are errors."""

    payload = {
        "schemaVersion": 1,
        "widgets": [
            {"id": "a", "widgetType": "hologram", "position": {"col": 0, "row": 0, "width": 4, "height": 4}},
            {"id": "b", "widgetType": "pie", "variant": "stacked", "position": {"width": 0, "height": 2}},
            {
                "id": "b",
                "widgetType": "line",
                "position": {"col": 0, "row": 0, "width": 4, "height": 4},
                "mapping": {"dataset": "d", "xField": "x", "yField": "y", "aggregation": "median"},
            },
            {"id": "c", "widgetType": "bar", "position": {"col": "x", "row": 0, "width": 4, "height": 4}},
            {"id": "d", "widgetType": "kpi", "position": {"col": 0, "row": -1, "width": 4, "height": 4}},
        ],
    }
    issues = validate_template(payload)
    errors = {(i.path, i.severity) for i in issues if i.severity == ERROR}
    assert ("widgets[0].widgetType", ERROR) in errors
    assert ("widgets[1].variant", ERROR) in errors
    assert ("widgets[1].position", ERROR) in errors
    assert ("widgets[2].mapping.aggregation", ERROR) in errors
    assert ("widgets[3].position", ERROR) in errors
    assert ("widgets[4].position", ERROR) in errors
    assert any(i.path == "widgets[2].id" and i.severity == WARNING for i in issues)

    with pytest.raises(TemplateValidationError) as excinfo:
        import_template(payload, Dashboard().view())
    assert len(excinfo.value.issues) == 6


def test_export_keeps_stale_dataset_reference(sales_csv) -> None:
    """A mapping whose dataset was removed exports with its old id."""

    dash = _designed(sales_csv)
    ds_id = dash.view().active_dataset_id
    dash.remove_dataset(ds_id)
    payload = export_template(dash.view())
    assert payload["widgets"][0]["mapping"]["dataset"] == ds_id
    assert payload["datasets"] == []
    assert dash.view().widgets[0].mapping == DataMapping(ds_id, "Region", "Sales", None, Aggregation.AVG)


def test_non_integer_grid_position_is_a_template_error() -> None:
    """A bad column is rejected through the template error, leaving the dashboard empty."""

    dash = Dashboard()
    payload = {
        "schemaVersion": 1,
        "widgets": [{"widgetType": "bar", "position": {"col": "x", "row": 0, "width": 4, "height": 4}}],
    }
    with pytest.raises(TemplateValidationError):
        dash.import_template(payload)
    assert dash.view().widgets == ()
    assert not dash.history.can_undo()


def test_loading_named_dataset_after_import_binds_widgets(sales_csv) -> None:
    """Widgets waiting for a dataset become ok once a dataset with that name is loaded."""

    payload = _designed(sales_csv).export_template()
    dash = Dashboard()
    dash.import_template(payload)
    chart = dash.view().widgets[0].id
    assert dash.widget_condition(chart).status == MAPPING_INVALID

    ds = dash.ingest_csv(sales_csv, "sales.csv")
    assert dash.view().widget(chart).mapping.dataset_id == ds.id
    assert dash.widget_condition(chart).status == OK
    assert dash.series_for(chart).categories == ["North", "South"]

    dash.undo()
    assert len(dash.view().datasets) == 0
    assert dash.view().widget(chart).mapping.dataset_id == "sales.csv"


def test_binding_keeps_field_problems_visible() -> None:
    """A loaded dataset missing a mapped field is bound but still reported."""

    payload = {
        "schemaVersion": 1,
        "widgets": [
            {
                "widgetType": "bar",
                "position": {"col": 0, "row": 0, "width": 4, "height": 4},
                "mapping": {"dataset": "sales.csv", "xField": "Region", "yField": "Sales"},
            }
        ],
    }
    dash = Dashboard()
    dash.import_template(payload)
    ds = dash.ingest_csv("Region,Units\nNorth,1\n", "sales.csv")
    chart = dash.view().widgets[0]
    assert chart.mapping.dataset_id == ds.id
    cond = dash.widget_condition(chart.id)
    assert cond.status == MAPPING_INVALID and "Sales" in cond.message
