"""Portable dashboard templates.

A template carries widget configuration, layout, style and mapping
definitions, but no dataset rows. Mappings name their dataset by name, and the
importer binds them to whatever datasets the consumer has loaded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dashboard_core.errors import TemplateValidationError, UnsupportedTemplateVersionError
from dashboard_core.model import (
    Aggregation,
    DataMapping,
    StateView,
    Widget,
    WidgetType,
    new_widget_id,
)
from dashboard_core.settings import normalize_theme
from dashboard_core.snapshot import decode_position, encode_position, utc_now_iso


_logger = logging.getLogger(__name__)

TEMPLATE_SCHEMA_VERSION = 1
TEMPLATE_KIND = "dashboard_template"
# Older exports used string versions.
SUPPORTED_TEMPLATE_VERSIONS = ("1", "1.0", "1-0-0")

ERROR = "error"
WARNING = "warning"


@dataclass(frozen=True)
class TemplateIssue:
    severity: str
    path: str
    message: str

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.path}: {self.message}"


@dataclass
class TemplateImport:
    widgets: List[Widget] = field(default_factory=list)
    theme: str = "light"
    issues: List[TemplateIssue] = field(default_factory=list)

    @property
    def warnings(self) -> List[TemplateIssue]:
        return [i for i in self.issues if i.severity == WARNING]


def export_template(view: StateView, *, theme: str = "light", title: str = "") -> Dict[str, Any]:
    widgets: List[Dict[str, Any]] = []
    for w in view.widgets:
        mapping = None
        if w.mapping is not None:
            ds = view.dataset(w.mapping.dataset_id)
            mapping = {
                # A stale reference keeps its id so it stays detectably broken.
                "dataset": (ds.name if ds is not None else str(w.mapping.dataset_id)),
                "xField": w.mapping.x_field,
                "yField": w.mapping.y_field,
                "seriesField": w.mapping.series_field,
                "aggregation": w.mapping.aggregation.value,
            }
        widgets.append(
            {
                "id": str(w.id),
                "title": str(w.title or ""),
                "widgetType": w.widget_type.value,
                "variant": str(w.variant or "basic"),
                "position": encode_position(w.position),
                "style": dict(w.style or {}),
                "visible": bool(w.visible),
                "mapping": mapping,
            }
        )

    datasets = [
        {"name": ds.name, "fields": [{"name": f.name, "type": f.field_type.value} for f in ds.fields]}
        for ds in view.datasets.values()
    ]
    return {
        "schemaVersion": TEMPLATE_SCHEMA_VERSION,
        "kind": TEMPLATE_KIND,
        "metadata": {"title": str(title or ""), "exportedAt": utc_now_iso()},
        "datasets": datasets,
        "widgets": widgets,
        "theme": normalize_theme(theme),
    }


def _check_version(payload: Dict[str, Any]) -> None:
    version = payload.get("schemaVersion", payload.get("version"))
    if str(version) not in SUPPORTED_TEMPLATE_VERSIONS:
        raise UnsupportedTemplateVersionError(version, list(SUPPORTED_TEMPLATE_VERSIONS))


def _validate_widget(raw: Any, path: str, issues: List[TemplateIssue]) -> None:
    if not isinstance(raw, dict):
        issues.append(TemplateIssue(ERROR, path, "Widget must be an object"))
        return

    try:
        wt = WidgetType(str(raw.get("widgetType")))
    except ValueError:
        issues.append(TemplateIssue(ERROR, f"{path}.widgetType", f"Unknown widget type {raw.get('widgetType')!r}"))
        wt = None
    if wt is not None:
        variant = str(raw.get("variant") or "basic")
        if variant not in wt.variants:
            issues.append(TemplateIssue(ERROR, f"{path}.variant", f"Variant {variant!r} is not available for {wt.display_name}"))

    pos = raw.get("position")
    if not isinstance(pos, dict):
        issues.append(TemplateIssue(ERROR, f"{path}.position", "Missing grid position"))
    else:
        try:
            if int(pos.get("col", 0)) < 0 or int(pos.get("row", 0)) < 0:
                issues.append(TemplateIssue(ERROR, f"{path}.position", "Grid position (col/row) must not be negative"))
            elif int(pos.get("width", 0)) <= 0 or int(pos.get("height", 0)) <= 0:
                issues.append(TemplateIssue(ERROR, f"{path}.position", "Grid size (width/height) must be greater than zero"))
        except (TypeError, ValueError):
            issues.append(TemplateIssue(ERROR, f"{path}.position", "Grid position values must be integers"))

    if not isinstance(raw.get("style", {}), dict):
        issues.append(TemplateIssue(ERROR, f"{path}.style", "Style must be an object"))

    mapping = raw.get("mapping")
    if mapping is None:
        if wt is not None and wt not in (WidgetType.TABLE, WidgetType.KPI):
            issues.append(TemplateIssue(WARNING, f"{path}.mapping", "No data mapping configured"))
        return
    if not isinstance(mapping, dict):
        issues.append(TemplateIssue(ERROR, f"{path}.mapping", "Mapping must be an object"))
        return
    for key in ("dataset", "xField", "yField"):
        if not mapping.get(key):
            issues.append(TemplateIssue(WARNING, f"{path}.mapping.{key}", f"No {key} configured"))
    agg = str(mapping.get("aggregation") or "sum")
    if agg not in {a.value for a in Aggregation}:
        issues.append(TemplateIssue(ERROR, f"{path}.mapping.aggregation", f"Unknown aggregation {agg!r}"))


def validate_template(payload: Any) -> List[TemplateIssue]:
    """Return every issue found; raises only for an unsupported version."""
    if not isinstance(payload, dict):
        return [TemplateIssue(ERROR, "$", "Template must be a JSON object")]
    _check_version(payload)

    issues: List[TemplateIssue] = []
    widgets = payload.get("widgets")
    if not isinstance(widgets, list):
        issues.append(TemplateIssue(ERROR, "widgets", "Widgets must be a list"))
        return issues
    if not widgets:
        issues.append(TemplateIssue(WARNING, "widgets", "No widgets in template"))

    seen: set[str] = set()
    for idx, raw in enumerate(widgets):
        path = f"widgets[{idx}]"
        _validate_widget(raw, path, issues)
        wid = str(raw.get("id", "")) if isinstance(raw, dict) else ""
        if wid and wid in seen:
            issues.append(TemplateIssue(WARNING, f"{path}.id", f"Duplicate widget ID: '{wid}'"))
        seen.add(wid)
    return issues


def _bind_mapping(raw: Optional[Dict[str, Any]], view: StateView, path: str, issues: List[TemplateIssue]) -> Optional[DataMapping]:
    if not raw or not raw.get("dataset") or not raw.get("xField") or not raw.get("yField"):
        return None
    name = str(raw["dataset"])
    ds = view.dataset_by_name(name)
    series = raw.get("seriesField")
    # An unresolved dataset keeps its name as id until a dataset with that name is added.
    mapping = DataMapping(
        dataset_id=(ds.id if ds is not None else name),
        x_field=str(raw["xField"]),
        y_field=str(raw["yField"]),
        series_field=(None if series in (None, "") else str(series)),
        aggregation=Aggregation(str(raw.get("aggregation") or "sum")),
    )
    if ds is None:
        issues.append(TemplateIssue(WARNING, f"{path}.mapping", f"Dataset '{name}' is not loaded; mapping is invalid until it is"))
        return mapping
    missing = [f for f in mapping.referenced_fields() if not ds.has_field(f)]
    if missing:
        issues.append(TemplateIssue(WARNING, f"{path}.mapping", f"Dataset '{name}' lacks field(s): {', '.join(missing)}"))
    return mapping


def import_template(payload: Any, view: StateView) -> TemplateImport:
    """Turn a template into fresh widgets bound to the datasets in `view`.

    Raises:
        UnsupportedTemplateVersionError: the version is unknown.
        TemplateValidationError: at least one blocking issue was found.
    """
    issues = validate_template(payload)
    errors = [i for i in issues if i.severity == ERROR]
    if errors:
        for issue in errors:
            _logger.warning("Template rejected: %s", issue)
        raise TemplateValidationError(errors)

    out = TemplateImport(theme=normalize_theme(payload.get("theme")), issues=issues)
    for idx, raw in enumerate(payload.get("widgets") or []):
        path = f"widgets[{idx}]"
        out.widgets.append(
            Widget(
                id=new_widget_id(),
                widget_type=WidgetType(str(raw["widgetType"])),
                title=str(raw.get("title", "") or ""),
                variant=str(raw.get("variant") or "basic"),
                position=decode_position(raw["position"]).clamped(),
                mapping=_bind_mapping(raw.get("mapping"), view, path, out.issues),
                style=dict(raw.get("style") or {}),
                visible=bool(raw.get("visible", True)),
            )
        )
    _logger.info("Template import: %d widgets, %d warnings", len(out.widgets), len(out.warnings))
    return out
