from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from dashboard_core import commands as cmds
from dashboard_core.aggregation import KpiAggregation, KpiValue, SeriesData, aggregate, compute_kpi, validate_mapping
from dashboard_core.autosave import Autosaver, Submitter, TimerBackend
from dashboard_core.csv_io import parse_csv
from dashboard_core.errors import MappingError, StorageError, UnknownDatasetError, UnknownWidgetError
from dashboard_core.history import DEFAULT_CAPACITY, CommandHistory
from dashboard_core.model import (
    Aggregation,
    DataMapping,
    Dataset,
    GridPosition,
    StateView,
    Widget,
    WidgetType,
    new_widget_id,
)
from dashboard_core.settings import normalize_theme
from dashboard_core.snapshot import load_state
from dashboard_core.storage import STORAGE_KEY, KeyValueStore
from dashboard_core.templates import TemplateImport, export_template, import_template


_logger = logging.getLogger(__name__)

OK = "ok"
UNMAPPED = "unmapped"
MAPPING_INVALID = "mapping_invalid"


@dataclass(frozen=True)
class WidgetCondition:
    status: str
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == OK


class Dashboard:
    """Intent-level entry point for UI collaborators.

    Each mutating intent builds one command against the current state and runs
    it through the history; autosave (when a store and timer are given) picks
    up every change. Reads go through `view()` copies.
    """

    def __init__(
        self,
        *,
        history: Optional[CommandHistory] = None,
        store: Optional[KeyValueStore] = None,
        timer: Optional[TimerBackend] = None,
        autosave_delay_s: float = 2.0,
        submit: Optional[Submitter] = None,
        theme: str = "light",
        storage_key: str = STORAGE_KEY,
        sample_rows: int = 100,
        type_threshold: float = 0.95,
        max_file_size_mb: int = 100,
    ) -> None:
        self.history = history if history is not None else CommandHistory()
        self._theme = normalize_theme(theme)
        self.sample_rows = int(sample_rows)
        self.type_threshold = float(type_threshold)
        self.max_file_size_mb = int(max_file_size_mb)
        self.load_error: Optional[StorageError] = None
        self.autosaver: Optional[Autosaver] = None
        if store is not None and timer is not None:
            self.autosaver = Autosaver(
                self.history,
                store,
                timer,
                delay_s=autosave_delay_s,
                key=storage_key,
                theme_getter=lambda: self._theme,
                submit=submit,
            )

    @classmethod
    def open(
        cls,
        store: KeyValueStore,
        timer: Optional[TimerBackend] = None,
        *,
        capacity: int = DEFAULT_CAPACITY,
        storage_key: str = STORAGE_KEY,
        **kwargs: Any,
    ) -> "Dashboard":
        """Load the stored dashboard (or start empty) and attach autosave."""
        result = load_state(store, key=storage_key)
        history = CommandHistory(result.state, capacity=capacity)
        dash = cls(history=history, store=store, timer=timer, theme=result.theme, storage_key=storage_key, **kwargs)
        dash.load_error = result.error
        return dash

    # --- reads ---

    def view(self) -> StateView:
        return self.history.view()

    @property
    def theme(self) -> str:
        return self._theme

    @property
    def autosave_degraded(self) -> bool:
        return self.load_error is not None or bool(self.autosaver and self.autosaver.degraded)

    def widget_condition(self, widget_id: str) -> WidgetCondition:
        view = self.view()
        w = view.widget(widget_id)
        if w is None:
            raise UnknownWidgetError(widget_id)
        if w.mapping is None:
            return WidgetCondition(UNMAPPED)
        ds = view.dataset(w.mapping.dataset_id)
        try:
            if ds is None:
                raise UnknownDatasetError(w.mapping.dataset_id)
            validate_mapping(ds, w.mapping)
        except MappingError as exc:
            return WidgetCondition(MAPPING_INVALID, str(exc))
        return WidgetCondition(OK)

    def conditions(self) -> Dict[str, WidgetCondition]:
        return {w.id: self.widget_condition(w.id) for w in self.view().widgets}

    def series_for(self, widget_id: str) -> SeriesData:
        """Aggregate the widget's mapping. Raises MappingError when it is invalid."""
        view = self.view()
        w = view.widget(widget_id)
        if w is None:
            raise UnknownWidgetError(widget_id)
        if w.mapping is None:
            return SeriesData()
        ds = view.dataset(w.mapping.dataset_id)
        if ds is None:
            raise UnknownDatasetError(w.mapping.dataset_id)
        return aggregate(ds, w.mapping)

    def kpi_for(self, dataset_id: str, field_name: str, aggregation: Union[KpiAggregation, str]) -> Optional[KpiValue]:
        ds = self.view().dataset(dataset_id)
        if ds is None:
            raise UnknownDatasetError(dataset_id)
        return compute_kpi(ds, field_name, KpiAggregation(aggregation))

    # --- datasets ---

    def ingest_csv(self, data: Union[str, bytes], name: str, *, replace_id: Optional[str] = None, activate: bool = True) -> Dataset:
        """Parse and add a dataset. With `replace_id` the upload replaces that dataset.

        Parsing happens before anything is applied, so a ParseError leaves the
        dashboard untouched.
        """
        ds = self.parse_upload(data, name, replace_id=replace_id)
        self.add_dataset(ds, activate=activate, replace=replace_id is not None)
        return ds

    def parse_upload(self, data: Union[str, bytes], name: str, *, replace_id: Optional[str] = None) -> Dataset:
        # Pure; safe to call from a worker thread.
        return parse_csv(
            data,
            name,
            sample_size=self.sample_rows,
            threshold=self.type_threshold,
            max_file_size_mb=self.max_file_size_mb,
            dataset_id=replace_id,
        )

    def add_dataset(self, dataset: Dataset, *, activate: bool = True, replace: bool = False) -> None:
        """Add (or replace) a dataset.

        Widgets imported from a template before their data was loaded refer to
        the dataset by name; they are rebound to `dataset` in the same undo step.
        """
        view = self.view()
        waiting = []
        if view.dataset(dataset.name) is None:
            waiting = [w.id for w in view.widgets if w.mapping is not None and w.mapping.dataset_id == dataset.name]
        if not waiting:
            self._run(lambda s: cmds.add_dataset(s, dataset, activate=activate, replace=replace))
            return

        builders: List[Callable[[Any], cmds.Command]] = [
            lambda s: cmds.add_dataset(s, dataset, activate=activate, replace=replace)
        ]
        for wid in waiting:
            builders.append(lambda s, wid=wid: cmds.rebind_mapping(s, wid, dataset.id))
        _logger.info("Binding %d widget(s) to dataset %s", len(waiting), dataset.name)
        self._run(lambda s: cmds.build_batch(s, builders, description=f"Add dataset {dataset.name}"))

    def remove_dataset(self, dataset_id: str) -> None:
        self._run(lambda s: cmds.remove_dataset(s, dataset_id))

    # --- widgets ---

    def add_widget(
        self,
        widget_type: Union[WidgetType, str],
        *,
        title: str = "",
        variant: str = "basic",
        position: Optional[GridPosition] = None,
        mapping: Optional[DataMapping] = None,
        style: Optional[Mapping[str, Any]] = None,
        widget_id: Optional[str] = None,
    ) -> str:
        """Add a widget and return its id. Without a position it takes the first free slot."""
        widget = Widget(
            id=widget_id or new_widget_id(),
            widget_type=cmds.validate_widget_kind(widget_type, variant),
            title=str(title or ""),
            variant=variant,
            position=position or GridPosition(),
            mapping=mapping,
            style=dict(style or {}),
        )
        self._run(lambda s: cmds.add_widget(s, widget, auto_place=position is None))
        return widget.id

    def remove_widget(self, widget_id: str) -> None:
        self._run(lambda s: cmds.remove_widget(s, widget_id))

    def move_widget(self, widget_id: str, col: int, row: int) -> None:
        self._run(lambda s: cmds.move_widget(s, widget_id, col, row))

    def resize_widget(self, widget_id: str, width: int, height: int) -> None:
        self._run(lambda s: cmds.resize_widget(s, widget_id, width, height))

    def update_mapping(self, widget_id: str, mapping: Optional[DataMapping]) -> None:
        self._run(lambda s: cmds.update_mapping(s, widget_id, mapping))

    def set_mapping(
        self,
        widget_id: str,
        dataset_id: str,
        x_field: str,
        y_field: str,
        *,
        series_field: Optional[str] = None,
        aggregation: Union[Aggregation, str] = Aggregation.SUM,
    ) -> None:
        mapping = DataMapping(
            dataset_id=dataset_id,
            x_field=x_field,
            y_field=y_field,
            series_field=series_field,
            aggregation=Aggregation(aggregation),
        )
        self.update_mapping(widget_id, mapping)

    def update_style(self, widget_id: str, changes: Mapping[str, Any], *, replace: bool = False) -> None:
        self._run(lambda s: cmds.update_style(s, widget_id, changes, replace=replace))

    def reorder_layer(self, widget_id: str, to_index: int) -> None:
        self._run(lambda s: cmds.reorder_layer(s, widget_id, to_index))

    def set_visibility(self, widget_id: str, visible: bool) -> None:
        self._run(lambda s: cmds.set_visibility(s, widget_id, visible))

    def rename_widget(self, widget_id: str, title: str) -> None:
        self._run(lambda s: cmds.rename_widget(s, widget_id, title))

    def select_widget(self, widget_id: Optional[str]) -> None:
        self.history.select_widget(widget_id)

    # --- history ---

    def undo(self) -> bool:
        return self.history.undo()

    def redo(self) -> bool:
        return self.history.redo()

    # --- templates / theme ---

    def export_template(self, title: str = "") -> Dict[str, Any]:
        return export_template(self.view(), theme=self._theme, title=title)

    def import_template(self, payload: Any, *, replace: bool = False) -> TemplateImport:
        """Add the template's widgets as one undoable step.

        Widgets whose mapping does not fit the loaded datasets are still added
        and report `mapping_invalid` through `widget_condition`.
        """
        result = import_template(payload, self.view())
        builders: List[Callable[[Any], cmds.Command]] = []
        if replace:
            for existing in self.view().widgets:
                builders.append(lambda s, wid=existing.id: cmds.remove_widget(s, wid))
        for w in result.widgets:
            builders.append(lambda s, w=w: cmds.add_widget(s, w))
        batch = self.history.build(lambda s: cmds.build_batch(s, builders, description="Import template"))
        self.history.execute(batch)
        self.set_theme(result.theme)
        return result

    def set_theme(self, theme: str) -> None:
        theme = normalize_theme(theme)
        if theme == self._theme:
            return
        self._theme = theme
        if self.autosaver is not None:
            self.autosaver.schedule()

    def flush(self) -> None:
        if self.autosaver is not None:
            self.autosaver.flush()

    def close(self) -> None:
        if self.autosaver is not None:
            self.autosaver.flush()
            self.autosaver.close()

    def _run(self, builder: Callable[[Any], cmds.Command]) -> None:
        command = self.history.build(builder)
        self.history.execute(command)
