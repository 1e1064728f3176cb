"""Undoable dashboard mutations.

Every command is a frozen record built against the current state by one of the
builder functions below. Builders capture the before and after values, so
`apply_inverse` restores exactly what `apply_forward` replaced without
recomputing anything.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type, Union

from dashboard_core.aggregation import validate_mapping
from dashboard_core.errors import (
    CommandError,
    DuplicateDatasetError,
    InvalidWidgetError,
    UnknownDatasetError,
    UnknownWidgetError,
)
from dashboard_core.layout import assert_no_overlap, compact, first_free_position, layout_items
from dashboard_core.model import (
    DashboardState,
    DataMapping,
    Dataset,
    GridPosition,
    Widget,
    WidgetType,
)


_logger = logging.getLogger(__name__)

LayoutMap = Tuple[Tuple[str, GridPosition], ...]


@dataclass(frozen=True)
class AddWidget:
    widget: Widget
    index: int
    layout_before: LayoutMap
    layout_after: LayoutMap


@dataclass(frozen=True)
class RemoveWidget:
    widget: Widget
    index: int


@dataclass(frozen=True)
class MoveWidget:
    widget_id: str
    layout_before: LayoutMap
    layout_after: LayoutMap


@dataclass(frozen=True)
class ResizeWidget:
    widget_id: str
    layout_before: LayoutMap
    layout_after: LayoutMap


@dataclass(frozen=True)
class UpdateMapping:
    widget_id: str
    before: Optional[DataMapping]
    after: Optional[DataMapping]


@dataclass(frozen=True)
class UpdateStyle:
    widget_id: str
    before: Tuple[Tuple[str, Any], ...]
    after: Tuple[Tuple[str, Any], ...]


@dataclass(frozen=True)
class AddDataset:
    dataset: Dataset
    # Set when the dataset replaces an earlier upload with the same id.
    replaced: Optional[Dataset]
    active_before: Optional[str]
    active_after: Optional[str]


@dataclass(frozen=True)
class RemoveDataset:
    dataset: Dataset
    index: int
    active_before: Optional[str]
    active_after: Optional[str]


@dataclass(frozen=True)
class ReorderLayer:
    widget_id: str
    from_index: int
    to_index: int


@dataclass(frozen=True)
class SetLayerVisibility:
    widget_id: str
    before: bool
    after: bool
    layout_before: LayoutMap
    layout_after: LayoutMap


@dataclass(frozen=True)
class RenameWidget:
    widget_id: str
    before: str
    after: str


@dataclass(frozen=True)
class Batch:
    commands: Tuple["Command", ...] = field(default_factory=tuple)
    description: str = ""


Command = Union[
    AddWidget,
    RemoveWidget,
    MoveWidget,
    ResizeWidget,
    UpdateMapping,
    UpdateStyle,
    AddDataset,
    RemoveDataset,
    ReorderLayer,
    SetLayerVisibility,
    RenameWidget,
    Batch,
]


def describe(command: Command) -> str:
    if isinstance(command, Batch):
        return command.description or f"Batch of {len(command.commands)}"
    name = type(command).__name__
    target = getattr(command, "widget_id", None)
    if target is None and isinstance(command, (AddWidget, RemoveWidget)):
        target = command.widget.id
    if target is None and isinstance(command, (AddDataset, RemoveDataset)):
        target = command.dataset.name
    return f"{name}({target})" if target else name


# --- builders ---


def _require_widget(state: DashboardState, widget_id: str) -> Widget:
    w = state.widget(widget_id)
    if w is None:
        raise UnknownWidgetError(widget_id)
    return w


def _layout_of(state: DashboardState) -> LayoutMap:
    return tuple((w.id, w.position) for w in state.widgets)


def _compacted(state: DashboardState, overrides: Mapping[str, GridPosition], visibility: Optional[Mapping[str, bool]] = None) -> LayoutMap:
    visibility = visibility or {}
    items = [
        (w.id, overrides.get(w.id, w.position), visibility.get(w.id, w.visible))
        for w in state.widgets
    ]
    result = compact(items)
    return tuple((w.id, result[w.id]) for w in state.widgets)


def validate_widget_kind(widget_type: Any, variant: str) -> WidgetType:
    try:
        wt = WidgetType(widget_type)
    except ValueError as exc:
        raise InvalidWidgetError(f"Unknown widget type: {widget_type!r}") from exc
    if variant not in wt.variants:
        raise InvalidWidgetError(f"Variant {variant!r} is not available for {wt.display_name}")
    return wt


def add_widget(state: DashboardState, widget: Widget, *, auto_place: bool = False) -> AddWidget:
    """Build an AddWidget. With `auto_place` the widget goes to the first free slot."""
    if state.widget(widget.id) is not None:
        raise InvalidWidgetError(f"Widget id already in use: {widget.id}")
    kind = validate_widget_kind(widget.widget_type, widget.variant)

    new = widget.copy()
    new.widget_type = kind
    if auto_place:
        new.position = first_free_position(layout_items(state.widgets), new.position.width, new.position.height)
    else:
        new.position = new.position.clamped()

    before = _layout_of(state)
    items = layout_items(state.widgets) + [(new.id, new.position, new.visible)]
    result = compact(items)
    new.position = result[new.id]
    after = tuple((w.id, result[w.id]) for w in state.widgets) + ((new.id, new.position),)
    return AddWidget(widget=new, index=len(state.widgets), layout_before=before, layout_after=after)


def remove_widget(state: DashboardState, widget_id: str) -> RemoveWidget:
    w = _require_widget(state, widget_id)
    return RemoveWidget(widget=w.copy(), index=state.widget_index(widget_id))


def move_widget(state: DashboardState, widget_id: str, col: int, row: int) -> MoveWidget:
    w = _require_widget(state, widget_id)
    target = w.position.moved(col, row)
    return MoveWidget(widget_id=widget_id, layout_before=_layout_of(state), layout_after=_compacted(state, {widget_id: target}))


def resize_widget(state: DashboardState, widget_id: str, width: int, height: int) -> ResizeWidget:
    w = _require_widget(state, widget_id)
    target = w.position.resized(width, height)
    return ResizeWidget(widget_id=widget_id, layout_before=_layout_of(state), layout_after=_compacted(state, {widget_id: target}))


def update_mapping(state: DashboardState, widget_id: str, mapping: Optional[DataMapping]) -> UpdateMapping:
    """Build an UpdateMapping; a non-empty mapping must resolve against the state."""
    w = _require_widget(state, widget_id)
    if mapping is not None:
        ds = state.datasets.get(mapping.dataset_id)
        if ds is None:
            raise UnknownDatasetError(mapping.dataset_id)
        validate_mapping(ds, mapping)
    return UpdateMapping(widget_id=widget_id, before=w.mapping, after=mapping)


def rebind_mapping(state: DashboardState, widget_id: str, dataset_id: str) -> UpdateMapping:
    """Point an existing mapping at another dataset, keeping its fields.

    Fields are not checked; a mapping the dataset cannot satisfy stays
    reportable as invalid instead of blocking the rebind.
    """
    w = _require_widget(state, widget_id)
    if w.mapping is None:
        raise CommandError(f"Widget {widget_id!r} has no mapping to rebind")
    if dataset_id not in state.datasets:
        raise UnknownDatasetError(dataset_id)
    return UpdateMapping(widget_id=widget_id, before=w.mapping, after=dataclasses.replace(w.mapping, dataset_id=dataset_id))


def _freeze_style(style: Mapping[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    return tuple(sorted(style.items(), key=lambda kv: kv[0]))


def update_style(state: DashboardState, widget_id: str, changes: Mapping[str, Any], *, replace: bool = False) -> UpdateStyle:
    """Merge `changes` into the widget style; a None value removes the key."""
    w = _require_widget(state, widget_id)
    merged: Dict[str, Any] = {} if replace else dict(w.style)
    for k, v in changes.items():
        if v is None:
            merged.pop(str(k), None)
        else:
            merged[str(k)] = copy.deepcopy(v)
    return UpdateStyle(widget_id=widget_id, before=_freeze_style(w.style), after=_freeze_style(merged))


def add_dataset(state: DashboardState, dataset: Dataset, *, activate: bool = True, replace: bool = False) -> AddDataset:
    replaced = state.datasets.get(dataset.id)
    if replaced is not None and not replace:
        raise DuplicateDatasetError(dataset.id)
    active_after = dataset.id if activate else state.active_dataset_id
    return AddDataset(dataset=dataset, replaced=replaced, active_before=state.active_dataset_id, active_after=active_after)


def remove_dataset(state: DashboardState, dataset_id: str) -> RemoveDataset:
    ds = state.datasets.get(dataset_id)
    if ds is None:
        raise UnknownDatasetError(dataset_id)
    index = list(state.datasets.keys()).index(dataset_id)
    active_after = None if state.active_dataset_id == dataset_id else state.active_dataset_id
    return RemoveDataset(dataset=ds, index=index, active_before=state.active_dataset_id, active_after=active_after)


def reorder_layer(state: DashboardState, widget_id: str, to_index: int) -> ReorderLayer:
    _require_widget(state, widget_id)
    from_index = state.widget_index(widget_id)
    to_index = max(0, min(int(to_index), len(state.widgets) - 1))
    return ReorderLayer(widget_id=widget_id, from_index=from_index, to_index=to_index)


def set_visibility(state: DashboardState, widget_id: str, visible: bool) -> SetLayerVisibility:
    w = _require_widget(state, widget_id)
    after_layout = _compacted(state, {}, {widget_id: bool(visible)})
    return SetLayerVisibility(
        widget_id=widget_id,
        before=w.visible,
        after=bool(visible),
        layout_before=_layout_of(state),
        layout_after=after_layout,
    )


def rename_widget(state: DashboardState, widget_id: str, title: str) -> RenameWidget:
    w = _require_widget(state, widget_id)
    return RenameWidget(widget_id=widget_id, before=w.title, after=str(title))


# --- application ---


def _set_layout(state: DashboardState, layout: LayoutMap) -> None:
    positions = dict(layout)
    for w in state.widgets:
        if w.id in positions:
            w.position = positions[w.id]


def _check_layout(state: DashboardState) -> None:
    assert_no_overlap(layout_items(state.widgets))


def _add_widget_fwd(state: DashboardState, cmd: AddWidget) -> None:
    state.widgets.insert(cmd.index, cmd.widget.copy())
    _set_layout(state, cmd.layout_after)
    _check_layout(state)


def _add_widget_inv(state: DashboardState, cmd: AddWidget) -> None:
    del state.widgets[state.widget_index(cmd.widget.id)]
    _set_layout(state, cmd.layout_before)
    if state.selected_widget_id == cmd.widget.id:
        state.selected_widget_id = None


def _remove_widget_fwd(state: DashboardState, cmd: RemoveWidget) -> None:
    del state.widgets[state.widget_index(cmd.widget.id)]
    if state.selected_widget_id == cmd.widget.id:
        state.selected_widget_id = None


def _remove_widget_inv(state: DashboardState, cmd: RemoveWidget) -> None:
    state.widgets.insert(cmd.index, cmd.widget.copy())


def _layout_fwd(state: DashboardState, cmd: Union[MoveWidget, ResizeWidget]) -> None:
    _set_layout(state, cmd.layout_after)
    _check_layout(state)


def _layout_inv(state: DashboardState, cmd: Union[MoveWidget, ResizeWidget]) -> None:
    _set_layout(state, cmd.layout_before)


def _mapping_fwd(state: DashboardState, cmd: UpdateMapping) -> None:
    _require_widget(state, cmd.widget_id).mapping = cmd.after


def _mapping_inv(state: DashboardState, cmd: UpdateMapping) -> None:
    _require_widget(state, cmd.widget_id).mapping = cmd.before


def _style_fwd(state: DashboardState, cmd: UpdateStyle) -> None:
    _require_widget(state, cmd.widget_id).style = copy.deepcopy(dict(cmd.after))


def _style_inv(state: DashboardState, cmd: UpdateStyle) -> None:
    _require_widget(state, cmd.widget_id).style = copy.deepcopy(dict(cmd.before))


def _add_dataset_fwd(state: DashboardState, cmd: AddDataset) -> None:
    state.datasets[cmd.dataset.id] = cmd.dataset
    state.active_dataset_id = cmd.active_after


def _add_dataset_inv(state: DashboardState, cmd: AddDataset) -> None:
    if cmd.replaced is not None:
        state.datasets[cmd.dataset.id] = cmd.replaced
    else:
        state.datasets.pop(cmd.dataset.id, None)
    state.active_dataset_id = cmd.active_before


def _remove_dataset_fwd(state: DashboardState, cmd: RemoveDataset) -> None:
    state.datasets.pop(cmd.dataset.id, None)
    state.active_dataset_id = cmd.active_after


def _remove_dataset_inv(state: DashboardState, cmd: RemoveDataset) -> None:
    items = list(state.datasets.items())
    items.insert(cmd.index, (cmd.dataset.id, cmd.dataset))
    state.datasets = dict(items)
    state.active_dataset_id = cmd.active_before


def _move_layer(state: DashboardState, widget_id: str, to_index: int) -> None:
    w = state.widgets.pop(state.widget_index(widget_id))
    state.widgets.insert(to_index, w)


def _reorder_fwd(state: DashboardState, cmd: ReorderLayer) -> None:
    _move_layer(state, cmd.widget_id, cmd.to_index)


def _reorder_inv(state: DashboardState, cmd: ReorderLayer) -> None:
    _move_layer(state, cmd.widget_id, cmd.from_index)


def _visibility_fwd(state: DashboardState, cmd: SetLayerVisibility) -> None:
    _require_widget(state, cmd.widget_id).visible = cmd.after
    _set_layout(state, cmd.layout_after)
    _check_layout(state)


def _visibility_inv(state: DashboardState, cmd: SetLayerVisibility) -> None:
    _require_widget(state, cmd.widget_id).visible = cmd.before
    _set_layout(state, cmd.layout_before)


def _rename_fwd(state: DashboardState, cmd: RenameWidget) -> None:
    _require_widget(state, cmd.widget_id).title = cmd.after


def _rename_inv(state: DashboardState, cmd: RenameWidget) -> None:
    _require_widget(state, cmd.widget_id).title = cmd.before


def _batch_fwd(state: DashboardState, cmd: Batch) -> None:
    for child in cmd.commands:
        apply_forward(state, child)


def _batch_inv(state: DashboardState, cmd: Batch) -> None:
    for child in reversed(cmd.commands):
        apply_inverse(state, child)


_HANDLERS: Dict[Type[Any], Tuple[Callable[[DashboardState, Any], None], Callable[[DashboardState, Any], None]]] = {
    AddWidget: (_add_widget_fwd, _add_widget_inv),
    RemoveWidget: (_remove_widget_fwd, _remove_widget_inv),
    MoveWidget: (_layout_fwd, _layout_inv),
    ResizeWidget: (_layout_fwd, _layout_inv),
    UpdateMapping: (_mapping_fwd, _mapping_inv),
    UpdateStyle: (_style_fwd, _style_inv),
    AddDataset: (_add_dataset_fwd, _add_dataset_inv),
    RemoveDataset: (_remove_dataset_fwd, _remove_dataset_inv),
    ReorderLayer: (_reorder_fwd, _reorder_inv),
    SetLayerVisibility: (_visibility_fwd, _visibility_inv),
    RenameWidget: (_rename_fwd, _rename_inv),
    Batch: (_batch_fwd, _batch_inv),
}


def apply_forward(state: DashboardState, command: Command) -> None:
    forward, _inverse = _HANDLERS[type(command)]
    forward(state, command)
    state.renumber_z()


def apply_inverse(state: DashboardState, command: Command) -> None:
    _forward, inverse = _HANDLERS[type(command)]
    inverse(state, command)
    state.renumber_z()


def build_batch(state: DashboardState, builders: Any, *, description: str = "") -> Batch:
    """Build a Batch from callables `builder(scratch_state) -> Command`.

    Each child is built against a scratch copy that already has the previous
    children applied, so captured before/after values chain correctly.
    """
    scratch = state.clone()
    children = []
    for builder in builders:
        child = builder(scratch)
        apply_forward(scratch, child)
        children.append(child)
    return Batch(commands=tuple(children), description=description)
