"""Integration tests for the Qt timer, worker and status services."""

from __future__ import annotations

import time

import pytest

pytest.importorskip("PySide6")

from PySide6.QtCore import QCoreApplication, QEventLoop, QThreadPool, QTimer

from dashboard_core.dashboard import Dashboard
from dashboard_core.errors import MalformedRowError
from dashboard_core.storage import STORAGE_KEY, MemoryStore
from dashboard_qt.services.status_service import AutosaveStatus, StatusService
from dashboard_qt.services.timer import QtTimerBackend
from dashboard_qt.services.worker import (
    WorkerCancelledError,
    ingest_in_worker,
    run_in_worker,
    worker_submitter,
)

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def qapp():
    """Return the process-wide QCoreApplication."""

    return QCoreApplication.instance() or QCoreApplication([])


def _spin(until, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while not until() and time.monotonic() < deadline:
        loop = QEventLoop()
        QTimer.singleShot(10, loop.quit)
        loop.exec()


def test_timer_backend_fires_once_and_cancels(qapp) -> None:
    """Scheduled callbacks fire after the delay; cancelled ones never do."""

    backend = QtTimerBackend()
    fired = []
    backend.schedule(0.02, lambda: fired.append("kept"))
    dropped = backend.schedule(0.02, lambda: fired.append("dropped"))
    backend.cancel(dropped)
    _spin(lambda: fired, timeout_s=2.0)
    _spin(lambda: False, timeout_s=0.1)
    assert fired == ["kept"]
    assert backend.active_count == 0


def test_run_in_worker_delivers_result_and_error(qapp) -> None:
    """Results and exceptions are delivered back on the event loop."""

    results, errors = [], []
    run_in_worker(lambda _h: 6 * 7, on_result=results.append)
    run_in_worker(lambda _h: 1 / 0, on_error=errors.append)
    _spin(lambda: results and errors)
    assert results == [42]
    assert isinstance(errors[0], ZeroDivisionError)


def test_group_keeps_only_latest_result(qapp) -> None:
    """Within a group only the newest job reports back."""

    results = []
    run_in_worker(lambda _h: (time.sleep(0.05), "old")[1], on_result=results.append, group="g")
    run_in_worker(lambda _h: "new", on_result=results.append, group="g")
    QThreadPool.globalInstance().waitForDone(2000)
    _spin(lambda: False, timeout_s=0.2)
    assert results == ["new"]


def test_debounced_autosave_on_event_loop(qapp) -> None:
    """A burst of intents produces one background write after the delay."""

    store = MemoryStore()
    texts = []
    status = StatusService(set_text=texts.append)
    dash = Dashboard.open(store, QtTimerBackend(), autosave_delay_s=0.05, submit=worker_submitter(status))
    watcher = AutosaveStatus(dash.autosaver, status)
    for i in range(5):
        dash.add_widget("bar", title=f"w{i}")
    assert store.writes == 0

    _spin(lambda: store.writes >= 1 and watcher.text)
    _spin(lambda: False, timeout_s=0.2)
    assert store.writes == 1
    assert STORAGE_KEY in store.data
    assert watcher.degraded is False
    assert AutosaveStatus.SAVED in texts


def test_worker_write_failure_is_reported(qapp) -> None:
    """A failing background write degrades autosave without raising."""

    store = MemoryStore(quota_bytes=1)
    status = StatusService(set_text=lambda _text: None)
    dash = Dashboard.open(store, QtTimerBackend(), autosave_delay_s=0.01, submit=worker_submitter(status))
    watcher = AutosaveStatus(dash.autosaver, status)
    dash.add_widget("kpi")
    _spin(lambda: watcher.degraded)
    assert dash.autosave_degraded is True
    assert watcher.text.startswith(AutosaveStatus.DEGRADED)


def test_ingest_in_worker(qapp, tmp_path, sales_csv) -> None:
    """CSV files are parsed off the loop and applied on it."""

    good = tmp_path / "sales.csv"
    good.write_text(sales_csv, encoding="utf-8")
    bad = tmp_path / "bad.csv"
    bad.write_text("a,b\n1\n", encoding="utf-8")

    dash = Dashboard()
    loaded, failed = [], []
    ingest_in_worker(dash, good, on_done=loaded.append, on_error=failed.append)
    ingest_in_worker(dash, bad, on_done=loaded.append, on_error=failed.append)
    _spin(lambda: loaded and failed)

    assert [ds.name for ds in loaded] == ["sales.csv"]
    assert isinstance(failed[0], MalformedRowError)
    assert list(ds.name for ds in dash.view().datasets.values()) == ["sales.csv"]


def test_same_file_name_in_different_folders_loads_both(qapp, tmp_path, sales_csv) -> None:
    """Uploads are told apart by path, not by file name."""

    for folder in ("a", "b"):
        (tmp_path / folder).mkdir()
        (tmp_path / folder / "data.csv").write_text(sales_csv, encoding="utf-8")

    dash = Dashboard()
    loaded, failed = [], []
    for folder in ("a", "b"):
        ingest_in_worker(dash, tmp_path / folder / "data.csv", on_done=loaded.append, on_error=failed.append)
    _spin(lambda: len(loaded) + len(failed) >= 2)

    assert failed == []
    assert len(loaded) == 2
    assert len(dash.view().datasets) == 2


def test_superseded_upload_reports_cancellation(qapp, tmp_path, sales_csv) -> None:
    """Loading the same file twice applies it once and still answers both calls."""

    path = tmp_path / "sales.csv"
    path.write_text(sales_csv, encoding="utf-8")

    dash = Dashboard()
    loaded, failed = [], []
    ingest_in_worker(dash, path, on_done=loaded.append, on_error=failed.append)
    ingest_in_worker(dash, str(path), on_done=loaded.append, on_error=failed.append)
    _spin(lambda: len(loaded) + len(failed) >= 2)

    assert len(loaded) == 1
    assert len(failed) == 1 and isinstance(failed[0], WorkerCancelledError)
    assert len(dash.view().datasets) == 1


def test_submitted_writes_finish_in_order(qapp) -> None:
    """A slow earlier write is never overtaken by a later one."""

    finished, outcomes = [], []
    submit = worker_submitter()
    submit(lambda: (time.sleep(0.1), finished.append("older"))[1], outcomes.append)
    submit(lambda: finished.append("newer"), outcomes.append)
    _spin(lambda: len(outcomes) >= 2)

    assert finished == ["older", "newer"]
    assert outcomes == [None, None]
