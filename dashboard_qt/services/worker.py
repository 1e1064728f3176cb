from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union
from uuid import uuid4

from PySide6.QtCore import QObject, QRunnable, QThreadPool, Signal, Slot

from dashboard_core.autosave import Submitter
from dashboard_core.dashboard import Dashboard
from dashboard_core.model import Dataset
from dashboard_qt.services.status_service import StatusService


_logger = logging.getLogger(__name__)
_GROUP_HANDLES: Dict[str, "WorkerHandle"] = {}
_GROUP_TOKENS: Dict[str, str] = {}
_THREADPOOL_READY = False


def _init_threadpool() -> None:
    global _THREADPOOL_READY
    if _THREADPOOL_READY:
        return
    pool = QThreadPool.globalInstance()
    max_threads_raw = os.getenv("DASHBOARD_MAX_THREADS", "").strip()
    try:
        max_threads = int(max_threads_raw) if max_threads_raw else 0
    except ValueError:
        _logger.warning("Ignoring DASHBOARD_MAX_THREADS=%r", max_threads_raw)
        max_threads = 0
    if max_threads > 0:
        pool.setMaxThreadCount(max_threads)
    else:
        cpu = os.cpu_count() or 4
        pool.setMaxThreadCount(max(2, min(4, cpu)))
    _THREADPOOL_READY = True


class WorkerCancelledError(Exception):
    """A job was cancelled or superseded by a newer job of its group."""


class _WorkerSignals(QObject):
    result = Signal(object)
    error = Signal(object)
    finished = Signal()


class WorkerHandle:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class _Worker(QRunnable):
    def __init__(self, fn: Callable[[WorkerHandle], Any], handle: WorkerHandle, description: str = "") -> None:
        super().__init__()
        self.fn = fn
        self.handle = handle
        self.description = str(description or "")
        self.signals = _WorkerSignals()

    @Slot()
    def run(self) -> None:
        start = time.perf_counter()
        thread_name = threading.current_thread().name
        try:
            if self.handle.cancelled:
                _logger.info("Worker cancelled before start: %s", self.description)
                return
            _logger.info("Worker start (%s): %s", thread_name, self.description)
            result = self.fn(self.handle)
            self.signals.result.emit(result)
        except WorkerCancelledError as exc:
            _logger.info("Worker cancelled (%s): %s", thread_name, self.description)
            self.signals.error.emit(exc)
        except Exception as exc:
            _logger.exception("Worker error (%s): %s", thread_name, self.description)
            self.signals.error.emit(exc)
        finally:
            elapsed = time.perf_counter() - start
            _logger.info("Worker finished (%s): %s (%.3fs)", thread_name, self.description, elapsed)
            self.signals.finished.emit()


def run_in_worker(
    fn: Callable[[WorkerHandle], Any],
    on_result: Optional[Callable[[Any], None]] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
    on_finished: Optional[Callable[[], None]] = None,
    *,
    description: str = "",
    status: Optional[StatusService] = None,
    group: Optional[str] = None,
    cancel_previous: bool = False,
    pool: Optional[QThreadPool] = None,
) -> WorkerHandle:
    """Run `fn(handle)` on a thread pool (the global one by default).

    Callbacks are delivered on the thread that called this function. With a
    `group`, only the most recent job of that group reports its result; older
    jobs, like jobs that never ran, report a WorkerCancelledError to `on_error`.
    """
    _init_threadpool()
    handle = WorkerHandle()
    worker = _Worker(fn, handle, description=description)

    token: Optional[str] = None
    if group:
        token = str(uuid4())
        _GROUP_TOKENS[group] = token
        if cancel_previous:
            prev = _GROUP_HANDLES.get(group)
            if prev is not None:
                prev.cancel()
        _GROUP_HANDLES[group] = handle

    def _is_latest() -> bool:
        if not group:
            return True
        if token is None:
            return False
        return _GROUP_TOKENS.get(group) == token

    delivered = False

    def _deliver(callback):
        def _inner(value):
            nonlocal delivered
            if not _is_latest():
                return
            delivered = True
            if callback is not None:
                callback(value)

        return _inner

    def _finished() -> None:
        if not delivered and on_error is not None:
            _logger.info("Worker superseded: %s", description)
            on_error(WorkerCancelledError(description or "Job cancelled"))
        if on_finished is not None and _is_latest():
            on_finished()

    worker.signals.result.connect(_deliver(on_result))
    worker.signals.error.connect(_deliver(on_error))
    worker.signals.finished.connect(_finished)

    if status is not None:
        if description:
            status.set_status(str(description))
        status.set_busy(True)

        def _clear_status() -> None:
            status.set_busy(False)

        worker.signals.finished.connect(_clear_status)

    (pool or QThreadPool.globalInstance()).start(worker)
    return handle


def worker_submitter(status: Optional[StatusService] = None) -> Submitter:
    """Autosave `submit` that performs store writes off the event loop.

    Writes share one dedicated thread, so they reach the store in the order
    they were submitted.
    """
    pool = QThreadPool()
    pool.setMaxThreadCount(1)

    def _submit(job: Callable[[], None], done: Callable[[Optional[Exception]], None]) -> None:
        run_in_worker(
            lambda _handle: job(),
            on_result=lambda _result: done(None),
            on_error=done,
            description="Saving dashboard",
            status=status,
            pool=pool,
        )

    return _submit


def _ingest_group(source: Union[str, Path, bytes], replace_id: Optional[str]) -> Optional[str]:
    if replace_id:
        return f"ingest:dataset:{replace_id}"
    if isinstance(source, bytes):
        return None
    return f"ingest:path:{Path(source).resolve()}"


def ingest_in_worker(
    dashboard: Dashboard,
    source: Union[str, Path, bytes],
    name: Optional[str] = None,
    *,
    replace_id: Optional[str] = None,
    on_done: Optional[Callable[[Dataset], None]] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
    status: Optional[StatusService] = None,
) -> WorkerHandle:
    """Read and parse a CSV off the event loop, then add it to `dashboard`.

    The dataset is applied on the calling thread, so history and autosave only
    ever see one writer. A newer upload of the same file (or into the same
    `replace_id`) supersedes one still in flight; the older call then gets a
    WorkerCancelledError through `on_error`.
    """
    if isinstance(source, bytes):
        ds_name = str(name or "dataset")
    else:
        ds_name = str(name or Path(source).name)

    def _parse(handle: WorkerHandle) -> Dataset:
        data = source if isinstance(source, bytes) else Path(source).read_bytes()
        if handle.cancelled:
            raise WorkerCancelledError(f"Loading {ds_name} was superseded")
        return dashboard.parse_upload(data, ds_name, replace_id=replace_id)

    def _apply(ds: Dataset) -> None:
        dashboard.add_dataset(ds, replace=replace_id is not None)
        _logger.info("Ingested %s (%d rows, %d fields)", ds.name, ds.row_count, len(ds.fields))
        if status is not None:
            status.set_status(f"Loaded {ds.name}")
        if on_done is not None:
            on_done(ds)

    def _failed(exc: Exception) -> None:
        if isinstance(exc, WorkerCancelledError):
            _logger.info("Ingestion of %s superseded", ds_name)
        else:
            _logger.warning("Ingestion of %s failed: %s", ds_name, exc)
            if status is not None:
                status.set_status(f"Could not load {ds_name}: {exc}")
        if on_error is not None:
            on_error(exc)

    group = _ingest_group(source, replace_id)
    return run_in_worker(
        _parse,
        on_result=_apply,
        on_error=_failed,
        description=f"Loading {ds_name}",
        status=status,
        group=group,
        cancel_previous=group is not None,
    )
