from dashboard_qt.services.status_service import AutosaveStatus, StatusService
from dashboard_qt.services.timer import QtTimerBackend
from dashboard_qt.services.worker import (
    WorkerCancelledError,
    WorkerHandle,
    ingest_in_worker,
    run_in_worker,
    worker_submitter,
)

__all__ = [
    "AutosaveStatus",
    "StatusService",
    "QtTimerBackend",
    "WorkerCancelledError",
    "WorkerHandle",
    "ingest_in_worker",
    "run_in_worker",
    "worker_submitter",
]
