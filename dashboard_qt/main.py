from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from PySide6.QtCore import QCoreApplication, QTimer

from dashboard_core.dashboard import Dashboard
from dashboard_core.settings import app_dir, load_settings
from dashboard_core.storage import JsonFileStore
from dashboard_qt.services.status_service import AutosaveStatus, StatusService
from dashboard_qt.services.timer import QtTimerBackend
from dashboard_qt.services.worker import WorkerCancelledError, ingest_in_worker, worker_submitter


_logger = logging.getLogger("dashboard_qt")


def _init_logging() -> None:
    log_root = app_dir()
    log_root.mkdir(parents=True, exist_ok=True)
    log_file = log_root / "dashboard.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )


def _install_excepthook() -> None:
    logger = logging.getLogger("dashboard_qt")

    def _hook(exc_type, exc, tb) -> None:
        logger.exception("Unhandled exception", exc_info=(exc_type, exc, tb))
        sys.__excepthook__(exc_type, exc, tb)

    sys.excepthook = _hook


def _parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dashboard", description="Load CSV files into the saved dashboard.")
    parser.add_argument("csv", nargs="*", type=Path, help="CSV files to ingest")
    parser.add_argument("--storage-dir", type=Path, default=None, help="Override the dashboard storage directory")
    parser.add_argument("--export-template", type=Path, default=None, help="Write the dashboard as a template")
    return parser.parse_args(argv)


class Session:
    """Headless run: load, ingest every CSV, wait for the save, quit."""

    def __init__(self, app: QCoreApplication, args: argparse.Namespace) -> None:
        self.app = app
        self.args = args
        self.exit_code = 0
        settings = load_settings()
        storage_dir = args.storage_dir or Path(settings["storage_dir"])
        store = JsonFileStore(storage_dir, quota_bytes=settings["storage_quota_bytes"])

        self.status = StatusService(set_text=lambda text: _logger.info("Status: %s", text))
        self.dashboard = Dashboard.open(
            store,
            QtTimerBackend(app),
            capacity=settings["history_capacity"],
            autosave_delay_s=settings["autosave_delay_s"],
            submit=worker_submitter(self.status),
            sample_rows=settings["sample_rows"],
            type_threshold=settings["type_threshold"],
            max_file_size_mb=settings["max_file_size_mb"],
        )
        if self.dashboard.load_error is not None:
            _logger.warning("Started with an empty dashboard: %s", self.dashboard.load_error)
        self.autosave_status = AutosaveStatus(self.dashboard.autosaver, self.status)
        self.dashboard.autosaver.on_result(self._on_saved)
        self._remaining = 0
        self._saving = False

    def start(self) -> None:
        paths = list(self.args.csv)
        self._remaining = len(paths)
        if not paths:
            self._finish()
            return
        for path in paths:
            ingest_in_worker(
                self.dashboard,
                path,
                on_done=lambda _ds: self._one_done(),
                on_error=self._one_failed,
                status=self.status,
            )

    def _one_failed(self, exc: Exception) -> None:
        # The same file given twice loads once.
        if not isinstance(exc, WorkerCancelledError):
            self.exit_code = 1
        self._one_done()

    def _one_done(self) -> None:
        self._remaining -= 1
        if self._remaining <= 0:
            self._finish()

    def _finish(self) -> None:
        view = self.dashboard.view()
        _logger.info("Dashboard has %d dataset(s), %d widget(s)", len(view.datasets), len(view.widgets))
        if self.args.export_template is not None:
            payload = self.dashboard.export_template(title=self.args.export_template.stem)
            self.args.export_template.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            _logger.info("Template written to %s", self.args.export_template)
        if self.dashboard.autosaver.pending:
            self._saving = True
            self.dashboard.flush()
            return
        self._quit()

    def _on_saved(self, ok: bool, _error: object) -> None:
        if not ok:
            self.exit_code = 1
        if self._saving:
            self._quit()

    def _quit(self) -> None:
        self.dashboard.close()
        self.app.exit(self.exit_code)


def main(argv: Optional[List[str]] = None) -> int:
    _init_logging()
    _install_excepthook()
    args = _parse_args(list(sys.argv[1:] if argv is None else argv))
    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    session = Session(app, args)
    QTimer.singleShot(0, session.start)
    return app.exec()


if __name__ == "__main__":
    raise SystemExit(main())
