from __future__ import annotations

from dashboard_qt.main import main


if __name__ == "__main__":
    raise SystemExit(main())
