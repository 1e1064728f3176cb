from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict


# Keep this stable; used for %APPDATA%\<APP_SETTINGS_DIRNAME>\settings.json
APP_SETTINGS_DIRNAME = "Dashboard Studio"
SETTINGS_FILENAME = "settings.json"

THEMES = ("light", "dark")


def _appdata_dir() -> Path:
    # Windows: %APPDATA% (Roaming)
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata)

    # Fallbacks (best-effort)
    home = Path.home()
    candidate = home / "AppData" / "Roaming"
    return candidate if candidate.exists() else home


def app_dir() -> Path:
    return _appdata_dir() / APP_SETTINGS_DIRNAME


def settings_path() -> Path:
    return app_dir() / SETTINGS_FILENAME


def default_settings() -> Dict[str, Any]:
    return {
        "autosave_delay_s": 2.0,
        "history_capacity": 100,
        "sample_rows": 100,
        "type_threshold": 0.95,
        "max_file_size_mb": 100,
        "storage_quota_bytes": None,
        "storage_dir": str(app_dir() / "storage"),
        "theme": "light",
    }


def normalize_theme(value: Any) -> str:
    theme = str(value or "light").strip().lower()
    if theme in ("dark", "business"):
        return "dark"
    return "light"


def _positive_float(value: Any, default: float) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    return out if out > 0 else default


def _positive_int(value: Any, default: int) -> int:
    try:
        out = int(value)
    except (TypeError, ValueError):
        return default
    return out if out > 0 else default


def _normalize(data: Dict[str, Any]) -> Dict[str, Any]:
    out = default_settings()
    out["autosave_delay_s"] = _positive_float(data.get("autosave_delay_s"), out["autosave_delay_s"])
    out["history_capacity"] = _positive_int(data.get("history_capacity"), out["history_capacity"])
    out["sample_rows"] = _positive_int(data.get("sample_rows"), out["sample_rows"])
    out["max_file_size_mb"] = _positive_int(data.get("max_file_size_mb"), out["max_file_size_mb"])

    threshold = _positive_float(data.get("type_threshold"), out["type_threshold"])
    out["type_threshold"] = threshold if threshold <= 1.0 else out["type_threshold"]

    quota = data.get("storage_quota_bytes")
    out["storage_quota_bytes"] = None if quota in (None, "") else _positive_int(quota, 0) or None

    storage_dir = data.get("storage_dir")
    if storage_dir not in (None, ""):
        out["storage_dir"] = str(storage_dir)

    out["theme"] = normalize_theme(data.get("theme"))
    return out


def load_settings() -> Dict[str, Any]:
    """Load persistent user settings.

    Unknown keys are dropped and invalid values fall back to defaults, so the
    returned dict always has every key of `default_settings()`.
    """
    p = settings_path()
    try:
        if not p.exists() or not p.is_file():
            return default_settings()
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("settings.json must be an object")
    except (OSError, ValueError):
        return default_settings()
    return _normalize(data)


def save_settings(settings: Dict[str, Any]) -> None:
    """Persist settings to %APPDATA%\\<APP_SETTINGS_DIRNAME>\\settings.json."""
    p = settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    safe = _normalize(dict(settings or {}))
    p.write_text(json.dumps(safe, ensure_ascii=False, indent=2), encoding="utf-8")
