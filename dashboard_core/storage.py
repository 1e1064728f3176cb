from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from dashboard_core.errors import QuotaExceededError, StorageWriteError


_logger = logging.getLogger(__name__)

# One dashboard per store.
STORAGE_KEY = "dashboard_state"
CORRUPT_SUFFIX = ".corrupt"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9_.-]+")


class KeyValueStore(Protocol):
    def read(self, key: str) -> Optional[str]:
        ...

    def write(self, key: str, value: str) -> None:
        ...


class MemoryStore:
    """In-memory store; handy for tests and for running without a disk."""

    def __init__(self, initial: Optional[Dict[str, str]] = None, *, quota_bytes: Optional[int] = None) -> None:
        self.data: Dict[str, str] = dict(initial or {})
        self.quota_bytes = quota_bytes
        self.writes = 0

    def read(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def write(self, key: str, value: str) -> None:
        size = len(value.encode("utf-8"))
        if self.quota_bytes is not None and size > self.quota_bytes:
            raise QuotaExceededError(size, self.quota_bytes)
        self.data[key] = value
        self.writes += 1


class JsonFileStore:
    """One UTF-8 file per key inside `directory`.

    Writes go through a temporary file and `os.replace`, so a crash mid-write
    leaves the previous value in place.
    """

    def __init__(self, directory: Union[str, Path], *, quota_bytes: Optional[int] = None) -> None:
        self.directory = Path(directory)
        self.quota_bytes = quota_bytes

    def path_for(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    def read(self, key: str) -> Optional[str]:
        p = self.path_for(key)
        if not p.exists():
            return None
        return p.read_text(encoding="utf-8")

    def write(self, key: str, value: str) -> None:
        raw = value.encode("utf-8")
        if self.quota_bytes is not None and len(raw) > self.quota_bytes:
            raise QuotaExceededError(len(raw), self.quota_bytes)
        target = self.path_for(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=target.stem, suffix=".tmp", dir=str(self.directory))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(raw)
                os.replace(tmp, target)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            _logger.warning("Write of %s failed: %s", target, exc)
            raise StorageWriteError(f"Could not write {target}: {exc}") from exc
