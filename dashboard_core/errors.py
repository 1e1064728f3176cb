from __future__ import annotations

from typing import List, Optional


class DashboardError(Exception):
    """Base class for every error raised by the dashboard core."""


# --- CSV ingestion ---


class ParseError(DashboardError):
    """Raw CSV text could not be turned into a Dataset."""


class EmptyFileError(ParseError):
    def __init__(self) -> None:
        super().__init__("File is empty")


class NoHeadersError(ParseError):
    def __init__(self) -> None:
        super().__init__("CSV has no header row")


class EmptyHeaderError(ParseError):
    def __init__(self, column: int) -> None:
        self.column = int(column)
        super().__init__(f"Empty header at column {self.column}")


class DuplicateFieldError(ParseError):
    def __init__(self, name: str) -> None:
        self.name = str(name)
        super().__init__(f"Duplicate header: '{self.name}'")


class MalformedRowError(ParseError):
    def __init__(self, row: int, expected: int, found: int) -> None:
        self.row = int(row)
        self.expected = int(expected)
        self.found = int(found)
        super().__init__(f"Row {self.row}: expected {self.expected} columns, found {self.found}")


class UnterminatedQuoteError(ParseError):
    def __init__(self, line: int, detail: str = "") -> None:
        self.line = int(line)
        self.detail = str(detail or "")
        msg = f"Quoting error near line {self.line}"
        if self.detail:
            msg = f"{msg}: {self.detail}"
        super().__init__(msg)


class InvalidEncodingError(ParseError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Input is not valid UTF-8: {detail}")


class FileTooLargeError(ParseError):
    def __init__(self, max_mb: int, actual_mb: int) -> None:
        self.max_mb = int(max_mb)
        self.actual_mb = int(actual_mb)
        super().__init__(f"File too large: {self.actual_mb} MB exceeds maximum of {self.max_mb} MB")


class TooManyColumnsError(ParseError):
    def __init__(self, found: int, maximum: int) -> None:
        self.found = int(found)
        self.maximum = int(maximum)
        super().__init__(f"Too many columns: {self.found} (maximum: {self.maximum})")


# --- Mapping ---


class MappingError(DashboardError):
    """A widget mapping points at a dataset or field that does not exist."""


class UnknownDatasetError(MappingError):
    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = str(dataset_id)
        super().__init__(f"Unknown dataset: '{self.dataset_id}'")


class UnknownFieldError(MappingError):
    def __init__(self, field_name: str, dataset_name: str = "") -> None:
        self.field_name = str(field_name)
        self.dataset_name = str(dataset_name or "")
        where = f" in dataset '{self.dataset_name}'" if self.dataset_name else ""
        super().__init__(f"Unknown field '{self.field_name}'{where}")


# --- Layout ---


class LayoutError(DashboardError):
    """Compaction left overlapping widgets. Never expected at runtime."""


# --- Commands ---


class CommandError(DashboardError):
    """A command could not be built against the current state."""


class UnknownWidgetError(CommandError):
    def __init__(self, widget_id: str) -> None:
        self.widget_id = str(widget_id)
        super().__init__(f"Unknown widget: '{self.widget_id}'")


class InvalidWidgetError(CommandError):
    pass


class DuplicateDatasetError(CommandError):
    def __init__(self, dataset_id: str) -> None:
        self.dataset_id = str(dataset_id)
        super().__init__(f"Dataset already present: '{self.dataset_id}'")


# --- Storage ---


class StorageError(DashboardError):
    """Durable store problems. Always recoverable: the session keeps running in memory."""


class IncompatibleOrCorruptError(StorageError):
    def __init__(self, detail: str, *, schema_version: Optional[object] = None) -> None:
        self.detail = str(detail)
        self.schema_version = schema_version
        super().__init__(f"Stored dashboard is incompatible or corrupt: {self.detail}")


class QuotaExceededError(StorageError):
    def __init__(self, size: int, quota: int) -> None:
        self.size = int(size)
        self.quota = int(quota)
        super().__init__(f"Snapshot of {self.size} bytes exceeds storage quota of {self.quota} bytes")


class StorageWriteError(StorageError):
    pass


# --- Templates ---


class TemplateError(DashboardError):
    pass


class UnsupportedTemplateVersionError(TemplateError):
    def __init__(self, found: object, supported: List[str]) -> None:
        self.found = found
        self.supported = list(supported)
        super().__init__(
            f"Template version '{found}' is not supported. Supported versions: {', '.join(self.supported)}"
        )


class TemplateValidationError(TemplateError):
    def __init__(self, issues: list) -> None:
        self.issues = list(issues)
        super().__init__(f"Template validation failed ({len(self.issues)} errors)")
