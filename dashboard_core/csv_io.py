from __future__ import annotations

import csv
import datetime
import io
import logging
import math
import re
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from dashboard_core.errors import (
    DuplicateFieldError,
    EmptyFileError,
    EmptyHeaderError,
    FileTooLargeError,
    InvalidEncodingError,
    MalformedRowError,
    NoHeadersError,
    TooManyColumnsError,
    UnterminatedQuoteError,
)
from dashboard_core.model import Cell, Dataset, Field, FieldType, new_dataset_id


_logger = logging.getLogger(__name__)

SAMPLE_SIZE = 100
TYPE_THRESHOLD = 0.95
MAX_FILE_SIZE_MB = 100
MAX_COLUMNS = 1000
_MB = 1024 * 1024
ALLOWED_DELIMITERS = (",", "\t", ";", "|")

# Cells that count as "no value" for inference (they are still kept in rows).
_MISSING_TOKENS = {"", "null", "n/a", "na"}

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
)


def parse_number(value: Cell) -> Optional[float]:
    if value is None:
        return None
    s = str(value).strip()
    if not _NUMBER_RE.match(s):
        return None
    return float(s)


def parse_bool(value: Cell) -> Optional[bool]:
    if value is None:
        return None
    s = str(value).strip().lower()
    if s == "true":
        return True
    if s == "false":
        return False
    return None


def parse_date(value: Cell) -> Optional[datetime.datetime]:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    # RFC 3339 / ISO timestamps ("2024-01-01T10:00:00Z").
    if "T" in s:
        try:
            parsed = datetime.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None and parsed.tzinfo is not None:
            # Compare everything as naive UTC.
            parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        if parsed is not None:
            return parsed
    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def is_missing(value: Cell) -> bool:
    return value is None or str(value).strip().lower() in _MISSING_TOKENS


def infer_field_type(values: Iterable[Cell], *, threshold: float = TYPE_THRESHOLD) -> FieldType:
    """Pick the first of Boolean, Numeric, Date whose parse ratio reaches `threshold`.

    Missing cells are left out of the ratio. A column without any value is Text.
    """
    sample = pd.Series([v for v in values if not is_missing(v)], dtype=object)
    if sample.empty:
        return FieldType.TEXT

    checks = (
        (FieldType.BOOLEAN, parse_bool),
        (FieldType.NUMERIC, parse_number),
        (FieldType.DATE, parse_date),
    )
    for field_type, parser in checks:
        ok = sample.map(lambda v: parser(v) is not None).to_numpy(dtype=bool)
        if float(np.mean(ok)) >= float(threshold):
            return field_type
    return FieldType.TEXT


def detect_types(
    headers: Sequence[str],
    rows: Sequence[Sequence[Cell]],
    *,
    sample_size: int = SAMPLE_SIZE,
    threshold: float = TYPE_THRESHOLD,
) -> List[Field]:
    sample = rows[: max(0, int(sample_size))]
    out: List[Field] = []
    for idx, name in enumerate(headers):
        column = [row[idx] for row in sample if idx < len(row)]
        out.append(Field(name=name, field_type=infer_field_type(column, threshold=threshold)))
    return out


def sniff_delimiter(header_line: str) -> str:
    """Guess the delimiter of a header line, as `pd.read_csv(sep=None)` does.

    Falls back to the most frequent allowed delimiter when the sniffer gives up.
    """
    try:
        return csv.Sniffer().sniff(header_line, delimiters="".join(ALLOWED_DELIMITERS)).delimiter
    except csv.Error:
        pass
    best = ","
    best_count = 0
    for delim in ALLOWED_DELIMITERS:
        count = header_line.count(delim)
        if count > best_count:
            best, best_count = delim, count
    return best


def _decode(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        return data[1:] if data.startswith("\ufeff") else data
    try:
        return bytes(data).decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidEncodingError(str(exc)) from exc


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line
    return ""


def _tokenize(text: str, delimiter: str) -> Tuple[List[str], List[Tuple[int, List[str]]]]:
    """Split text into a header and (line number, cells) records."""
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=delimiter, strict=True)
    header: Optional[List[str]] = None
    records: List[Tuple[int, List[str]]] = []
    try:
        for raw in reader:
            if not raw or (len(raw) == 1 and not raw[0].strip()):
                continue
            cells = [c.strip() for c in raw]
            if header is None:
                header = cells
            else:
                records.append((reader.line_num, cells))
    except csv.Error as exc:
        raise UnterminatedQuoteError(reader.line_num, str(exc)) from exc
    if header is None:
        raise NoHeadersError()
    return header, records


def _validate_header(header: Sequence[str], max_columns: int) -> None:
    if len(header) > max_columns:
        raise TooManyColumnsError(len(header), max_columns)
    seen = set()
    for idx, name in enumerate(header):
        if not name:
            raise EmptyHeaderError(idx + 1)
        if name in seen:
            raise DuplicateFieldError(name)
        seen.add(name)


def parse_csv(
    data: Union[str, bytes],
    name: str,
    *,
    delimiter: Optional[str] = None,
    sample_size: int = SAMPLE_SIZE,
    threshold: float = TYPE_THRESHOLD,
    max_file_size_mb: int = MAX_FILE_SIZE_MB,
    max_columns: int = MAX_COLUMNS,
    dataset_id: Optional[str] = None,
) -> Dataset:
    """Parse delimited text into a typed Dataset.

    Either a complete Dataset is returned or a ParseError is raised; nothing is
    produced half way.
    """
    size = len(data.encode("utf-8")) if isinstance(data, str) else len(data)
    if size > int(max_file_size_mb) * _MB:
        raise FileTooLargeError(max_file_size_mb, math.ceil(size / _MB))

    text = _decode(data)
    if not text.strip():
        raise EmptyFileError()

    delim = delimiter or sniff_delimiter(_first_line(text))
    header, records = _tokenize(text, delim)
    _validate_header(header, max_columns)

    rows: List[Tuple[Cell, ...]] = []
    for row_no, (line_num, cells) in enumerate(records, start=1):
        if len(cells) != len(header):
            _logger.info("Rejecting %s: row %d (line %d) has %d cells", name, row_no, line_num, len(cells))
            raise MalformedRowError(row_no, len(header), len(cells))
        rows.append(tuple(c if c != "" else None for c in cells))

    if not rows:
        raise EmptyFileError()

    fields = detect_types(header, rows, sample_size=sample_size, threshold=threshold)
    ds = Dataset(
        id=dataset_id or new_dataset_id(),
        name=str(name),
        fields=tuple(fields),
        rows=tuple(rows),
        size_bytes=size,
        uploaded_at=datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
    )
    _logger.info(
        "Parsed %s: %d rows, %d fields (%s)",
        name,
        ds.row_count,
        len(fields),
        ", ".join(f"{f.name}:{f.field_type.value}" for f in fields),
    )
    return ds


def _quote(value: Cell, delimiter: str) -> str:
    if value is None:
        return ""
    s = str(value)
    if delimiter in s or '"' in s or "\n" in s or "\r" in s:
        return '"' + s.replace('"', '""') + '"'
    return s


def dataset_to_csv(dataset: Dataset, *, delimiter: str = ",") -> str:
    lines = [delimiter.join(_quote(n, delimiter) for n in dataset.field_names)]
    for row in dataset.rows:
        lines.append(delimiter.join(_quote(v, delimiter) for v in row))
    return "\n".join(lines) + "\n"


def format_size(num_bytes: int) -> str:
    b = int(num_bytes)
    if b < 1024:
        return f"{b} B"
    if b < 1024 * 1024:
        return f"{b / 1024:.1f} KB"
    return f"{b / (1024 * 1024):.1f} MB"
